"""
JSON-RPC 2.0 envelopes and server-sent-event decoding for the MCP transport.

The codec only knows about JSON validity and envelope shape. Correlation and
error semantics live in the client.
"""
from __future__ import annotations

import codecs
import itertools
import json
import logging
from typing import Any, AsyncIterable, AsyncIterator, Dict, List, Optional

JSONRPC_VERSION = "2.0"

logger = logging.getLogger("ghl_mcp.codec")

# Shared by every client in the process so ids never repeat.
_request_ids = itertools.count(1)


def next_request_id() -> int:
    return next(_request_ids)


def encode_request(
    method: str,
    params: Optional[Dict[str, Any]] = None,
    request_id: Optional[int] = None,
) -> Dict[str, Any]:
    """Build a request envelope. A fresh id is allocated when none is given."""
    return {
        "jsonrpc": JSONRPC_VERSION,
        "id": next_request_id() if request_id is None else request_id,
        "method": method,
        "params": params or {},
    }


def encode_notification(method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "method": method, "params": params or {}}


def dumps(envelope: Dict[str, Any]) -> bytes:
    return json.dumps(envelope, ensure_ascii=False, separators=(",", ":")).encode("utf-8")


class SSEDecoder:
    """
    Incremental text/event-stream decoder.

    Feed raw byte chunks; each ``data:`` line is accumulated until a blank
    line terminates the event, then the payload is parsed as one JSON-RPC
    message. Malformed payloads are dropped. Chunk boundaries may fall
    anywhere, including inside a multi-byte UTF-8 sequence.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._data: List[str] = []

    def feed(self, chunk: bytes) -> List[Dict[str, Any]]:
        self._buffer += self._decoder.decode(chunk)
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        messages: List[Dict[str, Any]] = []
        for line in lines:
            self._handle_line(line.rstrip("\r"), messages)
        return messages

    def flush(self) -> List[Dict[str, Any]]:
        """Emit whatever is left once the stream has ended."""
        messages: List[Dict[str, Any]] = []
        tail = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        if tail:
            self._handle_line(tail.rstrip("\r"), messages)
        self._dispatch(messages)
        return messages

    def _handle_line(self, line: str, out: List[Dict[str, Any]]) -> None:
        if line.startswith("data:"):
            value = line[5:]
            if value.startswith(" "):
                value = value[1:]
            self._data.append(value)
        elif line == "":
            self._dispatch(out)
        # event:, id:, retry: and comment lines carry nothing we need

    def _dispatch(self, out: List[Dict[str, Any]]) -> None:
        if not self._data:
            return
        payload = "\n".join(self._data)
        self._data = []
        try:
            message = json.loads(payload)
        except ValueError:
            logger.debug("Skipping malformed SSE payload", extra={"payload": payload[:200]})
            return
        if isinstance(message, dict):
            out.append(message)
        elif isinstance(message, list):
            out.extend(m for m in message if isinstance(m, dict))


async def decode_stream(chunks: AsyncIterable[bytes]) -> AsyncIterator[Dict[str, Any]]:
    """Lazily decode an event-stream body into JSON-RPC messages. Single use."""
    decoder = SSEDecoder()
    async for chunk in chunks:
        for message in decoder.feed(chunk):
            yield message
    for message in decoder.flush():
        yield message


def decode_text(text: str) -> List[Dict[str, Any]]:
    """Decode a complete event-stream body held in memory."""
    decoder = SSEDecoder()
    messages = decoder.feed(text.encode("utf-8"))
    messages.extend(decoder.flush())
    return messages


def select_response(messages: List[Dict[str, Any]], request_id: Any) -> Optional[Dict[str, Any]]:
    """
    Pick the terminal response for ``request_id`` out of a streamed exchange.

    Returns the last message with a matching id. Without a match, falls back
    to the last message carrying any id, and returns None if there is none.
    """
    for message in reversed(messages):
        if message.get("id") == request_id:
            return message
    for message in reversed(messages):
        if message.get("id") is not None:
            return message
    return None


def parse_content(result: Any) -> Any:
    """
    Unwrap a tools/call result whose first content block is JSON text.

    Results that are not wrapped, or whose text is not JSON, come back as-is.
    """
    if not result:
        return {}
    if isinstance(result, dict):
        content = result.get("content")
        if isinstance(content, list) and content and isinstance(content[0], dict):
            text = content[0].get("text")
            if text:
                try:
                    return json.loads(text)
                except ValueError:
                    return result
    return result


def list_field(data: Any, key: str) -> List[Dict[str, Any]]:
    """
    The dict entries of ``data[key]``.

    Some tools nest the list one level deeper (``{key: {key: [...]}}``); that
    shape is unwrapped. Anything that is not a list yields an empty list.
    """
    value = data.get(key) if isinstance(data, dict) else None
    if isinstance(value, dict):
        value = value.get(key)
    return [v for v in value if isinstance(v, dict)] if isinstance(value, list) else []
