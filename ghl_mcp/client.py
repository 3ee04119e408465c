"""
MCP streamable-HTTP client for the GoHighLevel endpoint.

One client owns at most one session. Requests are JSON-RPC 2.0 POSTs; the
server may answer with plain JSON or with an event stream that interleaves
notifications before the terminal result.
"""
from __future__ import annotations

import asyncio
import enum
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from . import __version__
from .codec import (
    decode_stream,
    dumps,
    encode_notification,
    encode_request,
    select_response,
)
from .errors import (
    ConfigError,
    CorrelationError,
    HandshakeError,
    McpTimeoutError,
    NetworkError,
    ProtocolError,
    TransportError,
)

MCP_PROTOCOL_VERSION = "2025-06-18"
DEFAULT_TIMEOUT_SECONDS = 30.0
GHL_MCP_ENDPOINT = "https://services.leadconnectorhq.com/mcp/"

SESSION_HEADER = "Mcp-Session-Id"
PROTOCOL_VERSION_HEADER = "MCP-Protocol-Version"
LOCATION_HEADER = "locationId"

CLIENT_NAME = "ghl-mcp-client"

logger = logging.getLogger("ghl_mcp.client")


class ClientState(str, enum.Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    CLOSED = "closed"


@dataclass
class RpcExchange:
    """Decoded reply to one POST plus the session id seen on it."""

    message: Dict[str, Any]
    session_id: Optional[str]


class McpClient:
    def __init__(
        self,
        token: str,
        location_id: str,
        url: str = GHL_MCP_ENDPOINT,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        protocol_version: str = MCP_PROTOCOL_VERSION,
        http_client: Optional[httpx.AsyncClient] = None,
        strict_correlation: bool = False,
    ) -> None:
        if not token:
            raise ConfigError("GHL token is required")
        if not location_id:
            raise ConfigError("GHL locationId is required")
        self.url = url
        self.timeout = float(timeout)
        self.protocol_version = protocol_version
        self.strict_correlation = strict_correlation
        self._headers = {
            "Authorization": f"Bearer {token}",
            LOCATION_HEADER: location_id,
        }
        self._owns_http_client = http_client is None
        self._http = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout, connect=min(self.timeout, 10.0)),
            follow_redirects=False,
        )
        self._init_lock = asyncio.Lock()
        self.state = ClientState.UNINITIALIZED
        self.session_id: Optional[str] = None
        self.server_capabilities: Optional[Dict[str, Any]] = None
        self.server_info: Optional[Dict[str, Any]] = None

    @property
    def initialized(self) -> bool:
        return self.state is ClientState.READY

    # -- lifecycle ---------------------------------------------------------

    async def initialize(self) -> Dict[str, Any]:
        """Run the handshake and move to READY. Failure returns to UNINITIALIZED."""
        self.state = ClientState.INITIALIZING
        request = encode_request(
            "initialize",
            {
                "protocolVersion": self.protocol_version,
                "capabilities": {},
                "clientInfo": {"name": CLIENT_NAME, "version": __version__},
            },
        )
        try:
            exchange = await self._send(request, session_id=None)
        except TransportError as exc:
            self._reset(ClientState.UNINITIALIZED)
            raise HandshakeError(f"MCP initialize failed: {exc}", status_code=exc.status_code) from exc
        except BaseException:
            self._reset(ClientState.UNINITIALIZED)
            raise

        message = exchange.message
        if message.get("error") is not None:
            self._reset(ClientState.UNINITIALIZED)
            raise HandshakeError(f"MCP initialize error: {json.dumps(message['error'])}")

        result = message.get("result") or {}
        self.session_id = exchange.session_id
        self.server_capabilities = result.get("capabilities") or {}
        self.server_info = result.get("serverInfo") or {}
        self.state = ClientState.READY
        logger.debug("MCP session established", extra={"session_id": self.session_id})

        try:
            await self._send(encode_notification("notifications/initialized"), self.session_id)
        except Exception as exc:
            # Servers are not required to acknowledge this notification.
            logger.debug(f"initialized notification failed: {exc}")

        return {"capabilities": self.server_capabilities, "serverInfo": self.server_info}

    async def ensure_ready(self) -> None:
        """Handshake once if the session is not READY; concurrent callers share it."""
        if self.state is ClientState.READY:
            return
        async with self._init_lock:
            if self.state is not ClientState.READY:
                await self.initialize()

    async def close(self) -> None:
        """Forget the session. The server is not contacted."""
        self._reset(ClientState.CLOSED)

    async def aclose(self) -> None:
        await self.close()
        if self._owns_http_client:
            await self._http.aclose()

    def _reset(self, state: ClientState) -> None:
        self.state = state
        self.session_id = None
        self.server_capabilities = None
        self.server_info = None

    # -- operations --------------------------------------------------------

    async def list_tools(self, cursor: Optional[str] = None) -> Dict[str, Any]:
        await self.ensure_ready()
        request = encode_request("tools/list", {"cursor": cursor} if cursor else {})
        message = await self._request(request)
        if message.get("error") is not None:
            raise ProtocolError("tools/list", json.dumps(message["error"]))
        return message.get("result") or {"tools": []}

    async def call_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        await self.ensure_ready()
        request = encode_request("tools/call", {"name": name, "arguments": arguments or {}})
        message = await self._request(request, tool=name)
        if message.get("error") is not None:
            raise ProtocolError("tools/call", json.dumps(message["error"]), tool=name)
        return message.get("result") or {}

    # -- transport ---------------------------------------------------------

    async def _request(self, request: Dict[str, Any], tool: Optional[str] = None) -> Dict[str, Any]:
        exchange = await self._send(request, self.session_id, tool=tool)
        if exchange.session_id:
            self.session_id = exchange.session_id
        return exchange.message

    def _build_headers(self, session_id: Optional[str]) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json, text/event-stream",
            PROTOCOL_VERSION_HEADER: self.protocol_version,
        }
        headers.update(self._headers)
        if session_id:
            headers[SESSION_HEADER] = session_id
        return headers

    async def _send(
        self,
        request: Dict[str, Any],
        session_id: Optional[str],
        tool: Optional[str] = None,
    ) -> RpcExchange:
        method = request["method"]
        try:
            return await asyncio.wait_for(
                self._post(request, session_id, tool), timeout=self.timeout
            )
        except asyncio.TimeoutError as exc:
            raise McpTimeoutError(method, self.timeout) from exc
        except httpx.TimeoutException as exc:
            raise McpTimeoutError(method, self.timeout) from exc
        except httpx.TransportError as exc:
            raise NetworkError(f"MCP {method} request failed: {exc}") from exc

    async def _post(
        self,
        request: Dict[str, Any],
        session_id: Optional[str],
        tool: Optional[str],
    ) -> RpcExchange:
        async with self._http.stream(
            "POST",
            self.url,
            content=dumps(request),
            headers=self._build_headers(session_id),
        ) as response:
            if not response.is_success:
                body = (await response.aread()).decode("utf-8", errors="replace")
                raise TransportError(response.status_code, body)

            new_session = response.headers.get(SESSION_HEADER) or session_id
            content_type = response.headers.get("content-type", "")

            if "text/event-stream" in content_type:
                messages: List[Dict[str, Any]] = [
                    m async for m in decode_stream(response.aiter_bytes())
                ]
                message = self._correlate(messages, request, tool)
            else:
                raw = await response.aread()
                try:
                    message = json.loads(raw) if raw.strip() else {}
                except ValueError as exc:
                    raise ProtocolError(request["method"], f"invalid JSON body: {exc}", tool=tool) from exc
                if not isinstance(message, dict):
                    raise ProtocolError(request["method"], "response is not a JSON object", tool=tool)

            return RpcExchange(message=message, session_id=new_session)

    def _correlate(
        self,
        messages: List[Dict[str, Any]],
        request: Dict[str, Any],
        tool: Optional[str],
    ) -> Dict[str, Any]:
        request_id = request.get("id")
        if request_id is None:
            return messages[-1] if messages else {}
        if self.strict_correlation:
            for message in reversed(messages):
                if message.get("id") == request_id:
                    return message
            raise CorrelationError(request["method"], request_id, tool=tool)
        selected = select_response(messages, request_id)
        if selected is not None and selected.get("id") != request_id:
            logger.warning(
                "Streamed response had no message for request id; using last message with an id",
                extra={"request_id": request_id, "tool": tool or ""},
            )
        return selected or {}
