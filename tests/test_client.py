"""
Tests for the MCP client: handshake, session handling, correlation, errors.

HTTP is faked with httpx.MockTransport.
"""
from __future__ import annotations

import asyncio
import json
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest

from ghl_mcp.client import ClientState, McpClient
from ghl_mcp.errors import (
    ConfigError,
    CorrelationError,
    HandshakeError,
    McpTimeoutError,
    NetworkError,
    ProtocolError,
    TransportError,
)

URL = "https://mcp.test/mcp/"
SESSION = "mock-session-abc123"


class MockServer:
    """Canned MCP server; individual methods can be overridden per test."""

    def __init__(self, overrides: Optional[Dict[str, Callable[[Dict[str, Any]], httpx.Response]]] = None) -> None:
        self.calls: List[Dict[str, Any]] = []
        self.overrides = overrides or {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.calls.append({"body": body, "headers": request.headers})
        method = body.get("method")
        if method in self.overrides:
            return self.overrides[method](body)
        if method == "initialize":
            return httpx.Response(
                200,
                json={
                    "jsonrpc": "2.0",
                    "id": body["id"],
                    "result": {"capabilities": {"tools": {}}, "serverInfo": {"name": "ghl-mcp-mock"}},
                },
                headers={"mcp-session-id": SESSION},
            )
        if method == "notifications/initialized":
            return httpx.Response(202)
        if method == "tools/list":
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": {"tools": [{"name": "t"}]}})
        return httpx.Response(
            200,
            json={"jsonrpc": "2.0", "id": body["id"], "result": {"content": [{"type": "text", "text": "{}"}]}},
        )

    @property
    def methods(self) -> List[str]:
        return [c["body"]["method"] for c in self.calls]


def make_client(server: Any, **kwargs: Any) -> McpClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(server))
    return McpClient(token="test-token", location_id="test-loc", url=URL, http_client=http, **kwargs)


def sse(*messages: Dict[str, Any]) -> httpx.Response:
    body = "".join(f"data: {json.dumps(m)}\n\n" for m in messages)
    return httpx.Response(200, content=body.encode(), headers={"content-type": "text/event-stream"})


def test_requires_token_and_location() -> None:
    with pytest.raises(ConfigError, match="token is required"):
        McpClient(token="", location_id="loc")
    with pytest.raises(ConfigError, match="locationId is required"):
        McpClient(token="tok", location_id="")


@pytest.mark.asyncio
async def test_initialize_captures_session_and_server_info() -> None:
    server = MockServer()
    client = make_client(server)
    assert client.state is ClientState.UNINITIALIZED

    result = await client.initialize()

    assert result["serverInfo"]["name"] == "ghl-mcp-mock"
    assert client.initialized is True
    assert client.session_id == SESSION
    assert server.methods == ["initialize", "notifications/initialized"]
    init_params = server.calls[0]["body"]["params"]
    assert init_params["protocolVersion"] == "2025-06-18"
    assert init_params["clientInfo"]["name"] == "ghl-mcp-client"
    assert "id" not in server.calls[1]["body"]


@pytest.mark.asyncio
async def test_call_tool_triggers_exactly_one_handshake() -> None:
    server = MockServer()
    client = make_client(server)

    await client.call_tool("contacts_get-contacts", {})
    await client.call_tool("contacts_get-contacts", {})

    assert server.methods == ["initialize", "notifications/initialized", "tools/call", "tools/call"]


@pytest.mark.asyncio
async def test_concurrent_calls_share_one_handshake() -> None:
    server = MockServer()
    client = make_client(server)

    await asyncio.gather(*(client.call_tool("x", {}) for _ in range(3)))

    assert server.methods.count("initialize") == 1
    assert server.methods.count("tools/call") == 3


@pytest.mark.asyncio
async def test_headers_and_session_are_attached() -> None:
    server = MockServer()
    client = make_client(server)

    await client.call_tool("contacts_get-contacts", {"limit": 1})

    init_headers = server.calls[0]["headers"]
    assert "mcp-session-id" not in init_headers
    call = next(c for c in server.calls if c["body"]["method"] == "tools/call")
    headers = call["headers"]
    assert headers["authorization"] == "Bearer test-token"
    assert headers["locationid"] == "test-loc"
    assert headers["mcp-protocol-version"] == "2025-06-18"
    assert headers["accept"] == "application/json, text/event-stream"
    assert headers["content-type"] == "application/json"
    assert headers["mcp-session-id"] == SESSION
    assert call["body"]["params"] == {"name": "contacts_get-contacts", "arguments": {"limit": 1}}


@pytest.mark.asyncio
async def test_response_without_session_header_keeps_session() -> None:
    server = MockServer()
    client = make_client(server)

    await client.list_tools()
    await client.list_tools()

    assert client.session_id == SESSION
    assert server.calls[-1]["headers"]["mcp-session-id"] == SESSION


@pytest.mark.asyncio
async def test_list_tools_auto_initializes() -> None:
    client = make_client(MockServer())
    result = await client.list_tools()
    assert result["tools"][0]["name"] == "t"
    assert client.initialized is True


@pytest.mark.asyncio
async def test_streamed_response_selects_matching_id() -> None:
    def streamed(body: Dict[str, Any]) -> httpx.Response:
        return sse(
            {"jsonrpc": "2.0", "method": "notifications/progress", "params": {}},
            {"jsonrpc": "2.0", "id": body["id"], "result": {"value": "mine"}},
            {"jsonrpc": "2.0", "method": "notifications/message", "params": {}},
        )

    client = make_client(MockServer({"tools/call": streamed}))
    assert await client.call_tool("x", {}) == {"value": "mine"}


@pytest.mark.asyncio
async def test_streamed_response_without_match_uses_last_message_with_id() -> None:
    def streamed(body: Dict[str, Any]) -> httpx.Response:
        return sse(
            {"jsonrpc": "2.0", "id": -1, "result": {"value": "older"}},
            {"jsonrpc": "2.0", "id": -2, "result": {"value": "stray"}},
            {"jsonrpc": "2.0", "method": "notifications/progress"},
        )

    client = make_client(MockServer({"tools/call": streamed}))
    assert await client.call_tool("x", {}) == {"value": "stray"}


@pytest.mark.asyncio
async def test_empty_stream_yields_empty_result() -> None:
    client = make_client(MockServer({"tools/call": lambda body: sse()}))
    assert await client.call_tool("x", {}) == {}


@pytest.mark.asyncio
async def test_strict_correlation_rejects_unmatched_stream() -> None:
    def streamed(body: Dict[str, Any]) -> httpx.Response:
        return sse({"jsonrpc": "2.0", "id": -2, "result": {}})

    client = make_client(MockServer({"tools/call": streamed}), strict_correlation=True)
    with pytest.raises(CorrelationError, match="contacts_get-contacts"):
        await client.call_tool("contacts_get-contacts", {})


@pytest.mark.asyncio
async def test_tool_error_names_the_tool() -> None:
    def failing(body: Dict[str, Any]) -> httpx.Response:
        error = {"code": -32602, "message": "bad args"}
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "error": error})

    client = make_client(MockServer({"tools/call": failing}))
    with pytest.raises(ProtocolError, match=r"contacts_add-tags") as excinfo:
        await client.call_tool("contacts_add-tags", {})
    assert excinfo.value.tool == "contacts_add-tags"


@pytest.mark.asyncio
async def test_list_tools_protocol_error() -> None:
    def failing(body: Dict[str, Any]) -> httpx.Response:
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "error": {"code": -1}})

    client = make_client(MockServer({"tools/list": failing}))
    with pytest.raises(ProtocolError, match="tools/list"):
        await client.list_tools()


@pytest.mark.asyncio
async def test_http_error_on_initialize_is_handshake_error() -> None:
    server = MockServer({"initialize": lambda body: httpx.Response(401, text="Mock error")})
    client = make_client(server)

    with pytest.raises(HandshakeError, match="MCP HTTP 401") as excinfo:
        await client.initialize()

    assert excinfo.value.status_code == 401
    assert isinstance(excinfo.value.__cause__, TransportError)
    assert client.state is ClientState.UNINITIALIZED
    assert client.session_id is None


@pytest.mark.asyncio
async def test_error_object_on_initialize_is_handshake_error() -> None:
    def failing(body: Dict[str, Any]) -> httpx.Response:
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "error": {"code": -32600}})

    client = make_client(MockServer({"initialize": failing}))
    with pytest.raises(HandshakeError, match="initialize error"):
        await client.initialize()
    assert client.initialized is False


@pytest.mark.asyncio
async def test_http_error_on_call_is_transport_error() -> None:
    server = MockServer({"tools/call": lambda body: httpx.Response(503, text="down")})
    client = make_client(server)

    with pytest.raises(TransportError) as excinfo:
        await client.call_tool("x", {})

    assert excinfo.value.status_code == 503
    assert excinfo.value.body == "down"


@pytest.mark.asyncio
async def test_failed_initialized_notification_is_ignored() -> None:
    server = MockServer({"notifications/initialized": lambda body: httpx.Response(500)})
    client = make_client(server)
    await client.initialize()
    assert client.initialized is True


@pytest.mark.asyncio
async def test_close_resets_state_and_allows_reinitialize() -> None:
    server = MockServer()
    client = make_client(server)
    await client.initialize()

    await client.close()
    await client.close()

    assert client.state is ClientState.CLOSED
    assert client.session_id is None
    assert client.server_capabilities is None
    assert client.server_info is None

    await client.call_tool("x", {})
    assert client.initialized is True
    assert server.methods.count("initialize") == 2


@pytest.mark.asyncio
async def test_slow_response_raises_timeout() -> None:
    async def slow(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(1)
        return httpx.Response(200, json={})

    http = httpx.AsyncClient(transport=httpx.MockTransport(slow))
    client = McpClient(token="t", location_id="l", url=URL, http_client=http, timeout=0.05)

    with pytest.raises(McpTimeoutError) as excinfo:
        await client.initialize()

    assert isinstance(excinfo.value, TimeoutError)
    assert client.state is ClientState.UNINITIALIZED


@pytest.mark.asyncio
async def test_connection_failure_is_network_error() -> None:
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    http = httpx.AsyncClient(transport=httpx.MockTransport(refuse))
    client = McpClient(token="t", location_id="l", url=URL, http_client=http)

    with pytest.raises(NetworkError, match="connection refused"):
        await client.list_tools()
