from __future__ import annotations

from typing import Any, Optional


class GhlMcpError(Exception):
    """Base exception for all GHL MCP client errors."""
    pass


class ConfigError(GhlMcpError):
    """Missing or invalid configuration (credentials, location, file)."""
    pass


class TransportError(GhlMcpError):
    """Non-2xx HTTP status from the MCP endpoint."""

    def __init__(self, status_code: int, body: str = "") -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(f"MCP HTTP {status_code}: {body}")


class NetworkError(GhlMcpError):
    """Connection-level failure before any HTTP status was received."""
    pass


class McpTimeoutError(GhlMcpError, TimeoutError):
    """A single call exceeded its timeout budget."""

    def __init__(self, method: str, timeout: float) -> None:
        self.method = method
        self.timeout = timeout
        super().__init__(f"MCP {method} timed out after {timeout:.1f}s")


class HandshakeError(GhlMcpError):
    """The initialize handshake failed."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class ProtocolError(GhlMcpError):
    """The server answered with a JSON-RPC error object."""

    def __init__(self, method: str, error: Any, tool: Optional[str] = None) -> None:
        self.method = method
        self.tool = tool
        self.error = error
        label = f"{method} ({tool})" if tool else method
        super().__init__(f"MCP {label} error: {error}")


class CorrelationError(ProtocolError):
    """No message in a streamed response matched the request id."""

    def __init__(self, method: str, request_id: int, tool: Optional[str] = None) -> None:
        self.request_id = request_id
        super().__init__(method, f"no response with id {request_id}", tool=tool)


class QuotaExceededError(GhlMcpError):
    """Daily call quota reached. Never retried or waited out."""

    def __init__(self, limit: int) -> None:
        self.limit = limit
        super().__init__(f"Daily rate limit reached ({limit})")
