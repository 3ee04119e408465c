"""
GoHighLevel MCP client with rate limiting, retries and CRM monitoring checks.
"""
from __future__ import annotations

__version__ = "1.0.0"

from .actions import GhlActions
from .client import ClientState, McpClient
from .errors import (
    ConfigError,
    CorrelationError,
    GhlMcpError,
    HandshakeError,
    McpTimeoutError,
    NetworkError,
    ProtocolError,
    QuotaExceededError,
    TransportError,
)
from .monitor import Finding, Report, format_summary, run_all_checks
from .rate_limits import DualWindowRateLimiter
from .retry import with_retry

__all__ = [
    "ClientState",
    "ConfigError",
    "CorrelationError",
    "DualWindowRateLimiter",
    "Finding",
    "GhlActions",
    "GhlMcpError",
    "HandshakeError",
    "McpClient",
    "McpTimeoutError",
    "NetworkError",
    "ProtocolError",
    "QuotaExceededError",
    "Report",
    "TransportError",
    "format_summary",
    "run_all_checks",
    "with_retry",
]
