import json
import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional

LOGGER_NAME = "ghl_mcp"

# Attributes every LogRecord has; anything else came in through ``extra``.
_RESERVED_ATTRS = set(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


class StructuredFormatter(logging.Formatter):
    """One JSON object per line, with ``extra`` fields merged in."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "ts": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for key, value in vars(record).items():
            if key not in _RESERVED_ATTRS and not key.startswith("_"):
                entry[key] = value
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


def setup_logger(config: Optional[Dict[str, Any]] = None) -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    if logger.handlers:
        return logger
    logging_cfg = (config or {}).get("logging", {})
    level_name = str(logging_cfg.get("level", "INFO")).upper()
    logger.setLevel(getattr(logging, level_name, logging.INFO))
    handler = logging.StreamHandler()
    handler.setFormatter(StructuredFormatter())
    logger.addHandler(handler)
    logger.propagate = False
    return logger


@dataclass
class ToolStats:
    """Running tally for one remote tool."""

    calls: int = 0
    failures: int = 0
    total_ms: float = 0.0
    max_ms: float = 0.0
    last_error: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "calls": self.calls,
            "failures": self.failures,
            "avg_ms": round(self.total_ms / self.calls, 1) if self.calls else 0.0,
            "max_ms": round(self.max_ms, 1),
            "last_error": self.last_error,
        }


class InMemoryMetrics:
    """Per-tool call counts and latencies for one GhlActions instance."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._by_tool: Dict[str, ToolStats] = {}

    def record(self, tool: str, duration_ms: float, error: Optional[BaseException] = None) -> None:
        with self._lock:
            stats = self._by_tool.setdefault(tool, ToolStats())
            stats.calls += 1
            stats.total_ms += duration_ms
            stats.max_ms = max(stats.max_ms, duration_ms)
            if error is not None:
                stats.failures += 1
                stats.last_error = f"{type(error).__name__}: {error}"

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return {tool: stats.as_dict() for tool, stats in sorted(self._by_tool.items())}

    def reset(self) -> None:
        with self._lock:
            self._by_tool.clear()
