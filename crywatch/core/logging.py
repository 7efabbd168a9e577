"""
CryWatch - Structured Logging

Provides structured JSON logging with context injection for the monitoring
session and the cry currently being processed. Identifiers are masked so log
lines cannot be joined back to stored recordings.
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Optional


# =============================================================================
# Context Variables
# =============================================================================

monitor_session_var: ContextVar[Optional[str]] = ContextVar('monitor_session', default=None)
cry_id_var: ContextVar[Optional[str]] = ContextVar('cry_id', default=None)


# =============================================================================
# Masking Utilities
# =============================================================================

def mask_session_id(sid: Optional[str]) -> Optional[str]:
    """Mask session ID to first 8 characters."""
    if not sid:
        return None
    return sid[:8] if len(sid) > 8 else sid


def mask_cry_id(cid: Optional[str]) -> Optional[str]:
    """Mask cry ID to last 6 characters."""
    if not cid:
        return None
    return f"***{cid[-6:]}" if len(cid) > 6 else "***"


# =============================================================================
# Formatters
# =============================================================================

class StructuredFormatter(logging.Formatter):
    """
    JSON formatter that injects context variables.

    Output format:
    {
        "timestamp": "2024-11-30T00:00:00.000Z",
        "level": "INFO",
        "logger": "crywatch.core.history_store",
        "session": "mon-1234",
        "cry_id": "***a1b2c3",
        "message": "Human-readable message",
        "data": { ... }
    }
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        session = monitor_session_var.get()
        if session:
            log_entry["session"] = mask_session_id(session)

        cry_id = cry_id_var.get()
        if cry_id:
            log_entry["cry_id"] = mask_cry_id(cry_id)

        if hasattr(record, 'data') and record.data:
            log_entry["data"] = record.data

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """
    Human-readable formatter for development.
    Includes timestamp, level, logger, and message with context.
    """

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")

        context_parts = []

        session = monitor_session_var.get()
        if session:
            context_parts.append(f"session={mask_session_id(session)}")

        cry_id = cry_id_var.get()
        if cry_id:
            context_parts.append(f"cry={mask_cry_id(cry_id)}")

        context_str = f" [{', '.join(context_parts)}]" if context_parts else ""

        message = f"{timestamp} | {record.levelname:<8} | {record.name}{context_str} | {record.getMessage()}"

        if record.exc_info:
            message += "\n" + self.formatException(record.exc_info)

        return message


# =============================================================================
# Logger Setup
# =============================================================================

def setup_structured_logging(
    level: str = "INFO",
    json_format: bool = False,
) -> None:
    """
    Configure logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_format: Use JSON format (True for production, False for development)
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(getattr(logging, level.upper()))

    if json_format:
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(HumanReadableFormatter())

    root_logger.addHandler(handler)

    # numpy warnings are surfaced through the warnings module, not logging
    logging.captureWarnings(True)


# =============================================================================
# Context Managers
# =============================================================================

class LogContext:
    """
    Context manager for setting log context variables.

    Usage:
        with LogContext(session_id="mon-abc123", cry_id="cry-xyz789"):
            logger.info("Persisting cry")
    """

    def __init__(
        self,
        session_id: Optional[str] = None,
        cry_id: Optional[str] = None,
    ):
        self._session_id = session_id
        self._cry_id = cry_id
        self._tokens = []

    def __enter__(self):
        if self._session_id:
            self._tokens.append((monitor_session_var, monitor_session_var.set(self._session_id)))
        if self._cry_id:
            self._tokens.append((cry_id_var, cry_id_var.set(self._cry_id)))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens.clear()
        return False
