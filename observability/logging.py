from __future__ import annotations

import json
import logging
import os
import secrets
import time
from typing import Any, Dict, Optional

LOGGER_NAME = "readytx"

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}

# Fields that must never reach a log line.
_REDACT_KEYS = {"private_key", "password", "secret", "token", "authorization"}


def now_ms() -> int:
    return int(time.time() * 1000)


def _service_name() -> str:
    return (os.getenv("READYTX_SERVICE_NAME") or "readytx").strip()


def get_logger() -> logging.Logger:
    return logging.getLogger(LOGGER_NAME)


def configure_logging(level: str = "info") -> logging.Logger:
    """
    Attach a single stream handler to the `readytx` logger.

    Safe to call more than once; only the level is updated on later calls.
    """
    logger = get_logger()
    logger.setLevel(_LEVELS.get((level or "info").strip().lower(), logging.INFO))
    if not any(getattr(h, "_readytx", False) for h in logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(message)s"))
        handler._readytx = True  # type: ignore[attr-defined]
        logger.addHandler(handler)
        logger.propagate = False
    return logger


def build_log_context(**fields: Any) -> Dict[str, Any]:
    ctx: Dict[str, Any] = {"request_id": secrets.token_hex(8)}
    ctx.update({k: v for k, v in fields.items() if v is not None})
    return ctx


def _redact(data: Dict[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for k, v in data.items():
        if any(s in k.lower() for s in _REDACT_KEYS):
            out[k] = "***REDACTED***"
        else:
            out[k] = v
    return out


def log_event(
    event: str,
    *,
    ctx: Optional[Dict[str, Any]] = None,
    data: Optional[Dict[str, Any]] = None,
    level: str = "info",
) -> None:
    logger = get_logger()
    lvl = _LEVELS.get(level, logging.INFO)
    if not logger.isEnabledFor(lvl):
        return
    record = {
        "ts_ms": now_ms(),
        "event": event,
        "service": _service_name(),
        **(ctx or {}),
        "data": _redact(data or {}),
    }
    logger.log(lvl, json.dumps(record, sort_keys=True, default=str))
