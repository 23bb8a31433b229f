"""Structured logging helpers."""
import json
import logging
import sys
import time
from typing import Dict, Iterable, Mapping

logger = logging.getLogger("zai_proxy")

_REDACTED_HEADERS = ("authorization", "x-api-key", "cookie")


def setup_logging(level: str) -> None:
    """Configure the package logger; safe to call more than once."""
    numeric = getattr(logging, level.upper(), logging.INFO)
    if not any(getattr(h, "_zai_proxy", False) for h in logger.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
        handler._zai_proxy = True  # type: ignore[attr-defined]
        logger.addHandler(handler)
    logger.setLevel(numeric)
    logger.propagate = False


def log_event(level: int, message: str, **fields) -> None:
    """Emit a structured log line."""
    if not logger.isEnabledFor(level):
        return
    payload = {"message": message, "ts": int(time.time())}
    payload.update(fields)
    logger.log(level, json.dumps(payload, ensure_ascii=False, default=str))


def debug_log(message: str, **fields) -> None:
    log_event(logging.DEBUG, message, **fields)


def redact_headers(headers: Mapping[str, str], redact: Iterable[str] = _REDACTED_HEADERS) -> Dict[str, str]:
    """Return headers dict with sensitive keys masked."""
    redact_set = {item.lower() for item in redact}
    return {k: ("<redacted>" if k.lower() in redact_set else v) for k, v in headers.items()}


def preview(text: str, limit: int = 10) -> str:
    """First few characters of a secret, for correlating log lines."""
    if not text:
        return ""
    return f"{text[:limit]}..."
