from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, MutableMapping, Optional

import structlog

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Event keys whose values are bearer credentials and never logged in full
_CREDENTIAL_KEYS = ("token", "secret", "password", "authorization", "cookie")

_TRUTHY = {"1", "true", "yes", "on"}


def get_correlation_id() -> Optional[str]:
    return request_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind a request id to the current context, minting one if absent."""
    cid = correlation_id or uuid.uuid4().hex
    request_id_var.set(cid)
    return cid


def mask_id(value: Optional[str]) -> Optional[str]:
    """Shorten a session id so log lines cannot be replayed as credentials."""
    if not value:
        return value
    return value[:8] + "..."


def scrub_event(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """Attach the request id and hide session ids and credentials."""
    cid = request_id_var.get()
    if cid and "correlation_id" not in event_dict:
        event_dict["correlation_id"] = cid
    for key, value in event_dict.items():
        if not isinstance(value, str):
            continue
        lowered = key.lower()
        if lowered == "sid" or lowered.endswith("session_id"):
            # already-masked ids end in "..." and pass through unchanged
            if not value.endswith("..."):
                event_dict[key] = mask_id(value)
        elif any(marker in lowered for marker in _CREDENTIAL_KEYS):
            event_dict[key] = "[redacted]"
    return event_dict


def configure_logging(
    level: Optional[str] = None,
    *,
    json_output: Optional[bool] = None,
    dev_mode: Optional[bool] = None,
) -> None:
    """Configure structlog, falling back to LOG_LEVEL, LOG_JSON and LOG_DEV_MODE."""
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if json_output is None:
        json_output = os.getenv("LOG_JSON", "true").lower() in _TRUTHY
    if dev_mode is None:
        dev_mode = os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY

    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        scrub_event,
    ]
    if dev_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level, logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
