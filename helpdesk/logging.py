from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, MutableMapping, Optional

import structlog

# Per-request id on the server; also bound around websocket connections
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_TRUTHY = {"1", "true", "yes", "on"}

# Fields whose values are credentials; matched as substrings of the key
_SECRET_MARKERS = ("password", "secret", "token", "authorization", "credential")
# Token metadata that is safe to log verbatim
_SAFE_KEYS = frozenset({"token_type", "token_jti", "jti"})
_BEARER_VALUE = re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/=-]+")


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Use the caller's id when given, otherwise mint one; returns the id in effect."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    cid = get_correlation_id()
    if cid and "correlation_id" not in event_dict:
        event_dict["correlation_id"] = cid
    return event_dict


def _mask(value: str) -> str:
    # Access and refresh tokens are bearer material; keep only a short tail
    if len(value) <= 8:
        return "***"
    return "***" + value[-4:]


def _scrub_credentials(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """Mask credential-looking fields and bearer values embedded in strings."""
    for key, value in list(event_dict.items()):
        if not isinstance(value, str):
            continue
        lowered = key.lower()
        if lowered not in _SAFE_KEYS and any(m in lowered for m in _SECRET_MARKERS):
            event_dict[key] = _mask(value)
        elif "bearer" in value.lower():
            event_dict[key] = _BEARER_VALUE.sub("Bearer ***", value)
    return event_dict


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in _TRUTHY


def configure_logging(
    level: Optional[str] = None,
    *,
    json_output: Optional[bool] = None,
    dev_mode: Optional[bool] = None,
) -> None:
    """Configure structlog for the process.

    Unset arguments fall back to ``LOG_LEVEL``, ``LOG_JSON`` and
    ``LOG_DEV_MODE``. JSON lines are the default; dev mode or
    ``LOG_JSON=false`` switches to the console renderer.
    """
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if json_output is None:
        json_output = _env_flag("LOG_JSON", "true")
    if dev_mode is None:
        dev_mode = _env_flag("LOG_DEV_MODE", "false")

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _scrub_credentials,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if dev_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=dev_mode))
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


def bind_connection_context(connection_id: str, identity_id: Optional[str] = None) -> None:
    """Bind websocket connection identifiers to every log line in this task."""
    fields: Dict[str, Any] = {"connection_id": connection_id}
    if identity_id is not None:
        fields["identity_id"] = identity_id
    structlog.contextvars.bind_contextvars(**fields)


def clear_connection_context() -> None:
    structlog.contextvars.unbind_contextvars("connection_id", "identity_id")
