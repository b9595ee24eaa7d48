from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Per-request id from the X-Request-ID middleware
request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Log fields whose values are masked wherever they appear
SENSITIVE_KEY_PARTS = ("password", "pin", "secret", "token", "cookie", "api_key", "authorization", "email")


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Adopt the caller's request id, or mint one, for logs in this request."""
    cid = correlation_id or str(uuid.uuid4())
    request_id_var.set(cid)
    return cid


def _tag_request(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    cid = request_id_var.get()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def _mask_sensitive(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Keep two characters at each end of credential and contact fields."""
    for key, value in event_dict.items():
        if not isinstance(value, str) or len(value) <= 4:
            continue
        if any(part in key.lower() for part in SENSITIVE_KEY_PARTS):
            event_dict[key] = f"{value[:2]}***{value[-2:]}"
    return event_dict


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


def configure_logging(level: str = "INFO", json_output: bool = True) -> None:
    """JSON lines in deployments; colored console output when LOG_JSON is off."""
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _tag_request,
        _mask_sensitive,
        structlog.processors.StackInfoRenderer(),
    ]
    if json_output:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(os.getenv("LOG_LEVEL", "INFO"), _env_flag("LOG_JSON", "true"))


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def redact_email(email: Optional[str]) -> str:
    """Mask an address passed under a key the field masking does not catch."""
    if not email or "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"
