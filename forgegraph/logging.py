from __future__ import annotations

import logging
import os
import re
import uuid
from collections import Counter
from contextvars import ContextVar
from typing import Any, Dict, Iterable, Optional

import structlog

# Identifier of the graph run executing on the current task
run_id_var: ContextVar[Optional[str]] = ContextVar("run_id", default=None)

_SECRET_KEY_FRAGMENTS = ("password", "secret", "token", "api_key", "authorization", "dsn")
_TRUTHY = {"1", "true", "yes", "on"}


def get_run_id() -> Optional[str]:
    return run_id_var.get()


def set_run_id(run_id: Optional[str] = None) -> str:
    """Bind ``run_id`` (or a fresh uuid) to the current task context."""
    rid = run_id or str(uuid.uuid4())
    run_id_var.set(rid)
    return rid


def _bind_run_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    rid = run_id_var.get()
    if rid is not None:
        event_dict.setdefault("run_id", rid)
    return event_dict


def _mask_secret_fields(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    for key, value in list(event_dict.items()):
        if not isinstance(value, str) or len(value) <= 4:
            continue
        if any(fragment in key.lower() for fragment in _SECRET_KEY_FRAGMENTS):
            event_dict[key] = f"{value[:2]}***{value[-2:]}"
    return event_dict


def configure_logging(
    level: str = "INFO", *, json_output: bool = True, dev_mode: bool = False
) -> None:
    """Install the structlog pipeline.

    Every entry gets a level, an ISO timestamp and the bound run id, and
    values under secret-looking keys are masked. Output is JSON lines unless
    ``dev_mode`` is set or ``json_output`` is off, in which case the console
    renderer is used.
    """
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _bind_run_id,
        _mask_secret_fields,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if dev_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.extend(
            [
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer(default=str),
            ]
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in _TRUTHY


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    dev_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def log_workflow_trace(trace: Iterable[Dict[str, Any]], logger: Optional[Any] = None) -> None:
    """Emit one entry summarizing a run: per-step rows plus status counts."""
    rows = list(trace)
    log = logger or get_logger("forgegraph.trace")
    log.info(
        "workflow_trace",
        steps=len(rows),
        statuses=dict(Counter(row.get("status") for row in rows)),
        trace=rows,
    )


# Credentials, connection strings and stack dumps never reach execution records
_REDACTIONS = [
    re.compile(r"(?i)(password|secret|token|key|credential|api.?key)\s*[:=]\s*[^\s]+"),
    re.compile(r"(?i)postgres(?:ql)?://[^\s]+"),
    re.compile(r"(?i)redis://[^\s]+"),
    re.compile(r"(?i)traceback\s*\(most recent call last\)"),
]

MAX_ERROR_MESSAGE_LENGTH = 2000


def sanitize_error_message(error: Any, *, replacement: str = "[redacted]") -> str:
    """Render an exception or message for storage on an execution record.

    An exception with an empty message is rendered as its type name. The
    result is capped at ``MAX_ERROR_MESSAGE_LENGTH`` characters.
    """
    if isinstance(error, BaseException):
        text = str(error) or type(error).__name__
    elif error:
        text = str(error)
    else:
        return "unknown error"

    for pattern in _REDACTIONS:
        text = pattern.sub(replacement, text)
    if len(text) > MAX_ERROR_MESSAGE_LENGTH:
        text = text[: MAX_ERROR_MESSAGE_LENGTH - 3] + "..."
    return text
