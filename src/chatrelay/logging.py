"""Structured logging for the relay.

Every record goes through structlog and the stdlib root handler. Platform
credentials tend to end up in log fields (Telegram puts the bot token in
the request path, Slack and Graph errors echo bearer headers), so a
redaction processor masks them before rendering. Connector context is
bound per inbound message with :func:`bind_connector`.
"""

from __future__ import annotations

import logging
import re
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog

LOG_FORMATS = ("json", "console")

QUIET_LOGGERS = ("uvicorn.access", "httpcore", "httpx", "litellm", "LiteLLM", "websockets")

_SECRET_PATTERNS = (
    (re.compile(r"bot\d{3,}:[A-Za-z0-9_-]{10,}"), "bot***"),
    (re.compile(r"Bearer\s+[A-Za-z0-9._~+/=-]{8,}"), "Bearer ***"),
    (re.compile(r"\bx(?:ox[abpr]|app)-[A-Za-z0-9-]{8,}"), "xox-***"),
    (re.compile(r"\bsk-[A-Za-z0-9_-]{12,}"), "sk-***"),
)


def resolve_level(level: str) -> int:
    """Map a level name to its stdlib number; unknown names are an error."""
    value = logging.getLevelName((level or "").strip().upper())
    if not isinstance(value, int):
        raise ValueError(f"Unknown log level: {level!r}")
    return value


def redact(text: str) -> str:
    for pattern, replacement in _SECRET_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def redact_secrets(_logger: Any, _method: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """structlog processor: mask credentials in string fields."""
    for key, value in event_dict.items():
        if isinstance(value, str):
            event_dict[key] = redact(value)
    return event_dict


@contextmanager
def bind_connector(key: Any) -> Iterator[None]:
    """Tag every record logged inside the block with the connector's identity."""
    with structlog.contextvars.bound_contextvars(
        connector=str(key),
        account_id=key.account_id,
        channel_type=key.channel_type,
    ):
        yield


def setup_logging(level: str = "INFO", fmt: str = "json") -> None:
    """Install the relay's processors and route stdlib logging through them."""
    if fmt not in LOG_FORMATS:
        raise ValueError(f"Unknown log format: {fmt!r} (expected one of {', '.join(LOG_FORMATS)})")
    root_level = resolve_level(level)

    pre_chain: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        redact_secrets,
    ]
    if fmt == "console":
        renderer: structlog.types.Processor = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
            foreign_pre_chain=pre_chain,
        )
    )
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(root_level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(logging.WARNING, root_level))
