# ─────────────────────────────────────────────────────────────────────────────
# Logging Configuration — structlog, JSON in production
# ─────────────────────────────────────────────────────────────────────────────


import logging
import sys
from collections.abc import Iterable
from typing import Any

import structlog

REDACTED = "[REDACTED]"


def _scrub(value: Any, secrets: tuple[str, ...]) -> Any:
    if isinstance(value, str):
        for secret in secrets:
            value = value.replace(secret, REDACTED)
        return value
    if isinstance(value, dict):
        return {k: _scrub(v, secrets) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return type(value)(_scrub(v, secrets) for v in value)
    return value


def make_redactor(secrets: Iterable[str]) -> structlog.types.Processor:
    """Processor that replaces every secret value in an event with [REDACTED]."""
    values = tuple(s for s in secrets if s)

    def redact_secrets(
        logger: Any, method_name: str, event_dict: structlog.types.EventDict
    ) -> structlog.types.EventDict:
        if not values:
            return event_dict
        return {k: _scrub(v, values) for k, v in event_dict.items()}

    return redact_secrets


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    secrets: Iterable[str] = (),
) -> None:
    """Configure structlog for structured JSON logging.

    JSON output gives one parseable object per line for log collectors;
    console output is for local development. Any value in `secrets` is
    scrubbed from every event before rendering.
    """
    redactor = make_redactor(secrets)
    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]

    renderer: structlog.types.Processor = (
        structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
    )

    # shared_processors already ran in structlog.configure() for structlog
    # events; foreign_pre_chain covers records from plain stdlib loggers
    # (uvicorn, httpx). Redaction sits right before the renderer so
    # formatted tracebacks are scrubbed too.
    exc_processors: list[structlog.types.Processor] = (
        [structlog.processors.format_exc_info] if json_output else []
    )
    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            *exc_processors,
            redactor,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, log_level.upper()))
