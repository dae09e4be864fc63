from __future__ import annotations

import errno
import logging
import re
import sys
from typing import Any

import structlog

BEARER_RE = re.compile(r"(Bearer\s+)[A-Za-z0-9._~+/=-]+")
DROPBOX_TOKEN_RE = re.compile(r"\bsl\.[A-Za-z0-9_-]{16,}")
REFRESH_TOKEN_RE = re.compile(r"(refresh_token=)[^&\s]+")

_QUIET_LOGGERS = ("httpx", "httpcore", "telethon")


def redact_text(text: str) -> str:
    redacted = BEARER_RE.sub(r"\1[REDACTED]", text)
    redacted = DROPBOX_TOKEN_RE.sub("[REDACTED_TOKEN]", redacted)
    return REFRESH_TOKEN_RE.sub(r"\1[REDACTED]", redacted)


def redact_token_processor(_, __, event_dict):
    """Processor to redact Dropbox credentials from log events."""
    for key, value in event_dict.items():
        if not isinstance(value, str):
            continue
        redacted = redact_text(value)
        if redacted != value:
            event_dict[key] = redacted
    return event_dict


class SafeStreamHandler(logging.StreamHandler):
    def handleError(self, record: logging.LogRecord) -> None:
        exc = sys.exc_info()[1]
        if isinstance(exc, BrokenPipeError) or (
            isinstance(exc, OSError) and exc.errno == errno.EPIPE
        ):
            try:
                self.stream.close()
            except OSError:
                pass
            return
        super().handleError(record)


def setup_logging(*, debug: bool = False) -> None:
    """Configure structlog with console output and token redaction."""

    structlog.configure(
        processors=[
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            redact_token_processor,
            structlog.dev.ConsoleRenderer(colors=True)
            if debug
            else structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        handlers=[SafeStreamHandler(sys.stderr)],
        level=logging.DEBUG if debug else logging.INFO,
        force=True,
    )

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str | None = None, **initial_values: Any):
    return structlog.get_logger(name, **initial_values)
