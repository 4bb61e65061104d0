"""Structured logging configuration using structlog.

JSON output for long-running services, console output for local runs. Provider
credentials and bearer tokens are redacted before rendering.
"""

from __future__ import annotations

import re
import sys
from collections.abc import MutableMapping
from typing import Any, cast

import structlog
from structlog.types import EventDict, WrappedLogger

SENSITIVE_KEYS: frozenset[str] = frozenset(
    {
        "apikey",
        "api_key",
        "authorization",
        "auth",
        "bearer",
        "password",
        "secret",
        "token",
        "access_token",
        "refresh_token",
        "credential",
        "credentials",
        "private_key",
    }
)

BEARER_PATTERN = re.compile(r"(?i)bearer\s+[A-Za-z0-9._~+/=-]+")
SECRET_KEY_PATTERN = re.compile(r"\bsk-[A-Za-z0-9_-]{8,}")

_LEVELS = {
    "DEBUG": 10,
    "INFO": 20,
    "WARNING": 30,
    "ERROR": 40,
    "CRITICAL": 50,
}


class SecretRedactor:
    """Processor that masks credential-shaped keys and values."""

    def __call__(self, _logger: WrappedLogger, _method_name: str, event_dict: EventDict) -> EventDict:
        return cast(EventDict, self._redact_dict(event_dict))

    def _redact_dict(self, data: MutableMapping[str, Any]) -> dict[str, Any]:
        result: dict[str, Any] = {}
        for key, value in data.items():
            if str(key).lower() in SENSITIVE_KEYS:
                result[key] = "[REDACTED]"
            else:
                result[key] = self._redact_value(value)
        return result

    def _redact_value(self, value: Any) -> Any:
        if isinstance(value, dict):
            return self._redact_dict(value)
        if isinstance(value, str):
            value = BEARER_PATTERN.sub("Bearer [REDACTED]", value)
            return SECRET_KEY_PATTERN.sub("[REDACTED]", value)
        if isinstance(value, list):
            return [self._redact_value(item) for item in value]
        return value


def setup_logging(level: str = "INFO", format: str = "console", redact_sensitive: bool = True) -> None:
    """Configure structlog for the process.

    Args:
        level: Minimum log level (DEBUG, INFO, WARNING, ERROR).
        format: "json" for machine-readable lines, anything else for console.
        redact_sensitive: Mask credentials before rendering.
    """
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if redact_sensitive:
        processors.append(SecretRedactor())

    if format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(_LEVELS.get(level.upper(), 20)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(sys.stderr),
        cache_logger_on_first_use=True,
    )


def setup_logging_from_config(config: dict[str, Any] | None) -> None:
    """Apply the `logging` section of a loaded config payload."""
    section = config.get("logging") if isinstance(config, dict) else None
    settings = section if isinstance(section, dict) else {}
    setup_logging(
        level=str(settings.get("level") or "INFO"),
        format=str(settings.get("format") or "console"),
        redact_sensitive=settings.get("redact_sensitive", True) is not False,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger bound to a module name."""
    return cast(structlog.stdlib.BoundLogger, structlog.get_logger(name))
