"""Structured logging for the harness.

Test runs are noisy enough already, so the default is a compact console
renderer at ``WARNING`` on stderr. Set ``PGHARNESS_LOG_LEVEL=debug`` (or
``PGHARNESS_LOG_JSON_OUTPUT=true`` for CI log shipping) to follow
provisioning, migrations and pool activity. ``PGHARNESS_LOG_FILE_PATH``
sends the records to a rotating file instead.

The plugin loads in every pytest run of a project that installs pgharness,
so nothing here touches process-wide logging state: structlog's global
configuration, the host's contextvars and third-party logger levels stay
as the host set them. pgharness loggers are wrapped individually and run
the processor chain installed by `configure_logging`.
"""

from __future__ import annotations

import logging
import sys
from functools import lru_cache
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal, Protocol, cast

import structlog
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from structlog.processors import CallsiteParameter

if TYPE_CHECKING:
    from structlog.types import EventDict, Processor, WrappedLogger

type BoundLogger = structlog.stdlib.BoundLogger
type LogLevel = Literal["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG", "NOTSET"]

ROOT_LOGGER = "pgharness"
_SECRET_KEYS = frozenset({"password", "secret", "token"})


def _upper(value: object) -> object:
    return value.upper() if isinstance(value, str) else value


class LoggingConfig(BaseSettings):
    """Harness logging settings, read from ``PGHARNESS_LOG_*`` environment variables."""

    model_config = SettingsConfigDict(env_prefix="PGHARNESS_LOG_", extra="ignore", frozen=True)

    level: LogLevel = Field(default="WARNING")
    json_output: bool = Field(default=False)
    service_name: str = Field(default=ROOT_LOGGER)
    file_path: Path | None = Field(default=None, description="Rotating log file; stderr when unset")
    max_bytes: int = Field(default=10_000_000, ge=1024)
    backup_count: int = Field(default=3, ge=0)
    library_log_levels: dict[str, LogLevel] = Field(
        default_factory=dict,
        description="Opt-in levels for chatty libraries, e.g. {'testcontainers': 'WARNING'}",
    )

    @field_validator("level", mode="before")
    @classmethod
    def _normalize_level(cls, value: object) -> object:
        return _upper(value)

    @field_validator("library_log_levels", mode="before")
    @classmethod
    def _normalize_library_levels(cls, value: object) -> object:
        if isinstance(value, dict):
            return {name: _upper(level) for name, level in value.items()}
        return value


class LogFormat(Protocol):
    def processors(self, service_name: str) -> list[Processor]: ...


class HandlerFactory(Protocol):
    def create_handler(self, config: LoggingConfig) -> logging.Handler: ...


def redact_secrets(_: WrappedLogger, __: str, event_dict: EventDict) -> EventDict:
    """Blank out values bound under secret-looking keys."""
    for key in event_dict.keys() & _SECRET_KEYS:
        event_dict[key] = "***"
    return event_dict


def _service_adder(service_name: str) -> Processor:
    def add_service(_: WrappedLogger, __: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("service", service_name)
        return event_dict

    return add_service


def _base_processors(service_name: str, timestamp_fmt: str, *, utc: bool) -> list[Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        _service_adder(service_name),
        redact_secrets,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.CallsiteParameterAdder(
            parameters=[CallsiteParameter.MODULE, CallsiteParameter.FUNC_NAME, CallsiteParameter.LINENO],
            additional_ignores=[__name__],
        ),
        structlog.processors.TimeStamper(fmt=timestamp_fmt, utc=utc),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]


class JsonFormat:
    def processors(self, service_name: str) -> list[Processor]:
        return [
            *_base_processors(service_name, "iso", utc=True),
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(),
        ]


class ConsoleFormat:
    def processors(self, service_name: str) -> list[Processor]:
        # no colours: pytest captures and replays this output verbatim
        return [*_base_processors(service_name, "%H:%M:%S", utc=False), structlog.dev.ConsoleRenderer(colors=False)]


class RotatingFileHandlerFactory:
    def create_handler(self, config: LoggingConfig) -> logging.Handler:
        if config.file_path is None:
            raise ValueError("file_path is required for file logging")
        config.file_path.parent.mkdir(parents=True, exist_ok=True)
        return RotatingFileHandler(
            filename=config.file_path,
            maxBytes=config.max_bytes,
            backupCount=config.backup_count,
            encoding="utf-8",
        )


class StderrHandlerFactory:
    def create_handler(self, config: LoggingConfig) -> logging.Handler:
        # stdout carries the printed connection string
        return logging.StreamHandler(sys.stderr)


_chain: list[Processor] = ConsoleFormat().processors(ROOT_LOGGER)


def _run_chain(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> Any:
    """Single processor of every pgharness logger; runs the installed chain."""
    result: Any = event_dict
    for processor in _chain:
        result = processor(logger, method_name, result)
    return result


def _install(config: LoggingConfig) -> None:
    log_format: LogFormat = JsonFormat() if config.json_output else ConsoleFormat()
    _chain[:] = log_format.processors(config.service_name)

    factory: HandlerFactory = RotatingFileHandlerFactory() if config.file_path else StderrHandlerFactory()
    handler = factory.create_handler(config)
    handler.setLevel(config.level)
    handler.setFormatter(logging.Formatter("%(message)s"))

    harness_logger = logging.getLogger(ROOT_LOGGER)
    for old in harness_logger.handlers:
        old.close()
    harness_logger.handlers = [handler]
    harness_logger.setLevel(config.level)
    harness_logger.propagate = False

    for name, level in config.library_log_levels.items():
        logging.getLogger(name).setLevel(level)


@lru_cache(maxsize=1)
def _default_config() -> LoggingConfig:
    return LoggingConfig()


def configure_logging(config: LoggingConfig | None = None) -> None:
    """Configure the ``pgharness`` logger and its processors. Safe to call again."""
    _install(config if config is not None else _default_config())


def get_logger(name: str | None = None) -> BoundLogger:
    """Return a logger under the ``pgharness`` namespace, independent of structlog's global config."""
    stdlib_logger = logging.getLogger(name or ROOT_LOGGER)
    return cast(
        BoundLogger,
        structlog.wrap_logger(
            stdlib_logger,
            processors=[_run_chain],
            wrapper_class=structlog.stdlib.BoundLogger,
            context_class=dict,
            cache_logger_on_first_use=True,
        ),
    )


def bind_context(**kwargs: Any) -> None:
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    structlog.contextvars.unbind_contextvars(*keys)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()
