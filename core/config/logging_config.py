#!/usr/bin/env python3
"""Logging configuration

Read by core.logger.setup_service_logger. LOG_LEVEL defaults to DEBUG only
in development.
"""
import os
from dataclasses import dataclass, field
from typing import Tuple

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

def _bool(val: str) -> bool:
    return val.lower() == "true"

def _names(val: str) -> Tuple[str, ...]:
    return tuple(name.strip() for name in val.split(",") if name.strip())


@dataclass
class LoggingConfig:
    """Handlers and levels for the service process"""
    log_level: str = "INFO"
    log_format: str = DEFAULT_FORMAT
    log_file: str = ""
    enable_console: bool = True

    # Third-party loggers capped at WARNING
    quiet_loggers: Tuple[str, ...] = field(default_factory=lambda: ("apscheduler", "asyncpg", "nats"))

    @classmethod
    def from_env(cls) -> 'LoggingConfig':
        env = os.getenv("ENV") or os.getenv("ENVIRONMENT", "development")
        return cls(
            log_level=os.getenv("LOG_LEVEL", "DEBUG" if env == "development" else "INFO"),
            log_format=os.getenv("LOG_FORMAT", DEFAULT_FORMAT),
            log_file=os.getenv("LOG_FILE", ""),
            enable_console=_bool(os.getenv("LOG_CONSOLE", "true")),
            quiet_loggers=_names(os.getenv("LOG_QUIET_LOGGERS", "apscheduler,asyncpg,nats")),
        )
