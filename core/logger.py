"""
Service Logger Setup

Configures stdlib logging once per process for a microservice.

Usage:
    from core.logger import setup_service_logger

    logger = setup_service_logger("fulfillment_service", level="INFO")
"""

import logging
import sys
from pathlib import Path
from typing import Dict, Optional

from core.config import LoggingConfig

_configured_services: Dict[str, logging.Logger] = {}


def setup_service_logger(
    service_name: str,
    level: str = "INFO",
    config: Optional[LoggingConfig] = None,
) -> logging.Logger:
    """
    Configure the root logger for a service and return the service logger.

    Args:
        service_name: Logger name, also used as the service identity
        level: Log level name (DEBUG, INFO, WARNING, ...)
        config: Optional logging config (loaded from environment if omitted)

    Returns:
        Logger named after the service
    """
    if service_name in _configured_services:
        return _configured_services[service_name]

    if config is None:
        config = LoggingConfig.from_env()

    log_level = getattr(logging, level.upper(), logging.INFO)
    formatter = logging.Formatter(config.log_format)

    root = logging.getLogger()
    root.setLevel(log_level)

    if config.enable_console and not any(
        getattr(h, "_service_handler", False) for h in root.handlers
    ):
        console = logging.StreamHandler(sys.stdout)
        console.setFormatter(formatter)
        console._service_handler = True
        root.addHandler(console)

    if config.log_file:
        path = Path(config.log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path, encoding="utf-8")
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    for name in config.quiet_loggers:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger = logging.getLogger(service_name)
    logger.setLevel(log_level)
    _configured_services[service_name] = logger
    return logger
