"""
Logging setup for the campaign delivery service

Configures the root logger once from LoggingConfig. Modules obtain their
own logger with ``logging.getLogger(__name__)``.
"""

import logging
import sys
from typing import Optional

from core.config.logging_config import LoggingConfig

_configured = False


def setup_logging(config: Optional[LoggingConfig] = None, force: bool = False) -> logging.Logger:
    """Configure root logging handlers and return the service logger"""
    global _configured

    config = config or LoggingConfig.from_env()
    if _configured and not force:
        return logging.getLogger(config.service_name)

    level = getattr(logging, config.log_level.upper(), logging.INFO)
    formatter = logging.Formatter(config.log_format)

    handlers = []
    if config.enable_console:
        console = logging.StreamHandler(sys.stdout)
        console.setFormatter(formatter)
        handlers.append(console)
    if config.log_file:
        file_handler = logging.FileHandler(config.log_file)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    logging.basicConfig(level=level, handlers=handlers, force=True)

    library_level = max(level, getattr(logging, config.library_log_level.upper(), logging.WARNING))
    for name in config.quiet_loggers:
        logging.getLogger(name).setLevel(library_level)

    _configured = True
    service_logger = logging.getLogger(config.service_name)
    service_logger.info(f"Logging configured: level={config.log_level} env={config.environment}")
    return service_logger


__all__ = ["setup_logging"]
