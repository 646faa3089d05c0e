#!/usr/bin/env python3
"""Logging configuration"""
import os
from dataclasses import dataclass, field
from typing import List

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Driver and client libraries whose DEBUG/INFO output drowns the delivery logs
NOISY_LOGGERS = ["asyncpg", "nats", "httpx", "httpcore"]


@dataclass
class LoggingConfig:
    """Logging configuration for the delivery service and its worker loops"""
    log_level: str = "INFO"
    log_format: str = DEFAULT_FORMAT
    log_file: str = ""
    enable_console: bool = True

    # Floor applied to NOISY_LOGGERS, never below log_level
    library_log_level: str = "WARNING"
    quiet_loggers: List[str] = field(default_factory=lambda: list(NOISY_LOGGERS))

    service_name: str = "campaign_delivery_service"
    environment: str = "development"

    @classmethod
    def from_env(cls) -> 'LoggingConfig':
        env = os.getenv("ENV") or os.getenv("ENVIRONMENT", "development")
        return cls(
            log_level=os.getenv("LOG_LEVEL", "DEBUG" if env == "development" else "INFO"),
            log_format=os.getenv("LOG_FORMAT", DEFAULT_FORMAT),
            log_file=os.getenv("LOG_FILE", ""),
            library_log_level=os.getenv("LIBRARY_LOG_LEVEL", "WARNING"),
            service_name=os.getenv("SERVICE_NAME", "campaign_delivery_service"),
            environment=env,
        )
