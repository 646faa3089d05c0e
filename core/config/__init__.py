#!/usr/bin/env python3
"""Modular configuration system for the campaign delivery service

Configuration hierarchy:
- infra_config: Infrastructure services (PostgreSQL, NATS)
- delivery_config: Retry budgets, control-state cache, snapshot site identity
- logging_config: Logging configuration
"""
import os
from dotenv import load_dotenv
from .logging_config import LoggingConfig
from .infra_config import InfraConfig
from .delivery_config import DeliveryConfig, DeliveryServiceConfig

# Load environment file based on ENV
env = os.getenv("ENV") or os.getenv("ENVIRONMENT", "development")
env_files = {
    "development": "deployment/environments/dev.env",
    "dev": "deployment/environments/dev.env",
    "testing": "deployment/environments/test.env",
    "test": "deployment/environments/test.env",
    "staging": "deployment/environments/staging.env",
    "production": "deployment/environments/production.env",
}
env_file = env_files.get(env, "deployment/environments/dev.env")
load_dotenv(env_file, override=False)

# Create global settings instance
settings = DeliveryServiceConfig.from_env()

def get_settings() -> DeliveryServiceConfig:
    """Get global settings instance"""
    return settings

__all__ = [
    'DeliveryServiceConfig',
    'get_settings',
    'settings',
    'LoggingConfig',
    'InfraConfig',
    'DeliveryConfig',
]
