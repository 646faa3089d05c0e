#!/usr/bin/env python3
"""
Core Module for the Campaign Delivery Service

Shared infrastructure components:
    - config/: Environment-driven configuration (infra, delivery, logging)
    - logging_setup.py: Root logger configuration
    - postgres_client.py: asyncpg pool wrapper with connection-scoped transactions
    - nats_client.py: NATS JetStream event bus

USAGE:
    from core.config import get_settings
    from core.postgres_client import get_postgres_client
"""

__version__ = "1.0.0"
