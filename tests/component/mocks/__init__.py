"""
Component Test Mocks

Shared mock implementations for component testing.
These mocks replace real I/O dependencies (database, NATS).
"""

from .db_mock import MockPostgresClient
from .nats_mock import MockEventBus, MockJetStream, MockJetStreamMessage

__all__ = [
    'MockPostgresClient',
    'MockEventBus',
    'MockJetStream',
    'MockJetStreamMessage',
]
