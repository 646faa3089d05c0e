"""
NATS JetStream Client for Python Microservices

Event bus on top of nats-py JetStream. Campaign delivery events are
published to a per-prefix stream (``campaign.*`` -> ``campaign-stream``).
"""

import json
import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

import nats
from nats.aio.client import Client as NATSClient
from nats.errors import NoServersError
from nats.js.client import JetStreamContext
from nats.js.errors import BadRequestError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from core.config.infra_config import InfraConfig

logger = logging.getLogger(__name__)


class DecimalEncoder(json.JSONEncoder):
    """JSON encoder that handles Decimal, datetime and Enum values"""
    def default(self, obj):
        if isinstance(obj, Decimal):
            return float(obj)
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, Enum):
            return obj.value
        return super().default(obj)


class Event:
    """Event envelope"""

    def __init__(
        self,
        event_type: str,
        source: str,
        data: Dict[str, Any],
        subject: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ):
        self.id = str(uuid.uuid4())
        self.type = event_type.value if isinstance(event_type, Enum) else event_type
        self.source = source
        self.data = data
        self.subject = subject
        self.timestamp = datetime.now(timezone.utc).isoformat()
        self.metadata = metadata or {}
        self.version = "1.0.0"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "source": self.source,
            "subject": self.subject,
            "timestamp": self.timestamp,
            "data": self.data,
            "metadata": self.metadata,
            "version": self.version,
        }


class NATSEventBus:
    """NATS JetStream event bus"""

    def __init__(self, service_name: str, config: Optional[InfraConfig] = None):
        self.service_name = service_name
        self.config = config or InfraConfig.from_env()
        self.url = self.config.resolved_nats_url

        self._nc: Optional[NATSClient] = None
        self._js: Optional[JetStreamContext] = None
        self._streams: set = set()

        logger.info(f"NATS EventBus initialized: {self.url}")

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type((OSError, NoServersError)),
        reraise=True,
    )
    async def connect(self):
        """Connect to NATS and open a JetStream context"""
        self._nc = await nats.connect(self.url, name=self.service_name)
        self._js = self._nc.jetstream()
        logger.info(f"Connected to NATS as {self.service_name}")

    def _get_stream_name_for_event(self, event_type: str) -> str:
        """campaign.paused -> campaign-stream"""
        return f"{event_type.split('.')[0]}-stream"

    async def _ensure_stream(self, stream_name: str, subject_prefix: str) -> None:
        await self.ensure_stream(stream_name, [f"{subject_prefix}.>"])

    async def ensure_stream(self, stream_name: str, subjects: List[str], **params: Any) -> None:
        """Create a stream once per process; an existing stream is reused"""
        if stream_name in self._streams:
            return
        try:
            await self.jetstream.add_stream(name=stream_name, subjects=subjects, **params)
        except BadRequestError as e:
            # Stream may already exist with a compatible config
            logger.debug(f"Stream creation note: {e}")
        self._streams.add(stream_name)

    async def publish_event(self, event: Event) -> bool:
        """Publish an event to JetStream, subject = event type"""
        if not self.is_connected:
            logger.error("Not connected to NATS")
            return False

        try:
            stream_name = self._get_stream_name_for_event(event.type)
            await self._ensure_stream(stream_name, event.type.split('.')[0])

            payload = json.dumps(event.to_dict(), cls=DecimalEncoder).encode()
            ack = await self._js.publish(event.type, payload)
            logger.info(f"Published event {event.type} [{event.id}] to stream {stream_name}, seq={ack.seq}")
            return True
        except Exception as e:
            logger.error(f"Error publishing event {event.id}: {e}")
            return False

    async def close(self):
        """Drain and close the NATS connection"""
        if self._nc is not None:
            await self._nc.drain()
            self._nc = None
            self._js = None
        logger.info("Disconnected from NATS")

    @property
    def jetstream(self) -> JetStreamContext:
        if self._js is None:
            raise RuntimeError("NATS not connected. Call connect() first.")
        return self._js

    @property
    def is_connected(self) -> bool:
        return self._nc is not None and self._nc.is_connected


__all__ = ["Event", "NATSEventBus", "DecimalEncoder"]
