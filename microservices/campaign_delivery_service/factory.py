"""
Campaign Delivery Service Factory

Factory for creating campaign delivery components with proper dependency injection.
"""

import logging
from typing import Optional

from core.config import get_settings
from core.config.delivery_config import DeliveryServiceConfig
from core.nats_client import NATSEventBus

from .campaign_repository import CampaignDeliveryRepository
from .clients.content_client import ContentClient
from .clients.notification_client import NotificationClient
from .control_state import ControlStateCache
from .delivery_control_service import DeliveryControlService
from .delivery_dispatcher import DeliveryDispatcher
from .delivery_policy import DeliveryPolicy
from .events.publishers import DeliveryEventPublisher
from .job_queue import DeliveryWorker, NATSJobQueue
from .scheduler import CampaignScheduler
from .snapshot_builder import SnapshotBuilder
from .statistics import StatisticsAggregator

logger = logging.getLogger(__name__)


class DeliveryServiceFactory:
    """Factory for creating campaign delivery components"""

    def __init__(self, config: Optional[DeliveryServiceConfig] = None):
        self.config = config or get_settings()
        self._repository: Optional[CampaignDeliveryRepository] = None
        self._nats_client: Optional[NATSEventBus] = None
        self._event_publisher: Optional[DeliveryEventPublisher] = None
        self._content_client: Optional[ContentClient] = None
        self._notification_client: Optional[NotificationClient] = None
        self._job_queue: Optional[NATSJobQueue] = None
        self._service: Optional[DeliveryControlService] = None
        self._dispatcher: Optional[DeliveryDispatcher] = None
        self._scheduler: Optional[CampaignScheduler] = None
        self._worker: Optional[DeliveryWorker] = None

    async def initialize(self) -> None:
        """Initialize all components"""
        logger.info("Initializing Campaign Delivery Service components...")
        delivery = self.config.delivery

        # Initialize repository
        self._repository = CampaignDeliveryRepository(
            config=self.config.infra, service_name=self.config.service_name
        )
        await self._repository.initialize()

        # Initialize NATS client; the job queue needs it, events degrade without it
        self._nats_client = NATSEventBus(
            service_name=self.config.service_name,
            config=self.config.infra,
        )
        await self._nats_client.connect()
        self._job_queue = NATSJobQueue(
            self._nats_client,
            stream_name=delivery.jobs_stream,
            subject=delivery.jobs_subject,
        )
        logger.info("NATS client connected")

        event_bus = self._nats_client if self.config.infra.nats_enabled else None
        self._event_publisher = DeliveryEventPublisher(event_bus, source=self.config.service_name)

        # Initialize service clients
        self._content_client = ContentClient(
            delivery.content_service_url, timeout=delivery.http_timeout_seconds
        )
        self._notification_client = NotificationClient(
            delivery.notification_service_url, timeout=delivery.http_timeout_seconds
        )

        # Initialize engine
        policy = DeliveryPolicy(
            max_retries=delivery.max_retries,
            max_attempts=delivery.max_attempts,
            base_delay_seconds=delivery.retry_base_delay_seconds,
            max_delay_seconds=delivery.retry_max_delay_seconds,
        )
        control_cache = ControlStateCache(
            self._repository, ttl_seconds=delivery.control_state_ttl_seconds
        )
        snapshot_builder = SnapshotBuilder(
            repository=self._repository,
            template_compiler=self._content_client,
            content_source=self._content_client,
            recipient_source=self._content_client,
            event_publisher=self._event_publisher,
            site_name=delivery.site_name,
            site_url=delivery.site_url,
        )
        self._service = DeliveryControlService(
            repository=self._repository,
            snapshot_builder=snapshot_builder,
            job_queue=self._job_queue,
            recipient_source=self._content_client,
            event_publisher=self._event_publisher,
            config=delivery,
            control_cache=control_cache,
            policy=policy,
            statistics=StatisticsAggregator(self._repository, policy),
        )
        self._dispatcher = DeliveryDispatcher(
            repository=self._repository,
            control_service=self._service,
            snapshot_builder=snapshot_builder,
            email_sender=self._notification_client,
            job_queue=self._job_queue,
        )
        self._scheduler = CampaignScheduler(self._repository, self._service)
        self._worker = DeliveryWorker(
            self._job_queue, self._dispatcher, batch_size=delivery.worker_batch_size
        )

        logger.info("Campaign Delivery Service components initialized")

    async def close(self) -> None:
        """Close all components"""
        logger.info("Closing Campaign Delivery Service components...")

        if self._worker:
            await self._worker.stop()

        if self._scheduler:
            await self._scheduler.stop()

        if self._nats_client:
            await self._nats_client.close()

        if self._repository:
            await self._repository.close()

        logger.info("Campaign Delivery Service components closed")

    @property
    def repository(self) -> CampaignDeliveryRepository:
        """Get delivery repository"""
        if not self._repository:
            raise RuntimeError("Factory not initialized. Call initialize() first.")
        return self._repository

    @property
    def service(self) -> DeliveryControlService:
        """Get delivery control service"""
        if not self._service:
            raise RuntimeError("Factory not initialized. Call initialize() first.")
        return self._service

    @property
    def dispatcher(self) -> DeliveryDispatcher:
        """Get delivery dispatcher"""
        if not self._dispatcher:
            raise RuntimeError("Factory not initialized. Call initialize() first.")
        return self._dispatcher

    @property
    def scheduler(self) -> CampaignScheduler:
        """Get campaign scheduler"""
        if not self._scheduler:
            raise RuntimeError("Factory not initialized. Call initialize() first.")
        return self._scheduler

    @property
    def worker(self) -> DeliveryWorker:
        """Get delivery worker"""
        if not self._worker:
            raise RuntimeError("Factory not initialized. Call initialize() first.")
        return self._worker

    @property
    def nats_client(self) -> Optional[NATSEventBus]:
        """Get NATS client"""
        return self._nats_client

    @property
    def event_publisher(self) -> Optional[DeliveryEventPublisher]:
        """Get event publisher"""
        return self._event_publisher


__all__ = ["DeliveryServiceFactory"]
