"""
Campaign Delivery Event Publishers

Publishes events to NATS JetStream.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from core.nats_client import Event

from .models import (
    DeliveryEventType,
    SnapshotCreatedEventData,
    CampaignQueuedEventData,
    CampaignPausedEventData,
    CampaignResumedEventData,
    CampaignCompletedEventData,
    CampaignCancelledEventData,
    EmergencyStopEventData,
    DeliveriesBulkEventData,
    DeliveryEventData,
)

logger = logging.getLogger(__name__)


class DeliveryEventPublisher:
    """Publisher for campaign delivery events"""

    def __init__(self, event_bus=None, source: str = "campaign_delivery_service"):
        self.event_bus = event_bus
        self.source = source

    async def publish(
        self,
        event_type: DeliveryEventType,
        data: Dict[str, Any],
        subject: Optional[str] = None,
    ) -> bool:
        """
        Publish an event to the bus.

        Args:
            event_type: The event type enum
            data: Event data payload
            subject: Entity the event is about (campaign ID)

        Returns:
            True if published successfully, False otherwise
        """
        if not self.event_bus:
            logger.debug(f"Event bus not configured, skipping publish: {event_type.value}")
            return False

        try:
            event = Event(
                event_type=event_type.value,
                source=self.source,
                data=data,
                subject=subject,
            )
            published = await self.event_bus.publish_event(event)
            logger.debug(f"Published event: {event_type.value}")
            return bool(published)

        except Exception as e:
            logger.error(f"Failed to publish event {event_type.value}: {e}")
            return False

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    # ====================
    # Snapshot Events
    # ====================

    async def publish_snapshot_created(
        self,
        campaign_id: str,
        template_id: Optional[str],
        template_version: int,
        content_hash: str,
        article_count: int,
    ) -> bool:
        """Publish campaign.snapshot.created event"""
        data = SnapshotCreatedEventData(
            campaign_id=campaign_id,
            template_id=template_id,
            template_version=template_version,
            content_hash=content_hash,
            article_count=article_count,
            timestamp=self._now(),
        )
        return await self.publish(
            DeliveryEventType.SNAPSHOT_CREATED, data.model_dump(mode="json"), campaign_id
        )

    # ====================
    # Campaign Control Events
    # ====================

    async def publish_campaign_queued(
        self, campaign_id: str, queued_deliveries: int, skipped_existing: int = 0
    ) -> bool:
        """Publish campaign.queued event"""
        data = CampaignQueuedEventData(
            campaign_id=campaign_id,
            queued_deliveries=queued_deliveries,
            skipped_existing=skipped_existing,
            timestamp=self._now(),
        )
        return await self.publish(DeliveryEventType.QUEUED, data.model_dump(mode="json"), campaign_id)

    async def publish_campaign_paused(
        self, campaign_id: str, paused_by: Optional[str], reason: Optional[str]
    ) -> bool:
        """Publish campaign.paused event"""
        data = CampaignPausedEventData(
            campaign_id=campaign_id,
            paused_by=paused_by,
            reason=reason,
            timestamp=self._now(),
        )
        return await self.publish(DeliveryEventType.PAUSED, data.model_dump(mode="json"), campaign_id)

    async def publish_campaign_resumed(
        self, campaign_id: str, resumed_by: Optional[str], pending_deliveries: int
    ) -> bool:
        """Publish campaign.resumed event"""
        data = CampaignResumedEventData(
            campaign_id=campaign_id,
            resumed_by=resumed_by,
            pending_deliveries=pending_deliveries,
            timestamp=self._now(),
        )
        return await self.publish(DeliveryEventType.RESUMED, data.model_dump(mode="json"), campaign_id)

    async def publish_campaign_completed(
        self, campaign_id: str, total: int = 0, sent: int = 0, failed: int = 0
    ) -> bool:
        """Publish campaign.completed event"""
        data = CampaignCompletedEventData(
            campaign_id=campaign_id,
            total=total,
            sent=sent,
            failed=failed,
            timestamp=self._now(),
        )
        return await self.publish(DeliveryEventType.COMPLETED, data.model_dump(mode="json"), campaign_id)

    async def publish_campaign_cancelled(
        self,
        campaign_id: str,
        cancelled_by: Optional[str],
        reason: Optional[str],
        cancelled_deliveries: int,
    ) -> bool:
        """Publish campaign.cancelled event"""
        data = CampaignCancelledEventData(
            campaign_id=campaign_id,
            cancelled_by=cancelled_by,
            reason=reason,
            cancelled_deliveries=cancelled_deliveries,
            timestamp=self._now(),
        )
        return await self.publish(DeliveryEventType.CANCELLED, data.model_dump(mode="json"), campaign_id)

    async def publish_emergency_stop(
        self,
        reason: str,
        actor: Optional[str],
        affected_campaigns: List[str],
        failed_campaigns: Dict[str, str],
    ) -> bool:
        """Publish campaign.emergency_stop event"""
        data = EmergencyStopEventData(
            reason=reason,
            actor=actor,
            affected_campaigns=affected_campaigns,
            failed_campaigns=failed_campaigns,
            timestamp=self._now(),
        )
        return await self.publish(DeliveryEventType.EMERGENCY_STOP, data.model_dump(mode="json"))

    # ====================
    # Ledger Events
    # ====================

    async def publish_deliveries_retried(self, campaign_id: str, count: int, max_retries: int) -> bool:
        """Publish campaign.deliveries.retried event"""
        data = DeliveriesBulkEventData(
            campaign_id=campaign_id, count=count, threshold=max_retries, timestamp=self._now()
        )
        return await self.publish(
            DeliveryEventType.DELIVERIES_RETRIED, data.model_dump(mode="json"), campaign_id
        )

    async def publish_deliveries_dead_lettered(
        self, campaign_id: str, count: int, max_attempts: int
    ) -> bool:
        """Publish campaign.deliveries.dead_lettered event"""
        data = DeliveriesBulkEventData(
            campaign_id=campaign_id, count=count, threshold=max_attempts, timestamp=self._now()
        )
        return await self.publish(
            DeliveryEventType.DELIVERIES_DEAD_LETTERED, data.model_dump(mode="json"), campaign_id
        )

    async def publish_delivery_sent(
        self,
        campaign_id: str,
        delivery_id: str,
        recipient_id: str,
        attempts: int,
        provider_message_id: Optional[str] = None,
    ) -> bool:
        """Publish campaign.delivery.sent event"""
        data = DeliveryEventData(
            campaign_id=campaign_id,
            delivery_id=delivery_id,
            recipient_id=recipient_id,
            attempts=attempts,
            status="sent",
            provider_message_id=provider_message_id,
            timestamp=self._now(),
        )
        return await self.publish(DeliveryEventType.DELIVERY_SENT, data.model_dump(mode="json"), campaign_id)

    async def publish_delivery_failed(
        self,
        campaign_id: str,
        delivery_id: str,
        recipient_id: str,
        attempts: int,
        error: str,
    ) -> bool:
        """Publish campaign.delivery.failed event"""
        data = DeliveryEventData(
            campaign_id=campaign_id,
            delivery_id=delivery_id,
            recipient_id=recipient_id,
            attempts=attempts,
            status="failed",
            error=error,
            timestamp=self._now(),
        )
        return await self.publish(DeliveryEventType.DELIVERY_FAILED, data.model_dump(mode="json"), campaign_id)


__all__ = ["DeliveryEventPublisher"]
