"""
Campaign Delivery Event Data Models

Event type definitions and data structures for campaign delivery events.
"""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


# =============================================================================
# Event Type Definitions
# =============================================================================


class DeliveryEventType(str, Enum):
    """
    Events published by campaign_delivery_service.

    Other services should reference these when subscribing.
    """
    # Snapshot events
    SNAPSHOT_CREATED = "campaign.snapshot.created"

    # Campaign control events
    QUEUED = "campaign.queued"
    PAUSED = "campaign.paused"
    RESUMED = "campaign.resumed"
    COMPLETED = "campaign.completed"
    CANCELLED = "campaign.cancelled"
    EMERGENCY_STOP = "campaign.emergency_stop"

    # Bulk ledger events
    DELIVERIES_RETRIED = "campaign.deliveries.retried"
    DELIVERIES_DEAD_LETTERED = "campaign.deliveries.dead_lettered"

    # Per-delivery events
    DELIVERY_SENT = "campaign.delivery.sent"
    DELIVERY_FAILED = "campaign.delivery.failed"


class DeliveryStreamConfig:
    """Stream configuration for campaign_delivery_service"""
    STREAM_NAME = "campaign-stream"
    SUBJECTS = ["campaign.>"]
    MAX_MESSAGES = 100000
    CONSUMER_PREFIX = "campaign_delivery"


# =============================================================================
# Event Data Models - Published Events
# =============================================================================


class SnapshotCreatedEventData(BaseModel):
    """campaign.snapshot.created event data"""
    campaign_id: str = Field(..., description="Campaign ID")
    template_id: Optional[str] = Field(None, description="Template compiled")
    template_version: int = Field(..., description="Snapshot version")
    content_hash: str = Field(..., description="SHA-256 of html + text + subject")
    article_count: int = Field(0, description="Articles frozen into the snapshot")
    timestamp: Optional[datetime] = Field(None, description="Event timestamp")


class CampaignQueuedEventData(BaseModel):
    """campaign.queued event data"""
    campaign_id: str = Field(..., description="Campaign ID")
    queued_deliveries: int = Field(..., description="New ledger rows")
    skipped_existing: int = Field(0, description="Rows that already existed")
    timestamp: Optional[datetime] = Field(None, description="Event timestamp")


class CampaignPausedEventData(BaseModel):
    """campaign.paused event data"""
    campaign_id: str = Field(..., description="Campaign ID")
    paused_by: Optional[str] = Field(None, description="Who paused")
    reason: Optional[str] = Field(None, description="Pause reason")
    timestamp: Optional[datetime] = Field(None, description="Event timestamp")


class CampaignResumedEventData(BaseModel):
    """campaign.resumed event data"""
    campaign_id: str = Field(..., description="Campaign ID")
    resumed_by: Optional[str] = Field(None, description="Who resumed")
    pending_deliveries: int = Field(..., description="Deliveries still to send")
    timestamp: Optional[datetime] = Field(None, description="Event timestamp")


class CampaignCompletedEventData(BaseModel):
    """campaign.completed event data"""
    campaign_id: str = Field(..., description="Campaign ID")
    total: int = Field(0, description="Ledger rows")
    sent: int = Field(0, description="Rows that reached the provider")
    failed: int = Field(0, description="Rows that ended FAILED")
    timestamp: Optional[datetime] = Field(None, description="Event timestamp")


class CampaignCancelledEventData(BaseModel):
    """campaign.cancelled event data"""
    campaign_id: str = Field(..., description="Campaign ID")
    cancelled_by: Optional[str] = Field(None, description="Who cancelled")
    reason: Optional[str] = Field(None, description="Cancellation reason")
    cancelled_deliveries: int = Field(..., description="Ledger rows cancelled")
    timestamp: Optional[datetime] = Field(None, description="Event timestamp")


class EmergencyStopEventData(BaseModel):
    """campaign.emergency_stop event data"""
    reason: str = Field(..., description="Stop reason")
    actor: Optional[str] = Field(None, description="Who pulled the stop")
    affected_campaigns: List[str] = Field(default_factory=list)
    failed_campaigns: Dict[str, str] = Field(default_factory=dict)
    timestamp: Optional[datetime] = Field(None, description="Event timestamp")


class DeliveriesBulkEventData(BaseModel):
    """campaign.deliveries.retried / campaign.deliveries.dead_lettered event data"""
    campaign_id: str = Field(..., description="Campaign ID")
    count: int = Field(..., description="Rows touched")
    threshold: int = Field(..., description="max_retries or max_attempts used")
    timestamp: Optional[datetime] = Field(None, description="Event timestamp")


class DeliveryEventData(BaseModel):
    """campaign.delivery.* event data"""
    campaign_id: str = Field(..., description="Campaign ID")
    delivery_id: str = Field(..., description="Delivery ID")
    recipient_id: str = Field(..., description="Recipient ID")
    attempts: int = Field(..., description="Attempts after this send")
    status: str = Field(..., description="Ledger status after this send")
    error: Optional[str] = Field(None, description="Failure reason")
    provider_message_id: Optional[str] = Field(None, description="Provider message id")
    timestamp: Optional[datetime] = Field(None, description="Event timestamp")


__all__ = [
    "DeliveryEventType",
    "DeliveryStreamConfig",
    "SnapshotCreatedEventData",
    "CampaignQueuedEventData",
    "CampaignPausedEventData",
    "CampaignResumedEventData",
    "CampaignCompletedEventData",
    "CampaignCancelledEventData",
    "EmergencyStopEventData",
    "DeliveriesBulkEventData",
    "DeliveryEventData",
]
