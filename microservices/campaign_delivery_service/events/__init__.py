"""
Campaign Delivery Service Events

Event models and publisher for campaign delivery service.
"""

from .models import (
    DeliveryEventType,
    DeliveryStreamConfig,
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
from .publishers import DeliveryEventPublisher

__all__ = [
    # Event Types
    "DeliveryEventType",
    "DeliveryStreamConfig",
    # Event Data Models
    "SnapshotCreatedEventData",
    "CampaignQueuedEventData",
    "CampaignPausedEventData",
    "CampaignResumedEventData",
    "CampaignCompletedEventData",
    "CampaignCancelledEventData",
    "EmergencyStopEventData",
    "DeliveriesBulkEventData",
    "DeliveryEventData",
    # Publisher
    "DeliveryEventPublisher",
]
