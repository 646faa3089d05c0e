"""
Delivery Policy

Transition tables for campaigns and deliveries, retry eligibility, the
dead-letter predicate, queue priorities and retry backoff.
"""

from typing import Dict, List, Optional, Tuple

from .models import CampaignStatus, Delivery, DeliveryFilter, DeliveryStatus


CANCELLATION_PREFIX = "Campaign cancelled"
DEAD_LETTER_MESSAGE = "Moved to dead-letter queue after max attempts"

FRESH_PRIORITY = 1
RETRY_PRIORITY = 2

DEFAULT_MAX_RETRIES = 3
DEFAULT_MAX_ATTEMPTS = 3


def cancellation_message(reason: str) -> str:
    return f"{CANCELLATION_PREFIX}: {reason}"


class DeliveryPolicy:
    """Pure rules shared by the control service, the dispatcher and the store"""

    CAMPAIGN_TRANSITIONS: Dict[CampaignStatus, List[CampaignStatus]] = {
        CampaignStatus.DRAFT: [CampaignStatus.QUEUED, CampaignStatus.CANCELLED],
        CampaignStatus.QUEUED: [CampaignStatus.SENDING, CampaignStatus.PAUSED, CampaignStatus.COMPLETED, CampaignStatus.CANCELLED],
        CampaignStatus.SENDING: [CampaignStatus.PAUSED, CampaignStatus.COMPLETED, CampaignStatus.CANCELLED],
        CampaignStatus.PAUSED: [CampaignStatus.SENDING, CampaignStatus.COMPLETED, CampaignStatus.CANCELLED],
        CampaignStatus.COMPLETED: [],  # Terminal state
        CampaignStatus.CANCELLED: [],  # Terminal state
    }

    DELIVERY_TRANSITIONS: Dict[DeliveryStatus, List[DeliveryStatus]] = {
        DeliveryStatus.QUEUED: [DeliveryStatus.SENDING, DeliveryStatus.FAILED],
        DeliveryStatus.SENDING: [DeliveryStatus.SENT, DeliveryStatus.FAILED],
        DeliveryStatus.SENT: [
            DeliveryStatus.DELIVERED, DeliveryStatus.OPENED, DeliveryStatus.CLICKED,
            DeliveryStatus.BOUNCED, DeliveryStatus.COMPLAINED,
        ],
        DeliveryStatus.DELIVERED: [
            DeliveryStatus.OPENED, DeliveryStatus.CLICKED,
            DeliveryStatus.BOUNCED, DeliveryStatus.COMPLAINED,
        ],
        DeliveryStatus.OPENED: [DeliveryStatus.CLICKED, DeliveryStatus.COMPLAINED],
        DeliveryStatus.CLICKED: [DeliveryStatus.COMPLAINED],
        DeliveryStatus.FAILED: [DeliveryStatus.QUEUED],  # retry only
        DeliveryStatus.BOUNCED: [],
        DeliveryStatus.COMPLAINED: [],
    }

    TERMINAL_CAMPAIGN_STATUSES = (CampaignStatus.COMPLETED, CampaignStatus.CANCELLED)
    # Campaign statuses a delivery may be claimed under
    RUNNABLE_CAMPAIGN_STATUSES = (CampaignStatus.QUEUED, CampaignStatus.SENDING)

    # Rows a cancel is allowed to touch; everything past SENDING is history
    CANCELLABLE_DELIVERY_STATUSES = (DeliveryStatus.QUEUED, DeliveryStatus.FAILED)
    # Provider accepted the message; never resent, never cancelled
    SENT_OR_LATER = (
        DeliveryStatus.SENT, DeliveryStatus.DELIVERED, DeliveryStatus.OPENED,
        DeliveryStatus.CLICKED, DeliveryStatus.BOUNCED, DeliveryStatus.COMPLAINED,
    )
    ENGAGEMENT_STATUSES = (
        DeliveryStatus.DELIVERED, DeliveryStatus.OPENED, DeliveryStatus.CLICKED,
        DeliveryStatus.BOUNCED, DeliveryStatus.COMPLAINED,
    )

    def __init__(
        self,
        max_retries: int = DEFAULT_MAX_RETRIES,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_delay_seconds: float = 1.0,
        max_delay_seconds: float = 300.0,
    ):
        self.max_retries = max_retries
        self.max_attempts = max_attempts
        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds

    # ====================
    # Transitions
    # ====================

    @classmethod
    def can_transition_campaign(cls, current: CampaignStatus, target: CampaignStatus) -> bool:
        return target in cls.CAMPAIGN_TRANSITIONS.get(current, [])

    @classmethod
    def sources_of(cls, target: CampaignStatus) -> Tuple[CampaignStatus, ...]:
        """Campaign statuses the table allows to move to target"""
        return tuple(s for s, targets in cls.CAMPAIGN_TRANSITIONS.items() if target in targets)

    @classmethod
    def can_transition_delivery(cls, current: DeliveryStatus, target: DeliveryStatus) -> bool:
        return target in cls.DELIVERY_TRANSITIONS.get(current, [])

    @classmethod
    def is_terminal(cls, status: CampaignStatus) -> bool:
        return status in cls.TERMINAL_CAMPAIGN_STATUSES

    # ====================
    # Retry / Dead-letter
    # ====================

    def is_retry_eligible(self, delivery: Delivery, max_retries: Optional[int] = None) -> bool:
        limit = self.max_retries if max_retries is None else max_retries
        return delivery.status == DeliveryStatus.FAILED and delivery.attempts < limit

    def is_dead_lettered(self, delivery: Delivery, max_attempts: Optional[int] = None) -> bool:
        limit = self.max_attempts if max_attempts is None else max_attempts
        return delivery.status == DeliveryStatus.FAILED and delivery.attempts >= limit

    def retry_filter(self, campaign_id: str, max_retries: Optional[int] = None) -> DeliveryFilter:
        """FAILED rows still under the retry budget"""
        limit = self.max_retries if max_retries is None else max_retries
        return DeliveryFilter(
            campaign_id=campaign_id,
            statuses=[DeliveryStatus.FAILED],
            attempts_below=limit,
        )

    def dead_letter_filter(
        self, campaign_id: Optional[str] = None, max_attempts: Optional[int] = None
    ) -> DeliveryFilter:
        """FAILED rows at or over the attempt budget"""
        limit = self.max_attempts if max_attempts is None else max_attempts
        return DeliveryFilter(
            campaign_id=campaign_id,
            statuses=[DeliveryStatus.FAILED],
            attempts_at_least=limit,
        )

    @classmethod
    def cancellable_filter(cls, campaign_id: str) -> DeliveryFilter:
        return DeliveryFilter(
            campaign_id=campaign_id,
            statuses=list(cls.CANCELLABLE_DELIVERY_STATUSES),
        )

    @staticmethod
    def queued_filter(campaign_id: str) -> DeliveryFilter:
        return DeliveryFilter(campaign_id=campaign_id, statuses=[DeliveryStatus.QUEUED])

    # ====================
    # Backoff
    # ====================

    def retry_delay_seconds(self, attempts: int) -> float:
        """Exponential backoff: base * 2^(attempts - 1), capped"""
        if attempts <= 0:
            return 0.0
        delay = self.base_delay_seconds * (2 ** min(attempts - 1, 32))
        return min(delay, self.max_delay_seconds)


__all__ = [
    "DeliveryPolicy",
    "CANCELLATION_PREFIX",
    "DEAD_LETTER_MESSAGE",
    "FRESH_PRIORITY",
    "RETRY_PRIORITY",
    "DEFAULT_MAX_RETRIES",
    "DEFAULT_MAX_ATTEMPTS",
    "cancellation_message",
]
