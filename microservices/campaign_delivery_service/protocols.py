"""
Campaign Delivery Service Protocols

Defines interfaces for dependency injection and testing.
Following the protocol-based architecture pattern.
"""

from datetime import datetime
from typing import Any, AsyncContextManager, Dict, List, Optional, Protocol, Sequence, Tuple

from .models import (
    Campaign,
    CampaignSnapshot,
    CampaignStatus,
    CompiledTemplate,
    Delivery,
    DeliveryFilter,
    DeliveryJob,
    DeliveryStatus,
    Recipient,
    SnapshotStats,
)


# ====================
# Repository Protocol
# ====================


class DeliveryRepositoryProtocol(Protocol):
    """Protocol for the campaign / delivery ledger / snapshot store"""

    async def initialize(self) -> None:
        """Initialize repository connection"""
        ...

    async def close(self) -> None:
        """Close repository connection"""
        ...

    async def health_check(self) -> bool:
        """Check repository health"""
        ...

    def transaction(self) -> AsyncContextManager[Any]:
        """Open a transaction; repository calls made inside it join it"""
        ...

    # Campaigns
    async def save_campaign(self, campaign: Campaign) -> Campaign:
        """Insert or replace a campaign"""
        ...

    async def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        """Get campaign by ID"""
        ...

    async def list_campaigns(
        self,
        statuses: Optional[List[CampaignStatus]] = None,
        scheduled_before: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[Campaign]:
        """List campaigns, optionally by status and due schedule"""
        ...

    async def update_campaign_status(
        self,
        campaign_id: str,
        status: CampaignStatus,
        expected: Optional[Sequence[CampaignStatus]] = None,
        **fields: Any,
    ) -> Optional[Campaign]:
        """
        Set the campaign status (and control metadata fields).

        When ``expected`` is given the write only applies if the current status
        is one of them. Returns the updated campaign, or None if nothing matched.
        """
        ...

    # Delivery ledger
    async def get_delivery(self, delivery_id: str) -> Optional[Delivery]:
        """Get delivery by ID"""
        ...

    async def create_deliveries(self, deliveries: List[Delivery]) -> List[Delivery]:
        """Insert deliveries, skipping idempotency keys that already exist"""
        ...

    async def list_deliveries(
        self,
        delivery_filter: DeliveryFilter,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[Delivery], int]:
        """List deliveries matching a filter, with the total match count"""
        ...

    async def count_deliveries(self, delivery_filter: DeliveryFilter) -> int:
        """Count deliveries matching a filter"""
        ...

    async def count_deliveries_by_status(self, campaign_id: str) -> Dict[DeliveryStatus, int]:
        """Group-by-status counts for one campaign"""
        ...

    async def update_deliveries(
        self, delivery_filter: DeliveryFilter, updates: Dict[str, Any]
    ) -> List[Delivery]:
        """Apply one set-based update to every matching row, return the touched rows"""
        ...

    async def claim_delivery(
        self,
        delivery_id: str,
        expected_attempts: int,
        runnable_statuses: Sequence[CampaignStatus],
    ) -> Optional[Delivery]:
        """
        QUEUED -> SENDING with attempts + 1.

        Only applies when the row is still QUEUED at ``expected_attempts`` and the
        owning campaign is in one of ``runnable_statuses``.
        """
        ...

    async def update_delivery_status(
        self,
        delivery_id: str,
        status: DeliveryStatus,
        expected: Optional[Sequence[DeliveryStatus]] = None,
        **fields: Any,
    ) -> Optional[Delivery]:
        """Set a single delivery's status, guarded by ``expected`` when given"""
        ...

    # Snapshots
    async def get_snapshot(self, campaign_id: str) -> Optional[CampaignSnapshot]:
        """Get the stored snapshot for a campaign"""
        ...

    async def upsert_snapshot(self, snapshot: CampaignSnapshot) -> CampaignSnapshot:
        """
        Store a snapshot keyed by campaign.

        The stored template_version is 1 on insert and previous + 1 on conflict,
        assigned atomically by the store.
        """
        ...

    async def delete_snapshot(self, campaign_id: str) -> bool:
        """Delete a campaign's snapshot"""
        ...

    async def get_snapshot_stats(self, since: datetime) -> SnapshotStats:
        """Snapshot totals, recent count and per-template counts"""
        ...


# ====================
# Collaborator Protocols
# ====================


class TemplateCompilerProtocol(Protocol):
    """Protocol for the email template compiler"""

    async def compile(self, template_id: str, variables: Dict[str, Any]) -> CompiledTemplate:
        """Render a template with the given variables"""
        ...


class ContentSourceProtocol(Protocol):
    """Protocol for the article/content source"""

    async def current_article_set(self) -> List[str]:
        """Ordered article IDs that belong in the next send"""
        ...


class RecipientSourceProtocol(Protocol):
    """Protocol for the subscriber list"""

    async def active_recipients(self) -> List[Recipient]:
        """Active recipients, suppressed addresses already excluded"""
        ...

    async def segment_count(self) -> int:
        """Number of audience segments the recipients come from"""
        ...


class JobQueueProtocol(Protocol):
    """Protocol for the at-least-once delivery job queue"""

    async def enqueue(self, job: DeliveryJob) -> str:
        """
        Enqueue a job, return the queue's job id.

        Raises DuplicateJobError when the queue has already accepted a job with
        the same delivery, attempt, priority and batch.
        """
        ...


class EmailSenderProtocol(Protocol):
    """Protocol for the email provider"""

    async def send(
        self,
        recipient_email: str,
        subject: str,
        html: str,
        text: str,
        headers: Optional[Dict[str, str]] = None,
    ) -> Optional[str]:
        """Send one email, return the provider message id"""
        ...


# ====================
# Event Bus Protocol
# ====================


class EventBusProtocol(Protocol):
    """Protocol for event bus operations"""

    async def publish_event(self, event: Any) -> bool:
        """Publish an event to the event bus"""
        ...

    async def close(self) -> None:
        """Close event bus connection"""
        ...


# ====================
# Custom Exceptions
# ====================


class CampaignDeliveryError(Exception):
    """Base exception for campaign delivery errors"""
    pass


class CampaignNotFoundError(CampaignDeliveryError):
    """Raised when campaign is not found"""
    pass


class DeliveryNotFoundError(CampaignDeliveryError):
    """Raised when a delivery row is not found"""
    pass


class TemplateUnresolvedError(CampaignDeliveryError):
    """Raised when a campaign has no usable template"""
    pass


class InvalidTransitionError(CampaignDeliveryError):
    """Raised when a status change is not allowed from the current status"""

    def __init__(self, message: str, current_status: Optional[Any] = None):
        super().__init__(message)
        self.current_status = current_status


class AlreadyTerminalError(InvalidTransitionError):
    """Raised when the campaign is already COMPLETED or CANCELLED"""
    pass


class SnapshotNotFoundError(CampaignDeliveryError):
    """Raised when a campaign has no snapshot"""
    pass


class SnapshotIntegrityError(CampaignDeliveryError):
    """Raised when stored snapshot content no longer matches its hash"""

    def __init__(
        self,
        message: str,
        expected_hash: Optional[str] = None,
        calculated_hash: Optional[str] = None,
    ):
        super().__init__(message)
        self.expected_hash = expected_hash
        self.calculated_hash = calculated_hash


class TransientDeliveryError(CampaignDeliveryError):
    """Raised by senders for failures worth retrying"""
    pass


class DuplicateJobError(Exception):
    """Raised when the job queue drops an enqueue as a duplicate message"""

    def __init__(self, message: str, job_id: Optional[str] = None):
        super().__init__(message)
        self.job_id = job_id


__all__ = [
    "DeliveryRepositoryProtocol",
    "TemplateCompilerProtocol",
    "ContentSourceProtocol",
    "RecipientSourceProtocol",
    "JobQueueProtocol",
    "EmailSenderProtocol",
    "EventBusProtocol",
    "CampaignDeliveryError",
    "CampaignNotFoundError",
    "DeliveryNotFoundError",
    "TemplateUnresolvedError",
    "InvalidTransitionError",
    "AlreadyTerminalError",
    "SnapshotNotFoundError",
    "SnapshotIntegrityError",
    "TransientDeliveryError",
    "DuplicateJobError",
]
