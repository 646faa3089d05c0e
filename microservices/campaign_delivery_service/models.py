"""
Campaign Delivery Service Data Models

Canonical data structures for the delivery control engine: campaigns,
per-recipient deliveries, frozen snapshots, derived control state,
statistics, and the structured results returned by every control operation.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# ENUMS
# =============================================================================

class CampaignStatus(str, Enum):
    """Campaign lifecycle status"""
    DRAFT = "draft"
    QUEUED = "queued"
    SENDING = "sending"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class DeliveryStatus(str, Enum):
    """Per-recipient delivery status"""
    QUEUED = "queued"
    SENDING = "sending"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    OPENED = "opened"
    CLICKED = "clicked"
    BOUNCED = "bounced"
    COMPLAINED = "complained"


class ControlStatus(str, Enum):
    """Dispatch gate signal derived from the campaign status"""
    RUNNING = "running"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class DispatchOutcome(str, Enum):
    """What the dispatcher did with one delivery job"""
    SENT = "sent"
    FAILED = "failed"
    DEFERRED = "deferred"      # campaign paused, delivery left QUEUED
    STOPPED = "stopped"        # campaign cancelled or otherwise not runnable
    DUPLICATE = "duplicate"    # queue redelivery, claim already taken
    IN_FLIGHT = "in_flight"    # another attempt holds the send lease
    SKIPPED = "skipped"        # delivery missing or no longer QUEUED


class ErrorCode(str, Enum):
    """Machine-readable reason attached to unsuccessful results"""
    CAMPAIGN_NOT_FOUND = "campaign_not_found"
    DELIVERY_NOT_FOUND = "delivery_not_found"
    INVALID_TRANSITION = "invalid_transition"
    ALREADY_TERMINAL = "already_terminal"
    TEMPLATE_UNRESOLVED = "template_unresolved"
    SNAPSHOT_NOT_FOUND = "snapshot_not_found"
    SNAPSHOT_INTEGRITY = "snapshot_integrity"


# =============================================================================
# BASE MODELS
# =============================================================================

class BaseContract(BaseModel):
    """Base model for all contracts"""

    model_config = {
        "from_attributes": True,
    }


# =============================================================================
# CORE RECORDS
# =============================================================================

class Campaign(BaseContract):
    """One outbound newsletter send"""
    campaign_id: str = Field(..., description="Campaign ID")
    title: str = Field(..., min_length=1, max_length=255)
    subject: str = Field(default="", max_length=998)
    template_id: Optional[str] = Field(None, description="Bound email template")
    status: CampaignStatus = Field(default=CampaignStatus.DRAFT)
    scheduled_at: Optional[datetime] = None

    # Control metadata, persisted with the status
    paused_at: Optional[datetime] = None
    paused_by: Optional[str] = None
    pause_reason: Optional[str] = None
    resumed_at: Optional[datetime] = None
    resumed_by: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    cancelled_reason: Optional[str] = None
    completed_at: Optional[datetime] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Delivery(BaseContract):
    """Ledger row for one (campaign, recipient)"""
    delivery_id: str
    campaign_id: str
    recipient_id: str
    recipient_email: str
    status: DeliveryStatus = Field(default=DeliveryStatus.QUEUED)
    attempts: int = Field(default=0, ge=0)
    last_error: Optional[str] = None
    idempotency_key: Optional[str] = None
    last_attempt_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Recipient(BaseContract):
    """Active subscriber eligible to receive a campaign"""
    recipient_id: str
    email: str
    name: Optional[str] = None


class SnapshotMetadata(BaseContract):
    """Audience facts captured when the snapshot was generated"""
    recipient_count: int = Field(default=0, ge=0)
    segment_count: int = Field(default=0, ge=0)


class CompiledTemplate(BaseContract):
    """Output of the template compiler"""
    subject: str
    html: str
    text: str = ""
    preheader: str = ""


class CampaignSnapshot(BaseContract):
    """Frozen, hash-verified content of a campaign"""
    campaign_id: str
    subject: str
    html_content: str
    text_content: str = ""
    preheader: str = ""
    template_id: Optional[str] = None
    template_version: int = Field(default=1, ge=1)
    article_ids: List[str] = Field(default_factory=list)
    content_hash: str
    generated_at: datetime = Field(default_factory=utcnow)
    metadata: SnapshotMetadata = Field(default_factory=SnapshotMetadata)


class ControlState(BaseContract):
    """Control signal for one campaign, derived from its persisted row"""
    campaign_id: str
    status: ControlStatus
    campaign_status: CampaignStatus
    paused_at: Optional[datetime] = None
    resumed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    reason: Optional[str] = None
    actor: Optional[str] = None

    @property
    def is_runnable(self) -> bool:
        return self.status == ControlStatus.RUNNING


class DeliveryFilter(BaseContract):
    """Set-based selector over the delivery ledger"""
    campaign_id: Optional[str] = None
    statuses: List[DeliveryStatus] = Field(default_factory=list)
    attempts_below: Optional[int] = Field(None, description="attempts < value")
    attempts_at_least: Optional[int] = Field(None, description="attempts >= value")
    delivery_ids: Optional[List[str]] = None

    def matches(self, delivery: "Delivery") -> bool:
        if self.campaign_id is not None and delivery.campaign_id != self.campaign_id:
            return False
        if self.statuses and delivery.status not in self.statuses:
            return False
        if self.attempts_below is not None and delivery.attempts >= self.attempts_below:
            return False
        if self.attempts_at_least is not None and delivery.attempts < self.attempts_at_least:
            return False
        if self.delivery_ids is not None and delivery.delivery_id not in self.delivery_ids:
            return False
        return True


class DeliveryJob(BaseContract):
    """Unit of work handed to the job queue"""
    delivery_id: str
    campaign_id: str
    recipient_id: str
    recipient_email: str
    attempt: int = Field(default=0, ge=0, description="Ledger attempts when enqueued")
    priority: int = Field(default=1, ge=1, description="1 = fresh send, higher = later")
    delay_seconds: float = Field(default=0.0, ge=0)
    batch_id: str = Field(default="", description="Enqueue generation; part of the queue dedup key")


class CampaignStats(BaseContract):
    """Delivery counts grouped by status"""
    campaign_id: str
    total: int = 0
    queued: int = 0
    sending: int = 0
    sent: int = 0
    delivered: int = 0
    failed: int = 0
    opened: int = 0
    clicked: int = 0
    bounced: int = 0
    complained: int = 0
    retryable: int = Field(default=0, description="FAILED rows still under the retry budget")
    dead_lettered: int = Field(default=0, description="FAILED rows at or over the attempt budget")

    @property
    def pending(self) -> int:
        """Rows that still need a send: QUEUED plus retry-eligible FAILED"""
        return self.queued + self.retryable

    @property
    def in_flight(self) -> int:
        return self.sending


# =============================================================================
# OPERATION RESULTS
# =============================================================================

class ControlResult(BaseContract):
    """Outcome of a control operation, suitable for direct display"""
    success: bool
    message: str
    campaign_id: Optional[str] = None
    campaign_status: Optional[CampaignStatus] = None
    error_code: Optional[ErrorCode] = None


class PauseResult(ControlResult):
    pass


class ResumeResult(ControlResult):
    pending_deliveries: int = 0
    completed: bool = False


class CancelResult(ControlResult):
    cancelled_deliveries: int = 0


class EmergencyStopResult(ControlResult):
    affected_campaigns: List[str] = Field(default_factory=list)
    failed_campaigns: Dict[str, str] = Field(default_factory=dict)


class RetryResult(ControlResult):
    retried_count: int = 0


class DeadLetterResult(ControlResult):
    moved_count: int = 0


class QueueResult(ControlResult):
    queued_deliveries: int = 0
    skipped_existing: int = 0


class SnapshotResult(ControlResult):
    snapshot: Optional[CampaignSnapshot] = None


class VerificationResult(ControlResult):
    valid: bool = False


class DispatchResult(BaseContract):
    """Outcome of one dispatch job"""
    delivery_id: str
    campaign_id: str
    outcome: DispatchOutcome
    attempts: int = 0
    error: Optional[str] = None
    retry_delay_seconds: Optional[float] = None


class DeadLetterPage(BaseContract):
    """Paginated listing of dead-lettered deliveries"""
    items: List[Delivery] = Field(default_factory=list)
    page: int = 1
    limit: int = 50
    total: int = 0

    @property
    def pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit if self.limit else 0


class SnapshotStats(BaseContract):
    total: int = 0
    recent: int = 0
    by_template: List[Dict[str, Any]] = Field(default_factory=list)


class SchedulerStatus(BaseContract):
    is_running: bool = False
    last_run: Optional[datetime] = None
    next_run: Optional[datetime] = None
    scheduled_campaigns: int = 0
    errors: List[str] = Field(default_factory=list)


# =============================================================================
# HTTP REQUEST / RESPONSE MODELS
# =============================================================================

class PauseRequest(BaseModel):
    reason: str = Field(default="Manual pause", max_length=500)


class CancelRequest(BaseModel):
    reason: str = Field(default="Manual cancellation", max_length=500)


class EmergencyStopRequest(BaseModel):
    reason: str = Field(default="Emergency stop", max_length=500)


class RetryRequest(BaseModel):
    max_retries: Optional[int] = Field(None, ge=1)


class DeadLetterRequest(BaseModel):
    max_attempts: Optional[int] = Field(None, ge=1)


class HealthResponse(BaseModel):
    """Health check response"""
    status: str
    service: str
    port: int
    version: str
    dependencies: Dict[str, str] = Field(default_factory=dict)


class ReadinessResponse(BaseModel):
    """Readiness check response"""
    ready: bool
    checks: Dict[str, bool] = Field(default_factory=dict)
    details: Dict[str, str] = Field(default_factory=dict)


class LivenessResponse(BaseModel):
    """Liveness check response"""
    alive: bool
    uptime_seconds: float


__all__ = [
    # Enums
    "CampaignStatus",
    "DeliveryStatus",
    "ControlStatus",
    "DispatchOutcome",
    "ErrorCode",
    # Records
    "Campaign",
    "Delivery",
    "Recipient",
    "SnapshotMetadata",
    "CompiledTemplate",
    "CampaignSnapshot",
    "ControlState",
    "DeliveryFilter",
    "DeliveryJob",
    "CampaignStats",
    # Results
    "ControlResult",
    "PauseResult",
    "ResumeResult",
    "CancelResult",
    "EmergencyStopResult",
    "RetryResult",
    "DeadLetterResult",
    "QueueResult",
    "SnapshotResult",
    "VerificationResult",
    "DispatchResult",
    "DeadLetterPage",
    "SnapshotStats",
    "SchedulerStatus",
    # HTTP
    "PauseRequest",
    "CancelRequest",
    "EmergencyStopRequest",
    "RetryRequest",
    "DeadLetterRequest",
    "HealthResponse",
    "ReadinessResponse",
    "LivenessResponse",
    "utcnow",
]
