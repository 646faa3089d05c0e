"""
Campaign Delivery Control Service

Operator-facing control plane: ledger population, pause / resume / cancel,
emergency stop, retry and dead-letter handling, snapshots and statistics.

Domain errors are raised internally and turned into ``success=False``
results at each public operation. Infrastructure errors propagate.
"""

import hashlib
import logging
import uuid
from typing import List, Optional, Sequence

from core.config.delivery_config import DeliveryConfig

from .control_state import ControlStateCache
from .delivery_policy import (
    DEAD_LETTER_MESSAGE,
    FRESH_PRIORITY,
    RETRY_PRIORITY,
    DeliveryPolicy,
    cancellation_message,
)
from .events.publishers import DeliveryEventPublisher
from .models import (
    Campaign,
    CampaignSnapshot,
    CampaignStats,
    CampaignStatus,
    CancelResult,
    ControlState,
    DeadLetterPage,
    DeadLetterResult,
    Delivery,
    DeliveryFilter,
    DeliveryJob,
    DeliveryStatus,
    EmergencyStopResult,
    ErrorCode,
    PauseResult,
    QueueResult,
    ResumeResult,
    RetryResult,
    SnapshotResult,
    utcnow,
)
from .protocols import (
    AlreadyTerminalError,
    CampaignDeliveryError,
    CampaignNotFoundError,
    DeliveryNotFoundError,
    DeliveryRepositoryProtocol,
    InvalidTransitionError,
    JobQueueProtocol,
    RecipientSourceProtocol,
    SnapshotIntegrityError,
    SnapshotNotFoundError,
    TemplateUnresolvedError,
)
from .snapshot_builder import SnapshotBuilder
from .statistics import StatisticsAggregator

logger = logging.getLogger(__name__)


def idempotency_key(campaign_id: str, recipient_id: str) -> str:
    return hashlib.sha256(f"{campaign_id}:{recipient_id}".encode("utf-8")).hexdigest()


def error_code_for(error: CampaignDeliveryError) -> Optional[ErrorCode]:
    """Map a domain exception onto the result error code"""
    if isinstance(error, CampaignNotFoundError):
        return ErrorCode.CAMPAIGN_NOT_FOUND
    if isinstance(error, DeliveryNotFoundError):
        return ErrorCode.DELIVERY_NOT_FOUND
    if isinstance(error, AlreadyTerminalError):
        return ErrorCode.ALREADY_TERMINAL
    if isinstance(error, InvalidTransitionError):
        return ErrorCode.INVALID_TRANSITION
    if isinstance(error, TemplateUnresolvedError):
        return ErrorCode.TEMPLATE_UNRESOLVED
    if isinstance(error, SnapshotNotFoundError):
        return ErrorCode.SNAPSHOT_NOT_FOUND
    if isinstance(error, SnapshotIntegrityError):
        return ErrorCode.SNAPSHOT_INTEGRITY
    return None


class DeliveryControlService:
    """Campaign delivery control business logic layer"""

    PAGE_SIZE = 500
    QUEUEABLE_STATUSES = (CampaignStatus.DRAFT, CampaignStatus.QUEUED, CampaignStatus.SENDING)

    def __init__(
        self,
        repository: DeliveryRepositoryProtocol,
        snapshot_builder: SnapshotBuilder,
        job_queue: JobQueueProtocol,
        recipient_source: Optional[RecipientSourceProtocol] = None,
        event_publisher: Optional[DeliveryEventPublisher] = None,
        config: Optional[DeliveryConfig] = None,
        control_cache: Optional[ControlStateCache] = None,
        policy: Optional[DeliveryPolicy] = None,
        statistics: Optional[StatisticsAggregator] = None,
    ):
        self.repository = repository
        self.snapshot_builder = snapshot_builder
        self.job_queue = job_queue
        self.recipient_source = recipient_source
        self.event_publisher = event_publisher or DeliveryEventPublisher()
        self.config = config or DeliveryConfig()
        self.policy = policy or DeliveryPolicy(
            max_retries=self.config.max_retries,
            max_attempts=self.config.max_attempts,
            base_delay_seconds=self.config.retry_base_delay_seconds,
            max_delay_seconds=self.config.retry_max_delay_seconds,
        )
        self.control_cache = control_cache or ControlStateCache(
            repository, ttl_seconds=self.config.control_state_ttl_seconds
        )
        self.statistics = statistics or StatisticsAggregator(repository, self.policy)

    # ====================
    # Helpers
    # ====================

    async def _require_campaign(self, campaign_id: str) -> Campaign:
        campaign = await self.repository.get_campaign(campaign_id)
        if not campaign:
            raise CampaignNotFoundError(f"Campaign {campaign_id} not found")
        return campaign

    @staticmethod
    def _transition_error(campaign: Campaign, action: str) -> InvalidTransitionError:
        message = f"Cannot {action} campaign in {campaign.status.value} status"
        if DeliveryPolicy.is_terminal(campaign.status):
            return AlreadyTerminalError(message, campaign.status)
        return InvalidTransitionError(message, campaign.status)

    async def _set_status(
        self,
        campaign_id: str,
        status: CampaignStatus,
        expected: Sequence[CampaignStatus],
        action: str,
        **fields,
    ) -> Campaign:
        """Compare-and-set the campaign status, raising if the row moved underneath us"""
        updated = await self.repository.update_campaign_status(
            campaign_id, status, expected=list(expected), **fields
        )
        if not updated:
            current = await self._require_campaign(campaign_id)
            raise self._transition_error(current, action)
        return updated

    async def _list_all(self, delivery_filter: DeliveryFilter) -> List[Delivery]:
        rows: List[Delivery] = []
        offset = 0
        while True:
            page, total = await self.repository.list_deliveries(
                delivery_filter, limit=self.PAGE_SIZE, offset=offset
            )
            rows.extend(page)
            offset += len(page)
            if not page or offset >= total:
                return rows

    async def _enqueue(self, deliveries: List[Delivery], priority: int) -> int:
        """Publish one job per row under a fresh batch id"""
        batch_id = uuid.uuid4().hex[:12]
        for delivery in deliveries:
            await self.job_queue.enqueue(
                DeliveryJob(
                    delivery_id=delivery.delivery_id,
                    campaign_id=delivery.campaign_id,
                    recipient_id=delivery.recipient_id,
                    recipient_email=delivery.recipient_email,
                    attempt=delivery.attempts,
                    priority=priority,
                    batch_id=batch_id,
                )
            )
        return len(deliveries)

    @staticmethod
    def _failure(result_cls, campaign_id: Optional[str], error: CampaignDeliveryError):
        return result_cls(
            success=False,
            message=str(error),
            campaign_id=campaign_id,
            campaign_status=getattr(error, "current_status", None),
            error_code=error_code_for(error),
        )

    # ====================
    # Ledger Population
    # ====================

    async def queue_campaign(self, campaign_id: str) -> QueueResult:
        """
        Populate the delivery ledger and enqueue fresh jobs.

        Takes a snapshot if the campaign has none, inserts one QUEUED row per
        active recipient (re-running skips recipients that already have a row)
        and moves DRAFT campaigns to QUEUED.
        """
        try:
            campaign = await self._require_campaign(campaign_id)
            if campaign.status not in self.QUEUEABLE_STATUSES:
                raise self._transition_error(campaign, "queue")
            if self.recipient_source is None:
                raise CampaignDeliveryError("No recipient source configured")

            if await self.repository.get_snapshot(campaign_id) is None:
                await self.snapshot_builder.create_snapshot(campaign_id)
            else:
                await self.snapshot_builder.load_verified_snapshot(campaign_id)

            recipients = await self.recipient_source.active_recipients()
            now = utcnow()
            rows = [
                Delivery(
                    delivery_id=f"dlv_{uuid.uuid4().hex[:16]}",
                    campaign_id=campaign_id,
                    recipient_id=r.recipient_id,
                    recipient_email=r.email,
                    status=DeliveryStatus.QUEUED,
                    idempotency_key=idempotency_key(campaign_id, r.recipient_id),
                    created_at=now,
                    updated_at=now,
                )
                for r in recipients
            ]

            async with self.repository.transaction():
                created = await self.repository.create_deliveries(rows)
                if campaign.status == CampaignStatus.DRAFT:
                    campaign = await self._set_status(
                        campaign_id,
                        CampaignStatus.QUEUED,
                        expected=[CampaignStatus.DRAFT],
                        action="queue",
                    )
            self.control_cache.put(campaign)
        except CampaignDeliveryError as e:
            logger.warning(f"Queue rejected for campaign {campaign_id}: {e}")
            return self._failure(QueueResult, campaign_id, e)

        queued = await self._enqueue(created, FRESH_PRIORITY)
        skipped = len(rows) - len(created)
        logger.info(
            f"Campaign queued: {campaign_id} new={queued} existing={skipped}"
        )
        await self.event_publisher.publish_campaign_queued(campaign_id, queued, skipped)

        if await self.check_completion(campaign_id):
            campaign = await self._require_campaign(campaign_id)

        return QueueResult(
            success=True,
            message=f"Queued {queued} deliveries ({skipped} already existed)",
            campaign_id=campaign_id,
            campaign_status=campaign.status,
            queued_deliveries=queued,
            skipped_existing=skipped,
        )

    # ====================
    # Campaign Controls
    # ====================

    async def _pause(self, campaign_id: str, reason: str, actor: Optional[str]) -> Campaign:
        campaign = await self._require_campaign(campaign_id)
        if not DeliveryPolicy.can_transition_campaign(campaign.status, CampaignStatus.PAUSED):
            raise self._transition_error(campaign, "pause")

        updated = await self._set_status(
            campaign_id,
            CampaignStatus.PAUSED,
            expected=DeliveryPolicy.sources_of(CampaignStatus.PAUSED),
            action="pause",
            paused_at=utcnow(),
            paused_by=actor,
            pause_reason=reason,
        )
        self.control_cache.put(updated)
        logger.info(f"Campaign paused: {campaign_id} by={actor} reason={reason}")
        await self.event_publisher.publish_campaign_paused(campaign_id, actor, reason)
        return updated

    async def pause(
        self, campaign_id: str, reason: str = "Manual pause", actor: Optional[str] = None
    ) -> PauseResult:
        """Pause a QUEUED or SENDING campaign; no new sends start once this returns"""
        try:
            campaign = await self._pause(campaign_id, reason, actor)
        except CampaignDeliveryError as e:
            logger.warning(f"Pause rejected for campaign {campaign_id}: {e}")
            return self._failure(PauseResult, campaign_id, e)

        return PauseResult(
            success=True,
            message="Campaign paused successfully",
            campaign_id=campaign_id,
            campaign_status=campaign.status,
        )

    async def resume(self, campaign_id: str, actor: Optional[str] = None) -> ResumeResult:
        """
        Resume a PAUSED campaign.

        Pending deliveries (QUEUED plus retry-eligible FAILED) are counted; with
        none left the campaign completes instead. Otherwise it returns to SENDING,
        retry-eligible FAILED rows go back to QUEUED in the same transaction, and
        every pending row gets a new job: jobs that arrived while paused were
        deferred and dropped.
        """
        try:
            campaign = await self._require_campaign(campaign_id)
            if campaign.status != CampaignStatus.PAUSED:
                raise self._transition_error(campaign, "resume")

            pending = await self.statistics.count_pending(campaign_id)
            now = utcnow()

            if pending == 0:
                campaign = await self._set_status(
                    campaign_id,
                    CampaignStatus.COMPLETED,
                    expected=[CampaignStatus.PAUSED],
                    action="resume",
                    resumed_at=now,
                    resumed_by=actor,
                    completed_at=now,
                )
            else:
                async with self.repository.transaction():
                    queued_rows = await self._list_all(self.policy.queued_filter(campaign_id))
                    campaign = await self._set_status(
                        campaign_id,
                        CampaignStatus.SENDING,
                        expected=[CampaignStatus.PAUSED],
                        action="resume",
                        resumed_at=now,
                        resumed_by=actor,
                    )
                    retried_rows = await self.repository.update_deliveries(
                        self.policy.retry_filter(campaign_id),
                        {"status": DeliveryStatus.QUEUED, "last_error": None},
                    )
            self.control_cache.put(campaign)
        except CampaignDeliveryError as e:
            logger.warning(f"Resume rejected for campaign {campaign_id}: {e}")
            return self._failure(ResumeResult, campaign_id, e)

        if pending == 0:
            logger.warning(
                f"Campaign {campaign_id} resumed with no pending deliveries, marked completed"
            )
            stats = await self.statistics.get_campaign_statistics(campaign_id)
            await self.event_publisher.publish_campaign_completed(
                campaign_id, total=stats.total, sent=stats.sent, failed=stats.failed
            )
            return ResumeResult(
                success=True,
                message="Campaign completed (no pending deliveries)",
                campaign_id=campaign_id,
                campaign_status=campaign.status,
                pending_deliveries=0,
                completed=True,
            )

        pending = await self._enqueue(queued_rows, FRESH_PRIORITY)
        pending += await self._enqueue(retried_rows, RETRY_PRIORITY)
        if pending == 0 and await self.check_completion(campaign_id):
            campaign = await self._require_campaign(campaign_id)
        logger.info(
            f"Campaign resumed: {campaign_id} pending={pending} "
            f"(retrying {len(retried_rows)}) by={actor}"
        )
        await self.event_publisher.publish_campaign_resumed(campaign_id, actor, pending)
        return ResumeResult(
            success=True,
            message=f"Campaign resumed with {pending} pending deliveries",
            campaign_id=campaign_id,
            campaign_status=campaign.status,
            pending_deliveries=pending,
        )

    async def cancel(
        self, campaign_id: str, reason: str = "Manual cancellation", actor: Optional[str] = None
    ) -> CancelResult:
        """
        Cancel a campaign and every delivery that has not reached the provider.

        QUEUED and FAILED rows become FAILED with a cancellation marker in the
        same transaction as the status change. SENT and later rows are untouched.
        """
        try:
            campaign = await self._require_campaign(campaign_id)
            if not DeliveryPolicy.can_transition_campaign(campaign.status, CampaignStatus.CANCELLED):
                raise self._transition_error(campaign, "cancel")

            async with self.repository.transaction():
                campaign = await self._set_status(
                    campaign_id,
                    CampaignStatus.CANCELLED,
                    expected=DeliveryPolicy.sources_of(CampaignStatus.CANCELLED),
                    action="cancel",
                    cancelled_at=utcnow(),
                    cancelled_by=actor,
                    cancelled_reason=reason,
                )
                touched = await self.repository.update_deliveries(
                    self.policy.cancellable_filter(campaign_id),
                    {
                        "status": DeliveryStatus.FAILED,
                        "last_error": cancellation_message(reason),
                    },
                )
            self.control_cache.put(campaign)
        except CampaignDeliveryError as e:
            logger.warning(f"Cancel rejected for campaign {campaign_id}: {e}")
            return self._failure(CancelResult, campaign_id, e)

        logger.info(
            f"Campaign cancelled: {campaign_id} deliveries={len(touched)} by={actor} reason={reason}"
        )
        await self.event_publisher.publish_campaign_cancelled(
            campaign_id, actor, reason, len(touched)
        )
        return CancelResult(
            success=True,
            message=f"Campaign cancelled, {len(touched)} deliveries cancelled",
            campaign_id=campaign_id,
            campaign_status=campaign.status,
            cancelled_deliveries=len(touched),
        )

    async def emergency_stop_all(
        self, reason: str = "Emergency stop", actor: Optional[str] = None
    ) -> EmergencyStopResult:
        """Pause every QUEUED or SENDING campaign; one failure never blocks the rest"""
        active = await self.repository.list_campaigns(
            statuses=list(DeliveryPolicy.sources_of(CampaignStatus.PAUSED)), limit=10000
        )
        affected: List[str] = []
        failed = {}

        for campaign in active:
            try:
                await self._pause(campaign.campaign_id, reason, actor)
                affected.append(campaign.campaign_id)
            except CampaignDeliveryError as e:
                # Finished or paused since the listing
                logger.info(f"Emergency stop skipped {campaign.campaign_id}: {e}")
            except Exception as e:
                logger.exception(f"Emergency stop failed for campaign {campaign.campaign_id}")
                failed[campaign.campaign_id] = str(e)

        logger.warning(
            f"Emergency stop by={actor} reason={reason}: "
            f"paused={len(affected)} failed={len(failed)}"
        )
        await self.event_publisher.publish_emergency_stop(reason, actor, affected, failed)

        message = f"Emergency stop paused {len(affected)} campaigns"
        if failed:
            message += f", {len(failed)} failed"
        return EmergencyStopResult(
            success=bool(affected) or not failed,
            message=message,
            affected_campaigns=affected,
            failed_campaigns=failed,
        )

    # ====================
    # Retry / Dead-letter
    # ====================

    async def retry_failed_deliveries(
        self, campaign_id: str, max_retries: Optional[int] = None
    ) -> RetryResult:
        """Requeue FAILED deliveries with attempts < max_retries at retry priority"""
        limit = max_retries if max_retries is not None else self.config.max_retries
        try:
            campaign = await self._require_campaign(campaign_id)
            if DeliveryPolicy.is_terminal(campaign.status):
                # Finished campaigns stay finished; their failures can only be dead-lettered
                raise AlreadyTerminalError(
                    f"Retry is disabled for {campaign.status.value} campaigns; "
                    "failed deliveries of a finished campaign can only be moved to the dead letter queue",
                    campaign.status,
                )
        except CampaignDeliveryError as e:
            logger.warning(f"Retry rejected for campaign {campaign_id}: {e}")
            return self._failure(RetryResult, campaign_id, e)

        async with self.repository.transaction():
            rows = await self.repository.update_deliveries(
                self.policy.retry_filter(campaign_id, limit),
                {"status": DeliveryStatus.QUEUED, "last_error": None},
            )

        if not rows:
            return RetryResult(
                success=True,
                message="No failed deliveries eligible for retry",
                campaign_id=campaign_id,
                campaign_status=campaign.status,
                retried_count=0,
            )

        await self._enqueue(rows, RETRY_PRIORITY)
        logger.info(f"Retrying {len(rows)} failed deliveries for campaign {campaign_id}")
        await self.event_publisher.publish_deliveries_retried(campaign_id, len(rows), limit)
        return RetryResult(
            success=True,
            message=f"Retrying {len(rows)} failed deliveries",
            campaign_id=campaign_id,
            campaign_status=campaign.status,
            retried_count=len(rows),
        )

    async def move_to_dead_letter_queue(
        self, campaign_id: str, max_attempts: Optional[int] = None
    ) -> DeadLetterResult:
        """Mark FAILED deliveries with attempts >= max_attempts as dead-lettered"""
        limit = max_attempts if max_attempts is not None else self.config.max_attempts
        try:
            campaign = await self._require_campaign(campaign_id)
        except CampaignDeliveryError as e:
            return self._failure(DeadLetterResult, campaign_id, e)

        async with self.repository.transaction():
            rows = await self.repository.update_deliveries(
                self.policy.dead_letter_filter(campaign_id, limit),
                {"last_error": DEAD_LETTER_MESSAGE},
            )

        if rows:
            logger.info(f"Moved {len(rows)} deliveries to dead-letter queue for campaign {campaign_id}")
            await self.event_publisher.publish_deliveries_dead_lettered(campaign_id, len(rows), limit)
        return DeadLetterResult(
            success=True,
            message=f"Moved {len(rows)} deliveries to dead-letter queue",
            campaign_id=campaign_id,
            campaign_status=campaign.status,
            moved_count=len(rows),
        )

    async def list_dead_letter_deliveries(
        self,
        campaign_id: Optional[str] = None,
        page: int = 1,
        limit: int = 50,
        max_attempts: Optional[int] = None,
    ) -> DeadLetterPage:
        page = max(page, 1)
        limit = max(min(limit, 500), 1)
        items, total = await self.repository.list_deliveries(
            self.policy.dead_letter_filter(campaign_id, max_attempts),
            limit=limit,
            offset=(page - 1) * limit,
        )
        return DeadLetterPage(items=items, page=page, limit=limit, total=total)

    # ====================
    # Completion / Status
    # ====================

    async def check_completion(self, campaign_id: str) -> bool:
        """
        Complete a QUEUED or SENDING campaign whose ledger has drained.

        Drained means nothing in flight and nothing pending. Returns True when
        this call completed the campaign.
        """
        stats = await self.statistics.get_campaign_statistics(campaign_id)
        if stats.sending or stats.pending:
            return False

        completed = await self.repository.update_campaign_status(
            campaign_id,
            CampaignStatus.COMPLETED,
            expected=list(DeliveryPolicy.RUNNABLE_CAMPAIGN_STATUSES),
            completed_at=utcnow(),
        )
        if not completed:
            return False

        self.control_cache.put(completed)
        logger.info(
            f"Campaign completed: {campaign_id} total={stats.total} "
            f"sent={stats.sent} failed={stats.failed}"
        )
        await self.event_publisher.publish_campaign_completed(
            campaign_id, total=stats.total, sent=stats.sent, failed=stats.failed
        )
        return True

    async def get_control_status(self, campaign_id: str) -> Optional[ControlState]:
        return await self.control_cache.get(campaign_id)

    async def get_all_control_states(self) -> List[ControlState]:
        return await self.control_cache.get_all()

    async def get_campaign_statistics(self, campaign_id: str) -> CampaignStats:
        return await self.statistics.get_campaign_statistics(campaign_id)

    # ====================
    # Snapshots
    # ====================

    async def create_snapshot(self, campaign_id: str) -> SnapshotResult:
        try:
            snapshot = await self.snapshot_builder.create_snapshot(campaign_id)
        except CampaignDeliveryError as e:
            logger.warning(f"Snapshot rejected for campaign {campaign_id}: {e}")
            return self._failure(SnapshotResult, campaign_id, e)

        return SnapshotResult(
            success=True,
            message=f"Snapshot v{snapshot.template_version} created",
            campaign_id=campaign_id,
            snapshot=snapshot,
        )

    async def verify_snapshot(self, campaign_id: str) -> bool:
        return await self.snapshot_builder.verify_snapshot(campaign_id)

    async def get_snapshot(self, campaign_id: str) -> Optional[CampaignSnapshot]:
        return await self.snapshot_builder.get_snapshot(campaign_id)


__all__ = ["DeliveryControlService", "idempotency_key", "error_code_for"]
