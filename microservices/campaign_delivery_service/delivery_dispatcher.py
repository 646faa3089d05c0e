"""
Delivery Dispatcher

Worker side of the engine: turns one queued job into at most one send.

Every job goes through the control gate, snapshot verification and an
atomic claim before the email sender is called, so a pause or cancel that
has returned is never followed by a new send.
"""

import logging
import re
import uuid
from typing import Any, Dict, Optional
from urllib.parse import quote

from core.config.delivery_config import DeliveryConfig

from .control_state import ControlStateCache
from .delivery_control_service import DeliveryControlService
from .delivery_policy import RETRY_PRIORITY, DeliveryPolicy
from .events.publishers import DeliveryEventPublisher
from .models import (
    CampaignSnapshot,
    CampaignStatus,
    ControlStatus,
    Delivery,
    DeliveryJob,
    DeliveryStatus,
    DispatchOutcome,
    DispatchResult,
    utcnow,
)
from .protocols import (
    CampaignNotFoundError,
    DeliveryNotFoundError,
    DeliveryRepositoryProtocol,
    EmailSenderProtocol,
    InvalidTransitionError,
    JobQueueProtocol,
    SnapshotIntegrityError,
)
from .snapshot_builder import SnapshotBuilder

logger = logging.getLogger(__name__)

PLACEHOLDER_PATTERN = re.compile(r'\{\{(\w+(?:\.\w+)*)\}\}')


def substitute_variables(template: str, data: Dict[str, Any]) -> str:
    """Substitute {{variable}} placeholders with values"""
    if not template:
        return template

    def replace_var(match):
        var_name = match.group(1)
        # Support nested keys like subscriber.email
        value = data
        for key in var_name.split('.'):
            if isinstance(value, dict):
                value = value.get(key, "")
            else:
                value = ""
                break
        return str(value) if value else ""

    return PLACEHOLDER_PATTERN.sub(replace_var, template)


class DeliveryDispatcher:
    """Processes delivery jobs pulled from the queue"""

    def __init__(
        self,
        repository: DeliveryRepositoryProtocol,
        control_service: DeliveryControlService,
        snapshot_builder: SnapshotBuilder,
        email_sender: EmailSenderProtocol,
        job_queue: JobQueueProtocol,
        control_cache: Optional[ControlStateCache] = None,
        event_publisher: Optional[DeliveryEventPublisher] = None,
        config: Optional[DeliveryConfig] = None,
        policy: Optional[DeliveryPolicy] = None,
    ):
        self.repository = repository
        self.control_service = control_service
        self.snapshot_builder = snapshot_builder
        self.email_sender = email_sender
        self.job_queue = job_queue
        self.control_cache = control_cache or control_service.control_cache
        self.event_publisher = event_publisher or control_service.event_publisher
        self.config = config or control_service.config
        self.policy = policy or control_service.policy

    def retry_delay_seconds(self, attempts: int) -> float:
        return self.policy.retry_delay_seconds(attempts)

    # ====================
    # Personalization
    # ====================

    def _recipient_variables(self, delivery: Delivery) -> Dict[str, Any]:
        unsubscribe_url = (
            f"{self.config.site_url}/newsletter/unsubscribe"
            f"?email={quote(delivery.recipient_email)}"
        )
        return {
            "subscriber": {
                "name": "Subscriber",
                "email": delivery.recipient_email,
            },
            "campaign": {"unsubscribe_url": unsubscribe_url},
        }

    def _render(self, snapshot: CampaignSnapshot, delivery: Delivery) -> Dict[str, Any]:
        variables = self._recipient_variables(delivery)
        return {
            "subject": substitute_variables(snapshot.subject, variables),
            "html": substitute_variables(snapshot.html_content, variables),
            "text": substitute_variables(snapshot.text_content, variables),
            "headers": {
                "X-Campaign-ID": delivery.campaign_id,
                "X-Delivery-ID": delivery.delivery_id,
                "Idempotency-Key": delivery.idempotency_key or delivery.delivery_id,
                "List-Unsubscribe": f"<{variables['campaign']['unsubscribe_url']}>",
            },
        }

    # ====================
    # Dispatch
    # ====================

    def _result(self, job: DeliveryJob, outcome: DispatchOutcome, **kwargs) -> DispatchResult:
        return DispatchResult(
            delivery_id=job.delivery_id,
            campaign_id=job.campaign_id,
            outcome=outcome,
            **kwargs,
        )

    async def _load_snapshot(self, campaign_id: str) -> CampaignSnapshot:
        try:
            return await self.snapshot_builder.load_verified_snapshot(campaign_id)
        except SnapshotIntegrityError:
            if self.config.block_on_integrity_failure:
                raise
            logger.warning(f"Sending campaign {campaign_id} despite snapshot integrity failure")
            return await self.snapshot_builder.get_snapshot(campaign_id)

    async def process_job(self, job: DeliveryJob) -> DispatchResult:
        """
        Process one delivery job.

        Returns a DispatchResult for every per-delivery outcome, including send
        failures. Raises for structural problems: a missing campaign, a missing
        snapshot or, when blocking is enabled, a corrupt one.
        """
        state = await self.control_cache.get(job.campaign_id)
        if state is None:
            raise CampaignNotFoundError(
                f"Campaign {job.campaign_id} for delivery {job.delivery_id} not found"
            )
        if state.status == ControlStatus.PAUSED:
            logger.debug(f"Deferring delivery {job.delivery_id}: campaign {job.campaign_id} paused")
            return self._result(job, DispatchOutcome.DEFERRED, attempts=job.attempt)
        if not state.is_runnable:
            logger.debug(f"Dropping delivery {job.delivery_id}: campaign {job.campaign_id} {state.status.value}")
            return self._result(job, DispatchOutcome.STOPPED, attempts=job.attempt)

        snapshot = await self._load_snapshot(job.campaign_id)

        delivery = await self.repository.claim_delivery(
            job.delivery_id,
            expected_attempts=job.attempt,
            runnable_statuses=list(DeliveryPolicy.RUNNABLE_CAMPAIGN_STATUSES),
        )
        if delivery is None:
            return await self._unclaimed(job)

        if state.campaign_status == CampaignStatus.QUEUED:
            await self._mark_sending(job.campaign_id)

        rendered = self._render(snapshot, delivery)
        try:
            message_id = await self.email_sender.send(
                delivery.recipient_email,
                rendered["subject"],
                rendered["html"],
                rendered["text"],
                rendered["headers"],
            )
        except Exception as e:
            result = await self._record_failure(job, delivery, str(e) or type(e).__name__)
        except BaseException:
            # Cancelled mid-send: release the claim so the row is not stranded in SENDING
            await self._record_failure(job, delivery, "Send interrupted")
            await self.control_service.check_completion(job.campaign_id)
            raise
        else:
            result = await self._record_sent(job, delivery, message_id)

        await self.control_service.check_completion(job.campaign_id)
        return result

    async def _unclaimed(self, job: DeliveryJob) -> DispatchResult:
        """Explain why the conditional claim matched nothing"""
        delivery = await self.repository.get_delivery(job.delivery_id)
        if delivery is None:
            logger.warning(f"Delivery {job.delivery_id} no longer exists, skipping job")
            return self._result(job, DispatchOutcome.SKIPPED)

        if delivery.status == DeliveryStatus.QUEUED and delivery.attempts == job.attempt:
            # Row is claimable, so the campaign stopped being runnable after the gate read
            self.control_cache.invalidate(job.campaign_id)
            state = await self.control_cache.get(job.campaign_id)
            outcome = (
                DispatchOutcome.DEFERRED
                if state is not None and state.status == ControlStatus.PAUSED
                else DispatchOutcome.STOPPED
            )
            return self._result(job, outcome, attempts=delivery.attempts)

        if delivery.status == DeliveryStatus.QUEUED:
            # Requeued since this job was issued; a newer job owns the row
            return self._result(job, DispatchOutcome.DUPLICATE, attempts=delivery.attempts)

        if delivery.status == DeliveryStatus.SENDING and delivery.attempts == job.attempt + 1:
            # This job's own claim; its worker died or lost the result
            return await self._check_send_lease(job, delivery)

        logger.debug(
            f"Delivery {job.delivery_id} already {delivery.status.value}, ignoring redelivered job"
        )
        outcome = (
            DispatchOutcome.DUPLICATE
            if delivery.status in (DeliveryStatus.SENDING,) + DeliveryPolicy.SENT_OR_LATER
            else DispatchOutcome.SKIPPED
        )
        return self._result(job, outcome, attempts=delivery.attempts)

    async def _check_send_lease(self, job: DeliveryJob, delivery: Delivery) -> DispatchResult:
        """Reclaim a SENDING row whose lease has run out, otherwise back off"""
        claimed_at = delivery.last_attempt_at or delivery.updated_at
        held = (utcnow() - claimed_at).total_seconds()
        remaining = self.config.send_lease_seconds - held
        if remaining > 0:
            logger.debug(f"Delivery {job.delivery_id} still sending, lease expires in {remaining:.0f}s")
            return self._result(
                job, DispatchOutcome.IN_FLIGHT, attempts=delivery.attempts,
                retry_delay_seconds=max(remaining, 1.0),
            )

        logger.warning(
            f"Delivery {job.delivery_id} held SENDING for {held:.0f}s, reclaiming attempt {delivery.attempts}"
        )
        result = await self._record_failure(job, delivery, "Send lease expired")
        await self.control_service.check_completion(job.campaign_id)
        return result

    async def _mark_sending(self, campaign_id: str) -> None:
        updated = await self.repository.update_campaign_status(
            campaign_id, CampaignStatus.SENDING, expected=[CampaignStatus.QUEUED]
        )
        if updated:
            self.control_cache.put(updated)
            logger.info(f"Campaign sending: {campaign_id}")

    async def _record_sent(
        self, job: DeliveryJob, delivery: Delivery, message_id: Optional[str]
    ) -> DispatchResult:
        now = utcnow()
        updated = await self.repository.update_delivery_status(
            delivery.delivery_id,
            DeliveryStatus.SENT,
            expected=[DeliveryStatus.SENDING],
            sent_at=now,
            last_attempt_at=now,
            last_error=None,
        )
        if updated is None:
            logger.warning(
                f"Delivery {delivery.delivery_id} was reclaimed before attempt {delivery.attempts} was recorded as sent"
            )
        logger.info(f"Delivery sent: {delivery.delivery_id} attempt={delivery.attempts}")
        await self.event_publisher.publish_delivery_sent(
            delivery.campaign_id,
            delivery.delivery_id,
            delivery.recipient_id,
            delivery.attempts,
            provider_message_id=message_id,
        )
        return self._result(job, DispatchOutcome.SENT, attempts=delivery.attempts)

    async def _record_failure(self, job: DeliveryJob, delivery: Delivery, error: str) -> DispatchResult:
        failed = await self.repository.update_delivery_status(
            delivery.delivery_id,
            DeliveryStatus.FAILED,
            expected=[DeliveryStatus.SENDING],
            last_error=error,
            last_attempt_at=utcnow(),
        )
        if failed is None:
            # Lease already reclaimed; the reclaiming job owns the retry
            return self._result(job, DispatchOutcome.DUPLICATE, attempts=delivery.attempts, error=error)

        logger.warning(
            f"Delivery failed: {delivery.delivery_id} attempt={delivery.attempts} error={error}"
        )
        await self.event_publisher.publish_delivery_failed(
            delivery.campaign_id,
            delivery.delivery_id,
            delivery.recipient_id,
            delivery.attempts,
            error,
        )

        delay = None
        if self.policy.is_retry_eligible(failed):
            delay = await self._schedule_retry(delivery)
        return self._result(
            job, DispatchOutcome.FAILED, attempts=delivery.attempts, error=error,
            retry_delay_seconds=delay,
        )

    async def _schedule_retry(self, delivery: Delivery) -> Optional[float]:
        """FAILED -> QUEUED with a backoff-delayed job, unless the campaign has ended"""
        campaign = await self.repository.get_campaign(delivery.campaign_id)
        if campaign is None or DeliveryPolicy.is_terminal(campaign.status):
            return None

        requeued = await self.repository.update_delivery_status(
            delivery.delivery_id, DeliveryStatus.QUEUED, expected=[DeliveryStatus.FAILED]
        )
        if requeued is None:
            return None

        delay = self.retry_delay_seconds(requeued.attempts)
        await self.job_queue.enqueue(
            DeliveryJob(
                delivery_id=requeued.delivery_id,
                campaign_id=requeued.campaign_id,
                recipient_id=requeued.recipient_id,
                recipient_email=requeued.recipient_email,
                attempt=requeued.attempts,
                priority=RETRY_PRIORITY,
                delay_seconds=delay,
                batch_id=uuid.uuid4().hex[:12],
            )
        )
        logger.info(f"Delivery {requeued.delivery_id} requeued, retry in {delay:.0f}s")
        return delay

    # ====================
    # Engagement Signals
    # ====================

    async def record_delivery_event(self, delivery_id: str, status: DeliveryStatus) -> Delivery:
        """
        Apply a provider engagement signal (delivered, opened, clicked, bounced,
        complained) to a sent delivery.

        Raises:
            DeliveryNotFoundError: unknown delivery
            InvalidTransitionError: signal not allowed from the current status
        """
        delivery = await self.repository.get_delivery(delivery_id)
        if not delivery:
            raise DeliveryNotFoundError(f"Delivery {delivery_id} not found")
        if delivery.status == status:
            return delivery
        if (
            status not in DeliveryPolicy.ENGAGEMENT_STATUSES
            or not DeliveryPolicy.can_transition_delivery(delivery.status, status)
        ):
            raise InvalidTransitionError(
                f"Cannot record {status.value} for delivery in {delivery.status.value} status",
                delivery.status,
            )

        updated = await self.repository.update_delivery_status(
            delivery_id, status, expected=[delivery.status]
        )
        if updated is None:
            current = await self.repository.get_delivery(delivery_id)
            raise InvalidTransitionError(
                f"Delivery {delivery_id} changed while recording {status.value}",
                current.status if current else None,
            )
        logger.info(f"Delivery {delivery_id}: {delivery.status.value} -> {status.value}")
        return updated


__all__ = ["DeliveryDispatcher", "substitute_variables", "PLACEHOLDER_PATTERN"]
