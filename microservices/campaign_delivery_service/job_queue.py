"""
Delivery Job Queue

At-least-once job queue on NATS JetStream, plus the worker loop that feeds
jobs to the dispatcher. Priorities map to separate subjects; the worker
always drains priority 1 before looking at priority 2.
"""

import asyncio
import logging
from typing import Dict, List, Optional

from nats.errors import TimeoutError as NATSTimeoutError
from nats.js.api import RetentionPolicy

from core.nats_client import NATSEventBus

from .delivery_dispatcher import DeliveryDispatcher
from .delivery_policy import FRESH_PRIORITY, RETRY_PRIORITY
from .models import DeliveryJob, DispatchOutcome
from .protocols import CampaignDeliveryError, DuplicateJobError

logger = logging.getLogger(__name__)


class NATSJobQueue:
    """JetStream work-queue stream holding DeliveryJob messages"""

    PRIORITIES = (FRESH_PRIORITY, RETRY_PRIORITY)

    def __init__(
        self,
        event_bus: NATSEventBus,
        stream_name: str = "campaign-delivery-jobs",
        subject: str = "campaign_delivery.jobs",
    ):
        self.event_bus = event_bus
        self.stream_name = stream_name
        self.subject = subject

    def subject_for(self, priority: int) -> str:
        return f"{self.subject}.p{min(max(priority, FRESH_PRIORITY), RETRY_PRIORITY)}"

    async def ensure_stream(self) -> None:
        await self.event_bus.ensure_stream(
            self.stream_name,
            [f"{self.subject}.>"],
            retention=RetentionPolicy.WORK_QUEUE,
        )

    @staticmethod
    def message_id(job: DeliveryJob) -> str:
        """Dedup key: one message per row, attempt, priority and enqueue batch"""
        msg_id = f"{job.delivery_id}:{job.attempt}:{job.priority}"
        return f"{msg_id}:{job.batch_id}" if job.batch_id else msg_id

    async def enqueue(self, job: DeliveryJob) -> str:
        await self.ensure_stream()
        msg_id = self.message_id(job)
        ack = await self.event_bus.jetstream.publish(
            self.subject_for(job.priority),
            job.model_dump_json().encode(),
            headers={"Nats-Msg-Id": msg_id},
        )
        if ack.duplicate:
            logger.error(f"Job {msg_id} dropped by JetStream as a duplicate")
            raise DuplicateJobError(f"Job {msg_id} already enqueued", job_id=msg_id)
        return f"{ack.stream}:{ack.seq}"


class DeliveryWorker:
    """Pulls jobs off the queue and hands them to the dispatcher"""

    def __init__(
        self,
        queue: NATSJobQueue,
        dispatcher: DeliveryDispatcher,
        batch_size: int = 10,
        durable_prefix: str = "campaign_delivery_worker",
        idle_timeout: float = 5.0,
    ):
        self.queue = queue
        self.dispatcher = dispatcher
        self.batch_size = batch_size
        self.durable_prefix = durable_prefix
        self.idle_timeout = idle_timeout
        self._subscriptions: Dict[int, object] = {}
        self._task: Optional[asyncio.Task] = None

    async def _subscribe(self) -> None:
        await self.queue.ensure_stream()
        js = self.queue.event_bus.jetstream
        for priority in NATSJobQueue.PRIORITIES:
            if priority not in self._subscriptions:
                self._subscriptions[priority] = await js.pull_subscribe(
                    self.queue.subject_for(priority),
                    durable=f"{self.durable_prefix}_p{priority}",
                    stream=self.queue.stream_name,
                )

    async def _fetch(self) -> List:
        for priority in NATSJobQueue.PRIORITIES:
            try:
                msgs = await self._subscriptions[priority].fetch(self.batch_size, timeout=self.idle_timeout)
            except NATSTimeoutError:
                continue
            if msgs:
                return msgs
        return []

    async def _handle(self, msg) -> None:
        job = DeliveryJob.model_validate_json(msg.data)

        # First delivery of a delayed retry: park it for the backoff period
        if job.delay_seconds and msg.metadata.num_delivered == 1:
            await msg.nak(delay=job.delay_seconds)
            return

        try:
            result = await self.dispatcher.process_job(job)
        except CampaignDeliveryError as e:
            logger.error(f"Dropping job for delivery {job.delivery_id}: {e}")
            await msg.term()
            return
        except Exception:
            logger.exception(f"Job for delivery {job.delivery_id} failed, will be redelivered")
            await msg.nak(delay=self.dispatcher.retry_delay_seconds(msg.metadata.num_delivered))
            return

        if result.outcome == DispatchOutcome.IN_FLIGHT:
            # Another attempt holds the send lease; look again once it expires
            await msg.nak(delay=result.retry_delay_seconds)
            return

        # Deferred jobs are dropped too; resume enqueues every QUEUED row again
        await msg.ack()
        if result.outcome not in (DispatchOutcome.SENT, DispatchOutcome.DEFERRED):
            logger.debug(f"Job {job.delivery_id}: {result.outcome.value}")

    async def run_once(self) -> int:
        """Process one batch; returns how many jobs were handled"""
        await self._subscribe()
        msgs = await self._fetch()
        for msg in msgs:
            await self._handle(msg)
        return len(msgs)

    async def _run_loop(self) -> None:
        while True:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Delivery worker batch failed")
                await asyncio.sleep(self.idle_timeout)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run_loop())
            logger.info("Delivery worker started")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("Delivery worker stopped")


__all__ = ["NATSJobQueue", "DeliveryWorker"]
