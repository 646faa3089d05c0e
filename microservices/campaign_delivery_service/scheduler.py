"""
Campaign Scheduler

Periodic sweep that queues DRAFT campaigns whose scheduled time has passed.
Runs on a 5-minute grid; a sweep never overlaps a sweep already in progress.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from .delivery_control_service import DeliveryControlService
from .models import Campaign, CampaignStatus, SchedulerStatus
from .protocols import DeliveryRepositoryProtocol

logger = logging.getLogger(__name__)

SCHEDULER_INTERVAL_MINUTES = 5


def next_scheduled_run(now: Optional[datetime] = None) -> datetime:
    """Next 5-minute boundary strictly after ``now``"""
    now = now or datetime.now(timezone.utc)
    base = now.replace(second=0, microsecond=0)
    minutes_past = base.minute % SCHEDULER_INTERVAL_MINUTES
    next_run = base + timedelta(minutes=SCHEDULER_INTERVAL_MINUTES - minutes_past)
    return next_run


class CampaignScheduler:
    """Queues due scheduled campaigns through the control service"""

    def __init__(
        self,
        repository: DeliveryRepositoryProtocol,
        control_service: DeliveryControlService,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.repository = repository
        self.control_service = control_service
        self._clock = clock
        self._status = SchedulerStatus(next_run=next_scheduled_run(clock()))
        self._task: Optional[asyncio.Task] = None

    def get_status(self) -> SchedulerStatus:
        return self._status.model_copy(deep=True)

    async def get_due_campaigns(self) -> List[Campaign]:
        return await self.repository.list_campaigns(
            statuses=[CampaignStatus.DRAFT],
            scheduled_before=self._clock(),
        )

    async def process_scheduled_campaigns(self) -> SchedulerStatus:
        """
        Queue every due campaign.

        A campaign that fails to queue is logged and recorded in the status
        errors; the sweep moves on to the next one.
        """
        if self._status.is_running:
            logger.warning("Campaign scheduler is already running, skipping...")
            return self.get_status()

        self._status.is_running = True
        self._status.last_run = self._clock()
        self._status.errors = []
        try:
            campaigns = await self.get_due_campaigns()
            self._status.scheduled_campaigns = len(campaigns)

            if not campaigns:
                logger.info("No scheduled campaigns to process")

            for campaign in campaigns:
                try:
                    result = await self.control_service.queue_campaign(campaign.campaign_id)
                except Exception as e:
                    logger.exception(f"Failed to queue scheduled campaign: {campaign.title}")
                    self._status.errors.append(f"{campaign.campaign_id}: {e}")
                    continue

                if result.success:
                    logger.info(
                        f"Queued scheduled campaign: {campaign.title} "
                        f"({result.queued_deliveries} deliveries)"
                    )
                else:
                    logger.error(f"Scheduled campaign {campaign.campaign_id} not queued: {result.message}")
                    self._status.errors.append(f"{campaign.campaign_id}: {result.message}")

            logger.info("Finished processing scheduled campaigns")
        except Exception as e:
            logger.error(f"Campaign scheduler failed: {e}")
            self._status.errors.append(str(e))
            raise
        finally:
            self._status.is_running = False
            self._status.next_run = next_scheduled_run(self._clock())

        return self.get_status()

    # ====================
    # Background Loop
    # ====================

    async def _run_loop(self) -> None:
        while True:
            delay = (self._status.next_run - self._clock()).total_seconds()
            await asyncio.sleep(max(delay, 0))
            try:
                await self.process_scheduled_campaigns()
            except Exception as e:
                logger.warning(f"Scheduled sweep failed, retrying at {self._status.next_run.isoformat()}: {e}")

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run_loop())
            logger.info(f"Campaign scheduler started, next run {self._status.next_run.isoformat()}")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("Campaign scheduler stopped")


__all__ = ["CampaignScheduler", "next_scheduled_run"]
