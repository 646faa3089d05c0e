"""
Statistics Aggregator

Per-campaign delivery counts and the natural-completion decision.
"""

import logging
from typing import Optional

from .delivery_policy import DeliveryPolicy
from .models import CampaignStats, DeliveryStatus
from .protocols import DeliveryRepositoryProtocol

logger = logging.getLogger(__name__)


class StatisticsAggregator:
    """Reads grouped counts from the ledger"""

    def __init__(self, repository: DeliveryRepositoryProtocol, policy: Optional[DeliveryPolicy] = None):
        self.repository = repository
        self.policy = policy or DeliveryPolicy()

    async def get_campaign_statistics(self, campaign_id: str) -> CampaignStats:
        """Counts by delivery status; all zeros for a campaign with no rows"""
        counts = await self.repository.count_deliveries_by_status(campaign_id)
        stats = CampaignStats(campaign_id=campaign_id)

        for status in DeliveryStatus:
            setattr(stats, status.value, counts.get(status, 0))
        stats.total = sum(counts.values())

        if stats.failed:
            stats.dead_lettered = await self.repository.count_deliveries(
                self.policy.dead_letter_filter(campaign_id)
            )
            stats.retryable = await self.repository.count_deliveries(
                self.policy.retry_filter(campaign_id)
            )
        return stats

    async def count_pending(self, campaign_id: str, max_retries: Optional[int] = None) -> int:
        """QUEUED rows plus FAILED rows still under the retry budget"""
        queued = await self.repository.count_deliveries(self.policy.queued_filter(campaign_id))
        retryable = await self.repository.count_deliveries(
            self.policy.retry_filter(campaign_id, max_retries)
        )
        return queued + retryable


__all__ = ["StatisticsAggregator"]
