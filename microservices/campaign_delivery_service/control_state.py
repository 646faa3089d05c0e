"""
Control State

Dispatch gate signal for each campaign, derived from the persisted campaign
row and served through a short-TTL read-through cache.
"""

import logging
import time
from typing import Callable, Dict, List, Optional, Tuple

from .models import Campaign, CampaignStatus, ControlState, ControlStatus
from .protocols import DeliveryRepositoryProtocol

logger = logging.getLogger(__name__)


_STATUS_MAP = {
    CampaignStatus.DRAFT: ControlStatus.PAUSED,
    CampaignStatus.QUEUED: ControlStatus.RUNNING,
    CampaignStatus.SENDING: ControlStatus.RUNNING,
    CampaignStatus.PAUSED: ControlStatus.PAUSED,
    CampaignStatus.COMPLETED: ControlStatus.COMPLETED,
    CampaignStatus.CANCELLED: ControlStatus.CANCELLED,
}


def control_state_from_campaign(campaign: Campaign) -> ControlState:
    """Map a campaign row onto its control signal"""
    status = _STATUS_MAP[campaign.status]

    reason = None
    actor = None
    if campaign.status == CampaignStatus.PAUSED:
        reason, actor = campaign.pause_reason, campaign.paused_by
    elif campaign.status == CampaignStatus.CANCELLED:
        reason, actor = campaign.cancelled_reason, campaign.cancelled_by
    elif campaign.resumed_at is not None:
        actor = campaign.resumed_by

    return ControlState(
        campaign_id=campaign.campaign_id,
        status=status,
        campaign_status=campaign.status,
        paused_at=campaign.paused_at,
        resumed_at=campaign.resumed_at,
        cancelled_at=campaign.cancelled_at,
        completed_at=campaign.completed_at,
        reason=reason,
        actor=actor,
    )


class ControlStateCache:
    """
    Read-through cache over campaign rows.

    Entries expire after ``ttl_seconds``; writers call ``invalidate`` after
    persisting a control change so this process sees it immediately. Other
    processes see it within the TTL, and the conditional delivery claim in
    the store closes the remaining window.
    """

    def __init__(
        self,
        repository: DeliveryRepositoryProtocol,
        ttl_seconds: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.repository = repository
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[float, ControlState]] = {}

    async def get(self, campaign_id: str) -> Optional[ControlState]:
        cached = self._entries.get(campaign_id)
        now = self._clock()
        if cached and now - cached[0] < self.ttl_seconds:
            return cached[1]

        campaign = await self.repository.get_campaign(campaign_id)
        if not campaign:
            self._entries.pop(campaign_id, None)
            return None

        state = control_state_from_campaign(campaign)
        self._entries[campaign_id] = (now, state)
        return state

    def put(self, campaign: Campaign) -> ControlState:
        """Prime the cache with a freshly written row"""
        state = control_state_from_campaign(campaign)
        self._entries[campaign.campaign_id] = (self._clock(), state)
        return state

    def invalidate(self, campaign_id: Optional[str] = None) -> None:
        if campaign_id is None:
            self._entries.clear()
        else:
            self._entries.pop(campaign_id, None)

    async def get_all(self, statuses: Optional[List[CampaignStatus]] = None) -> List[ControlState]:
        """Control state for every campaign, read straight from the store"""
        campaigns = await self.repository.list_campaigns(statuses=statuses, limit=1000)
        return [self.put(c) for c in campaigns]


__all__ = ["ControlStateCache", "control_state_from_campaign"]
