"""
Snapshot Builder

Freezes a campaign's compiled template and article set into an immutable,
hash-verified, versioned snapshot. Dispatch reads the snapshot, never the
live template, so every recipient of a campaign gets identical content.
"""

import asyncio
import hashlib
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from .events.publishers import DeliveryEventPublisher
from .models import CampaignSnapshot, SnapshotMetadata, SnapshotStats
from .protocols import (
    CampaignNotFoundError,
    ContentSourceProtocol,
    DeliveryRepositoryProtocol,
    RecipientSourceProtocol,
    SnapshotIntegrityError,
    SnapshotNotFoundError,
    TemplateCompilerProtocol,
    TemplateUnresolvedError,
)

logger = logging.getLogger(__name__)

# Per-recipient fields, left as literal tokens for the dispatcher to fill
RECIPIENT_PLACEHOLDERS = {
    "subscriber": {
        "name": "{{subscriber.name}}",
        "email": "{{subscriber.email}}",
    },
    "unsubscribe_url": "{{campaign.unsubscribe_url}}",
}


def compute_content_hash(html: str, text: str, subject: str) -> str:
    """SHA-256 hex digest over html + text + subject"""
    return hashlib.sha256((html + text + subject).encode("utf-8")).hexdigest()


class SnapshotBuilder:
    """Creates, verifies and manages campaign content snapshots"""

    def __init__(
        self,
        repository: DeliveryRepositoryProtocol,
        template_compiler: TemplateCompilerProtocol,
        content_source: ContentSourceProtocol,
        recipient_source: Optional[RecipientSourceProtocol] = None,
        event_publisher: Optional[DeliveryEventPublisher] = None,
        site_name: str = "Newsletter",
        site_url: str = "http://localhost:3000",
    ):
        self.repository = repository
        self.template_compiler = template_compiler
        self.content_source = content_source
        self.recipient_source = recipient_source
        self.event_publisher = event_publisher or DeliveryEventPublisher()
        self.site_name = site_name
        self.site_url = site_url
        # campaign_id -> (lock, waiters); dropped when the last waiter leaves
        self._locks: Dict[str, Tuple[asyncio.Lock, int]] = {}

    @asynccontextmanager
    async def _campaign_lock(self, campaign_id: str):
        lock, users = self._locks.get(campaign_id) or (asyncio.Lock(), 0)
        self._locks[campaign_id] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._locks[campaign_id]
            if users == 1:
                del self._locks[campaign_id]
            else:
                self._locks[campaign_id] = (lock, users - 1)

    def _template_variables(self, subject: str, article_ids: List[str]) -> Dict[str, Any]:
        now = datetime.now(timezone.utc)
        return {
            "subscriber": dict(RECIPIENT_PLACEHOLDERS["subscriber"]),
            "articles": list(article_ids),
            "site": {
                "name": self.site_name,
                "url": self.site_url,
                "logo": f"{self.site_url}/og-default.svg",
            },
            "campaign": {
                "subject": subject,
                "date": now.date().isoformat(),
                "unsubscribe_url": RECIPIENT_PLACEHOLDERS["unsubscribe_url"],
            },
        }

    async def _audience_metadata(self) -> SnapshotMetadata:
        if self.recipient_source is None:
            return SnapshotMetadata()
        recipients = await self.recipient_source.active_recipients()
        segments = await self.recipient_source.segment_count()
        return SnapshotMetadata(recipient_count=len(recipients), segment_count=segments)

    # ====================
    # Operations
    # ====================

    async def create_snapshot(self, campaign_id: str) -> CampaignSnapshot:
        """
        Compile and store a fresh snapshot for a campaign.

        Creation is serialized per campaign. The store assigns template_version
        on upsert: previous + 1, or 1 for the first snapshot.

        Raises:
            CampaignNotFoundError: campaign does not exist
            TemplateUnresolvedError: campaign has no template bound
        """
        async with self._campaign_lock(campaign_id):
            campaign = await self.repository.get_campaign(campaign_id)
            if not campaign:
                raise CampaignNotFoundError(f"Campaign {campaign_id} not found")
            if not campaign.template_id:
                raise TemplateUnresolvedError(f"Campaign {campaign_id} has no template")

            article_ids = await self.content_source.current_article_set()
            compiled = await self.template_compiler.compile(
                campaign.template_id,
                self._template_variables(campaign.subject, article_ids),
            )
            content_hash = compute_content_hash(compiled.html, compiled.text, compiled.subject)

            snapshot = CampaignSnapshot(
                campaign_id=campaign_id,
                subject=compiled.subject,
                html_content=compiled.html,
                text_content=compiled.text,
                preheader=compiled.preheader,
                template_id=campaign.template_id,
                article_ids=article_ids,
                content_hash=content_hash,
                metadata=await self._audience_metadata(),
            )
            stored = await self.repository.upsert_snapshot(snapshot)

        logger.info(
            f"Campaign snapshot created: {campaign_id} v{stored.template_version} "
            f"hash={stored.content_hash} articles={len(stored.article_ids)}"
        )
        await self.event_publisher.publish_snapshot_created(
            campaign_id=campaign_id,
            template_id=stored.template_id,
            template_version=stored.template_version,
            content_hash=stored.content_hash,
            article_count=len(stored.article_ids),
        )
        return stored

    async def get_snapshot(self, campaign_id: str) -> Optional[CampaignSnapshot]:
        return await self.repository.get_snapshot(campaign_id)

    async def verify_snapshot(self, campaign_id: str) -> bool:
        """Recompute the content hash; False on mismatch or missing snapshot"""
        snapshot = await self.repository.get_snapshot(campaign_id)
        if not snapshot:
            return False

        calculated = compute_content_hash(
            snapshot.html_content, snapshot.text_content, snapshot.subject
        )
        if calculated != snapshot.content_hash:
            logger.warning(
                f"Campaign snapshot integrity check failed: {campaign_id} "
                f"expected={snapshot.content_hash} calculated={calculated}"
            )
            return False
        return True

    async def load_verified_snapshot(self, campaign_id: str) -> CampaignSnapshot:
        """
        Load a snapshot for sending.

        Raises:
            SnapshotNotFoundError: no snapshot stored
            SnapshotIntegrityError: stored content no longer matches its hash
        """
        snapshot = await self.repository.get_snapshot(campaign_id)
        if not snapshot:
            raise SnapshotNotFoundError(f"No snapshot for campaign {campaign_id}")

        calculated = compute_content_hash(
            snapshot.html_content, snapshot.text_content, snapshot.subject
        )
        if calculated != snapshot.content_hash:
            logger.warning(
                f"Refusing corrupt snapshot for {campaign_id}: "
                f"expected={snapshot.content_hash} calculated={calculated}"
            )
            raise SnapshotIntegrityError(
                f"Snapshot for campaign {campaign_id} failed integrity check",
                expected_hash=snapshot.content_hash,
                calculated_hash=calculated,
            )
        return snapshot

    async def delete_snapshot(self, campaign_id: str) -> bool:
        deleted = await self.repository.delete_snapshot(campaign_id)
        if deleted:
            logger.info(f"Campaign snapshot deleted: {campaign_id}")
        return deleted

    async def get_snapshot_stats(self) -> SnapshotStats:
        """Totals, snapshots generated in the last 24 hours, counts per template"""
        since = datetime.now(timezone.utc) - timedelta(hours=24)
        return await self.repository.get_snapshot_stats(since)


__all__ = ["SnapshotBuilder", "compute_content_hash", "RECIPIENT_PLACEHOLDERS"]
