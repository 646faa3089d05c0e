"""
Component Test Fixtures for Campaign Delivery Service

In-memory implementations of the repository and every collaborator, wired
into the real snapshot builder, control service, dispatcher and scheduler.
"""

import copy
import os
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../.."))

from core.config.delivery_config import DeliveryConfig
from microservices.campaign_delivery_service.delivery_control_service import DeliveryControlService
from microservices.campaign_delivery_service.delivery_dispatcher import DeliveryDispatcher
from microservices.campaign_delivery_service.events.publishers import DeliveryEventPublisher
from microservices.campaign_delivery_service.models import (
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
from microservices.campaign_delivery_service.scheduler import CampaignScheduler
from microservices.campaign_delivery_service.snapshot_builder import SnapshotBuilder
from tests.contracts.campaign_delivery.data_contract import DeliveryTestDataFactory


# ====================
# Mock Repository
# ====================


class MockDeliveryRepository:
    """In-memory ledger with the same conditional-update semantics as PostgreSQL"""

    CAMPAIGN_FIELDS = {
        "paused_at", "paused_by", "pause_reason",
        "resumed_at", "resumed_by",
        "cancelled_at", "cancelled_by", "cancelled_reason",
        "completed_at",
    }
    DELIVERY_FIELDS = {"status", "last_error", "last_attempt_at", "sent_at"}

    def __init__(self):
        self.campaigns: Dict[str, Campaign] = {}
        self.deliveries: Dict[str, Delivery] = {}
        self.snapshots: Dict[str, CampaignSnapshot] = {}
        self.status_update_errors: Dict[str, Exception] = {}
        self.rollbacks = 0
        self._tx_depth = 0

    async def initialize(self):
        pass

    async def close(self):
        pass

    async def health_check(self) -> bool:
        return True

    @asynccontextmanager
    async def transaction(self):
        """Restores every table if the outermost block raises"""
        if self._tx_depth:
            self._tx_depth += 1
            try:
                yield
            finally:
                self._tx_depth -= 1
            return

        saved = (dict(self.campaigns), dict(self.deliveries), dict(self.snapshots))
        self._tx_depth = 1
        try:
            yield
        except BaseException:
            self.campaigns, self.deliveries, self.snapshots = saved
            self.rollbacks += 1
            raise
        finally:
            self._tx_depth = 0

    # Campaigns
    async def save_campaign(self, campaign: Campaign) -> Campaign:
        self.campaigns[campaign.campaign_id] = campaign
        return campaign

    async def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        return self.campaigns.get(campaign_id)

    async def list_campaigns(
        self,
        statuses: Optional[List[CampaignStatus]] = None,
        scheduled_before: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[Campaign]:
        results = list(self.campaigns.values())
        if statuses:
            results = [c for c in results if c.status in statuses]
        if scheduled_before is not None:
            results = [
                c for c in results
                if c.scheduled_at is not None and c.scheduled_at <= scheduled_before
            ]
        return results[:limit]

    async def update_campaign_status(
        self,
        campaign_id: str,
        status: CampaignStatus,
        expected: Optional[Sequence[CampaignStatus]] = None,
        **fields: Any,
    ) -> Optional[Campaign]:
        unknown = set(fields) - self.CAMPAIGN_FIELDS
        if unknown:
            raise ValueError(f"Unsupported campaign fields: {sorted(unknown)}")
        if campaign_id in self.status_update_errors:
            raise self.status_update_errors[campaign_id]

        campaign = self.campaigns.get(campaign_id)
        if campaign is None or (expected is not None and campaign.status not in expected):
            return None

        updated = campaign.model_copy(
            update={"status": status, "updated_at": datetime.now(timezone.utc), **fields}
        )
        self.campaigns[campaign_id] = updated
        return updated

    # Deliveries
    async def get_delivery(self, delivery_id: str) -> Optional[Delivery]:
        return self.deliveries.get(delivery_id)

    async def create_deliveries(self, deliveries: List[Delivery]) -> List[Delivery]:
        existing_keys = {d.idempotency_key for d in self.deliveries.values()}
        created = []
        for delivery in deliveries:
            if delivery.idempotency_key in existing_keys or delivery.delivery_id in self.deliveries:
                continue
            self.deliveries[delivery.delivery_id] = delivery
            existing_keys.add(delivery.idempotency_key)
            created.append(delivery)
        return created

    def _matching(self, delivery_filter: DeliveryFilter) -> List[Delivery]:
        return [d for d in self.deliveries.values() if delivery_filter.matches(d)]

    async def list_deliveries(
        self, delivery_filter: DeliveryFilter, limit: int = 50, offset: int = 0
    ) -> Tuple[List[Delivery], int]:
        rows = sorted(self._matching(delivery_filter), key=lambda d: d.delivery_id)
        return rows[offset:offset + limit], len(rows)

    async def count_deliveries(self, delivery_filter: DeliveryFilter) -> int:
        return len(self._matching(delivery_filter))

    async def count_deliveries_by_status(self, campaign_id: str) -> Dict[DeliveryStatus, int]:
        counts: Dict[DeliveryStatus, int] = {}
        for delivery in self.deliveries.values():
            if delivery.campaign_id == campaign_id:
                counts[delivery.status] = counts.get(delivery.status, 0) + 1
        return counts

    async def update_deliveries(
        self, delivery_filter: DeliveryFilter, updates: Dict[str, Any]
    ) -> List[Delivery]:
        unknown = set(updates) - self.DELIVERY_FIELDS
        if unknown:
            raise ValueError(f"Unsupported delivery fields: {sorted(unknown)}")

        now = datetime.now(timezone.utc)
        updated = []
        for delivery in self._matching(delivery_filter):
            row = delivery.model_copy(update={**updates, "updated_at": now})
            self.deliveries[row.delivery_id] = row
            updated.append(row)
        return updated

    async def claim_delivery(
        self,
        delivery_id: str,
        expected_attempts: int,
        runnable_statuses: Sequence[CampaignStatus],
    ) -> Optional[Delivery]:
        delivery = self.deliveries.get(delivery_id)
        if (
            delivery is None
            or delivery.status != DeliveryStatus.QUEUED
            or delivery.attempts != expected_attempts
        ):
            return None
        campaign = self.campaigns.get(delivery.campaign_id)
        if campaign is None or campaign.status not in runnable_statuses:
            return None

        now = datetime.now(timezone.utc)
        claimed = delivery.model_copy(update={
            "status": DeliveryStatus.SENDING,
            "attempts": delivery.attempts + 1,
            "last_attempt_at": now,
            "updated_at": now,
        })
        self.deliveries[delivery_id] = claimed
        return claimed

    async def update_delivery_status(
        self,
        delivery_id: str,
        status: DeliveryStatus,
        expected: Optional[Sequence[DeliveryStatus]] = None,
        **fields: Any,
    ) -> Optional[Delivery]:
        delivery_filter = DeliveryFilter(
            delivery_ids=[delivery_id],
            statuses=list(expected) if expected else [],
        )
        rows = await self.update_deliveries(delivery_filter, {"status": status, **fields})
        return rows[0] if rows else None

    # Snapshots
    async def get_snapshot(self, campaign_id: str) -> Optional[CampaignSnapshot]:
        return self.snapshots.get(campaign_id)

    async def upsert_snapshot(self, snapshot: CampaignSnapshot) -> CampaignSnapshot:
        previous = self.snapshots.get(snapshot.campaign_id)
        version = previous.template_version + 1 if previous else 1
        stored = snapshot.model_copy(update={"template_version": version})
        self.snapshots[snapshot.campaign_id] = stored
        return stored

    async def delete_snapshot(self, campaign_id: str) -> bool:
        return self.snapshots.pop(campaign_id, None) is not None

    async def get_snapshot_stats(self, since: datetime) -> SnapshotStats:
        by_template: Dict[Optional[str], int] = {}
        for snapshot in self.snapshots.values():
            by_template[snapshot.template_id] = by_template.get(snapshot.template_id, 0) + 1
        return SnapshotStats(
            total=len(self.snapshots),
            recent=sum(1 for s in self.snapshots.values() if s.generated_at >= since),
            by_template=[{"template_id": k, "count": v} for k, v in by_template.items()],
        )

    # Test helpers
    def deliveries_for(self, campaign_id: str, status: Optional[DeliveryStatus] = None) -> List[Delivery]:
        return [
            d for d in self.deliveries.values()
            if d.campaign_id == campaign_id and (status is None or d.status == status)
        ]

    def corrupt_snapshot(self, campaign_id: str) -> None:
        snapshot = self.snapshots[campaign_id]
        self.snapshots[campaign_id] = snapshot.model_copy(
            update={"html_content": snapshot.html_content + "<!-- tampered -->"}
        )


# ====================
# Mock Collaborators
# ====================


class MockJobQueue:
    """Records enqueued jobs instead of publishing them"""

    def __init__(self):
        self.jobs: List[DeliveryJob] = []

    async def enqueue(self, job: DeliveryJob) -> str:
        self.jobs.append(job)
        return f"job-{len(self.jobs)}"

    def jobs_for(self, campaign_id: str) -> List[DeliveryJob]:
        return [j for j in self.jobs if j.campaign_id == campaign_id]

    def clear(self):
        self.jobs.clear()


class MockTemplateCompiler:
    """Returns the configured template; edit ``template`` to simulate a live change"""

    def __init__(self, template: Optional[CompiledTemplate] = None):
        self.template = template or DeliveryTestDataFactory.make_compiled_template()
        self.calls: List[Tuple[str, Dict[str, Any]]] = []

    async def compile(self, template_id: str, variables: Dict[str, Any]) -> CompiledTemplate:
        self.calls.append((template_id, copy.deepcopy(variables)))
        return self.template


class MockContentSource:
    def __init__(self, article_ids: Optional[List[str]] = None):
        self.article_ids = article_ids if article_ids is not None else ["art_featured", "art_2", "art_3"]

    async def current_article_set(self) -> List[str]:
        return list(self.article_ids)


class MockRecipientSource:
    def __init__(self, recipients: Optional[List[Recipient]] = None, segments: int = 1):
        self.recipients = recipients if recipients is not None else DeliveryTestDataFactory.make_recipients(3)
        self.segments = segments

    async def active_recipients(self) -> List[Recipient]:
        return list(self.recipients)

    async def segment_count(self) -> int:
        return self.segments


class MockEmailSender:
    """Captures sends; addresses in ``fail_for`` raise"""

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []
        self.fail_for: Dict[str, Exception] = {}
        self.before_send = None

    async def send(
        self,
        recipient_email: str,
        subject: str,
        html: str,
        text: str,
        headers: Optional[Dict[str, str]] = None,
    ) -> Optional[str]:
        if self.before_send is not None:
            await self.before_send(recipient_email)
        if recipient_email in self.fail_for:
            raise self.fail_for[recipient_email]
        self.sent.append({
            "to": recipient_email,
            "subject": subject,
            "html": html,
            "text": text,
            "headers": headers or {},
        })
        return f"msg_{len(self.sent)}"

    def sent_to(self, email: str) -> List[Dict[str, Any]]:
        return [s for s in self.sent if s["to"] == email]


# ====================
# Fixtures
# ====================


@pytest.fixture
def factory():
    """Provide test data factory"""
    return DeliveryTestDataFactory()


@pytest.fixture
def mock_repository():
    return MockDeliveryRepository()


@pytest.fixture
def mock_job_queue():
    return MockJobQueue()


@pytest.fixture
def template_compiler():
    return MockTemplateCompiler()


@pytest.fixture
def content_source():
    return MockContentSource()


@pytest.fixture
def recipient_source():
    return MockRecipientSource()


@pytest.fixture
def email_sender():
    return MockEmailSender()


@pytest.fixture
def event_publisher(mock_event_bus):
    return DeliveryEventPublisher(mock_event_bus)


@pytest.fixture
def delivery_config():
    return DeliveryConfig(
        max_retries=3,
        max_attempts=3,
        retry_base_delay_seconds=1.0,
        retry_max_delay_seconds=300.0,
        block_on_integrity_failure=True,
        site_url="https://news.example.com",
    )


@pytest.fixture
def snapshot_builder(mock_repository, template_compiler, content_source, recipient_source, event_publisher):
    return SnapshotBuilder(
        repository=mock_repository,
        template_compiler=template_compiler,
        content_source=content_source,
        recipient_source=recipient_source,
        event_publisher=event_publisher,
        site_name="Test News",
        site_url="https://news.example.com",
    )


@pytest.fixture
def control_service(
    mock_repository, snapshot_builder, mock_job_queue, recipient_source, event_publisher, delivery_config
):
    return DeliveryControlService(
        repository=mock_repository,
        snapshot_builder=snapshot_builder,
        job_queue=mock_job_queue,
        recipient_source=recipient_source,
        event_publisher=event_publisher,
        config=delivery_config,
    )


@pytest.fixture
def dispatcher(mock_repository, control_service, snapshot_builder, email_sender, mock_job_queue):
    return DeliveryDispatcher(
        repository=mock_repository,
        control_service=control_service,
        snapshot_builder=snapshot_builder,
        email_sender=email_sender,
        job_queue=mock_job_queue,
    )


@pytest.fixture
def scheduler(mock_repository, control_service):
    return CampaignScheduler(mock_repository, control_service)


@pytest.fixture
def save_campaign(mock_repository):
    """Store a campaign built by the factory and return it"""

    async def _save(**kwargs) -> Campaign:
        campaign = DeliveryTestDataFactory.make_campaign(**kwargs)
        return await mock_repository.save_campaign(campaign)

    return _save


@pytest.fixture
def queued_campaign(mock_repository, control_service, save_campaign):
    """A campaign queued through the control service: snapshot taken, three QUEUED rows"""

    async def _make(**kwargs) -> Campaign:
        campaign = await save_campaign(**kwargs)
        result = await control_service.queue_campaign(campaign.campaign_id)
        assert result.success, result.message
        return await mock_repository.get_campaign(campaign.campaign_id)

    return _make
