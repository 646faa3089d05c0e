"""
Component Tests for Retry, Dead-letter and Statistics

Retry eligibility and dead-letter thresholds applied through the control
service, the dead-letter listing, and per-campaign counts.
"""

import pytest

from microservices.campaign_delivery_service.delivery_policy import DEAD_LETTER_MESSAGE, RETRY_PRIORITY
from tests.contracts.campaign_delivery.data_contract import (
    CampaignStatus,
    DeliveryStatus,
    ErrorCode,
)


def add_rows(repository, factory, campaign_id, status, attempts_list, **fields):
    rows = []
    for attempts in attempts_list:
        row = factory.make_delivery(campaign_id, status=status, attempts=attempts, **fields)
        repository.deliveries[row.delivery_id] = row
        rows.append(row)
    return rows


class TestRetryFailedDeliveries:

    @pytest.mark.asyncio
    async def test_requeues_rows_under_budget(
        self, control_service, save_campaign, mock_repository, mock_job_queue, factory, mock_event_bus
    ):
        campaign = await save_campaign(status=CampaignStatus.SENDING)
        eligible = add_rows(
            mock_repository, factory, campaign.campaign_id, DeliveryStatus.FAILED, [1, 2], last_error="timeout"
        )
        exhausted = add_rows(mock_repository, factory, campaign.campaign_id, DeliveryStatus.FAILED, [3])
        add_rows(mock_repository, factory, campaign.campaign_id, DeliveryStatus.SENT, [1])

        result = await control_service.retry_failed_deliveries(campaign.campaign_id)

        assert result.success is True
        assert result.retried_count == 2
        for row in eligible:
            stored = mock_repository.deliveries[row.delivery_id]
            assert stored.status == DeliveryStatus.QUEUED
            assert stored.last_error is None
            assert stored.attempts == row.attempts
        assert mock_repository.deliveries[exhausted[0].delivery_id].status == DeliveryStatus.FAILED

        jobs = mock_job_queue.jobs_for(campaign.campaign_id)
        assert {j.delivery_id for j in jobs} == {r.delivery_id for r in eligible}
        assert {j.priority for j in jobs} == {RETRY_PRIORITY}
        assert sorted(j.attempt for j in jobs) == [1, 2]
        mock_event_bus.assert_event_published(
            "campaign.deliveries.retried", {"campaign_id": campaign.campaign_id, "count": 2}
        )

    @pytest.mark.asyncio
    async def test_explicit_threshold(self, control_service, save_campaign, mock_repository, factory):
        campaign = await save_campaign(status=CampaignStatus.SENDING)
        add_rows(mock_repository, factory, campaign.campaign_id, DeliveryStatus.FAILED, [0, 1, 2])

        result = await control_service.retry_failed_deliveries(campaign.campaign_id, max_retries=2)

        assert result.retried_count == 2
        still_failed = mock_repository.deliveries_for(campaign.campaign_id, DeliveryStatus.FAILED)
        assert [r.attempts for r in still_failed] == [2]

    @pytest.mark.asyncio
    async def test_nothing_eligible(self, control_service, save_campaign, mock_repository, mock_job_queue, factory):
        campaign = await save_campaign(status=CampaignStatus.SENDING)
        add_rows(mock_repository, factory, campaign.campaign_id, DeliveryStatus.FAILED, [3, 4])

        result = await control_service.retry_failed_deliveries(campaign.campaign_id)

        assert result.success is True
        assert result.retried_count == 0
        assert result.message == "No failed deliveries eligible for retry"
        assert mock_job_queue.jobs == []

    @pytest.mark.asyncio
    async def test_paused_campaign_rows_are_requeued(self, control_service, save_campaign, mock_repository, factory):
        campaign = await save_campaign(status=CampaignStatus.PAUSED)
        add_rows(mock_repository, factory, campaign.campaign_id, DeliveryStatus.FAILED, [1])

        result = await control_service.retry_failed_deliveries(campaign.campaign_id)

        assert result.success is True
        assert result.retried_count == 1
        assert result.campaign_status == CampaignStatus.PAUSED

    @pytest.mark.asyncio
    async def test_completed_campaign_rejected(self, control_service, save_campaign, mock_repository, factory):
        campaign = await save_campaign(status=CampaignStatus.COMPLETED)
        rows = add_rows(mock_repository, factory, campaign.campaign_id, DeliveryStatus.FAILED, [1])

        result = await control_service.retry_failed_deliveries(campaign.campaign_id)

        assert result.success is False
        assert result.error_code == ErrorCode.ALREADY_TERMINAL
        assert result.message == (
            "Retry is disabled for completed campaigns; "
            "failed deliveries of a finished campaign can only be moved to the dead letter queue"
        )
        assert mock_repository.deliveries[rows[0].delivery_id].status == DeliveryStatus.FAILED

    @pytest.mark.asyncio
    async def test_missing_campaign(self, control_service):
        result = await control_service.retry_failed_deliveries("cmp_missing")

        assert result.success is False
        assert result.error_code == ErrorCode.CAMPAIGN_NOT_FOUND


class TestDeadLetter:

    @pytest.mark.asyncio
    async def test_marks_exhausted_rows(self, control_service, save_campaign, mock_repository, factory, mock_event_bus):
        campaign = await save_campaign(status=CampaignStatus.SENDING)
        exhausted = add_rows(mock_repository, factory, campaign.campaign_id, DeliveryStatus.FAILED, [3, 5])
        retryable = add_rows(mock_repository, factory, campaign.campaign_id, DeliveryStatus.FAILED, [1])

        result = await control_service.move_to_dead_letter_queue(campaign.campaign_id)

        assert result.success is True
        assert result.moved_count == 2
        for row in exhausted:
            stored = mock_repository.deliveries[row.delivery_id]
            assert stored.status == DeliveryStatus.FAILED
            assert stored.last_error == DEAD_LETTER_MESSAGE
        assert mock_repository.deliveries[retryable[0].delivery_id].last_error is None
        mock_event_bus.assert_event_published(
            "campaign.deliveries.dead_lettered", {"campaign_id": campaign.campaign_id, "count": 2}
        )

    @pytest.mark.asyncio
    async def test_dead_lettered_rows_stay_out_of_retry(
        self, control_service, save_campaign, mock_repository, factory
    ):
        campaign = await save_campaign(status=CampaignStatus.SENDING)
        add_rows(mock_repository, factory, campaign.campaign_id, DeliveryStatus.FAILED, [1, 3])
        await control_service.move_to_dead_letter_queue(campaign.campaign_id)

        result = await control_service.retry_failed_deliveries(campaign.campaign_id)

        assert result.retried_count == 1
        remaining = mock_repository.deliveries_for(campaign.campaign_id, DeliveryStatus.FAILED)
        assert len(remaining) == 1
        assert remaining[0].last_error == DEAD_LETTER_MESSAGE

    @pytest.mark.asyncio
    async def test_works_on_finished_campaigns(self, control_service, save_campaign, mock_repository, factory):
        campaign = await save_campaign(status=CampaignStatus.COMPLETED)
        add_rows(mock_repository, factory, campaign.campaign_id, DeliveryStatus.FAILED, [4])

        result = await control_service.move_to_dead_letter_queue(campaign.campaign_id, max_attempts=4)

        assert result.success is True
        assert result.moved_count == 1

    @pytest.mark.asyncio
    async def test_nothing_to_move(self, control_service, save_campaign, mock_event_bus):
        campaign = await save_campaign(status=CampaignStatus.SENDING)

        result = await control_service.move_to_dead_letter_queue(campaign.campaign_id)

        assert result.success is True
        assert result.moved_count == 0
        mock_event_bus.assert_no_events_published("campaign.deliveries.dead_lettered")

    @pytest.mark.asyncio
    async def test_missing_campaign(self, control_service):
        result = await control_service.move_to_dead_letter_queue("cmp_missing")

        assert result.success is False
        assert result.error_code == ErrorCode.CAMPAIGN_NOT_FOUND


class TestDeadLetterListing:

    @pytest.mark.asyncio
    async def test_filters_by_campaign(self, control_service, mock_repository, factory):
        first, second = factory.make_campaign_id(), factory.make_campaign_id()
        add_rows(mock_repository, factory, first, DeliveryStatus.FAILED, [3, 3])
        add_rows(mock_repository, factory, second, DeliveryStatus.FAILED, [4])
        add_rows(mock_repository, factory, first, DeliveryStatus.FAILED, [1])

        everything = await control_service.list_dead_letter_deliveries()
        only_first = await control_service.list_dead_letter_deliveries(campaign_id=first)

        assert everything.total == 3
        assert only_first.total == 2
        assert all(d.campaign_id == first for d in only_first.items)

    @pytest.mark.asyncio
    async def test_pagination(self, control_service, mock_repository, factory):
        campaign_id = factory.make_campaign_id()
        add_rows(mock_repository, factory, campaign_id, DeliveryStatus.FAILED, [3] * 5)

        first = await control_service.list_dead_letter_deliveries(page=1, limit=2)
        third = await control_service.list_dead_letter_deliveries(page=3, limit=2)

        assert first.total == 5
        assert first.pages == 3
        assert len(first.items) == 2
        assert len(third.items) == 1
        assert first.items[0].delivery_id != third.items[0].delivery_id

    @pytest.mark.asyncio
    async def test_bounds_are_clamped(self, control_service):
        listing = await control_service.list_dead_letter_deliveries(page=0, limit=5000)

        assert listing.page == 1
        assert listing.limit == 500
        assert listing.items == []

    @pytest.mark.asyncio
    async def test_threshold_override(self, control_service, mock_repository, factory):
        campaign_id = factory.make_campaign_id()
        add_rows(mock_repository, factory, campaign_id, DeliveryStatus.FAILED, [2, 3, 5])

        listing = await control_service.list_dead_letter_deliveries(max_attempts=5)

        assert listing.total == 1
        assert listing.items[0].attempts == 5


class TestCampaignStatistics:

    @pytest.mark.asyncio
    async def test_counts_by_status(self, control_service, save_campaign, mock_repository, factory):
        campaign = await save_campaign(status=CampaignStatus.SENDING)
        cid = campaign.campaign_id
        add_rows(mock_repository, factory, cid, DeliveryStatus.QUEUED, [0, 0])
        add_rows(mock_repository, factory, cid, DeliveryStatus.SENDING, [1])
        add_rows(mock_repository, factory, cid, DeliveryStatus.SENT, [1, 1, 2])
        add_rows(mock_repository, factory, cid, DeliveryStatus.OPENED, [1])
        add_rows(mock_repository, factory, cid, DeliveryStatus.FAILED, [1, 3])

        stats = await control_service.get_campaign_statistics(cid)

        assert stats.total == 9
        assert stats.queued == 2
        assert stats.sending == 1
        assert stats.sent == 3
        assert stats.opened == 1
        assert stats.failed == 2
        assert stats.retryable == 1
        assert stats.dead_lettered == 1
        assert stats.pending == 3
        assert stats.in_flight == 1

    @pytest.mark.asyncio
    async def test_unknown_campaign_is_all_zero(self, control_service):
        stats = await control_service.get_campaign_statistics("cmp_empty")

        assert stats.total == 0
        assert stats.pending == 0
        assert stats.failed == 0
