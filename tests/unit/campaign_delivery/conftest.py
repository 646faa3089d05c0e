"""
Unit Test Fixtures for Campaign Delivery Service

Uses DeliveryTestDataFactory from the data contract.
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../.."))

from microservices.campaign_delivery_service.delivery_policy import DeliveryPolicy
from tests.contracts.campaign_delivery.data_contract import DeliveryTestDataFactory


@pytest.fixture
def factory():
    """Provide test data factory"""
    return DeliveryTestDataFactory()


@pytest.fixture
def policy():
    """Default policy: 3 retries, 3 attempts, 1s base backoff capped at 300s"""
    return DeliveryPolicy(max_retries=3, max_attempts=3, base_delay_seconds=1.0, max_delay_seconds=300.0)


@pytest.fixture
def campaign_id(factory):
    return factory.make_campaign_id()
