#!/usr/bin/env python3
"""Campaign delivery engine configuration

Retry budgets, control-state cache TTL, backoff bounds and the site
identity embedded in frozen snapshots. Combines the infrastructure and
logging sub-configs into one service settings object.
"""
import os
from dataclasses import dataclass, field

from .infra_config import InfraConfig
from .logging_config import LoggingConfig


def _bool(val: str) -> bool:
    return val.lower() == "true"

def _int(val: str, default: int) -> int:
    try:
        return int(val) if val else default
    except ValueError:
        return default

def _float(val: str, default: float) -> float:
    try:
        return float(val) if val else default
    except ValueError:
        return default


@dataclass
class DeliveryConfig:
    """Delivery control defaults"""
    max_retries: int = 3
    max_attempts: int = 3
    control_state_ttl_seconds: float = 2.0
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 300.0
    block_on_integrity_failure: bool = True
    # A SENDING row older than this is treated as abandoned by its worker
    send_lease_seconds: float = 300.0

    # Site identity baked into snapshots
    site_name: str = "Newsletter"
    site_url: str = "http://localhost:3000"

    # Collaborating services
    content_service_url: str = "http://localhost:8260"
    notification_service_url: str = "http://localhost:8270"
    http_timeout_seconds: float = 30.0

    # Job queue (JetStream work queue)
    jobs_stream: str = "campaign-delivery-jobs"
    jobs_subject: str = "campaign_delivery.jobs"
    worker_batch_size: int = 10

    @classmethod
    def from_env(cls) -> 'DeliveryConfig':
        return cls(
            max_retries=_int(os.getenv("DELIVERY_MAX_RETRIES", "3"), 3),
            max_attempts=_int(os.getenv("DELIVERY_MAX_ATTEMPTS", "3"), 3),
            control_state_ttl_seconds=_float(os.getenv("CONTROL_STATE_TTL_SECONDS", "2.0"), 2.0),
            retry_base_delay_seconds=_float(os.getenv("RETRY_BASE_DELAY_SECONDS", "1"), 1.0),
            retry_max_delay_seconds=_float(os.getenv("RETRY_MAX_DELAY_SECONDS", "300"), 300.0),
            block_on_integrity_failure=_bool(os.getenv("BLOCK_ON_INTEGRITY_FAILURE", "true")),
            send_lease_seconds=_float(os.getenv("DELIVERY_SEND_LEASE_SECONDS", "300"), 300.0),
            site_name=os.getenv("SITE_NAME", "Newsletter"),
            site_url=os.getenv("SITE_URL", "http://localhost:3000"),
            content_service_url=os.getenv("CONTENT_SERVICE_URL", "http://localhost:8260"),
            notification_service_url=os.getenv("NOTIFICATION_SERVICE_URL", "http://localhost:8270"),
            http_timeout_seconds=_float(os.getenv("HTTP_TIMEOUT_SECONDS", "30"), 30.0),
            jobs_stream=os.getenv("DELIVERY_JOBS_STREAM", "campaign-delivery-jobs"),
            jobs_subject=os.getenv("DELIVERY_JOBS_SUBJECT", "campaign_delivery.jobs"),
            worker_batch_size=_int(os.getenv("DELIVERY_WORKER_BATCH_SIZE", "10"), 10),
        )


@dataclass
class DeliveryServiceConfig:
    """Main configuration for the campaign delivery service"""
    service_name: str = "campaign_delivery_service"
    service_port: int = 8250
    debug: bool = False

    infra: InfraConfig = field(default_factory=InfraConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    delivery: DeliveryConfig = field(default_factory=DeliveryConfig)

    @classmethod
    def from_env(cls) -> 'DeliveryServiceConfig':
        """Load all configuration from environment variables"""
        return cls(
            service_name=os.getenv("SERVICE_NAME", "campaign_delivery_service"),
            service_port=_int(os.getenv("SERVICE_PORT", "8250"), 8250),
            debug=_bool(os.getenv("DEBUG", "false")),
            infra=InfraConfig.from_env(),
            logging=LoggingConfig.from_env(),
            delivery=DeliveryConfig.from_env(),
        )
