"""
Campaign Delivery Service Main Application

FastAPI application for campaign delivery control.
Port: 8250
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Query, Depends, Request, status
from fastapi.responses import JSONResponse

from core.config import get_settings
from core.logging_setup import setup_logging

from .delivery_control_service import error_code_for
from .factory import DeliveryServiceFactory
from .models import (
    CampaignSnapshot,
    CampaignStats,
    CancelRequest,
    CancelResult,
    ControlState,
    DeadLetterPage,
    DeadLetterRequest,
    DeadLetterResult,
    Delivery,
    DeliveryStatus,
    EmergencyStopRequest,
    EmergencyStopResult,
    ErrorCode,
    HealthResponse,
    LivenessResponse,
    PauseRequest,
    PauseResult,
    QueueResult,
    ReadinessResponse,
    ResumeResult,
    RetryRequest,
    RetryResult,
    SchedulerStatus,
    SnapshotResult,
    SnapshotStats,
    VerificationResult,
)
from .protocols import (
    CampaignNotFoundError,
    DeliveryNotFoundError,
    InvalidTransitionError,
    SnapshotIntegrityError,
    SnapshotNotFoundError,
    TemplateUnresolvedError,
)

logger = logging.getLogger(__name__)

# Service configuration
settings = get_settings()
SERVICE_NAME = settings.service_name
SERVICE_PORT = settings.service_port
SERVICE_VERSION = "1.0.0"

# Track startup time for uptime calculation
startup_time = time.time()

# Global factory instance
factory: Optional[DeliveryServiceFactory] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    global factory

    setup_logging(settings.logging)
    logger.info(f"Starting {SERVICE_NAME} on port {SERVICE_PORT}")

    factory = DeliveryServiceFactory(settings)
    await factory.initialize()
    factory.scheduler.start()
    factory.worker.start()

    yield

    # Cleanup
    logger.info(f"Shutting down {SERVICE_NAME}")
    await factory.close()
    factory = None


# Create FastAPI application
app = FastAPI(
    title="Campaign Delivery Service",
    description="Delivery control for newsletter campaigns: snapshots, pause/resume/cancel, retries and dead-lettering",
    version=SERVICE_VERSION,
    lifespan=lifespan,
)


# ====================
# Exception Handlers
# ====================


@app.exception_handler(CampaignNotFoundError)
async def campaign_not_found_handler(request: Request, exc: CampaignNotFoundError):
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content={"detail": str(exc), "error_code": ErrorCode.CAMPAIGN_NOT_FOUND.value},
    )


@app.exception_handler(DeliveryNotFoundError)
async def delivery_not_found_handler(request: Request, exc: DeliveryNotFoundError):
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content={"detail": str(exc), "error_code": ErrorCode.DELIVERY_NOT_FOUND.value},
    )


@app.exception_handler(SnapshotNotFoundError)
async def snapshot_not_found_handler(request: Request, exc: SnapshotNotFoundError):
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content={"detail": str(exc), "error_code": ErrorCode.SNAPSHOT_NOT_FOUND.value},
    )


@app.exception_handler(InvalidTransitionError)
async def invalid_transition_handler(request: Request, exc: InvalidTransitionError):
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={"detail": str(exc), "error_code": error_code_for(exc).value},
    )


@app.exception_handler(SnapshotIntegrityError)
async def snapshot_integrity_handler(request: Request, exc: SnapshotIntegrityError):
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": str(exc), "error_code": ErrorCode.SNAPSHOT_INTEGRITY.value},
    )


@app.exception_handler(TemplateUnresolvedError)
async def template_unresolved_handler(request: Request, exc: TemplateUnresolvedError):
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": str(exc), "error_code": ErrorCode.TEMPLATE_UNRESOLVED.value},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled exception on {request.url.path}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": str(exc), "type": type(exc).__name__},
    )


# ====================
# Dependencies
# ====================


def get_factory() -> DeliveryServiceFactory:
    if not factory:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service not initialized",
        )
    return factory


def get_service(deps: DeliveryServiceFactory = Depends(get_factory)):
    """Get delivery control service from factory"""
    return deps.service


def get_auth_context(request: Request) -> dict:
    """Extract auth context from request headers"""
    return {
        "user_id": request.headers.get("X-User-ID", "system"),
        "role": request.headers.get("X-User-Role", "user"),
    }


# ====================
# Health Endpoints
# ====================


@app.get("/api/v1/campaign-delivery/health")
@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check():
    """Health check endpoint"""
    dependencies = {}

    if factory:
        try:
            db_healthy = await factory.repository.health_check()
            dependencies["postgres"] = "healthy" if db_healthy else "unhealthy"
        except Exception:
            dependencies["postgres"] = "unhealthy"

        if factory.nats_client:
            dependencies["nats"] = "healthy" if factory.nats_client.is_connected else "unhealthy"
        else:
            dependencies["nats"] = "not_configured"

    return HealthResponse(
        status="healthy",
        service=SERVICE_NAME,
        port=SERVICE_PORT,
        version=SERVICE_VERSION,
        dependencies=dependencies,
    )


@app.get("/health/ready", response_model=ReadinessResponse, tags=["Health"])
async def readiness_check():
    """Readiness check endpoint"""
    checks = {}
    details = {}

    if factory:
        try:
            db_healthy = await factory.repository.health_check()
            checks["database"] = db_healthy
            details["database"] = "Connected" if db_healthy else "Connection failed"
        except Exception as e:
            checks["database"] = False
            details["database"] = str(e)

        # The job queue lives on NATS, so it is required here
        connected = bool(factory.nats_client and factory.nats_client.is_connected)
        checks["nats"] = connected
        details["nats"] = "Connected" if connected else "Disconnected"
    else:
        checks["factory"] = False
        details["factory"] = "Factory not initialized"

    ready = all(checks.get(k, False) for k in ["database", "nats"])

    return ReadinessResponse(
        ready=ready,
        checks=checks,
        details=details,
    )


@app.get("/health/live", response_model=LivenessResponse, tags=["Health"])
async def liveness_check():
    """Liveness check endpoint"""
    return LivenessResponse(
        alive=True,
        uptime_seconds=time.time() - startup_time,
    )


# ====================
# Campaign Control Endpoints
# ====================


@app.post(
    "/api/v1/campaign-delivery/campaigns/{campaign_id}/queue",
    response_model=QueueResult,
    tags=["Campaign Control"],
)
async def queue_campaign(campaign_id: str, service=Depends(get_service)):
    """Populate the delivery ledger and start sending"""
    return await service.queue_campaign(campaign_id)


@app.post(
    "/api/v1/campaign-delivery/campaigns/{campaign_id}/pause",
    response_model=PauseResult,
    tags=["Campaign Control"],
)
async def pause_campaign(
    campaign_id: str,
    request: Optional[PauseRequest] = None,
    service=Depends(get_service),
    auth: dict = Depends(get_auth_context),
):
    """
    Pause a queued or sending campaign.

    Jobs that reach a worker while paused are deferred; deliveries stay QUEUED.
    """
    request = request or PauseRequest()
    return await service.pause(campaign_id, reason=request.reason, actor=auth["user_id"])


@app.post(
    "/api/v1/campaign-delivery/campaigns/{campaign_id}/resume",
    response_model=ResumeResult,
    tags=["Campaign Control"],
)
async def resume_campaign(
    campaign_id: str,
    service=Depends(get_service),
    auth: dict = Depends(get_auth_context),
):
    """Resume a paused campaign, or complete it if nothing is pending"""
    return await service.resume(campaign_id, actor=auth["user_id"])


@app.post(
    "/api/v1/campaign-delivery/campaigns/{campaign_id}/cancel",
    response_model=CancelResult,
    tags=["Campaign Control"],
)
async def cancel_campaign(
    campaign_id: str,
    request: Optional[CancelRequest] = None,
    service=Depends(get_service),
    auth: dict = Depends(get_auth_context),
):
    """Cancel a campaign and every delivery not yet handed to the provider"""
    request = request or CancelRequest()
    return await service.cancel(campaign_id, reason=request.reason, actor=auth["user_id"])


@app.post(
    "/api/v1/campaign-delivery/emergency-stop",
    response_model=EmergencyStopResult,
    tags=["Campaign Control"],
)
async def emergency_stop(
    request: Optional[EmergencyStopRequest] = None,
    service=Depends(get_service),
    auth: dict = Depends(get_auth_context),
):
    """Pause every active campaign"""
    request = request or EmergencyStopRequest()
    return await service.emergency_stop_all(reason=request.reason, actor=auth["user_id"])


@app.get(
    "/api/v1/campaign-delivery/campaigns/{campaign_id}/control",
    response_model=ControlState,
    tags=["Campaign Control"],
)
async def get_control_status(campaign_id: str, service=Depends(get_service)):
    state = await service.get_control_status(campaign_id)
    if state is None:
        raise CampaignNotFoundError(f"Campaign {campaign_id} not found")
    return state


@app.get(
    "/api/v1/campaign-delivery/control",
    response_model=List[ControlState],
    tags=["Campaign Control"],
)
async def get_all_control_states(service=Depends(get_service)):
    return await service.get_all_control_states()


@app.get(
    "/api/v1/campaign-delivery/campaigns/{campaign_id}/statistics",
    response_model=CampaignStats,
    tags=["Campaign Control"],
)
async def get_campaign_statistics(campaign_id: str, service=Depends(get_service)):
    """Delivery counts by status"""
    return await service.get_campaign_statistics(campaign_id)


# ====================
# Retry / Dead-letter Endpoints
# ====================


@app.post(
    "/api/v1/campaign-delivery/campaigns/{campaign_id}/retry",
    response_model=RetryResult,
    tags=["Retry"],
)
async def retry_failed_deliveries(
    campaign_id: str,
    request: Optional[RetryRequest] = None,
    service=Depends(get_service),
):
    """Requeue failed deliveries still under the retry budget"""
    request = request or RetryRequest()
    return await service.retry_failed_deliveries(campaign_id, max_retries=request.max_retries)


@app.post(
    "/api/v1/campaign-delivery/campaigns/{campaign_id}/dead-letter",
    response_model=DeadLetterResult,
    tags=["Retry"],
)
async def move_to_dead_letter_queue(
    campaign_id: str,
    request: Optional[DeadLetterRequest] = None,
    service=Depends(get_service),
):
    """Mark failed deliveries over the attempt budget as dead-lettered"""
    request = request or DeadLetterRequest()
    return await service.move_to_dead_letter_queue(campaign_id, max_attempts=request.max_attempts)


@app.get(
    "/api/v1/campaign-delivery/dead-letter",
    response_model=DeadLetterPage,
    tags=["Retry"],
)
async def list_dead_letter_deliveries(
    campaign_id: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=500),
    max_attempts: Optional[int] = Query(None, ge=1),
    service=Depends(get_service),
):
    return await service.list_dead_letter_deliveries(
        campaign_id=campaign_id, page=page, limit=limit, max_attempts=max_attempts
    )


# ====================
# Delivery Event Endpoints
# ====================


@app.post(
    "/api/v1/campaign-delivery/deliveries/{delivery_id}/events/{event_status}",
    response_model=Delivery,
    tags=["Deliveries"],
)
async def record_delivery_event(
    delivery_id: str,
    event_status: DeliveryStatus,
    deps: DeliveryServiceFactory = Depends(get_factory),
):
    """Apply a provider signal (delivered, opened, clicked, bounced, complained)"""
    return await deps.dispatcher.record_delivery_event(delivery_id, event_status)


# ====================
# Snapshot Endpoints
# ====================


@app.post(
    "/api/v1/campaign-delivery/campaigns/{campaign_id}/snapshot",
    response_model=SnapshotResult,
    tags=["Snapshots"],
)
async def create_snapshot(campaign_id: str, service=Depends(get_service)):
    """Compile and freeze the campaign content"""
    return await service.create_snapshot(campaign_id)


@app.get(
    "/api/v1/campaign-delivery/campaigns/{campaign_id}/snapshot",
    response_model=CampaignSnapshot,
    tags=["Snapshots"],
)
async def get_snapshot(campaign_id: str, service=Depends(get_service)):
    snapshot = await service.get_snapshot(campaign_id)
    if snapshot is None:
        raise SnapshotNotFoundError(f"No snapshot for campaign {campaign_id}")
    return snapshot


@app.get(
    "/api/v1/campaign-delivery/campaigns/{campaign_id}/snapshot/verify",
    response_model=VerificationResult,
    tags=["Snapshots"],
)
async def verify_snapshot(campaign_id: str, service=Depends(get_service)):
    valid = await service.verify_snapshot(campaign_id)
    return VerificationResult(
        success=True,
        message="Snapshot integrity verified" if valid else "Snapshot missing or corrupt",
        campaign_id=campaign_id,
        valid=valid,
    )


@app.get(
    "/api/v1/campaign-delivery/snapshots/stats",
    response_model=SnapshotStats,
    tags=["Snapshots"],
)
async def get_snapshot_stats(service=Depends(get_service)):
    return await service.snapshot_builder.get_snapshot_stats()


# ====================
# Scheduler Endpoints
# ====================


@app.get(
    "/api/v1/campaign-delivery/scheduler",
    response_model=SchedulerStatus,
    tags=["Scheduler"],
)
async def get_scheduler_status(deps: DeliveryServiceFactory = Depends(get_factory)):
    return deps.scheduler.get_status()


@app.post(
    "/api/v1/campaign-delivery/scheduler/run",
    response_model=SchedulerStatus,
    tags=["Scheduler"],
)
async def run_scheduler(deps: DeliveryServiceFactory = Depends(get_factory)):
    """Queue due scheduled campaigns now"""
    return await deps.scheduler.process_scheduled_campaigns()


# ====================
# Main Entry Point
# ====================


def main():
    """Run the service"""
    import uvicorn

    uvicorn.run(
        "microservices.campaign_delivery_service.main:app",
        host="0.0.0.0",
        port=SERVICE_PORT,
        log_level=settings.logging.log_level.lower(),
    )


if __name__ == "__main__":
    main()
