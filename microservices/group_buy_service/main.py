"""
Group-Buy Service Main Application

FastAPI application for the group-buy marketplace: campaigns, pledges,
payment collection and fulfillment tracking. The scheduled jobs run in the
background of this process.
Port: 8260
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse

from core.config import get_settings, setup_logging

from .factory import GroupBuyServiceFactory
from .models import (
    Campaign,
    CampaignBracketsRequest,
    CampaignCancelRequest,
    CampaignCreateRequest,
    CampaignPricing,
    CampaignStatus,
    CampaignUpdateRequest,
    DeliveryUpdateRequest,
    DiscountBracket,
    Fulfillment,
    HealthResponse,
    JobRunResult,
    LivenessResponse,
    PaymentIntent,
    Pledge,
    PledgeActionRequest,
    PledgeCreateRequest,
    PledgeUpdateRequest,
    ReadinessResponse,
)
from .protocols import (
    GroupBuyServiceError,
    InvalidStateTransitionError,
    NotFoundError,
    PaymentInProgressError,
    ValidationError,
)

logger = logging.getLogger(__name__)

settings = get_settings()

SERVICE_NAME = settings.service_name
SERVICE_PORT = settings.default_port
SERVICE_VERSION = "1.0.0"

# Track startup time for uptime calculation
startup_time = time.time()

# Global factory instance
factory: Optional[GroupBuyServiceFactory] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    global factory

    setup_logging(settings.logging)
    logger.info(f"Starting {SERVICE_NAME} on port {SERVICE_PORT}")

    factory = GroupBuyServiceFactory(settings)
    await factory.initialize()

    if settings.scheduler.enabled:
        await factory.scheduler.start()
    else:
        logger.info("Job scheduler disabled")

    yield

    logger.info(f"Shutting down {SERVICE_NAME}")
    await factory.close()


app = FastAPI(
    title="Group-Buy Service",
    description="B2B group-buying campaigns with quantity-tiered pricing",
    version=SERVICE_VERSION,
    lifespan=lifespan,
)


# ====================
# Exception Handlers
# ====================


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content={"detail": str(exc)},
    )


@app.exception_handler(InvalidStateTransitionError)
async def invalid_transition_handler(request: Request, exc: InvalidStateTransitionError):
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={
            "detail": str(exc),
            "current_state": exc.current_state.value,
            "attempted_target": exc.attempted_target.value,
        },
    )


@app.exception_handler(PaymentInProgressError)
async def payment_in_progress_handler(request: Request, exc: PaymentInProgressError):
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={"detail": str(exc)},
    )


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": str(exc), "field": exc.field},
    )


@app.exception_handler(GroupBuyServiceError)
async def service_error_handler(request: Request, exc: GroupBuyServiceError):
    logger.error(f"Unhandled service error: {exc}")
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": str(exc)},
    )


# ====================
# Dependencies
# ====================


def get_factory() -> GroupBuyServiceFactory:
    """Get the initialized service factory"""
    if not factory:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service not initialized",
        )
    return factory


def get_lifecycle(f: GroupBuyServiceFactory = Depends(get_factory)):
    return f.lifecycle


def get_pledge_service(f: GroupBuyServiceFactory = Depends(get_factory)):
    return f.pledge_service


def get_payment_engine(f: GroupBuyServiceFactory = Depends(get_factory)):
    return f.payment_engine


def get_user_id(request: Request) -> str:
    """Extract the calling user from the gateway-supplied header"""
    return request.headers.get("X-User-ID", "system")


# ====================
# Health Endpoints
# ====================


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

        dependencies["scheduler"] = "running" if factory.scheduler.is_running else "stopped"

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

        if factory.nats_client:
            checks["nats"] = factory.nats_client.is_connected
            details["nats"] = "Connected" if factory.nats_client.is_connected else "Disconnected"
        else:
            checks["nats"] = True  # Optional
            details["nats"] = "Not configured (optional)"
    else:
        checks["factory"] = False
        details["factory"] = "Factory not initialized"

    ready = all(checks.get(k, False) for k in ["database"])

    return ReadinessResponse(ready=ready, checks=checks, details=details)


@app.get("/health/live", response_model=LivenessResponse, tags=["Health"])
async def liveness_check():
    """Liveness check endpoint"""
    return LivenessResponse(alive=True, uptime_seconds=time.time() - startup_time)


# ====================
# Campaign Endpoints
# ====================


@app.post(
    "/api/v1/group-buy/campaigns",
    response_model=Campaign,
    status_code=status.HTTP_201_CREATED,
    tags=["Campaigns"],
)
async def create_campaign(
    request: CampaignCreateRequest,
    lifecycle=Depends(get_lifecycle),
    user_id: str = Depends(get_user_id),
):
    """Create a DRAFT campaign with its discount brackets"""
    return await lifecycle.create_campaign(owner_id=user_id, request=request)


@app.get("/api/v1/group-buy/campaigns", response_model=List[Campaign], tags=["Campaigns"])
async def list_campaigns(
    owner_id: Optional[str] = None,
    campaign_status: Optional[CampaignStatus] = Query(None, alias="status"),
    lifecycle=Depends(get_lifecycle),
):
    return await lifecycle.list_campaigns(owner_id=owner_id, status=campaign_status)


@app.get("/api/v1/group-buy/campaigns/active", response_model=List[Campaign], tags=["Campaigns"])
async def find_active_campaigns(
    search: Optional[str] = Query(None, max_length=255),
    owner_id: Optional[str] = None,
    lifecycle=Depends(get_lifecycle),
):
    """Campaigns open for pledging or confirmation, optionally matched on title"""
    return await lifecycle.find_active_campaigns(search=search, owner_id=owner_id)


@app.get("/api/v1/group-buy/campaigns/{campaign_id}", response_model=Campaign, tags=["Campaigns"])
async def get_campaign(campaign_id: str, lifecycle=Depends(get_lifecycle)):
    return await lifecycle.get_campaign(campaign_id)


@app.patch("/api/v1/group-buy/campaigns/{campaign_id}", response_model=Campaign, tags=["Campaigns"])
async def update_campaign(
    campaign_id: str,
    request: CampaignUpdateRequest,
    lifecycle=Depends(get_lifecycle),
    user_id: str = Depends(get_user_id),
):
    """Edit a DRAFT campaign owned by the caller"""
    return await lifecycle.update_campaign(campaign_id, owner_id=user_id, request=request)


@app.put(
    "/api/v1/group-buy/campaigns/{campaign_id}/brackets",
    response_model=List[DiscountBracket],
    tags=["Campaigns"],
)
async def replace_campaign_brackets(
    campaign_id: str,
    request: CampaignBracketsRequest,
    lifecycle=Depends(get_lifecycle),
    user_id: str = Depends(get_user_id),
):
    return await lifecycle.replace_brackets(campaign_id, owner_id=user_id, specs=request.brackets)


@app.delete("/api/v1/group-buy/campaigns/{campaign_id}", tags=["Campaigns"])
async def delete_campaign(
    campaign_id: str,
    lifecycle=Depends(get_lifecycle),
    user_id: str = Depends(get_user_id),
):
    """Delete a DRAFT campaign owned by the caller"""
    await lifecycle.delete_campaign(campaign_id, owner_id=user_id)
    return {"success": True, "message": f"Campaign {campaign_id} deleted"}


@app.get(
    "/api/v1/group-buy/campaigns/{campaign_id}/pricing",
    response_model=CampaignPricing,
    tags=["Campaigns"],
)
async def get_campaign_pricing(campaign_id: str, lifecycle=Depends(get_lifecycle)):
    """Current bracket, next bracket and progress toward the next tier"""
    return await lifecycle.get_pricing(campaign_id)


@app.post(
    "/api/v1/group-buy/campaigns/{campaign_id}/publish",
    response_model=Campaign,
    tags=["Campaign Lifecycle"],
)
async def publish_campaign(campaign_id: str, lifecycle=Depends(get_lifecycle)):
    return await lifecycle.publish(campaign_id)


@app.post(
    "/api/v1/group-buy/campaigns/{campaign_id}/lock",
    response_model=Campaign,
    tags=["Campaign Lifecycle"],
)
async def lock_campaign(campaign_id: str, lifecycle=Depends(get_lifecycle)):
    """Lock an ACTIVE campaign early once the minimum viable quantity is pledged"""
    return await lifecycle.lock_manually(campaign_id)


@app.post(
    "/api/v1/group-buy/campaigns/{campaign_id}/cancel",
    response_model=Campaign,
    tags=["Campaign Lifecycle"],
)
async def cancel_campaign(
    campaign_id: str,
    request: Optional[CampaignCancelRequest] = None,
    lifecycle=Depends(get_lifecycle),
):
    if request and request.reason:
        return await lifecycle.cancel(campaign_id, reason=request.reason)
    return await lifecycle.cancel(campaign_id)


@app.post(
    "/api/v1/group-buy/campaigns/{campaign_id}/complete",
    response_model=Campaign,
    tags=["Campaign Lifecycle"],
)
async def complete_campaign(campaign_id: str, lifecycle=Depends(get_lifecycle)):
    return await lifecycle.complete(campaign_id)


@app.put(
    "/api/v1/group-buy/campaigns/{campaign_id}/fulfillments",
    response_model=Fulfillment,
    tags=["Fulfillment"],
)
async def update_fulfillment(
    campaign_id: str,
    request: DeliveryUpdateRequest,
    lifecycle=Depends(get_lifecycle),
):
    return await lifecycle.record_delivery(campaign_id, request.pledge_id, request.delivery_status)


# ====================
# Pledge Endpoints
# ====================


@app.post(
    "/api/v1/group-buy/campaigns/{campaign_id}/pledges",
    response_model=Pledge,
    status_code=status.HTTP_201_CREATED,
    tags=["Pledges"],
)
async def create_pledge(
    campaign_id: str,
    request: PledgeCreateRequest,
    pledges=Depends(get_pledge_service),
):
    return await pledges.create_pledge(campaign_id, request.buyer_id, request.quantity)


@app.get(
    "/api/v1/group-buy/campaigns/{campaign_id}/pledges",
    response_model=List[Pledge],
    tags=["Pledges"],
)
async def list_pledges(campaign_id: str, f: GroupBuyServiceFactory = Depends(get_factory)):
    await f.lifecycle.get_campaign(campaign_id)
    return await f.repository.list_pledges(campaign_id)


@app.patch("/api/v1/group-buy/pledges/{pledge_id}", response_model=Pledge, tags=["Pledges"])
async def update_pledge(
    pledge_id: str,
    request: PledgeUpdateRequest,
    pledges=Depends(get_pledge_service),
):
    return await pledges.update_pledge(pledge_id, request.buyer_id, request.quantity)


@app.post("/api/v1/group-buy/pledges/{pledge_id}/commit", response_model=Pledge, tags=["Pledges"])
async def commit_pledge(
    pledge_id: str,
    request: PledgeActionRequest,
    pledges=Depends(get_pledge_service),
):
    """Confirm a pledge during the grace period"""
    return await pledges.commit_pledge(pledge_id, request.buyer_id)


@app.post(
    "/api/v1/group-buy/pledges/{pledge_id}/withdraw", response_model=Pledge, tags=["Pledges"]
)
async def withdraw_pledge(
    pledge_id: str,
    request: PledgeActionRequest,
    pledges=Depends(get_pledge_service),
):
    return await pledges.withdraw_pledge(pledge_id, request.buyer_id)


# ====================
# Payment Endpoints
# ====================


@app.get(
    "/api/v1/group-buy/campaigns/{campaign_id}/payments",
    response_model=List[PaymentIntent],
    tags=["Payments"],
)
async def list_payment_intents(campaign_id: str, f: GroupBuyServiceFactory = Depends(get_factory)):
    await f.lifecycle.get_campaign(campaign_id)
    return await f.repository.list_intents(campaign_id)


@app.post(
    "/api/v1/group-buy/payments/{intent_id}/retry",
    response_model=PaymentIntent,
    tags=["Payments"],
)
async def retry_payment(intent_id: str, engine=Depends(get_payment_engine)):
    return await engine.retry_failed_payment(intent_id)


@app.post(
    "/api/v1/group-buy/payments/{intent_id}/collect-manually",
    response_model=PaymentIntent,
    tags=["Payments"],
)
async def collect_payment_manually(intent_id: str, engine=Depends(get_payment_engine)):
    """Record an off-platform collection for an intent the gateway could not charge"""
    return await engine.mark_collected_manually(intent_id)


# ====================
# Job Endpoints
# ====================


@app.post("/api/v1/group-buy/jobs/{job_name}/run", response_model=JobRunResult, tags=["Jobs"])
async def run_job(job_name: str, f: GroupBuyServiceFactory = Depends(get_factory)):
    """Run one scheduled job immediately, outside its interval"""
    job = f.scheduler.get_job(job_name)
    if job is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown job: {job_name}. Available: {', '.join(f.scheduler.job_names)}",
        )
    return await job.run_once()


# ====================
# Main Entry Point
# ====================


def main():
    """Run the service"""
    import uvicorn

    uvicorn.run(
        "microservices.group_buy_service.main:app",
        host=settings.default_host,
        port=SERVICE_PORT,
        reload=settings.debug,
        log_level=settings.logging.log_level.lower(),
    )


if __name__ == "__main__":
    main()
