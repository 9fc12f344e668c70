"""
Fulfillment Microservice API

Campaign tier fulfillment, spillover resolution, tier settlement and
vendor/store rankings, driven by validation outcome events.
"""

import os
import sys
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Path, Query

# Add parent directory to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../.."))
from core.config import get_settings
from core.logger import setup_service_logger
from core.nats_client import get_event_bus

from . import __version__
from .factory import create_fulfillment_service, create_ranking_service
from .fulfillment_service import FulfillmentService
from .models import (
    BranchRankingsResponse,
    CampaignBoardResponse,
    DisplayedSubmissionsResponse,
    HealthCheckResponse,
    ManagerRankingResponse,
    ObjectiveProgressResponse,
    ProcessSubmissionResponse,
    RankingPage,
    RankingScope,
    RankingScopeKind,
    ReconcileResponse,
    StoreRankingPage,
    ValidationOutcomeRequest,
    VendorPositionResponse,
)
from .protocols import (
    CampaignNotFoundError,
    DuplicateValidatedOrderError,
    InvalidPaginationError,
    InvalidTransitionError,
    ObjectiveNotFoundError,
    ScopeForbiddenError,
    SubmissionNotFoundError,
    TierNotFoundError,
)
from .ranking_service import RankingService

config = get_settings()

# Configure logging
logger = setup_service_logger(config.service_name, level=config.log_level.upper(), config=config.logging)

NOT_FOUND_ERRORS = (
    SubmissionNotFoundError,
    CampaignNotFoundError,
    TierNotFoundError,
    ObjectiveNotFoundError,
)

# Global variables
fulfillment_service: Optional[FulfillmentService] = None
ranking_service: Optional[RankingService] = None
event_bus = None  # NATS event bus
scheduler = None  # APScheduler for the reconciliation sweep
SERVICE_PORT = config.service_port or 8240


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifecycle management"""
    global fulfillment_service, ranking_service, event_bus, scheduler

    try:
        # Initialize NATS JetStream event bus
        if config.infrastructure.nats_enabled:
            try:
                event_bus = await get_event_bus(config.service_name, config=config.infrastructure)
                logger.info("✅ Event bus initialized successfully")
            except Exception as e:
                logger.warning(f"⚠️  Failed to initialize event bus: {e}. Continuing without events.")
                event_bus = None

        fulfillment_service = create_fulfillment_service(config=config, event_bus=event_bus)
        ranking_service = create_ranking_service(config=config)

        await fulfillment_service.repository.initialize()
        await ranking_service.repository.initialize()

        # Subscribe to validation outcomes
        if event_bus:
            try:
                from .events import get_event_handlers

                handler_map = get_event_handlers(fulfillment_service)
                for pattern, handler_func in handler_map.items():
                    await event_bus.subscribe_to_events(
                        pattern=pattern,
                        handler=handler_func,
                        durable=f"fulfillment-{pattern.replace('.', '-').replace('*', 'all')}-consumer",
                    )
                    logger.info(f"✅ Subscribed to {pattern}")
            except Exception as e:
                logger.warning(f"⚠️  Failed to subscribe to events: {e}")

        # Reconciliation sweep for outcomes the event stream missed
        if config.reconcile_enabled:
            try:
                from apscheduler.schedulers.asyncio import AsyncIOScheduler

                scheduler = AsyncIOScheduler()
                scheduler.add_job(
                    fulfillment_service.reconcile,
                    'interval',
                    minutes=config.reconcile_interval_minutes,
                    id='fulfillment_reconcile_job',
                    replace_existing=True,
                    max_instances=1,
                    coalesce=True,
                )
                scheduler.start()
                logger.info(
                    f"✅ Reconciliation scheduler started (every {config.reconcile_interval_minutes} min)"
                )
            except Exception as e:
                logger.warning(f"⚠️  Failed to start reconciliation scheduler: {e}")
                scheduler = None

        logger.info(f"✅ Fulfillment service started on port {SERVICE_PORT}")
        yield

    except Exception as e:
        logger.error(f"Failed to initialize fulfillment service: {e}")
        raise
    finally:
        if scheduler:
            try:
                scheduler.shutdown()
                logger.info("✅ Reconciliation scheduler stopped")
            except Exception as e:
                logger.error(f"❌ Failed to stop scheduler: {e}")

        if event_bus:
            try:
                await event_bus.close()
                logger.info("Fulfillment event bus closed")
            except Exception as e:
                logger.error(f"Error closing event bus: {e}")

        if fulfillment_service:
            await fulfillment_service.repository.close()
            logger.info("Fulfillment service database connections closed")


app = FastAPI(
    title="Fulfillment Service",
    description="Campaign tier fulfillment, settlement and rankings",
    version=__version__,
    lifespan=lifespan,
)


# ====================
# Dependency Injection
# ====================


async def get_fulfillment_service() -> FulfillmentService:
    """Get fulfillment service instance"""
    if not fulfillment_service:
        raise HTTPException(status_code=503, detail="Fulfillment service not initialized")
    return fulfillment_service


async def get_ranking_service() -> RankingService:
    """Get ranking service instance"""
    if not ranking_service:
        raise HTTPException(status_code=503, detail="Ranking service not initialized")
    return ranking_service


# ====================
# Health Check
# ====================


@app.get("/api/v1/fulfillment/health", response_model=HealthCheckResponse)
@app.get("/health", response_model=HealthCheckResponse)
async def health_check():
    """Basic health check"""
    dependencies = {}

    try:
        db = fulfillment_service.repository.db if fulfillment_service else None
        if db:
            result = await db.health_check()
            dependencies["database"] = "healthy" if result and result.get('healthy') else "unhealthy"
        else:
            dependencies["database"] = "unhealthy"
    except Exception:
        dependencies["database"] = "unhealthy"

    if event_bus is not None:
        dependencies["event_bus"] = "healthy" if event_bus.is_connected else "unhealthy"
    else:
        dependencies["event_bus"] = "not_configured"

    dependencies["scheduler"] = "healthy" if scheduler and scheduler.running else "not_configured"

    status = "healthy" if all(v in ["healthy", "not_configured"] for v in dependencies.values()) else "degraded"

    return HealthCheckResponse(
        status=status,
        service=config.service_name,
        port=SERVICE_PORT,
        version=__version__,
        timestamp=datetime.utcnow().isoformat(),
        dependencies=dependencies,
    )


# ====================
# Vendor Progress
# ====================


@app.get(
    "/api/v1/fulfillment/vendors/{vendor_id}/campaigns/{campaign_id}/objectives/{ordering_key}/tiers/{tier}/progress",
    response_model=ObjectiveProgressResponse,
)
async def get_objective_progress(
    vendor_id: str,
    campaign_id: str,
    ordering_key: int = Path(..., ge=1),
    tier: int = Path(..., ge=1),
    service: FulfillmentService = Depends(get_fulfillment_service),
):
    """Count, required quantity and status of one objective in one tier"""
    try:
        return await service.get_objective_progress(vendor_id, campaign_id, ordering_key, tier)
    except NOT_FOUND_ERRORS as e:
        raise HTTPException(status_code=404, detail=str(e))
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error getting objective progress: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Internal server error: {str(e)}")


@app.get(
    "/api/v1/fulfillment/vendors/{vendor_id}/campaigns/{campaign_id}/objectives/{ordering_key}/tiers/{tier}/submissions",
    response_model=DisplayedSubmissionsResponse,
)
async def get_displayed_submissions(
    vendor_id: str,
    campaign_id: str,
    ordering_key: int = Path(..., ge=1),
    tier: int = Path(..., ge=1),
    service: FulfillmentService = Depends(get_fulfillment_service),
):
    """Submissions shown under an objective card, newest first"""
    try:
        return await service.get_displayed_submissions(vendor_id, campaign_id, ordering_key, tier)
    except NOT_FOUND_ERRORS as e:
        raise HTTPException(status_code=404, detail=str(e))
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error getting displayed submissions: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Internal server error: {str(e)}")


@app.get(
    "/api/v1/fulfillment/vendors/{vendor_id}/campaigns/{campaign_id}/board",
    response_model=CampaignBoardResponse,
)
async def get_campaign_board(
    vendor_id: str,
    campaign_id: str,
    service: FulfillmentService = Depends(get_fulfillment_service),
):
    """Every tier and objective card of a campaign"""
    try:
        return await service.get_campaign_board(vendor_id, campaign_id)
    except NOT_FOUND_ERRORS as e:
        raise HTTPException(status_code=404, detail=str(e))
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error getting campaign board: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Internal server error: {str(e)}")


# ====================
# Outcome Intake
# ====================


@app.post(
    "/api/v1/fulfillment/submissions/{submission_id}/process",
    response_model=ProcessSubmissionResponse,
)
async def process_submission(
    submission_id: str,
    service: FulfillmentService = Depends(get_fulfillment_service),
):
    """Assign and settle a submission whose outcome is already recorded"""
    try:
        return await service.process_submission(submission_id)
    except NOT_FOUND_ERRORS as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.error(f"Error processing submission {submission_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Internal server error: {str(e)}")


@app.post(
    "/api/v1/fulfillment/submissions/{submission_id}/outcome",
    response_model=ProcessSubmissionResponse,
)
async def record_validation_outcome(
    submission_id: str,
    request: ValidationOutcomeRequest,
    service: FulfillmentService = Depends(get_fulfillment_service),
):
    """Record a validation outcome and process it"""
    try:
        return await service.record_validation_outcome(
            submission_id,
            request.status,
            base_value=request.base_value,
            rejection_reason=request.rejection_reason,
        )
    except NOT_FOUND_ERRORS as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidTransitionError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except DuplicateValidatedOrderError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        logger.error(f"Error recording outcome of {submission_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Internal server error: {str(e)}")


@app.post("/api/v1/fulfillment/reconcile", response_model=ReconcileResponse)
async def reconcile(service: FulfillmentService = Depends(get_fulfillment_service)):
    """Run the reconciliation sweep now"""
    try:
        return await service.reconcile()
    except Exception as e:
        logger.error(f"Error running reconciliation: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Internal server error: {str(e)}")


# ====================
# Rankings
# ====================


async def _ranking(service: RankingService, scope: RankingScope, page: int, page_size: Optional[int]) -> RankingPage:
    try:
        return await service.get_ranking(scope, page, page_size)
    except InvalidPaginationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Error getting {scope.kind.value} ranking: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Internal server error: {str(e)}")


@app.get("/api/v1/fulfillment/rankings/global", response_model=RankingPage)
async def get_global_ranking(
    page: int = Query(1, description="Page number"),
    page_size: Optional[int] = Query(None, description="Items per page"),
    service: RankingService = Depends(get_ranking_service),
):
    return await _ranking(service, RankingScope.global_scope(), page, page_size)


@app.get("/api/v1/fulfillment/rankings/teams/{manager_id}", response_model=RankingPage)
async def get_team_ranking(
    manager_id: str,
    page: int = Query(1, description="Page number"),
    page_size: Optional[int] = Query(None, description="Items per page"),
    service: RankingService = Depends(get_ranking_service),
):
    return await _ranking(service, RankingScope.team(manager_id), page, page_size)


@app.get("/api/v1/fulfillment/rankings/stores/{store_id}/vendors", response_model=RankingPage)
async def get_store_vendor_ranking(
    store_id: str,
    include_branches: bool = Query(False, description="Include the store's branches"),
    page: int = Query(1, description="Page number"),
    page_size: Optional[int] = Query(None, description="Items per page"),
    service: RankingService = Depends(get_ranking_service),
):
    return await _ranking(service, RankingScope.store(store_id, include_branches), page, page_size)


@app.get("/api/v1/fulfillment/rankings/vendors/{vendor_id}/store", response_model=RankingPage)
async def get_vendor_store_ranking(
    vendor_id: str,
    page: int = Query(1, description="Page number"),
    page_size: Optional[int] = Query(None, description="Items per page"),
    service: RankingService = Depends(get_ranking_service),
):
    """Ranking of the vendor's own store"""
    try:
        return await service.get_vendor_store_ranking(vendor_id, page, page_size)
    except ScopeForbiddenError as e:
        raise HTTPException(status_code=403, detail=str(e))
    except InvalidPaginationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Error getting store ranking of vendor {vendor_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Internal server error: {str(e)}")


@app.get("/api/v1/fulfillment/rankings/admin", response_model=RankingPage)
async def get_admin_ranking(
    store_id: Optional[str] = Query(None, description="Filter on one store and its branches"),
    page: int = Query(1, description="Page number"),
    page_size: Optional[int] = Query(None, description="Items per page"),
    service: RankingService = Depends(get_ranking_service),
):
    return await _ranking(service, service.resolve_admin_scope(store_id), page, page_size)


@app.get("/api/v1/fulfillment/rankings/stores", response_model=StoreRankingPage)
async def get_store_ranking(
    page: int = Query(1, description="Page number"),
    page_size: Optional[int] = Query(None, description="Items per page"),
    service: RankingService = Depends(get_ranking_service),
):
    """Stores ranked by the credited value of their vendors"""
    try:
        return await service.get_store_ranking(page, page_size)
    except InvalidPaginationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Error getting store ranking: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Internal server error: {str(e)}")


@app.get("/api/v1/fulfillment/rankings/managers/{manager_id}", response_model=ManagerRankingResponse)
async def get_manager_ranking(
    manager_id: str,
    branch_id: Optional[str] = Query(None, description="Restrict to one branch"),
    page: int = Query(1, description="Page number"),
    page_size: Optional[int] = Query(None, description="Items per page"),
    service: RankingService = Depends(get_ranking_service),
):
    """Ranking of the manager's store, with branch filter options"""
    try:
        return await service.get_manager_ranking(manager_id, branch_id, page, page_size)
    except ScopeForbiddenError as e:
        raise HTTPException(status_code=403, detail=str(e))
    except InvalidPaginationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Error getting manager ranking: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Internal server error: {str(e)}")


@app.get(
    "/api/v1/fulfillment/rankings/managers/{manager_id}/branches",
    response_model=BranchRankingsResponse,
)
async def get_branch_rankings(
    manager_id: str,
    service: RankingService = Depends(get_ranking_service),
):
    """One ranking per store of a matrix store manager"""
    try:
        return await service.get_branch_rankings(manager_id)
    except ScopeForbiddenError as e:
        raise HTTPException(status_code=403, detail=str(e))
    except Exception as e:
        logger.error(f"Error getting branch rankings: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Internal server error: {str(e)}")


@app.get("/api/v1/fulfillment/rankings/position/{vendor_id}", response_model=VendorPositionResponse)
async def get_vendor_position(
    vendor_id: str,
    scope: RankingScopeKind = Query(RankingScopeKind.GLOBAL, description="global, team or store"),
    scope_id: Optional[str] = Query(None, description="Manager id for team, store id for store"),
    include_branches: bool = Query(False),
    service: RankingService = Depends(get_ranking_service),
):
    """1-based position of a vendor, 0 when not ranked in the scope"""
    if scope is not RankingScopeKind.GLOBAL and not scope_id:
        raise HTTPException(status_code=400, detail=f"scope_id is required for {scope.value} scope")
    try:
        if scope is RankingScopeKind.TEAM:
            ranking_scope = RankingScope.team(scope_id)
        elif scope is RankingScopeKind.STORE:
            ranking_scope = RankingScope.store(scope_id, include_branches)
        else:
            ranking_scope = RankingScope.global_scope()
        return await service.get_vendor_position(vendor_id, ranking_scope)
    except Exception as e:
        logger.error(f"Error getting position of vendor {vendor_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Internal server error: {str(e)}")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "microservices.fulfillment_service.main:app",
        host=config.service_host,
        port=SERVICE_PORT,
        reload=config.debug,
        log_level=config.log_level.lower(),
    )
