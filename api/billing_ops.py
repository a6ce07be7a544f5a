"""
Operational HTTP surface for the settlement core.

Endpoints:
- POST  /billing/run                 trigger a recurring billing run
- GET   /billing/processors          processor availability report
- PATCH /billing/processors/{name}   enable/disable or re-prioritize a processor
- GET   /billing/scheduler           scheduler status
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, FastAPI, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from settlement.engine import RecurringBillingEngine
from settlement.errors import NoProcessorAvailable, RunInProgress, UnknownProcessor
from settlement.registry import ProcessorRegistry
from settlement.scheduler import PaymentScheduler

SERVICE_NAME: str = "settlement-core"
BILLING_PREFIX: str = "/billing"

logger: logging.Logger = logging.getLogger(__name__)


class ProcessorUpdate(BaseModel):
    """Runtime change to a processor's table entry.

    Attributes:
        enabled: New enabled flag, if changing.
        priority: New priority (lower is preferred), if changing.
    """

    enabled: Optional[bool] = None
    priority: Optional[int] = None


def _error(status_code: int, message: str, **details: Any) -> JSONResponse:
    body: Dict[str, Any] = {"error": message}
    if details:
        body["details"] = details
    return JSONResponse(status_code=status_code, content=body)


router: APIRouter = APIRouter(prefix=BILLING_PREFIX, tags=["billing"])


@router.post("/run", summary="Run recurring billing now")
def run_billing(request: Request) -> JSONResponse:
    """Run the recurring billing engine synchronously and return its summary."""
    engine: RecurringBillingEngine = request.app.state.engine
    try:
        summary = engine.run()
    except RunInProgress as exc:
        return _error(status.HTTP_409_CONFLICT, str(exc))
    except NoProcessorAvailable as exc:
        logger.error("Billing run aborted: %s", exc)
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, str(exc), skipped=exc.skipped)
    return JSONResponse(status_code=status.HTTP_200_OK, content=summary.to_dict())


@router.get("/processors", summary="Payment processor availability")
def list_processors(request: Request, test_connections: bool = False) -> JSONResponse:
    registry: ProcessorRegistry = request.app.state.registry
    report = [entry.to_dict() for entry in registry.get_available_processors(test_connections)]
    healthy = any(entry["available"] for entry in report)
    code = status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE
    return JSONResponse(status_code=code, content={"healthy": healthy, "processors": report})


@router.patch("/processors/{name}", summary="Update a processor's runtime settings")
def update_processor(name: str, update: ProcessorUpdate, request: Request) -> JSONResponse:
    registry: ProcessorRegistry = request.app.state.registry
    try:
        if update.enabled is not None:
            registry.set_processor_enabled(name, update.enabled)
        if update.priority is not None:
            registry.set_processor_priority(name, update.priority)
        entry = registry.describe(name)
    except UnknownProcessor as exc:
        return _error(status.HTTP_404_NOT_FOUND, str(exc))
    return JSONResponse(status_code=status.HTTP_200_OK, content=entry.to_dict())


@router.get("/scheduler", summary="Payment scheduler status")
def scheduler_status(request: Request) -> JSONResponse:
    scheduler: Optional[PaymentScheduler] = request.app.state.scheduler
    if scheduler is None:
        return _error(status.HTTP_404_NOT_FOUND, "Scheduler is not configured")
    return JSONResponse(status_code=status.HTTP_200_OK, content=scheduler.status())


def create_app(
    engine: RecurringBillingEngine,
    registry: ProcessorRegistry,
    scheduler: Optional[PaymentScheduler] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        engine: Engine used by POST /billing/run.
        registry: Processor table exposed by the processor endpoints.
        scheduler: Optional scheduler reported by GET /billing/scheduler.

    Returns:
        A configured FastAPI application instance.
    """
    application = FastAPI(title=SERVICE_NAME)
    application.state.engine = engine
    application.state.registry = registry
    application.state.scheduler = scheduler
    application.include_router(router)
    return application
