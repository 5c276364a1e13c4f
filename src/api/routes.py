"""
REST API Routes for ListLoop.

All responses use the response envelope (see src.api.schemas).

Endpoints (all under /api/v1 prefix):
- /health - Health check
- /learning/outcomes - Research outcomes (list, detail, correction)
- /learning/tool-effectiveness - Per-tool metrics and trends
- /learning/anomalies - Organization anomalies (list, resolve)
- /learning/dashboard - Learning dashboard summary
- /learning/calibrate - Manual recalibration (admin)
- /learning/events/sale, /learning/events/return - Marketplace event ingress (admin)
- /admin/learning/* - Cross-organization views (admin)

Organization-scoped endpoints always use the organization from the
caller's token.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from fastapi import APIRouter as FastAPIRouter
from fastapi import Depends, Query
from fastapi.responses import JSONResponse

from src.api.dependencies import (
    RequestContext,
    get_anomaly_service,
    get_calibration_service,
    get_outcome_recorder,
    get_reporting_service,
    get_request_context,
    require_admin,
)
from src.api.schemas import (
    CalibrateRequest,
    CorrectOutcomeRequest,
    ResolveAnomalyRequest,
    ResponseEnvelope,
    ReturnEventRequest,
    SaleEventRequest,
    error_response,
    success_response,
)
from src.lib.errors import NOT_FOUND
from src.models.tool_effectiveness import GLOBAL_SCOPE
from src.services.anomaly_detection import AnomalyDetectionService
from src.services.learning_reporting import LearningReportingService
from src.services.outcome_recorder import OutcomeRecorder
from src.services.tool_calibration import CalibrationTrigger, ToolCalibrationService

logger = logging.getLogger(__name__)


# =============================================================================
# FastAPI Router with /api/v1 prefix
# =============================================================================

router = FastAPIRouter(prefix="/api/v1")


def _effectiveness_payload(result: dict[str, Any]) -> dict[str, Any]:
    return {
        "tools": [m.to_dict() for m in result["tools"]],
        "period_start": result["period_start"].isoformat(),
        "period_end": result["period_end"].isoformat(),
    }


def _trends_payload(result: dict[str, Any]) -> dict[str, Any]:
    return {
        "trends": [p.to_dict() for p in result["trends"]],
        "tool_types": result["tool_types"],
        "period_start": result["period_start"].isoformat(),
        "period_end": result["period_end"].isoformat(),
    }


# =============================================================================
# Health
# =============================================================================


@router.get("/health", response_model=ResponseEnvelope)
async def health_check() -> dict[str, Any]:
    """Health check endpoint (unauthenticated)."""
    return success_response({"status": "ok"})


# =============================================================================
# Outcomes
# =============================================================================


@router.get("/learning/outcomes", response_model=ResponseEnvelope)
async def list_outcomes(
    quality: str | None = Query(default=None, max_length=20),
    marketplace: str | None = Query(default=None, max_length=20),
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    ctx: RequestContext = Depends(get_request_context),
    reporting: LearningReportingService = Depends(get_reporting_service),
) -> dict[str, Any]:
    """List the organization's research outcomes, newest first."""
    outcomes, total = await reporting.list_outcomes(
        ctx.org_id,
        quality=quality,
        marketplace=marketplace,
        start_date=start_date,
        end_date=end_date,
        limit=limit,
        offset=offset,
    )
    return success_response({
        "outcomes": [o.to_dict() for o in outcomes],
        "total": total,
        "limit": limit,
        "offset": offset,
    })


@router.get("/learning/outcomes/{outcome_id}", response_model=ResponseEnvelope)
async def get_outcome(
    outcome_id: str,
    ctx: RequestContext = Depends(get_request_context),
    reporting: LearningReportingService = Depends(get_reporting_service),
) -> dict[str, Any]:
    """Get one research outcome."""
    outcome = await reporting.get_outcome(ctx.org_id, outcome_id)
    return success_response({"outcome": outcome.to_dict()})


@router.patch("/learning/outcomes/{outcome_id}/correct", response_model=ResponseEnvelope)
async def correct_outcome(
    outcome_id: str,
    data: CorrectOutcomeRequest,
    ctx: RequestContext = Depends(get_request_context),
    reporting: LearningReportingService = Depends(get_reporting_service),
) -> dict[str, Any]:
    """Manually correct identification or quality of an outcome."""
    outcome = await reporting.correct_outcome(
        ctx.org_id,
        outcome_id,
        identification_correct=data.identification_correct,
        outcome_quality=data.outcome_quality,
        actor_id=ctx.user_id,
    )
    return success_response({"outcome": outcome.to_dict()})


# =============================================================================
# Tool Effectiveness
# =============================================================================


@router.get("/learning/tool-effectiveness", response_model=ResponseEnvelope)
async def get_tool_effectiveness(
    period_days: int = Query(default=90, ge=1, le=3650),
    tool_type: str | None = Query(default=None, max_length=100),
    ctx: RequestContext = Depends(get_request_context),
    reporting: LearningReportingService = Depends(get_reporting_service),
) -> dict[str, Any]:
    """Per-tool effectiveness metrics for the organization."""
    result = await reporting.get_tool_effectiveness(
        ctx.org_id, period_days=period_days, tool_type=tool_type
    )
    return success_response(_effectiveness_payload(result))


@router.get("/learning/tool-effectiveness/trends", response_model=ResponseEnvelope)
async def get_tool_effectiveness_trends(
    period_days: int = Query(default=90, ge=1, le=3650),
    ctx: RequestContext = Depends(get_request_context),
    reporting: LearningReportingService = Depends(get_reporting_service),
) -> dict[str, Any]:
    """Per-period effectiveness points for the organization."""
    result = await reporting.get_tool_effectiveness_trends(ctx.org_id, period_days=period_days)
    return success_response(_trends_payload(result))


# =============================================================================
# Anomalies
# =============================================================================


@router.get("/learning/anomalies", response_model=ResponseEnvelope)
async def list_anomalies(
    resolved: bool | None = None,
    severity: str | None = Query(default=None, max_length=20),
    anomaly_type: str | None = Query(default=None, max_length=50),
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    ctx: RequestContext = Depends(get_request_context),
    anomalies: AnomalyDetectionService = Depends(get_anomaly_service),
) -> dict[str, Any]:
    """List the organization's anomalies."""
    items, total = await anomalies.list_anomalies(
        ctx.org_id,
        resolved=resolved,
        severity=severity,
        anomaly_type=anomaly_type,
        limit=limit,
        offset=offset,
    )
    return success_response({
        "anomalies": [a.to_dict() for a in items],
        "total": total,
        "limit": limit,
        "offset": offset,
    })


@router.post("/learning/anomalies/{anomaly_id}/resolve", response_model=ResponseEnvelope)
async def resolve_anomaly(
    anomaly_id: str,
    data: ResolveAnomalyRequest,
    ctx: RequestContext = Depends(get_request_context),
    anomalies: AnomalyDetectionService = Depends(get_anomaly_service),
) -> dict[str, Any]:
    """Resolve an open anomaly of the organization."""
    anomaly = await anomalies.resolve(
        ctx.org_id, anomaly_id, notes=data.notes, resolved_by=ctx.user_id
    )
    return success_response({"anomaly": anomaly.to_dict()})


# =============================================================================
# Dashboard
# =============================================================================


@router.get("/learning/dashboard", response_model=ResponseEnvelope)
async def get_dashboard(
    period_days: int = Query(default=30, ge=1, le=3650),
    ctx: RequestContext = Depends(get_request_context),
    reporting: LearningReportingService = Depends(get_reporting_service),
) -> dict[str, Any]:
    """Learning dashboard summary for the organization."""
    summary = await reporting.get_dashboard_summary(ctx.org_id, period_days=period_days)
    return success_response(summary.to_dict())


# =============================================================================
# Calibration (admin)
# =============================================================================


@router.post("/learning/calibrate", response_model=ResponseEnvelope)
async def trigger_calibration(
    data: CalibrateRequest | None = None,
    ctx: RequestContext = Depends(require_admin),
    calibration: ToolCalibrationService = Depends(get_calibration_service),
) -> dict[str, Any]:
    """Run a manual recalibration (waits for a running one to finish)."""
    lookback_days = data.lookback_days if data is not None else None
    results = await calibration.recalibrate(
        lookback_days=lookback_days,
        trigger=CalibrationTrigger.MANUAL,
        actor_id=ctx.user_id,
    )
    return success_response({
        "results": [r.to_dict() for r in results],
        "tools_calibrated": len(results),
    })


# =============================================================================
# Event ingress (admin / service account)
# =============================================================================


@router.post("/learning/events/sale", response_model=ResponseEnvelope)
async def ingest_sale_event(
    data: SaleEventRequest,
    ctx: RequestContext = Depends(require_admin),
    recorder: OutcomeRecorder = Depends(get_outcome_recorder),
) -> Any:
    """Record the outcome of a sold listing."""
    outcome = await recorder.record_sale(
        data.listing_id, data.sold_price, data.sold_at, data.marketplace
    )
    if outcome is None:
        return JSONResponse(
            status_code=404,
            content=error_response(NOT_FOUND, f"Listing {data.listing_id} not found"),
        )
    return success_response({"outcome": outcome.to_dict()})


@router.post("/learning/events/return", response_model=ResponseEnvelope)
async def ingest_return_event(
    data: ReturnEventRequest,
    ctx: RequestContext = Depends(require_admin),
    recorder: OutcomeRecorder = Depends(get_outcome_recorder),
) -> Any:
    """Record a return for a previously sold listing."""
    outcome = await recorder.record_return(data.listing_id, data.returned_at, data.reason)
    if outcome is None:
        return JSONResponse(
            status_code=404,
            content=error_response(
                NOT_FOUND, f"No outcome recorded for listing {data.listing_id}"
            ),
        )
    return success_response({"outcome": outcome.to_dict()})


# =============================================================================
# Admin views
# =============================================================================


@router.get("/admin/learning/global-effectiveness", response_model=ResponseEnvelope)
async def get_global_effectiveness(
    period_days: int = Query(default=90, ge=1, le=3650),
    tool_type: str | None = Query(default=None, max_length=100),
    ctx: RequestContext = Depends(require_admin),
    reporting: LearningReportingService = Depends(get_reporting_service),
) -> dict[str, Any]:
    """Tool effectiveness across all organizations."""
    result = await reporting.get_tool_effectiveness(
        GLOBAL_SCOPE, period_days=period_days, tool_type=tool_type
    )
    return success_response(_effectiveness_payload(result))


@router.get("/admin/learning/all-anomalies", response_model=ResponseEnvelope)
async def get_all_anomalies(
    resolved: bool | None = None,
    severity: str | None = Query(default=None, max_length=20),
    anomaly_type: str | None = Query(default=None, max_length=50),
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    ctx: RequestContext = Depends(require_admin),
    anomalies: AnomalyDetectionService = Depends(get_anomaly_service),
) -> dict[str, Any]:
    """Anomalies of all organizations."""
    items, total = await anomalies.list_anomalies(
        None,
        resolved=resolved,
        severity=severity,
        anomaly_type=anomaly_type,
        limit=limit,
        offset=offset,
    )
    return success_response({
        "anomalies": [a.to_dict() for a in items],
        "total": total,
        "limit": limit,
        "offset": offset,
    })


@router.get("/admin/learning/calibration/history", response_model=ResponseEnvelope)
async def get_calibration_history(
    limit: int = Query(default=10, ge=1, le=50),
    ctx: RequestContext = Depends(require_admin),
    calibration: ToolCalibrationService = Depends(get_calibration_service),
) -> dict[str, Any]:
    """Recent calibration runs, current weights and the next scheduled run."""
    return success_response({
        "calibrations": [run.to_dict() for run in calibration.get_history(limit)],
        "current_weights": await calibration.get_current_weights(),
        "next_scheduled_at": calibration.next_scheduled_time().isoformat(),
    })


__all__ = ["router"]
