"""
Learning Reporting Service for ListLoop.

Read paths over the learning loop data: outcome listing and lookup,
manual outcome correction, per-tool effectiveness metrics and trends,
and the dashboard summary that combines them with open anomalies and
recent calibration runs.

Effectiveness queries accept an organization id as scope, or None /
"global" for the aggregate across all organizations.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.lib.clock import as_utc, utc_now
from src.lib.exceptions import NotFoundError, ValidationError
from src.models.outcome import OutcomeQuality, ResearchOutcome
from src.models.tool_effectiveness import GLOBAL_SCOPE, ToolEffectiveness

if TYPE_CHECKING:
    from src.services.anomaly_detection import AnomalyDetectionService
    from src.services.tool_calibration import ToolCalibrationService

logger = logging.getLogger(__name__)


# ============================================================================
# Response Models
# ============================================================================

@dataclass
class ToolEffectivenessMetrics:
    """Aggregated effectiveness of one tool over a window."""

    tool_type: str
    period_start: str
    period_end: str
    total_uses: int
    contributed_to_sale: int
    contributed_to_return: int
    average_price_accuracy: float
    average_confidence: float
    identification_accuracy: float
    calibration_score: float | None
    current_weight: float
    suggested_weight: float | None
    sale_contribution_rate: float
    return_rate: float

    def to_dict(self) -> dict[str, Any]:
        return dict(self.__dict__)


@dataclass
class ToolEffectivenessTrendPoint:
    """One tool's metrics for one period."""

    date: str
    tool_type: str
    average_price_accuracy: float
    identification_accuracy: float
    calibration_score: float | None
    total_uses: int

    def to_dict(self) -> dict[str, Any]:
        return dict(self.__dict__)


@dataclass
class DashboardSummary:
    """Learning dashboard for one organization."""

    period_start: datetime
    period_end: datetime
    total_outcomes: int
    average_price_accuracy: float
    identification_accuracy: float
    outcomes_by_quality: dict[str, int]
    tool_effectiveness: list[ToolEffectivenessMetrics] = field(default_factory=list)
    active_anomalies: list[dict[str, Any]] = field(default_factory=list)
    recent_calibrations: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "period": {
                "start": self.period_start.isoformat(),
                "end": self.period_end.isoformat(),
            },
            "total_outcomes": self.total_outcomes,
            "average_price_accuracy": self.average_price_accuracy,
            "identification_accuracy": self.identification_accuracy,
            "outcomes_by_quality": dict(self.outcomes_by_quality),
            "tool_effectiveness": [m.to_dict() for m in self.tool_effectiveness],
            "active_anomalies": list(self.active_anomalies),
            "recent_calibrations": list(self.recent_calibrations),
        }


def _ratio(numerator: float, denominator: float) -> float:
    return numerator / denominator if denominator > 0 else 0.0


def aggregate_tool_metrics(records: list[ToolEffectiveness]) -> list[ToolEffectivenessMetrics]:
    """
    Sum effectiveness rows per tool.

    `records` must be ordered by tool_type, then period_start descending;
    the newest row supplies the calibration fields.
    """
    grouped: dict[str, list[ToolEffectiveness]] = {}
    for record in records:
        grouped.setdefault(record.tool_type, []).append(record)

    metrics: list[ToolEffectivenessMetrics] = []
    for tool_type, rows in grouped.items():
        latest = rows[0]
        total_uses = sum(r.total_uses for r in rows)
        to_sale = sum(r.contributed_to_sale for r in rows)
        to_return = sum(r.contributed_to_return for r in rows)

        metrics.append(
            ToolEffectivenessMetrics(
                tool_type=tool_type,
                period_start=rows[-1].period_start.isoformat(),
                period_end=latest.period_end.isoformat(),
                total_uses=total_uses,
                contributed_to_sale=to_sale,
                contributed_to_return=to_return,
                average_price_accuracy=_ratio(
                    sum(r.price_deviation_sum for r in rows),
                    sum(r.price_accuracy_count for r in rows),
                ),
                average_confidence=_ratio(
                    sum(r.confidence_sum for r in rows),
                    sum(r.confidence_count for r in rows),
                ),
                identification_accuracy=_ratio(
                    sum(r.identification_correct_count for r in rows),
                    sum(r.identification_total_count for r in rows),
                ),
                calibration_score=latest.calibration_score,
                current_weight=latest.current_weight,
                suggested_weight=latest.suggested_weight,
                sale_contribution_rate=_ratio(to_sale, total_uses),
                return_rate=_ratio(to_return, to_sale),
            )
        )
    return metrics


# ============================================================================
# Service Implementation
# ============================================================================

class LearningReportingService:
    """Query facade for outcomes, tool effectiveness and the dashboard."""

    def __init__(
        self,
        session: AsyncSession,
        anomaly_service: AnomalyDetectionService | None = None,
        calibration_service: ToolCalibrationService | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.session = session
        self.anomaly_service = anomaly_service
        self.calibration_service = calibration_service
        self.clock = clock

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    async def list_outcomes(
        self,
        org_id: str,
        quality: str | None = None,
        marketplace: str | None = None,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[ResearchOutcome], int]:
        """
        Page through an organization's outcomes, newest first.

        Returns:
            (page of outcomes, total matching)
        """
        conditions = [ResearchOutcome.organization_id == org_id]
        if quality:
            conditions.append(ResearchOutcome.outcome_quality == quality)
        if marketplace:
            conditions.append(ResearchOutcome.marketplace == marketplace)
        if start_date is not None:
            conditions.append(ResearchOutcome.created_at >= as_utc(start_date))
        if end_date is not None:
            conditions.append(ResearchOutcome.created_at <= as_utc(end_date))

        count_stmt = select(func.count()).select_from(ResearchOutcome).where(and_(*conditions))
        total = (await self.session.execute(count_stmt)).scalar_one()

        stmt = (
            select(ResearchOutcome)
            .where(and_(*conditions))
            .order_by(ResearchOutcome.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        outcomes = list((await self.session.execute(stmt)).scalars().all())
        return outcomes, total

    async def get_outcome(self, org_id: str, outcome_id: str) -> ResearchOutcome:
        """
        Raises:
            NotFoundError: No such outcome for the organization
        """
        stmt = select(ResearchOutcome).where(
            and_(
                ResearchOutcome.id == outcome_id,
                ResearchOutcome.organization_id == org_id,
            )
        )
        outcome = (await self.session.execute(stmt)).scalar_one_or_none()
        if outcome is None:
            raise NotFoundError("Research outcome", outcome_id)
        return outcome

    async def correct_outcome(
        self,
        org_id: str,
        outcome_id: str,
        identification_correct: bool | None = None,
        outcome_quality: str | None = None,
        actor_id: str | None = None,
    ) -> ResearchOutcome:
        """
        Manually correct identification and/or quality of an outcome.

        Raises:
            NotFoundError: No such outcome for the organization
            ValidationError: Unknown quality, or a returned outcome raised above poor
        """
        outcome = await self.get_outcome(org_id, outcome_id)

        if outcome_quality is not None:
            try:
                quality = OutcomeQuality(outcome_quality)
            except ValueError as exc:
                raise ValidationError(f"Unknown outcome quality: {outcome_quality}") from exc
            if outcome.was_returned and quality != OutcomeQuality.POOR:
                raise ValidationError("Returned outcomes must keep quality 'poor'")
            outcome.outcome_quality = quality.value

        if identification_correct is not None:
            outcome.identification_correct = identification_correct

        outcome.updated_at = self.clock()
        await self.session.commit()

        logger.info("Outcome %s corrected by %s", outcome_id, actor_id)
        return outcome

    # ------------------------------------------------------------------
    # Tool effectiveness
    # ------------------------------------------------------------------

    async def get_tool_effectiveness(
        self,
        scope: str | None,
        period_days: int = 90,
        tool_type: str | None = None,
    ) -> dict[str, Any]:
        """Per-tool metrics over the window, for an organization or globally."""
        now = self.clock()
        window_start = now - timedelta(days=period_days)

        conditions = [ToolEffectiveness.period_start >= window_start.date()]
        if scope is not None and scope != GLOBAL_SCOPE:
            conditions.append(ToolEffectiveness.scope == scope)
        if tool_type:
            conditions.append(ToolEffectiveness.tool_type == tool_type)

        stmt = (
            select(ToolEffectiveness)
            .where(and_(*conditions))
            .order_by(ToolEffectiveness.tool_type, ToolEffectiveness.period_start.desc())
        )
        records = list((await self.session.execute(stmt)).scalars().all())

        return {
            "tools": aggregate_tool_metrics(records),
            "period_start": window_start,
            "period_end": now,
        }

    async def get_tool_effectiveness_trends(
        self,
        scope: str | None,
        period_days: int = 90,
    ) -> dict[str, Any]:
        """One point per effectiveness row, oldest period first."""
        now = self.clock()
        window_start = now - timedelta(days=period_days)

        conditions = [ToolEffectiveness.period_start >= window_start.date()]
        if scope is not None and scope != GLOBAL_SCOPE:
            conditions.append(ToolEffectiveness.scope == scope)

        stmt = (
            select(ToolEffectiveness)
            .where(and_(*conditions))
            .order_by(ToolEffectiveness.period_start, ToolEffectiveness.tool_type)
        )
        records = list((await self.session.execute(stmt)).scalars().all())

        trends = [
            ToolEffectivenessTrendPoint(
                date=r.period_start.isoformat(),
                tool_type=r.tool_type,
                average_price_accuracy=_ratio(r.price_deviation_sum, r.price_accuracy_count),
                identification_accuracy=_ratio(
                    r.identification_correct_count, r.identification_total_count
                ),
                calibration_score=r.calibration_score,
                total_uses=r.total_uses,
            )
            for r in records
        ]
        return {
            "trends": trends,
            "tool_types": sorted({r.tool_type for r in records}),
            "period_start": window_start,
            "period_end": now,
        }

    # ------------------------------------------------------------------
    # Dashboard
    # ------------------------------------------------------------------

    async def get_dashboard_summary(self, org_id: str, period_days: int = 30) -> DashboardSummary:
        """Outcome totals, accuracy, tool metrics, open anomalies, recent calibrations."""
        now = self.clock()
        window_start = now - timedelta(days=period_days)

        stmt = select(ResearchOutcome).where(
            and_(
                ResearchOutcome.organization_id == org_id,
                ResearchOutcome.created_at >= window_start,
            )
        )
        outcomes = list((await self.session.execute(stmt)).scalars().all())

        ratios = [o.price_accuracy_ratio for o in outcomes if o.price_accuracy_ratio is not None]
        identified = [o.identification_correct for o in outcomes if o.identification_correct is not None]

        by_quality = {q.value: 0 for q in OutcomeQuality}
        for outcome in outcomes:
            if outcome.outcome_quality in by_quality:
                by_quality[outcome.outcome_quality] += 1

        effectiveness = await self.get_tool_effectiveness(org_id, period_days=period_days)

        active_anomalies: list[dict[str, Any]] = []
        if self.anomaly_service is not None:
            anomalies = await self.anomaly_service.get_active_anomalies(org_id)
            active_anomalies = [a.to_dict() for a in anomalies]

        recent_calibrations: list[dict[str, Any]] = []
        if self.calibration_service is not None:
            recent_calibrations = [run.to_dict() for run in self.calibration_service.get_history(5)]

        return DashboardSummary(
            period_start=window_start,
            period_end=now,
            total_outcomes=len(outcomes),
            average_price_accuracy=_ratio(sum(ratios), len(ratios)),
            identification_accuracy=_ratio(sum(1 for i in identified if i), len(identified)),
            outcomes_by_quality=by_quality,
            tool_effectiveness=effectiveness["tools"],
            active_anomalies=active_anomalies,
            recent_calibrations=recent_calibrations,
        )


__all__ = [
    "ToolEffectivenessMetrics",
    "ToolEffectivenessTrendPoint",
    "DashboardSummary",
    "LearningReportingService",
    "aggregate_tool_metrics",
]
