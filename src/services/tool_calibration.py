"""
Tool Calibration Service for ListLoop.

Compares how confident each research tool said it was with how accurate
it actually turned out to be, and nudges the tool's weight accordingly.

    avg_confidence = confidence_sum / confidence_count
    avg_accuracy   = actual_accuracy_sum / confidence_count
    score          = avg_accuracy / avg_confidence   (1.0 if avg_confidence is 0)

Weight rule (first match wins):
    score < 0.7          overconfident             weight * 0.85
    score > 1.3          underconfident            weight * 1.10
    0.9 <= score <= 1.1  well calibrated           unchanged
    0.7 <= score < 0.9   slightly overconfident    weight * 0.95
    1.1 < score <= 1.3   slightly underconfident   weight * 1.05

Weights are clamped to [0.1, 2.0]. Calibration is global: records of
all organizations are summed per tool. One run at a time per instance.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import StrEnum
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.config.learning import (
    CALIBRATION_HOUR_UTC,
    CALIBRATION_RULES,
    CALIBRATION_WEEKDAY,
    MAX_TOOL_WEIGHT,
    MIN_TOOL_WEIGHT,
    get_settings,
)
from src.lib.clock import next_weekly_run, utc_now
from src.lib.database import get_session_factory
from src.lib.exceptions import CalibrationError
from src.models.tool_effectiveness import ToolEffectiveness

logger = logging.getLogger(__name__)


class CalibrationTrigger(StrEnum):
    """What started a calibration run."""

    SCHEDULED = "scheduled"
    MANUAL = "manual"


@dataclass
class CalibrationResult:
    """Outcome of calibrating one tool."""

    tool_type: str
    previous_weight: float
    new_weight: float
    calibration_score: float
    data_points: int
    reasoning: str
    calibrated_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "tool_type": self.tool_type,
            "previous_weight": self.previous_weight,
            "new_weight": self.new_weight,
            "calibration_score": self.calibration_score,
            "data_points": self.data_points,
            "reasoning": self.reasoning,
            "calibrated_at": self.calibrated_at.isoformat(),
        }


@dataclass
class CalibrationRun:
    """One entry of the in-process calibration history."""

    calibrated_at: datetime
    triggered_by: str
    actor_id: str | None = None
    results: list[CalibrationResult] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "calibrated_at": self.calibrated_at.isoformat(),
            "triggered_by": self.triggered_by,
            "actor_id": self.actor_id,
            "results": [r.to_dict() for r in self.results],
        }


@dataclass
class _ToolSums:
    """Per-tool sums over the lookback window."""

    total_uses: int = 0
    confidence_sum: float = 0.0
    confidence_count: int = 0
    actual_accuracy_sum: float = 0.0
    records: list[ToolEffectiveness] = field(default_factory=list)

    @property
    def latest_weight(self) -> float:
        # records are ordered newest period first
        return self.records[0].current_weight


def clamp_weight(weight: float) -> float:
    return max(MIN_TOOL_WEIGHT, min(MAX_TOOL_WEIGHT, weight))


def calculate_calibration_score(avg_accuracy: float, avg_confidence: float) -> float:
    """Accuracy per unit of reported confidence; 1.0 when confidence averages 0."""
    if avg_confidence <= 0:
        return 1.0
    return avg_accuracy / avg_confidence


def adjust_weight(current_weight: float, score: float) -> tuple[float, str]:
    """
    Apply the calibration rule to a weight.

    Returns:
        (new_weight, reasoning), new_weight always within [0.1, 2.0]
    """
    rules = CALIBRATION_RULES

    if score < rules["overconfident_below"]:
        new_weight = current_weight * rules["overconfident_factor"]
        reasoning = f"Tool is overconfident (score: {score:.2f}). Reducing weight."
    elif score > rules["underconfident_above"]:
        new_weight = current_weight * rules["underconfident_factor"]
        reasoning = f"Tool is underconfident (score: {score:.2f}). Increasing weight."
    elif rules["calibrated_low"] <= score <= rules["calibrated_high"]:
        new_weight = current_weight
        reasoning = f"Tool is well calibrated (score: {score:.2f}). No change needed."
    elif score < rules["calibrated_low"]:
        new_weight = current_weight * rules["slightly_overconfident_factor"]
        reasoning = f"Tool is slightly overconfident (score: {score:.2f}). Minor reduction."
    else:
        new_weight = current_weight * rules["slightly_underconfident_factor"]
        reasoning = f"Tool is slightly underconfident (score: {score:.2f}). Minor increase."

    return clamp_weight(new_weight), reasoning


class ToolCalibrationService:
    """
    Recalibrate research tool weights from aggregated effectiveness data.

    Holds the in-process calibration history (newest first, bounded) and
    a lock so that only one run writes weights at a time.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        clock: Callable[[], datetime] = utc_now,
        history_limit: int | None = None,
    ):
        settings = get_settings()
        self._session_factory = session_factory or get_session_factory()
        self.clock = clock
        self._lock = asyncio.Lock()
        self._history: deque[CalibrationRun] = deque(
            maxlen=history_limit or settings.calibration_history_limit
        )
        self._default_lookback_days = settings.calibration_lookback_days

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    async def recalibrate(
        self,
        lookback_days: int | None = None,
        trigger: CalibrationTrigger | str = CalibrationTrigger.SCHEDULED,
        actor_id: str | None = None,
    ) -> list[CalibrationResult]:
        """
        Recalibrate all tools with enough data.

        A scheduled trigger that finds a run in progress is skipped and
        returns []; a manual trigger waits for the running one to finish.

        Raises:
            CalibrationError: The run failed and all of its writes were rolled back
        """
        trigger = CalibrationTrigger(trigger)
        if trigger == CalibrationTrigger.SCHEDULED and self._lock.locked():
            logger.info("Calibration already in progress, skipping scheduled run")
            return []

        async with self._lock:
            if lookback_days is None:
                lookback_days = self._default_lookback_days
            return await self._run(lookback_days, trigger, actor_id)

    async def _run(
        self,
        lookback_days: int,
        trigger: CalibrationTrigger,
        actor_id: str | None,
    ) -> list[CalibrationResult]:
        now = self.clock()
        today = now.date()
        cutoff = (now - timedelta(days=lookback_days)).date()

        logger.info(
            "Starting global tool recalibration (%s), lookback %d days",
            trigger.value, lookback_days,
        )

        results: list[CalibrationResult] = []
        try:
            async with self._session_factory() as session, session.begin():
                stmt = (
                    select(ToolEffectiveness)
                    .where(ToolEffectiveness.period_start >= cutoff)
                    .order_by(
                        ToolEffectiveness.tool_type,
                        ToolEffectiveness.period_start.desc(),
                    )
                    .with_for_update()
                )
                records = (await session.execute(stmt)).scalars().all()

                grouped: dict[str, _ToolSums] = {}
                for record in records:
                    sums = grouped.setdefault(record.tool_type, _ToolSums())
                    sums.total_uses += record.total_uses
                    sums.confidence_sum += record.confidence_sum
                    sums.confidence_count += record.confidence_count
                    sums.actual_accuracy_sum += record.actual_accuracy_sum
                    sums.records.append(record)

                for tool_type, sums in grouped.items():
                    result = self._calibrate_tool(tool_type, sums, now, today)
                    if result is not None:
                        results.append(result)
        except SQLAlchemyError as exc:
            logger.exception("Tool recalibration failed, all weight changes rolled back")
            raise CalibrationError(f"Tool recalibration failed: {exc}") from exc

        self._history.appendleft(
            CalibrationRun(
                calibrated_at=now,
                triggered_by=trigger.value,
                actor_id=actor_id,
                results=results,
            )
        )

        logger.info(
            "Recalibration complete: %d tools calibrated, %d weights changed",
            len(results),
            sum(1 for r in results if r.new_weight != r.previous_weight),
        )
        return results

    def _calibrate_tool(
        self,
        tool_type: str,
        sums: _ToolSums,
        now: datetime,
        today: date,
    ) -> CalibrationResult | None:
        min_samples = int(CALIBRATION_RULES["min_confidence_samples"])
        if sums.confidence_count < min_samples:
            logger.debug(
                "Skipping %s: %d confidence samples (< %d)",
                tool_type, sums.confidence_count, min_samples,
            )
            return None

        avg_confidence = sums.confidence_sum / sums.confidence_count
        avg_accuracy = sums.actual_accuracy_sum / sums.confidence_count
        score = calculate_calibration_score(avg_accuracy, avg_confidence)

        previous_weight = sums.latest_weight
        new_weight, reasoning = adjust_weight(previous_weight, score)

        for record in sums.records:
            record.suggested_weight = new_weight
            record.calibration_score = score
            record.last_calibrated_at = now
            if record.period_start <= today <= record.period_end:
                record.current_weight = new_weight

        logger.info(
            "Calibrated %s: %.2f -> %.2f (score %.2f, %d samples)",
            tool_type, previous_weight, new_weight, score, sums.confidence_count,
        )

        return CalibrationResult(
            tool_type=tool_type,
            previous_weight=previous_weight,
            new_weight=new_weight,
            calibration_score=score,
            data_points=sums.total_uses,
            reasoning=reasoning,
            calibrated_at=now,
        )

    def get_history(self, limit: int = 10) -> list[CalibrationRun]:
        """Most recent calibration runs, newest first."""
        return list(self._history)[:limit]

    async def get_current_weights(self) -> dict[str, float]:
        """Current weight per tool, taken from each tool's newest period."""
        async with self._session_factory() as session:
            stmt = select(ToolEffectiveness).order_by(
                ToolEffectiveness.tool_type,
                ToolEffectiveness.period_start.desc(),
            )
            records = (await session.execute(stmt)).scalars().all()

        weights: dict[str, float] = {}
        for record in records:
            weights.setdefault(record.tool_type, record.current_weight)
        return weights

    def next_scheduled_time(self, now: datetime | None = None) -> datetime:
        """Next weekly run: Sunday 02:00 UTC, strictly after `now`."""
        return next_weekly_run(now or self.clock(), CALIBRATION_WEEKDAY, CALIBRATION_HOUR_UTC)


# =============================================================================
# Service Factory
# =============================================================================

_calibration_service: ToolCalibrationService | None = None


def get_calibration_service() -> ToolCalibrationService:
    """Get or create the process-wide ToolCalibrationService."""
    global _calibration_service
    if _calibration_service is None:
        _calibration_service = ToolCalibrationService()
    return _calibration_service


__all__ = [
    "CalibrationTrigger",
    "CalibrationResult",
    "CalibrationRun",
    "ToolCalibrationService",
    "adjust_weight",
    "calculate_calibration_score",
    "clamp_weight",
    "get_calibration_service",
]
