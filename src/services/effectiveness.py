"""
Tool Effectiveness Aggregator for ListLoop.

Folds each outcome's per-tool usage into period-bucketed running sums:
- one ToolEffectiveness row per (organization, tool_type, calendar month)
- sale contributions, price accuracy, identification accuracy and
  reported confidence are accumulated as sums and counts
- returns increment contributed_to_return on the current month's row

Each outcome must be aggregated exactly once. Re-applying the same
outcome double-counts; callers own that contract.
"""

from __future__ import annotations

import calendar
import logging
from collections.abc import Callable
from datetime import date, datetime

from sqlalchemy import and_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.config.learning import DEFAULT_TOOL_WEIGHT
from src.lib.clock import utc_now
from src.models.outcome import ResearchOutcome
from src.models.tool_effectiveness import ToolEffectiveness
from src.services.tool_usage import ToolUsageRecord

logger = logging.getLogger(__name__)


def current_month_period(now: datetime) -> tuple[date, date]:
    """First and last day of the calendar month containing `now`."""
    last_day = calendar.monthrange(now.year, now.month)[1]
    return date(now.year, now.month, 1), date(now.year, now.month, last_day)


class ToolEffectivenessAggregator:
    """
    Maintain ToolEffectiveness running sums from recorded outcomes.

    Rows are found or created for the current month of the injected clock
    and the caller's session is committed after each outcome.
    """

    def __init__(
        self,
        session: AsyncSession,
        clock: Callable[[], datetime] = utc_now,
    ):
        """Initialize with database session and clock."""
        self.session = session
        self.clock = clock

    async def apply_outcome(self, outcome: ResearchOutcome) -> int:
        """
        Fold one sold outcome into the current month's rows.

        Args:
            outcome: Persisted outcome carrying tools_used and derived metrics

        Returns:
            Number of tool entries aggregated
        """
        tools = [ToolUsageRecord.from_dict(t) for t in (outcome.tools_used or [])]
        if not tools:
            return 0

        period_start, period_end = current_month_period(self.clock())
        ratio = outcome.price_accuracy_ratio

        for tool in tools:
            record = await self._get_or_create(
                outcome.organization_id, tool.tool_type, period_start, period_end
            )

            record.total_uses += 1
            record.contributed_to_sale += 1

            if ratio is not None:
                record.price_deviation_sum += ratio
                record.price_accuracy_count += 1
                record.actual_accuracy_sum += max(0.0, 1.0 - ratio)

            if outcome.identification_correct is not None:
                record.identification_total_count += 1
                if outcome.identification_correct:
                    record.identification_correct_count += 1

            record.confidence_sum += tool.confidence
            record.confidence_count += 1

        await self.session.commit()

        logger.debug(
            "Aggregated outcome %s into %d tool record(s) for %s",
            outcome.id, len(tools), period_start,
        )
        return len(tools)

    async def apply_return(self, outcome: ResearchOutcome) -> int:
        """
        Count a return against each tool's current month row.

        Tools without a row for the current month are skipped.

        Returns:
            Number of rows updated
        """
        tools = [ToolUsageRecord.from_dict(t) for t in (outcome.tools_used or [])]
        if not tools:
            return 0

        period_start, period_end = current_month_period(self.clock())
        updated = 0

        for tool in tools:
            record = await self._find(
                outcome.organization_id, tool.tool_type, period_start, period_end
            )
            if record is None:
                logger.debug(
                    "No effectiveness record for tool %s in %s, skipping return",
                    tool.tool_type, period_start,
                )
                continue
            record.contributed_to_return += 1
            updated += 1

        await self.session.commit()
        return updated

    async def _find(
        self,
        scope: str,
        tool_type: str,
        period_start: date,
        period_end: date,
    ) -> ToolEffectiveness | None:
        stmt = select(ToolEffectiveness).where(
            and_(
                ToolEffectiveness.scope == scope,
                ToolEffectiveness.tool_type == tool_type,
                ToolEffectiveness.period_start == period_start,
                ToolEffectiveness.period_end == period_end,
            )
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _get_or_create(
        self,
        scope: str,
        tool_type: str,
        period_start: date,
        period_end: date,
    ) -> ToolEffectiveness:
        record = await self._find(scope, tool_type, period_start, period_end)
        if record is None:
            record = ToolEffectiveness(
                scope=scope,
                tool_type=tool_type,
                period_start=period_start,
                period_end=period_end,
                total_uses=0,
                contributed_to_sale=0,
                contributed_to_return=0,
                price_deviation_sum=0.0,
                price_accuracy_count=0,
                identification_correct_count=0,
                identification_total_count=0,
                confidence_sum=0.0,
                confidence_count=0,
                actual_accuracy_sum=0.0,
                current_weight=DEFAULT_TOOL_WEIGHT,
            )
            try:
                async with self.session.begin_nested():
                    self.session.add(record)
            except IntegrityError:
                # Another session created the row first; add to that one
                record = await self._find(scope, tool_type, period_start, period_end)
                if record is None:
                    raise
                logger.debug(
                    "Effectiveness record for %s in %s created concurrently, reusing it",
                    tool_type, period_start,
                )
        return record


__all__ = ["ToolEffectivenessAggregator", "current_month_period"]
