"""
Tool Effectiveness Model for ListLoop.

One row per (scope, tool_type, period). Scope is an organization id or
the GLOBAL_SCOPE sentinel; the period is a calendar month. Rows hold
running sums so that averages can be recomputed for any window by
summing rows.
"""

import uuid
from datetime import UTC, datetime

from sqlalchemy import Column, Date, DateTime, Float, Index, Integer, String, UniqueConstraint

from src.config.learning import DEFAULT_TOOL_WEIGHT
from src.models.base import Base

GLOBAL_SCOPE = "global"


class ToolEffectiveness(Base):
    """
    Period-bucketed usage and accuracy sums for one research tool.

    Attributes:
        scope: Organization id, or "global"
        tool_type: Research tool identifier
        period_start / period_end: First and last day of the calendar month
        total_uses / contributed_to_sale / contributed_to_return: counters
        price_deviation_sum / price_accuracy_count: sum of accuracy ratios
        identification_correct_count / identification_total_count: id accuracy
        confidence_sum / confidence_count: reported tool confidence
        actual_accuracy_sum: sum of max(0, 1 - ratio)
        current_weight: live multiplier in [0.1, 2.0]; only moved by calibration
        suggested_weight / calibration_score / last_calibrated_at: last calibration
    """

    __tablename__ = "tool_effectiveness"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    scope = Column(String(64), nullable=False)
    tool_type = Column(String(100), nullable=False)
    period_start = Column(Date, nullable=False)
    period_end = Column(Date, nullable=False)

    # Usage counters
    total_uses = Column(Integer, nullable=False, default=0)
    contributed_to_sale = Column(Integer, nullable=False, default=0)
    contributed_to_return = Column(Integer, nullable=False, default=0)

    # Accuracy accumulators
    price_deviation_sum = Column(Float, nullable=False, default=0.0)
    price_accuracy_count = Column(Integer, nullable=False, default=0)
    identification_correct_count = Column(Integer, nullable=False, default=0)
    identification_total_count = Column(Integer, nullable=False, default=0)

    # Calibration accumulators
    confidence_sum = Column(Float, nullable=False, default=0.0)
    confidence_count = Column(Integer, nullable=False, default=0)
    actual_accuracy_sum = Column(Float, nullable=False, default=0.0)

    # Weights
    current_weight = Column(Float, nullable=False, default=DEFAULT_TOOL_WEIGHT)
    suggested_weight = Column(Float, nullable=True)
    calibration_score = Column(Float, nullable=True)
    last_calibrated_at = Column(DateTime(timezone=True), nullable=True)

    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint(
            "scope", "tool_type", "period_start", "period_end",
            name="uq_tool_effectiveness_scope_tool_period",
        ),
        Index("idx_tool_effectiveness_tool_period", "tool_type", "period_start"),
        Index("idx_tool_effectiveness_scope_period", "scope", "period_start"),
    )

    def __repr__(self) -> str:
        return (
            f"<ToolEffectiveness(scope={self.scope}, tool={self.tool_type}, "
            f"period={self.period_start}, weight={self.current_weight})>"
        )


__all__ = ["GLOBAL_SCOPE", "ToolEffectiveness"]
