"""
Research Outcome Model for ListLoop.

Links the research prediction captured for an item to what actually
happened on the marketplace (sale, and possibly a return).

Columns fall into three groups:
- predicted: snapshot of the research result at the time of sale
- actual: the sale/return facts
- derived: accuracy metrics computed once at creation

Outcomes are never deleted; they are the audit trail for calibration.
"""

import uuid
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from sqlalchemy import JSON, Boolean, Column, DateTime, Float, Index, Integer, String, Text

from src.models.base import Base


class OutcomeQuality(StrEnum):
    """Overall quality assessment of a research outcome."""

    EXCELLENT = "excellent"  # within 5% of the sold price
    GOOD = "good"            # within 15%
    FAIR = "fair"            # within 30%, inside the predicted band, or unassessable
    POOR = "poor"            # further off, or returned


class ResearchOutcome(Base):
    """
    One outcome per sold listing.

    Attributes:
        id: UUID primary key
        organization_id: Organization that owns the item
        item_id: Item the research was run for
        research_run_id: Research run that produced the prediction (optional)
        marketplace_listing_id: Listing that sold (optional, used to match returns)
        tools_used: list of {"tool_type", "confidence", ...} dicts
        price_accuracy_ratio: |target - sold| / sold, None when not computable
        price_within_bands: floor <= sold <= ceiling, None unless both bounds known
        identification_correct: only ever set by manual correction
        outcome_quality: OutcomeQuality value, forced to "poor" on return
    """

    __tablename__ = "research_outcomes"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    organization_id = Column(String(64), nullable=False)
    item_id = Column(String(64), nullable=False)
    research_run_id = Column(String(64), nullable=True)
    marketplace_listing_id = Column(String(64), nullable=True)

    # Research predictions (snapshot at time of sale)
    predicted_price_floor = Column(Float, nullable=True)
    predicted_price_target = Column(Float, nullable=True)
    predicted_price_ceiling = Column(Float, nullable=True)
    predicted_category = Column(String(255), nullable=True)
    identified_brand = Column(String(255), nullable=True)
    identified_model = Column(String(255), nullable=True)
    research_confidence = Column(Float, nullable=True)  # 0-1
    tools_used = Column(JSON, nullable=False, default=list)

    # Actual outcome
    listed_price = Column(Float, nullable=True)
    sold_price = Column(Float, nullable=True)
    sold_at = Column(DateTime(timezone=True), nullable=True)
    listed_at = Column(DateTime(timezone=True), nullable=True)
    days_to_sell = Column(Integer, nullable=True)  # may be negative on inconsistent timestamps
    marketplace = Column(String(20), nullable=True)
    was_returned = Column(Boolean, nullable=False, default=False)
    return_reason = Column(Text, nullable=True)
    returned_at = Column(DateTime(timezone=True), nullable=True)

    # Derived accuracy metrics
    price_accuracy_ratio = Column(Float, nullable=True)
    identification_correct = Column(Boolean, nullable=True)
    price_within_bands = Column(Boolean, nullable=True)
    outcome_quality = Column(String(20), nullable=True)

    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False,
    )
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
        nullable=False,
    )

    __table_args__ = (
        Index("idx_outcome_org_created", "organization_id", "created_at"),
        Index("idx_outcome_quality_created", "outcome_quality", "created_at"),
        Index("idx_outcome_item", "item_id"),
        Index("idx_outcome_listing", "marketplace_listing_id"),
    )

    def to_dict(self) -> dict[str, Any]:
        """Plain dict for API responses and logging."""
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "item_id": self.item_id,
            "research_run_id": self.research_run_id,
            "marketplace_listing_id": self.marketplace_listing_id,
            "predicted_price_floor": self.predicted_price_floor,
            "predicted_price_target": self.predicted_price_target,
            "predicted_price_ceiling": self.predicted_price_ceiling,
            "predicted_category": self.predicted_category,
            "identified_brand": self.identified_brand,
            "identified_model": self.identified_model,
            "research_confidence": self.research_confidence,
            "tools_used": list(self.tools_used or []),
            "listed_price": self.listed_price,
            "sold_price": self.sold_price,
            "sold_at": _iso(self.sold_at),
            "listed_at": _iso(self.listed_at),
            "days_to_sell": self.days_to_sell,
            "marketplace": self.marketplace,
            "was_returned": bool(self.was_returned),
            "return_reason": self.return_reason,
            "returned_at": _iso(self.returned_at),
            "price_accuracy_ratio": self.price_accuracy_ratio,
            "identification_correct": self.identification_correct,
            "price_within_bands": self.price_within_bands,
            "outcome_quality": self.outcome_quality,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self) -> str:
        return (
            f"<ResearchOutcome(id={self.id}, item_id={self.item_id}, "
            f"quality={self.outcome_quality}, returned={self.was_returned})>"
        )


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


__all__ = ["OutcomeQuality", "ResearchOutcome"]
