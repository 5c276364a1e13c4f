"""
Outcome Recorder for ListLoop.

Turns marketplace sale and return events into ResearchOutcome rows that
link the research prediction to what actually happened.

Flow per sale:
1. Look up listing and item (missing -> warning, no outcome)
2. Snapshot the research prediction and per-tool usage
3. Compute price accuracy ratio, band check, days to sell, quality
4. Commit the outcome
5. Fold it into tool effectiveness (best effort, own failure handling)
6. Run the per-outcome anomaly diagnostics

A failing aggregation never loses the outcome: it is committed first.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.config.learning import (
    QUALITY_EXCELLENT_MAX_RATIO,
    QUALITY_FAIR_MAX_RATIO,
    QUALITY_GOOD_MAX_RATIO,
)
from src.lib.clock import as_utc, utc_now
from src.models.outcome import OutcomeQuality, ResearchOutcome
from src.services.effectiveness import ToolEffectivenessAggregator
from src.services.listing_source import ListingReader
from src.services.tool_usage import NullToolUsageProvider, ToolUsageProvider

if TYPE_CHECKING:
    from src.services.anomaly_detection import AnomalyDetectionService

logger = logging.getLogger(__name__)


# =============================================================================
# Accuracy calculations
# =============================================================================


def calculate_price_accuracy_ratio(
    predicted_target: float | None,
    sold_price: float | None,
) -> float | None:
    """|target - sold| / sold; None when the target is unknown or sold <= 0."""
    if predicted_target is None or sold_price is None or sold_price <= 0:
        return None
    return abs(predicted_target - sold_price) / sold_price


def is_within_bands(
    floor: float | None,
    ceiling: float | None,
    sold_price: float | None,
) -> bool | None:
    """floor <= sold <= ceiling; None unless both bounds are known."""
    if floor is None or ceiling is None or sold_price is None:
        return None
    return floor <= sold_price <= ceiling


def calculate_outcome_quality(
    price_accuracy_ratio: float | None,
    price_within_bands: bool | None,
) -> OutcomeQuality:
    """
    Map price accuracy to a quality bucket.

    ratio <= 0.05 excellent, <= 0.15 good, <= 0.30 (or sold inside the
    predicted band) fair, otherwise poor. No ratio -> fair.
    """
    if price_accuracy_ratio is None:
        return OutcomeQuality.FAIR
    if price_accuracy_ratio <= QUALITY_EXCELLENT_MAX_RATIO:
        return OutcomeQuality.EXCELLENT
    if price_accuracy_ratio <= QUALITY_GOOD_MAX_RATIO:
        return OutcomeQuality.GOOD
    if price_accuracy_ratio <= QUALITY_FAIR_MAX_RATIO or price_within_bands:
        return OutcomeQuality.FAIR
    return OutcomeQuality.POOR


def calculate_days_to_sell(
    listed_at: datetime | None,
    sold_at: datetime | None,
) -> int | None:
    """Whole days between listing and sale, floored. Negative is allowed."""
    listed_at = as_utc(listed_at)
    sold_at = as_utc(sold_at)
    if listed_at is None or sold_at is None:
        return None
    return math.floor((sold_at - listed_at).total_seconds() / 86400)


# =============================================================================
# Service
# =============================================================================


class OutcomeRecorder:
    """
    Record sale and return outcomes for research predictions.

    Dependencies are injected: the listing/item lookup, the per-tool
    usage source and, optionally, the anomaly detector whose per-outcome
    diagnostics run after each sale.
    """

    def __init__(
        self,
        session: AsyncSession,
        listing_reader: ListingReader,
        tool_usage_provider: ToolUsageProvider | None = None,
        anomaly_detector: AnomalyDetectionService | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.session = session
        self.listing_reader = listing_reader
        self.tool_usage_provider = tool_usage_provider or NullToolUsageProvider()
        self.anomaly_detector = anomaly_detector
        self.clock = clock
        self.aggregator = ToolEffectivenessAggregator(session, clock=clock)

    async def record_sale(
        self,
        listing_id: str,
        sold_price: float,
        sold_at: datetime,
        marketplace: str | None = None,
    ) -> ResearchOutcome | None:
        """
        Record the outcome of a sold listing.

        Args:
            listing_id: Marketplace listing that sold
            sold_price: Final sale price
            sold_at: When the sale happened
            marketplace: Marketplace identifier (e.g. "ebay")

        Returns:
            The persisted outcome, or None if the listing or its item is unknown
        """
        listing = await self.listing_reader.get_listing(listing_id)
        if listing is None:
            logger.warning("Listing %s not found, sale outcome not recorded", listing_id)
            return None

        item = await self.listing_reader.get_item(listing.item_id)
        if item is None or not item.organization_id:
            logger.warning(
                "Item %s for listing %s not found, sale outcome not recorded",
                listing.item_id, listing_id,
            )
            return None

        tools = await self.tool_usage_provider.get_tool_usage(item.id)

        sold_at = as_utc(sold_at)
        listed_at = as_utc(listing.created_at)
        ratio = calculate_price_accuracy_ratio(item.price_target, sold_price)
        within_bands = is_within_bands(item.price_floor, item.price_ceiling, sold_price)
        quality = calculate_outcome_quality(ratio, within_bands)
        now = self.clock()

        outcome = ResearchOutcome(
            organization_id=item.organization_id,
            item_id=item.id,
            research_run_id=item.research_run_id,
            marketplace_listing_id=listing_id,
            predicted_price_floor=item.price_floor,
            predicted_price_target=item.price_target,
            predicted_price_ceiling=item.price_ceiling,
            predicted_category=item.category,
            identified_brand=item.brand,
            identified_model=item.model,
            research_confidence=item.research_confidence,
            tools_used=[tool.to_dict() for tool in tools],
            listed_price=listing.price,
            sold_price=sold_price,
            sold_at=sold_at,
            listed_at=listed_at,
            days_to_sell=calculate_days_to_sell(listed_at, sold_at),
            marketplace=marketplace or listing.marketplace,
            was_returned=False,
            price_accuracy_ratio=ratio,
            identification_correct=None,
            price_within_bands=within_bands,
            outcome_quality=quality.value,
            created_at=now,
            updated_at=now,
        )

        self.session.add(outcome)
        await self.session.commit()
        outcome_id = outcome.id

        try:
            await self.aggregator.apply_outcome(outcome)
        except SQLAlchemyError:
            await self.session.rollback()
            logger.exception("Tool effectiveness update failed for outcome %s", outcome_id)
            await self.session.refresh(outcome)

        if self.anomaly_detector is not None:
            self.anomaly_detector.check_outcome(outcome)

        logger.info(
            "Recorded sale outcome for item %s: %s quality, sold %.2f (predicted %s)",
            item.id, quality.value, sold_price, item.price_target,
        )
        return outcome

    async def record_return(
        self,
        listing_id: str,
        returned_at: datetime | None = None,
        reason: str | None = None,
    ) -> ResearchOutcome | None:
        """
        Mark the outcome of a listing as returned.

        Quality is forced to poor and the return is counted against each
        tool's current month row.

        Returns:
            The updated outcome, or None if no outcome exists for the listing
        """
        stmt = (
            select(ResearchOutcome)
            .where(ResearchOutcome.marketplace_listing_id == listing_id)
            .order_by(ResearchOutcome.created_at.desc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        outcome = result.scalars().first()

        if outcome is None:
            logger.warning("No outcome found for returned listing %s", listing_id)
            return None

        outcome.was_returned = True
        outcome.return_reason = reason
        outcome.returned_at = as_utc(returned_at) or self.clock()
        outcome.outcome_quality = OutcomeQuality.POOR.value
        outcome.updated_at = self.clock()
        await self.session.commit()
        outcome_id = outcome.id

        try:
            await self.aggregator.apply_return(outcome)
        except SQLAlchemyError:
            await self.session.rollback()
            logger.exception(
                "Tool effectiveness return update failed for outcome %s", outcome_id
            )
            await self.session.refresh(outcome)

        logger.info("Recorded return for listing %s", listing_id)
        return outcome


__all__ = [
    "OutcomeRecorder",
    "calculate_price_accuracy_ratio",
    "is_within_bands",
    "calculate_outcome_quality",
    "calculate_days_to_sell",
]
