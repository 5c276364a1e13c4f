"""
Anomaly Detection Service for ListLoop.

Detects organization-level patterns that point at systematic research
quality problems:

- price_deviation: predicted target prices are off on average
- slow_sales: items take too long to sell (likely overpriced)
- category_misidentification: too many sales come back as returns

Two entry points:
- check_outcome: per-sale diagnostics, logged only, never persisted
- sweep_all / sweep_org: scheduled scans over the recent window that keep
  at most one open anomaly per (organization, anomaly type)

Re-detection refreshes the open anomaly in place (severity, evidence,
detected_at). Resolved anomalies are never reopened.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import and_, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.config.learning import ANOMALY_THRESHOLDS, get_settings
from src.lib.clock import utc_now
from src.lib.database import get_session_factory
from src.lib.exceptions import DatabaseError, NotFoundError
from src.models.anomaly import AnomalySeverity, AnomalyType, ResearchAnomaly
from src.models.outcome import ResearchOutcome

logger = logging.getLogger(__name__)


# ============================================================================
# Data Classes
# ============================================================================

@dataclass
class AnomalyCandidate:
    """A pattern found in one organization's recent outcomes."""

    anomaly_type: AnomalyType
    severity: AnomalySeverity
    description: str
    affected_items: list[str] = field(default_factory=list)
    pattern: dict[str, Any] = field(default_factory=dict)
    suggested_action: str | None = None
    tool_type: str | None = None


@dataclass
class SweepReport:
    """Summary of the last full sweep."""

    started_at: datetime
    finished_at: datetime | None = None
    orgs_scanned: int = 0
    created: int = 0
    refreshed: int = 0
    failed_orgs: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "orgs_scanned": self.orgs_scanned,
            "created": self.created,
            "refreshed": self.refreshed,
            "failed_orgs": list(self.failed_orgs),
        }


# ============================================================================
# Pattern Checks
# ============================================================================

def detect_price_deviation(outcomes: Sequence[ResearchOutcome]) -> AnomalyCandidate | None:
    """Mean price accuracy ratio above 15% over at least 10 priced sales."""
    threshold = ANOMALY_THRESHOLDS["price_deviation"]
    deviations = [o.price_accuracy_ratio for o in outcomes if o.price_accuracy_ratio is not None]

    if len(deviations) < ANOMALY_THRESHOLDS["price_deviation_min_items"]:
        return None

    avg_deviation = sum(deviations) / len(deviations)
    if avg_deviation <= threshold:
        return None

    severity = (
        AnomalySeverity.WARNING
        if avg_deviation > ANOMALY_THRESHOLDS["price_deviation_warning"]
        else AnomalySeverity.INFO
    )
    return AnomalyCandidate(
        anomaly_type=AnomalyType.PRICE_DEVIATION,
        severity=severity,
        description=(
            f"Average price deviation of {avg_deviation * 100:.1f}% "
            f"across {len(deviations)} recent sales. "
            "Research predictions may need calibration."
        ),
        affected_items=[
            o.item_id for o in outcomes
            if o.price_accuracy_ratio is not None and o.price_accuracy_ratio > threshold
        ],
        pattern={
            "avg_deviation": avg_deviation,
            "sample_size": len(deviations),
            "threshold": threshold,
        },
        suggested_action=(
            "Review tool weights and consider running manual calibration. "
            "Check if specific categories or price ranges are affected."
        ),
    )


def detect_slow_sales(outcomes: Sequence[ResearchOutcome]) -> AnomalyCandidate | None:
    """Mean days to sell above 30 over at least 5 sales with a listing date."""
    threshold = ANOMALY_THRESHOLDS["slow_sales_days"]
    days = [o.days_to_sell for o in outcomes if o.days_to_sell is not None]

    if len(days) < ANOMALY_THRESHOLDS["slow_sales_min_items"]:
        return None

    avg_days = sum(days) / len(days)
    if avg_days <= threshold:
        return None

    severity = (
        AnomalySeverity.WARNING
        if avg_days > ANOMALY_THRESHOLDS["slow_sales_warning_days"]
        else AnomalySeverity.INFO
    )
    return AnomalyCandidate(
        anomaly_type=AnomalyType.SLOW_SALES,
        severity=severity,
        description=(
            f"Average time to sell is {avg_days:.1f} days "
            f"across {len(days)} recent sales. "
            "Items may be overpriced or in low-demand categories."
        ),
        affected_items=[
            o.item_id for o in outcomes
            if o.days_to_sell is not None and o.days_to_sell > threshold
        ],
        pattern={
            "avg_days_to_sell": avg_days,
            "sample_size": len(days),
            "threshold": threshold,
        },
        suggested_action=(
            "Consider adjusting pricing strategy. Review if target price is too high "
            "relative to floor price."
        ),
    )


def detect_return_rate(outcomes: Sequence[ResearchOutcome]) -> AnomalyCandidate | None:
    """Return rate above 15% over at least 10 sales."""
    total = len(outcomes)
    if total < ANOMALY_THRESHOLDS["return_rate_min_items"]:
        return None

    returned = [o for o in outcomes if o.was_returned]
    return_rate = len(returned) / total
    if return_rate <= ANOMALY_THRESHOLDS["return_rate"]:
        return None

    severity = (
        AnomalySeverity.CRITICAL
        if return_rate > ANOMALY_THRESHOLDS["return_rate_critical"]
        else AnomalySeverity.WARNING
    )
    return AnomalyCandidate(
        anomaly_type=AnomalyType.CATEGORY_MISIDENTIFICATION,
        severity=severity,
        description=(
            f"High return rate of {return_rate * 100:.1f}% "
            f"({len(returned)} of {total} items). "
            "This may indicate identification or condition assessment issues."
        ),
        affected_items=[o.item_id for o in returned],
        pattern={
            "return_rate": return_rate,
            "returns_count": len(returned),
            "total_sales": total,
        },
        suggested_action=(
            "Review return reasons. Check if identification accuracy needs improvement "
            "or if condition assessment is lacking detail."
        ),
    )


PATTERN_CHECKS: tuple[Callable[[Sequence[ResearchOutcome]], AnomalyCandidate | None], ...] = (
    detect_price_deviation,
    detect_slow_sales,
    detect_return_rate,
)


# ============================================================================
# Service Implementation
# ============================================================================

class AnomalyDetectionService:
    """
    Detect, persist and resolve research quality anomalies.

    Full sweeps are single flight per instance. Organizations are swept
    concurrently (bounded by a semaphore), each on its own session, and
    a failing organization does not stop the others.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        clock: Callable[[], datetime] = utc_now,
        concurrency: int | None = None,
    ):
        settings = get_settings()
        self._session_factory = session_factory or get_session_factory()
        self.clock = clock
        self.concurrency = concurrency or settings.sweep_concurrency
        self.lookback_days = settings.anomaly_lookback_days
        self._lock = asyncio.Lock()
        self.last_sweep_report: SweepReport | None = None

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    # ------------------------------------------------------------------
    # Per-outcome diagnostics
    # ------------------------------------------------------------------

    def check_outcome(self, outcome: ResearchOutcome) -> list[str]:
        """
        Log per-sale warning signs. Never writes anything.

        Returns:
            Names of the flags raised for this outcome
        """
        flags: list[str] = []
        ratio = outcome.price_accuracy_ratio

        if ratio is not None and ratio > ANOMALY_THRESHOLDS["significant_price_deviation"]:
            flags.append("significant_price_deviation")
            logger.debug(
                "Significant price deviation for item %s: %.1f%%",
                outcome.item_id, ratio * 100,
            )

        if ratio is not None and outcome.research_confidence is not None:
            actual_accuracy = max(0.0, 1.0 - ratio)
            deviation = abs(actual_accuracy - outcome.research_confidence)
            if deviation > ANOMALY_THRESHOLDS["calibration_deviation"]:
                flags.append("confidence_miscalibration")
                logger.debug(
                    "Confidence miscalibration for item %s: reported %.0f%%, actual %.0f%%",
                    outcome.item_id, outcome.research_confidence * 100, actual_accuracy * 100,
                )

        if outcome.days_to_sell is not None and outcome.days_to_sell > ANOMALY_THRESHOLDS["slow_sale_days"]:
            flags.append("slow_sale")
            logger.debug("Slow sale for item %s: %d days", outcome.item_id, outcome.days_to_sell)

        return flags

    # ------------------------------------------------------------------
    # Sweeps
    # ------------------------------------------------------------------

    async def sweep_all(self) -> int:
        """
        Sweep every organization with recent outcomes.

        Skipped (returns 0) when a sweep is already running. The details
        of the run are kept in `last_sweep_report`.

        Returns:
            Number of newly created anomalies
        """
        if self._lock.locked():
            logger.info("Anomaly sweep already in progress, skipping")
            return 0

        async with self._lock:
            report = SweepReport(started_at=self.clock())
            cutoff = self._window_start()

            async with self._session_factory() as session:
                stmt = (
                    select(ResearchOutcome.organization_id)
                    .where(ResearchOutcome.created_at >= cutoff)
                    .distinct()
                )
                org_ids = list((await session.execute(stmt)).scalars().all())

            logger.info("Starting anomaly sweep over %d organizations", len(org_ids))
            semaphore = asyncio.Semaphore(self.concurrency)

            async def sweep_one(org_id: str) -> None:
                async with semaphore:
                    try:
                        created, refreshed = await self._sweep_org(org_id)
                    except DatabaseError:
                        logger.exception("Anomaly sweep failed for organization %s", org_id)
                        report.failed_orgs.append(org_id)
                        return
                    report.created += created
                    report.refreshed += refreshed

            await asyncio.gather(*(sweep_one(org_id) for org_id in org_ids))

            report.orgs_scanned = len(org_ids)
            report.finished_at = self.clock()
            self.last_sweep_report = report

            logger.info(
                "Anomaly sweep complete: %d new, %d refreshed, %d failed organizations",
                report.created, report.refreshed, len(report.failed_orgs),
            )
            return report.created

    async def sweep_org(self, org_id: str) -> int:
        """
        Sweep one organization.

        Waits for a running sweep to finish first.

        Returns:
            Number of newly created anomalies

        Raises:
            DatabaseError: Reading outcomes or writing anomalies failed
        """
        async with self._lock:
            created, _ = await self._sweep_org(org_id)
        return created

    async def _sweep_org(self, org_id: str) -> tuple[int, int]:
        cutoff = self._window_start()
        try:
            async with self._session_factory() as session:
                stmt = (
                    select(ResearchOutcome)
                    .where(
                        and_(
                            ResearchOutcome.organization_id == org_id,
                            ResearchOutcome.created_at >= cutoff,
                        )
                    )
                    .order_by(ResearchOutcome.created_at.desc())
                )
                outcomes = list((await session.execute(stmt)).scalars().all())

                if len(outcomes) < ANOMALY_THRESHOLDS["min_org_outcomes"]:
                    logger.debug(
                        "Skipping organization %s: %d outcomes in window",
                        org_id, len(outcomes),
                    )
                    return 0, 0

                created = refreshed = 0
                for check in PATTERN_CHECKS:
                    candidate = check(outcomes)
                    if candidate is None:
                        continue
                    if await self._upsert_anomaly(session, org_id, candidate):
                        created += 1
                    else:
                        refreshed += 1

                await session.commit()
        except SQLAlchemyError as exc:
            raise DatabaseError(f"Anomaly sweep failed for organization {org_id}: {exc}") from exc

        return created, refreshed

    async def _upsert_anomaly(
        self,
        session: AsyncSession,
        org_id: str,
        candidate: AnomalyCandidate,
    ) -> bool:
        """Create the anomaly, or refresh the open one. True if created."""
        now = self.clock()
        existing = await self._find_open(session, org_id, candidate.anomaly_type.value)
        if existing is not None:
            self._refresh(existing, candidate, now)
            return False

        anomaly = ResearchAnomaly(
            organization_id=org_id,
            detected_at=now,
            anomaly_type=candidate.anomaly_type.value,
            severity=candidate.severity.value,
            description=candidate.description,
            affected_items=list(candidate.affected_items),
            tool_type=candidate.tool_type,
            pattern=dict(candidate.pattern),
            suggested_action=candidate.suggested_action,
            resolved=False,
            created_at=now,
            updated_at=now,
        )
        try:
            async with session.begin_nested():
                session.add(anomaly)
        except IntegrityError:
            # Opened by another writer since the lookup
            existing = await self._find_open(session, org_id, candidate.anomaly_type.value)
            if existing is None:
                raise
            self._refresh(existing, candidate, now)
            return False

        logger.info(
            "Created %s anomaly (%s) for organization %s",
            candidate.anomaly_type.value, candidate.severity.value, org_id,
        )
        return True

    async def _find_open(
        self,
        session: AsyncSession,
        org_id: str,
        anomaly_type: str,
    ) -> ResearchAnomaly | None:
        stmt = select(ResearchAnomaly).where(
            and_(
                ResearchAnomaly.organization_id == org_id,
                ResearchAnomaly.anomaly_type == anomaly_type,
                ResearchAnomaly.resolved.is_(False),
            )
        )
        return (await session.execute(stmt)).scalars().first()

    def _refresh(
        self,
        anomaly: ResearchAnomaly,
        candidate: AnomalyCandidate,
        now: datetime,
    ) -> None:
        anomaly.description = candidate.description
        anomaly.severity = candidate.severity.value
        anomaly.affected_items = list(candidate.affected_items)
        anomaly.pattern = dict(candidate.pattern)
        anomaly.detected_at = now
        anomaly.updated_at = now
        logger.debug(
            "Refreshed %s anomaly %s for organization %s",
            candidate.anomaly_type.value, anomaly.id, anomaly.organization_id,
        )

    def _window_start(self) -> datetime:
        return self.clock() - timedelta(days=self.lookback_days)

    # ------------------------------------------------------------------
    # Queries and resolution
    # ------------------------------------------------------------------

    async def list_anomalies(
        self,
        org_id: str | None = None,
        resolved: bool | None = None,
        severity: str | None = None,
        anomaly_type: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[ResearchAnomaly], int]:
        """
        List anomalies newest first.

        Args:
            org_id: Restrict to one organization; None lists all (admin)

        Returns:
            (page of anomalies, total matching)
        """
        conditions = []
        if org_id is not None:
            conditions.append(ResearchAnomaly.organization_id == org_id)
        if resolved is not None:
            conditions.append(ResearchAnomaly.resolved.is_(resolved))
        if severity:
            conditions.append(ResearchAnomaly.severity == severity)
        if anomaly_type:
            conditions.append(ResearchAnomaly.anomaly_type == anomaly_type)

        async with self._session_factory() as session:
            count_stmt = select(func.count()).select_from(ResearchAnomaly)
            stmt = select(ResearchAnomaly)
            if conditions:
                count_stmt = count_stmt.where(and_(*conditions))
                stmt = stmt.where(and_(*conditions))

            total = (await session.execute(count_stmt)).scalar_one()
            stmt = stmt.order_by(ResearchAnomaly.detected_at.desc()).limit(limit).offset(offset)
            anomalies = list((await session.execute(stmt)).scalars().all())

        return anomalies, total

    async def get_active_anomalies(self, org_id: str) -> list[ResearchAnomaly]:
        """All unresolved anomalies of an organization, newest first."""
        async with self._session_factory() as session:
            stmt = (
                select(ResearchAnomaly)
                .where(
                    and_(
                        ResearchAnomaly.organization_id == org_id,
                        ResearchAnomaly.resolved.is_(False),
                    )
                )
                .order_by(ResearchAnomaly.detected_at.desc())
            )
            return list((await session.execute(stmt)).scalars().all())

    async def resolve(
        self,
        org_id: str,
        anomaly_id: str,
        notes: str | None = None,
        resolved_by: str | None = None,
    ) -> ResearchAnomaly:
        """
        Resolve an open anomaly.

        Raises:
            NotFoundError: No open anomaly with this id for the organization
        """
        async with self._session_factory() as session:
            stmt = select(ResearchAnomaly).where(
                and_(
                    ResearchAnomaly.id == anomaly_id,
                    ResearchAnomaly.organization_id == org_id,
                    ResearchAnomaly.resolved.is_(False),
                )
            )
            anomaly = (await session.execute(stmt)).scalar_one_or_none()
            if anomaly is None:
                raise NotFoundError("Anomaly", anomaly_id)

            now = self.clock()
            anomaly.resolved = True
            anomaly.resolved_at = now
            anomaly.resolved_by = resolved_by
            anomaly.resolution_notes = notes
            anomaly.updated_at = now
            await session.commit()

        logger.info("Anomaly %s resolved by %s", anomaly_id, resolved_by)
        return anomaly


# ============================================================================
# Service Factory
# ============================================================================

_anomaly_service: AnomalyDetectionService | None = None


def get_anomaly_service() -> AnomalyDetectionService:
    """Get or create the process-wide AnomalyDetectionService."""
    global _anomaly_service
    if _anomaly_service is None:
        _anomaly_service = AnomalyDetectionService()
    return _anomaly_service


__all__ = [
    "AnomalyCandidate",
    "SweepReport",
    "AnomalyDetectionService",
    "detect_price_deviation",
    "detect_slow_sales",
    "detect_return_rate",
    "get_anomaly_service",
]
