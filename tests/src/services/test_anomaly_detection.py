"""
Tests for the AnomalyDetectionService.

Tests cover:
- Pattern checks: price deviation, slow sales, return rate (thresholds, severity)
- sweep_org: creation, in-place refresh, minimum outcome count
- sweep_org: concurrent sweeps keep one open anomaly per type
- sweep_all: per-organization isolation, single flight, sweep report
- check_outcome: per-sale flags, nothing persisted
- list_anomalies / get_active_anomalies / resolve
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import text

from src.lib.clock import as_utc
from src.lib.exceptions import DatabaseError, NotFoundError
from src.models.anomaly import AnomalySeverity, AnomalyType, ResearchAnomaly
from src.models.outcome import ResearchOutcome
from src.services.anomaly_detection import (
    detect_price_deviation,
    detect_return_rate,
    detect_slow_sales,
)

# =============================================================================
# Fixtures
# =============================================================================


def _outcomes(
    count: int,
    ratio: float | None = None,
    days: int | None = None,
    returned: int = 0,
) -> list[ResearchOutcome]:
    return [
        ResearchOutcome(
            item_id=f"item-{i}",
            organization_id="org-1",
            price_accuracy_ratio=ratio,
            days_to_sell=days,
            was_returned=i < returned,
        )
        for i in range(count)
    ]


async def _sell_many(sell, count: int, prefix: str = "lst", **kwargs) -> list:
    return [await sell(f"{prefix}-{i}", **kwargs) for i in range(count)]


# =============================================================================
# Pattern checks
# =============================================================================


class TestDetectPriceDeviation:

    def test_info_between_fifteen_and_twenty_five_percent(self) -> None:
        candidate = detect_price_deviation(_outcomes(10, ratio=0.2))
        assert candidate is not None
        assert candidate.anomaly_type == AnomalyType.PRICE_DEVIATION
        assert candidate.severity == AnomalySeverity.INFO
        assert candidate.pattern["sample_size"] == 10
        assert candidate.pattern["avg_deviation"] == pytest.approx(0.2)
        assert len(candidate.affected_items) == 10
        assert "20.0%" in candidate.description

    def test_warning_above_twenty_five_percent(self) -> None:
        candidate = detect_price_deviation(_outcomes(10, ratio=0.4))
        assert candidate.severity == AnomalySeverity.WARNING

    def test_below_threshold(self) -> None:
        assert detect_price_deviation(_outcomes(10, ratio=0.15)) is None

    def test_needs_ten_priced_sales(self) -> None:
        outcomes = _outcomes(9, ratio=0.5) + _outcomes(5, ratio=None)
        assert detect_price_deviation(outcomes) is None


class TestDetectSlowSales:

    def test_info_above_thirty_days(self) -> None:
        candidate = detect_slow_sales(_outcomes(5, days=40))
        assert candidate.anomaly_type == AnomalyType.SLOW_SALES
        assert candidate.severity == AnomalySeverity.INFO
        assert candidate.pattern["avg_days_to_sell"] == 40

    def test_warning_above_forty_five_days(self) -> None:
        assert detect_slow_sales(_outcomes(5, days=50)).severity == AnomalySeverity.WARNING

    def test_needs_five_dated_sales(self) -> None:
        assert detect_slow_sales(_outcomes(4, days=90)) is None

    def test_exactly_thirty_days_is_fine(self) -> None:
        assert detect_slow_sales(_outcomes(5, days=30)) is None


class TestDetectReturnRate:

    def test_critical_above_twenty_five_percent(self) -> None:
        candidate = detect_return_rate(_outcomes(10, returned=3))
        assert candidate.anomaly_type == AnomalyType.CATEGORY_MISIDENTIFICATION
        assert candidate.severity == AnomalySeverity.CRITICAL
        assert candidate.affected_items == ["item-0", "item-1", "item-2"]
        assert candidate.pattern["returns_count"] == 3
        assert candidate.pattern["total_sales"] == 10

    def test_warning_between_fifteen_and_twenty_five_percent(self) -> None:
        assert detect_return_rate(_outcomes(10, returned=2)).severity == AnomalySeverity.WARNING

    def test_at_threshold_is_fine(self) -> None:
        assert detect_return_rate(_outcomes(20, returned=3)) is None

    def test_needs_ten_sales(self) -> None:
        assert detect_return_rate(_outcomes(9, returned=9)) is None


# =============================================================================
# sweep_org
# =============================================================================


class TestSweepOrg:

    @pytest.mark.asyncio
    async def test_creates_price_deviation_anomaly(self, sell, anomaly_service) -> None:
        await _sell_many(sell, 10, sold_price=100.0, target=120.0)

        created = await anomaly_service.sweep_org("org-1")

        assert created == 1
        anomalies, total = await anomaly_service.list_anomalies("org-1")
        assert total == 1
        anomaly = anomalies[0]
        assert anomaly.anomaly_type == AnomalyType.PRICE_DEVIATION.value
        assert anomaly.severity == AnomalySeverity.INFO.value
        assert anomaly.resolved is False
        assert anomaly.suggested_action

    @pytest.mark.asyncio
    async def test_second_sweep_refreshes_in_place(self, sell, anomaly_service, clock) -> None:
        await _sell_many(sell, 10, sold_price=100.0, target=120.0)
        await anomaly_service.sweep_org("org-1")
        first, _ = await anomaly_service.list_anomalies("org-1")

        later = clock.advance(hours=6)
        assert await anomaly_service.sweep_org("org-1") == 0

        anomalies, total = await anomaly_service.list_anomalies("org-1")
        assert total == 1
        assert anomalies[0].id == first[0].id
        assert as_utc(anomalies[0].detected_at) == later

    @pytest.mark.asyncio
    async def test_refresh_updates_severity(self, sell, recorder, anomaly_service) -> None:
        await _sell_many(sell, 10)
        await recorder.record_return("lst-0", None, "damaged")
        await recorder.record_return("lst-1", None, "damaged")
        await anomaly_service.sweep_org("org-1")

        await recorder.record_return("lst-2", None, "wrong model")
        await anomaly_service.sweep_org("org-1")

        anomalies, total = await anomaly_service.list_anomalies(
            "org-1", anomaly_type=AnomalyType.CATEGORY_MISIDENTIFICATION.value
        )
        assert total == 1
        assert anomalies[0].severity == AnomalySeverity.CRITICAL.value
        assert anomalies[0].pattern["returns_count"] == 3

    @pytest.mark.asyncio
    async def test_resolved_anomaly_is_not_reopened(self, sell, anomaly_service) -> None:
        await _sell_many(sell, 10, sold_price=100.0, target=120.0)
        await anomaly_service.sweep_org("org-1")
        (anomaly,), _ = await anomaly_service.list_anomalies("org-1")
        await anomaly_service.resolve("org-1", anomaly.id, "repriced", "user-1")

        assert await anomaly_service.sweep_org("org-1") == 1

        _, total = await anomaly_service.list_anomalies("org-1")
        active = await anomaly_service.get_active_anomalies("org-1")
        assert total == 2
        assert len(active) == 1
        assert active[0].id != anomaly.id

    @pytest.mark.asyncio
    async def test_slow_sales(self, sell, anomaly_service) -> None:
        await _sell_many(sell, 5, days_listed=50)

        assert await anomaly_service.sweep_org("org-1") == 1

        (anomaly,), _ = await anomaly_service.list_anomalies("org-1")
        assert anomaly.anomaly_type == AnomalyType.SLOW_SALES.value
        assert anomaly.severity == AnomalySeverity.WARNING.value

    @pytest.mark.asyncio
    async def test_too_few_outcomes_skips(self, sell, anomaly_service) -> None:
        await _sell_many(sell, 4, days_listed=90)

        assert await anomaly_service.sweep_org("org-1") == 0
        assert await anomaly_service.list_anomalies("org-1") == ([], 0)

    @pytest.mark.asyncio
    async def test_old_outcomes_are_outside_window(self, sell, anomaly_service, clock) -> None:
        await _sell_many(sell, 10, sold_price=100.0, target=120.0)
        clock.advance(days=31)

        assert await anomaly_service.sweep_org("org-1") == 0

    @pytest.mark.asyncio
    async def test_healthy_organization_has_no_anomalies(self, sell, anomaly_service) -> None:
        await _sell_many(sell, 12)
        assert await anomaly_service.sweep_org("org-1") == 0


# =============================================================================
# sweep_all
# =============================================================================


class TestSweepAll:

    @pytest.mark.asyncio
    async def test_sweeps_every_organization(self, sell, anomaly_service) -> None:
        await _sell_many(sell, 10, prefix="a", sold_price=100.0, target=120.0, org_id="org-a")
        await _sell_many(sell, 5, prefix="b", days_listed=40, org_id="org-b")
        await _sell_many(sell, 3, prefix="c", org_id="org-c")

        created = await anomaly_service.sweep_all()

        assert created == 2
        report = anomaly_service.last_sweep_report
        assert report.orgs_scanned == 3
        assert report.created == 2
        assert report.failed_orgs == []
        assert report.finished_at is not None

    @pytest.mark.asyncio
    async def test_failing_organization_does_not_stop_others(
        self, sell, anomaly_service, monkeypatch,
    ) -> None:
        await _sell_many(sell, 10, prefix="a", sold_price=100.0, target=120.0, org_id="org-a")
        await _sell_many(sell, 10, prefix="b", sold_price=100.0, target=120.0, org_id="org-b")

        original = anomaly_service._sweep_org

        async def flaky(org_id):
            if org_id == "org-a":
                raise DatabaseError("database is locked")
            return await original(org_id)

        monkeypatch.setattr(anomaly_service, "_sweep_org", flaky)

        assert await anomaly_service.sweep_all() == 1
        assert anomaly_service.last_sweep_report.failed_orgs == ["org-a"]
        assert (await anomaly_service.list_anomalies("org-b"))[1] == 1

    @pytest.mark.asyncio
    async def test_skips_while_running(self, anomaly_service) -> None:
        async with anomaly_service._lock:
            assert anomaly_service.is_running is True
            assert await anomaly_service.sweep_all() == 0
        assert anomaly_service.last_sweep_report is None

    @pytest.mark.asyncio
    async def test_second_sweep_reports_refreshes(self, sell, anomaly_service) -> None:
        await _sell_many(sell, 10, sold_price=100.0, target=120.0)

        assert await anomaly_service.sweep_all() == 1
        assert await anomaly_service.sweep_all() == 0
        assert anomaly_service.last_sweep_report.refreshed == 1

    @pytest.mark.asyncio
    async def test_sweep_org_raises_database_error(self, anomaly_service, engine) -> None:
        async with engine.begin() as conn:
            await conn.execute(text("DROP TABLE research_outcomes"))

        with pytest.raises(DatabaseError):
            await anomaly_service.sweep_org("org-1")


# =============================================================================
# Concurrent sweeps
# =============================================================================


class TestConcurrentSweeps:

    @pytest.mark.asyncio
    async def test_parallel_sweeps_open_one_anomaly(self, sell, anomaly_service) -> None:
        await _sell_many(sell, 10, sold_price=100.0, target=120.0)

        results = await asyncio.gather(
            anomaly_service.sweep_org("org-1"),
            anomaly_service.sweep_org("org-1"),
        )

        assert sorted(results) == [0, 1]
        _, total = await anomaly_service.list_anomalies("org-1", resolved=False)
        assert total == 1

    @pytest.mark.asyncio
    async def test_sweep_org_waits_for_full_sweep(self, sell, anomaly_service) -> None:
        await _sell_many(sell, 10, sold_price=100.0, target=120.0)

        created_all, created_org = await asyncio.gather(
            anomaly_service.sweep_all(),
            anomaly_service.sweep_org("org-1"),
        )

        assert (created_all, created_org) == (1, 0)
        _, total = await anomaly_service.list_anomalies("org-1", resolved=False)
        assert total == 1

    @pytest.mark.asyncio
    async def test_anomaly_opened_by_another_writer_is_refreshed(
        self, sell, anomaly_service, session_factory, clock, monkeypatch,
    ) -> None:
        await _sell_many(sell, 10, sold_price=100.0, target=120.0)
        real_find_open = anomaly_service._find_open
        opened_elsewhere = False

        async def find_open_after_other_writer(session, org_id, anomaly_type):
            nonlocal opened_elsewhere
            if not opened_elsewhere:
                opened_elsewhere = True
                async with session_factory() as other:
                    other.add(ResearchAnomaly(
                        organization_id=org_id,
                        detected_at=clock() - timedelta(hours=1),
                        anomaly_type=anomaly_type,
                        severity=AnomalySeverity.WARNING.value,
                        description="Opened by another sweep",
                        affected_items=[],
                    ))
                    await other.commit()
                return None
            return await real_find_open(session, org_id, anomaly_type)

        monkeypatch.setattr(anomaly_service, "_find_open", find_open_after_other_writer)

        assert await anomaly_service.sweep_org("org-1") == 0

        anomalies, total = await anomaly_service.list_anomalies("org-1")
        assert total == 1
        assert anomalies[0].severity == AnomalySeverity.INFO.value
        assert anomalies[0].pattern["sample_size"] == 10
        assert as_utc(anomalies[0].detected_at) == clock()


# =============================================================================
# check_outcome
# =============================================================================


class TestCheckOutcome:

    def test_clean_sale_has_no_flags(self, anomaly_service) -> None:
        outcome = ResearchOutcome(item_id="i", price_accuracy_ratio=0.05, days_to_sell=3)
        assert anomaly_service.check_outcome(outcome) == []

    def test_significant_price_deviation(self, anomaly_service) -> None:
        outcome = ResearchOutcome(item_id="i", price_accuracy_ratio=0.4)
        assert anomaly_service.check_outcome(outcome) == ["significant_price_deviation"]

    def test_confidence_miscalibration(self, anomaly_service) -> None:
        # Reported 95% confident, actual accuracy 60%
        outcome = ResearchOutcome(item_id="i", price_accuracy_ratio=0.4, research_confidence=0.95)
        assert "confidence_miscalibration" in anomaly_service.check_outcome(outcome)

    def test_slow_sale(self, anomaly_service) -> None:
        outcome = ResearchOutcome(item_id="i", days_to_sell=60)
        assert anomaly_service.check_outcome(outcome) == ["slow_sale"]

    @pytest.mark.asyncio
    async def test_nothing_is_persisted(self, sell, anomaly_service) -> None:
        await sell("lst-1", sold_price=100.0, target=200.0, days_listed=60, research_confidence=0.9)
        assert await anomaly_service.list_anomalies() == ([], 0)


# =============================================================================
# Queries and resolution
# =============================================================================


class TestResolve:

    @pytest.mark.asyncio
    async def test_resolve_sets_resolution_fields(self, sell, anomaly_service, clock) -> None:
        await _sell_many(sell, 10, sold_price=100.0, target=120.0)
        await anomaly_service.sweep_org("org-1")
        (anomaly,), _ = await anomaly_service.list_anomalies("org-1")

        resolved = await anomaly_service.resolve("org-1", anomaly.id, "Adjusted pricing", "user-1")

        assert resolved.resolved is True
        assert resolved.resolved_by == "user-1"
        assert resolved.resolution_notes == "Adjusted pricing"
        assert as_utc(resolved.resolved_at) == clock()
        assert await anomaly_service.get_active_anomalies("org-1") == []

    @pytest.mark.asyncio
    async def test_resolving_twice_raises(self, sell, anomaly_service) -> None:
        await _sell_many(sell, 10, sold_price=100.0, target=120.0)
        await anomaly_service.sweep_org("org-1")
        (anomaly,), _ = await anomaly_service.list_anomalies("org-1")
        await anomaly_service.resolve("org-1", anomaly.id)

        with pytest.raises(NotFoundError):
            await anomaly_service.resolve("org-1", anomaly.id)

    @pytest.mark.asyncio
    async def test_other_organization_cannot_resolve(self, sell, anomaly_service) -> None:
        await _sell_many(sell, 10, sold_price=100.0, target=120.0)
        await anomaly_service.sweep_org("org-1")
        (anomaly,), _ = await anomaly_service.list_anomalies("org-1")

        with pytest.raises(NotFoundError):
            await anomaly_service.resolve("org-2", anomaly.id)

    @pytest.mark.asyncio
    async def test_list_filters(self, sell, anomaly_service) -> None:
        await _sell_many(sell, 10, prefix="a", sold_price=100.0, target=120.0, org_id="org-a")
        await _sell_many(sell, 5, prefix="b", days_listed=50, org_id="org-b")
        await anomaly_service.sweep_all()

        _, total_all = await anomaly_service.list_anomalies()
        _, warnings = await anomaly_service.list_anomalies(severity="warning")
        page, total_a = await anomaly_service.list_anomalies("org-a", resolved=False)
        assert total_all == 2
        assert warnings == 1
        assert total_a == 1
        assert page[0].organization_id == "org-a"

        page, total = await anomaly_service.list_anomalies(limit=1, offset=1)
        assert total == 2
        assert len(page) == 1
