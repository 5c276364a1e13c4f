"""
Tests for the scheduled learning loop jobs.

Tests cover:
- run_weekly_calibration: success details, skip while running, failure result
- run_daily_sweep: report details, failed organizations, skip while running
- next run times for both jobs
- structlog job context binding
"""

from __future__ import annotations

from datetime import UTC, datetime
from unittest.mock import AsyncMock

import pytest
import structlog

from src.lib.exceptions import CalibrationError, DatabaseError
from src.workflows.learning_jobs import LearningJob, LearningJobs

# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def jobs(calibration_service, anomaly_service, clock) -> LearningJobs:
    return LearningJobs(
        calibration_service=calibration_service,
        anomaly_service=anomaly_service,
        clock=clock,
    )


# =============================================================================
# Weekly calibration
# =============================================================================


class TestWeeklyCalibration:

    @pytest.mark.asyncio
    async def test_reports_calibrated_tools(self, jobs, sell, calibration_service) -> None:
        for i in range(10):
            await sell(f"lst-{i}", sold_price=100.0, target=150.0, tools=[("web_search", 0.9)])

        result = await jobs.run_weekly_calibration()

        assert result.job == LearningJob.WEEKLY_CALIBRATION
        assert result.success is True
        assert result.skipped is False
        assert result.details == {"tools_calibrated": 1, "weights_changed": 1}
        assert calibration_service.get_history()[0].triggered_by == "scheduled"

    @pytest.mark.asyncio
    async def test_skipped_while_running(self, jobs, calibration_service) -> None:
        async with calibration_service._lock:
            result = await jobs.run_weekly_calibration()

        assert result.skipped is True
        assert result.success is True
        assert calibration_service.get_history() == []

    @pytest.mark.asyncio
    async def test_failure_is_reported(self, jobs, calibration_service, monkeypatch) -> None:
        monkeypatch.setattr(
            calibration_service,
            "recalibrate",
            AsyncMock(side_effect=CalibrationError("Tool recalibration failed: locked")),
        )

        result = await jobs.run_weekly_calibration()

        assert result.success is False
        assert "locked" in result.error
        assert result.finished_at is not None


# =============================================================================
# Daily sweep
# =============================================================================


class TestDailySweep:

    @pytest.mark.asyncio
    async def test_reports_sweep(self, jobs, sell) -> None:
        for i in range(10):
            await sell(f"lst-{i}", sold_price=100.0, target=120.0)

        result = await jobs.run_daily_sweep()

        assert result.job == LearningJob.DAILY_SWEEP
        assert result.success is True
        assert result.details["anomalies_created"] == 1
        assert result.details["orgs_scanned"] == 1
        assert result.details["failed_orgs"] == []

    @pytest.mark.asyncio
    async def test_failed_organization_marks_run_unsuccessful(
        self, jobs, sell, anomaly_service, monkeypatch,
    ) -> None:
        await sell("lst-1")

        async def failing(org_id):
            raise DatabaseError("database is locked")

        monkeypatch.setattr(anomaly_service, "_sweep_org", failing)

        result = await jobs.run_daily_sweep()

        assert result.success is False
        assert result.details["failed_orgs"] == ["org-1"]
        assert result.error == "1 organization(s) failed"

    @pytest.mark.asyncio
    async def test_skipped_while_running(self, jobs, anomaly_service) -> None:
        async with anomaly_service._lock:
            result = await jobs.run_daily_sweep()

        assert result.skipped is True
        assert anomaly_service.last_sweep_report is None

    @pytest.mark.asyncio
    async def test_result_to_dict(self, jobs) -> None:
        data = (await jobs.run_daily_sweep()).to_dict()

        assert data["job"] == "daily_anomaly_sweep"
        assert data["started_at"] == "2026-03-18T12:00:00+00:00"
        assert data["details"]["anomalies_created"] == 0


# =============================================================================
# Schedule and context
# =============================================================================


class TestSchedule:

    def test_next_calibration_is_sunday(self, jobs) -> None:
        assert jobs.next_calibration_time() == datetime(2026, 3, 22, 2, 0, tzinfo=UTC)

    def test_next_sweep_is_tomorrow_three_am(self, jobs) -> None:
        assert jobs.next_sweep_time() == datetime(2026, 3, 19, 3, 0, tzinfo=UTC)

    def test_next_sweep_same_day_before_three(self, jobs) -> None:
        now = datetime(2026, 3, 18, 1, 30, tzinfo=UTC)
        assert jobs.next_sweep_time(now) == datetime(2026, 3, 18, 3, 0, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_run_binds_job_context(self, jobs) -> None:
        result = await jobs.run_daily_sweep()

        context = structlog.contextvars.get_contextvars()
        assert context["job"] == "daily_anomaly_sweep"
        assert context["run_id"] == result.run_id
        structlog.contextvars.clear_contextvars()
