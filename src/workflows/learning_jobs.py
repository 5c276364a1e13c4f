"""
Learning Loop Jobs for ListLoop.

Entry points an external scheduler calls on the learning loop cadence:

    weekly calibration   Sunday 02:00 UTC   run_weekly_calibration()
    daily anomaly sweep  03:00 UTC          run_daily_sweep()

Timer delivery is not handled here; these coroutines are what the timer
invokes. Each run binds a job context into structlog contextvars so all
log lines of the run carry the job name and run id.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

from src.config.learning import SWEEP_HOUR_UTC
from src.lib.clock import next_daily_run, utc_now
from src.lib.exceptions import CalibrationError
from src.lib.logging import bind_job_context
from src.services.anomaly_detection import AnomalyDetectionService, get_anomaly_service
from src.services.tool_calibration import (
    CalibrationTrigger,
    ToolCalibrationService,
    get_calibration_service,
)

logger = logging.getLogger(__name__)


class LearningJob(StrEnum):
    """Scheduled learning loop jobs."""

    WEEKLY_CALIBRATION = "weekly_calibration"
    DAILY_SWEEP = "daily_anomaly_sweep"


@dataclass
class JobResult:
    """Result of one scheduled job run."""

    job: LearningJob
    run_id: str
    started_at: datetime
    finished_at: datetime | None = None
    success: bool = True
    skipped: bool = False
    error: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "job": self.job.value,
            "run_id": self.run_id,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "success": self.success,
            "skipped": self.skipped,
            "error": self.error,
            "details": dict(self.details),
        }


class LearningJobs:
    """Run the scheduled calibration and anomaly sweep jobs."""

    def __init__(
        self,
        calibration_service: ToolCalibrationService | None = None,
        anomaly_service: AnomalyDetectionService | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.calibration_service = calibration_service or get_calibration_service()
        self.anomaly_service = anomaly_service or get_anomaly_service()
        self.clock = clock

    async def run_weekly_calibration(self) -> JobResult:
        """Scheduled recalibration of all tool weights."""
        result = self._start(LearningJob.WEEKLY_CALIBRATION)

        if self.calibration_service.is_running:
            logger.info("Weekly calibration skipped, a run is in progress")
            result.skipped = True
            result.finished_at = self.clock()
            return result

        try:
            calibrations = await self.calibration_service.recalibrate(
                trigger=CalibrationTrigger.SCHEDULED
            )
        except CalibrationError as exc:
            logger.error("Weekly calibration failed: %s", exc)
            result.success = False
            result.error = str(exc)
        else:
            result.details = {
                "tools_calibrated": len(calibrations),
                "weights_changed": sum(
                    1 for c in calibrations if c.new_weight != c.previous_weight
                ),
            }

        result.finished_at = self.clock()
        logger.info("Weekly calibration finished (success=%s)", result.success)
        return result

    async def run_daily_sweep(self) -> JobResult:
        """Scheduled anomaly sweep over all organizations."""
        result = self._start(LearningJob.DAILY_SWEEP)

        if self.anomaly_service.is_running:
            logger.info("Daily anomaly sweep skipped, a sweep is in progress")
            result.skipped = True
            result.finished_at = self.clock()
            return result

        created = await self.anomaly_service.sweep_all()
        report = self.anomaly_service.last_sweep_report

        result.details = {"anomalies_created": created}
        if report is not None:
            result.details.update(report.to_dict())
            result.success = not report.failed_orgs
            if report.failed_orgs:
                result.error = f"{len(report.failed_orgs)} organization(s) failed"

        result.finished_at = self.clock()
        logger.info("Daily anomaly sweep finished: %d new anomalies", created)
        return result

    def next_calibration_time(self, now: datetime | None = None) -> datetime:
        return self.calibration_service.next_scheduled_time(now or self.clock())

    def next_sweep_time(self, now: datetime | None = None) -> datetime:
        return next_daily_run(now or self.clock(), SWEEP_HOUR_UTC)

    def _start(self, job: LearningJob) -> JobResult:
        run_id = str(uuid.uuid4())
        bind_job_context(job.value, run_id=run_id)
        return JobResult(job=job, run_id=run_id, started_at=self.clock())


# =============================================================================
# Singleton
# =============================================================================

_learning_jobs: LearningJobs | None = None


def get_learning_jobs() -> LearningJobs:
    """Get or create the process-wide LearningJobs."""
    global _learning_jobs
    if _learning_jobs is None:
        _learning_jobs = LearningJobs()
    return _learning_jobs


__all__ = ["LearningJob", "JobResult", "LearningJobs", "get_learning_jobs"]
