"""
Learning Loop Configuration for ListLoop.

Holds the fixed statistical thresholds used by outcome classification,
tool calibration and anomaly detection, plus the environment-driven
runtime settings (database URL, lookback windows, sweep concurrency).

Thresholds are module constants on purpose: they define the meaning of
an anomaly or a calibration decision and are not tuned per deployment.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from src.lib.exceptions import ConfigurationError

# =============================================================================
# Outcome quality thresholds (price accuracy ratio, lower is better)
# =============================================================================

QUALITY_EXCELLENT_MAX_RATIO = 0.05
QUALITY_GOOD_MAX_RATIO = 0.15
QUALITY_FAIR_MAX_RATIO = 0.30

# =============================================================================
# Tool weight bounds and calibration rules
# =============================================================================

DEFAULT_TOOL_WEIGHT = 1.0
MIN_TOOL_WEIGHT = 0.1
MAX_TOOL_WEIGHT = 2.0

CALIBRATION_RULES: dict[str, float] = {
    "min_confidence_samples": 10,
    "overconfident_below": 0.7,
    "underconfident_above": 1.3,
    "calibrated_low": 0.9,
    "calibrated_high": 1.1,
    "overconfident_factor": 0.85,
    "underconfident_factor": 1.10,
    "slightly_overconfident_factor": 0.95,
    "slightly_underconfident_factor": 1.05,
}

# Weekly calibration: Sunday 02:00 UTC. Daily sweep: 03:00 UTC.
CALIBRATION_WEEKDAY = 6
CALIBRATION_HOUR_UTC = 2
SWEEP_HOUR_UTC = 3

# =============================================================================
# Anomaly detection thresholds
# =============================================================================

ANOMALY_THRESHOLDS: dict[str, float] = {
    # Price deviation: flag if average deviation > 15% over 10+ items
    "price_deviation": 0.15,
    "price_deviation_warning": 0.25,
    "price_deviation_min_items": 10,
    # Slow sales: flag if average days to sell > 30
    "slow_sales_days": 30,
    "slow_sales_warning_days": 45,
    "slow_sales_min_items": 5,
    # Return rate (reported as category misidentification)
    "return_rate": 0.15,
    "return_rate_critical": 0.25,
    "return_rate_min_items": 10,
    # Per-outcome diagnostics
    "significant_price_deviation": 0.30,
    "calibration_deviation": 0.25,
    "slow_sale_days": 45,
    # Sweep window
    "lookback_days": 30,
    "min_org_outcomes": 5,
}


# =============================================================================
# Runtime settings
# =============================================================================


def _int_env(name: str, default: int, minimum: int = 1) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from exc
    if value < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}, got {value}")
    return value


@dataclass(frozen=True)
class LearningSettings:
    """
    Runtime settings for the learning loop.

    Attributes:
        database_url: SQLAlchemy async URL (sqlite+aiosqlite or postgresql+asyncpg)
        calibration_lookback_days: Window of effectiveness records used per calibration
        anomaly_lookback_days: Window of outcomes scanned per sweep
        sweep_concurrency: Organizations processed in parallel during a full sweep
        calibration_history_limit: In-process calibration runs kept (newest first)
    """

    database_url: str = "sqlite+aiosqlite:///./listloop.db"
    calibration_lookback_days: int = 90
    anomaly_lookback_days: int = 30
    sweep_concurrency: int = 4
    calibration_history_limit: int = 50

    @classmethod
    def from_env(cls) -> LearningSettings:
        """Build settings from LISTLOOP_* environment variables."""
        return cls(
            database_url=os.getenv("LISTLOOP_DATABASE_URL", cls.database_url),
            calibration_lookback_days=_int_env(
                "LISTLOOP_CALIBRATION_LOOKBACK_DAYS", cls.calibration_lookback_days
            ),
            anomaly_lookback_days=_int_env(
                "LISTLOOP_ANOMALY_LOOKBACK_DAYS", cls.anomaly_lookback_days
            ),
            sweep_concurrency=_int_env("LISTLOOP_SWEEP_CONCURRENCY", cls.sweep_concurrency),
            calibration_history_limit=_int_env(
                "LISTLOOP_CALIBRATION_HISTORY_LIMIT", cls.calibration_history_limit
            ),
        )


_settings: LearningSettings | None = None


def get_settings() -> LearningSettings:
    """Get the process-wide LearningSettings (read from env once)."""
    global _settings
    if _settings is None:
        _settings = LearningSettings.from_env()
    return _settings


__all__ = [
    "QUALITY_EXCELLENT_MAX_RATIO",
    "QUALITY_GOOD_MAX_RATIO",
    "QUALITY_FAIR_MAX_RATIO",
    "DEFAULT_TOOL_WEIGHT",
    "MIN_TOOL_WEIGHT",
    "MAX_TOOL_WEIGHT",
    "CALIBRATION_RULES",
    "CALIBRATION_WEEKDAY",
    "CALIBRATION_HOUR_UTC",
    "SWEEP_HOUR_UTC",
    "ANOMALY_THRESHOLDS",
    "LearningSettings",
    "get_settings",
]
