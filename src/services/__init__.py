"""
Services for ListLoop.

This package contains the learning loop services.

Services:
    - OutcomeRecorder: Sale/return events -> research outcomes
    - ToolEffectivenessAggregator: Per-tool, per-month running sums
    - ToolCalibrationService: Weekly confidence weight recalibration
    - AnomalyDetectionService: Per-outcome diagnostics and org sweeps
    - LearningReportingService: Outcome, effectiveness and dashboard queries

Collaborators:
    - ListingReader: Listing and item lookup
    - ToolUsageProvider: Per-tool research usage for an item
"""

from .anomaly_detection import (
    AnomalyCandidate,
    AnomalyDetectionService,
    SweepReport,
    get_anomaly_service,
)
from .effectiveness import ToolEffectivenessAggregator, current_month_period
from .learning_reporting import (
    DashboardSummary,
    LearningReportingService,
    ToolEffectivenessMetrics,
    ToolEffectivenessTrendPoint,
)
from .listing_source import (
    InMemoryListingReader,
    ItemSnapshot,
    ListingReader,
    ListingSnapshot,
)
from .outcome_recorder import (
    OutcomeRecorder,
    calculate_days_to_sell,
    calculate_outcome_quality,
    calculate_price_accuracy_ratio,
    is_within_bands,
)
from .tool_calibration import (
    CalibrationResult,
    CalibrationRun,
    CalibrationTrigger,
    ToolCalibrationService,
    get_calibration_service,
)
from .tool_usage import (
    NullToolUsageProvider,
    StaticToolUsageProvider,
    ToolUsageProvider,
    ToolUsageRecord,
)

__all__ = [
    # Outcome recording
    "OutcomeRecorder",
    "calculate_price_accuracy_ratio",
    "is_within_bands",
    "calculate_outcome_quality",
    "calculate_days_to_sell",
    # Aggregation
    "ToolEffectivenessAggregator",
    "current_month_period",
    # Calibration
    "CalibrationTrigger",
    "CalibrationResult",
    "CalibrationRun",
    "ToolCalibrationService",
    "get_calibration_service",
    # Anomalies
    "AnomalyCandidate",
    "SweepReport",
    "AnomalyDetectionService",
    "get_anomaly_service",
    # Reporting
    "LearningReportingService",
    "ToolEffectivenessMetrics",
    "ToolEffectivenessTrendPoint",
    "DashboardSummary",
    # Collaborators
    "ListingReader",
    "ListingSnapshot",
    "ItemSnapshot",
    "InMemoryListingReader",
    "ToolUsageProvider",
    "ToolUsageRecord",
    "NullToolUsageProvider",
    "StaticToolUsageProvider",
]
