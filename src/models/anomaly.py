"""
Research Anomaly Model for ListLoop.

An anomaly is an org-scoped pattern that points at a systematic research
quality problem. At most one unresolved anomaly exists per
(organization_id, anomaly_type); re-detection refreshes it in place.
Resolved anomalies are kept for audit and never reopened.
"""

import uuid
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from sqlalchemy import JSON, Boolean, Column, DateTime, Index, String, Text, text

from src.models.base import Base


class AnomalyType(StrEnum):
    """Kinds of patterns the detector reports."""

    PRICE_DEVIATION = "price_deviation"
    SLOW_SALES = "slow_sales"
    CATEGORY_MISIDENTIFICATION = "category_misidentification"
    TOOL_FAILURE = "tool_failure"


class AnomalySeverity(StrEnum):
    """Severity levels for anomalies."""

    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class ResearchAnomaly(Base):
    """
    Detected anomaly for one organization.

    Attributes:
        detected_at: Last time the pattern was (re)detected
        affected_items: Item ids contributing to the pattern
        pattern: Statistics behind the detection (mean, sample size, threshold)
        resolved / resolved_at / resolved_by / resolution_notes: set once by resolve
    """

    __tablename__ = "research_anomalies"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    organization_id = Column(String(64), nullable=False)
    detected_at = Column(DateTime(timezone=True), nullable=False)
    anomaly_type = Column(String(50), nullable=False)
    severity = Column(String(20), nullable=False)
    description = Column(Text, nullable=False)
    affected_items = Column(JSON, nullable=False, default=list)
    tool_type = Column(String(100), nullable=True)
    pattern = Column(JSON, nullable=True)
    suggested_action = Column(Text, nullable=True)

    # Resolution
    resolved = Column(Boolean, nullable=False, default=False)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
    resolved_by = Column(String(64), nullable=True)
    resolution_notes = Column(Text, nullable=True)

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
        Index("idx_anomaly_org_type_resolved", "organization_id", "anomaly_type", "resolved"),
        Index("idx_anomaly_detected_at", "detected_at"),
        # At most one open anomaly per (organization, type)
        Index(
            "uq_anomaly_open_org_type",
            "organization_id",
            "anomaly_type",
            unique=True,
            sqlite_where=text("resolved = 0"),
            postgresql_where=text("NOT resolved"),
        ),
    )

    def to_dict(self) -> dict[str, Any]:
        """Plain dict for API responses."""
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "detected_at": _iso(self.detected_at),
            "anomaly_type": self.anomaly_type,
            "severity": self.severity,
            "description": self.description,
            "affected_items": list(self.affected_items or []),
            "tool_type": self.tool_type,
            "pattern": self.pattern,
            "suggested_action": self.suggested_action,
            "resolved": bool(self.resolved),
            "resolved_at": _iso(self.resolved_at),
            "resolved_by": self.resolved_by,
            "resolution_notes": self.resolution_notes,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self) -> str:
        return (
            f"<ResearchAnomaly(id={self.id}, org={self.organization_id}, "
            f"type={self.anomaly_type}, severity={self.severity}, resolved={self.resolved})>"
        )


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


__all__ = ["AnomalyType", "AnomalySeverity", "ResearchAnomaly"]
