"""
Models package for ListLoop.

This package exports all SQLAlchemy models of the learning loop.

Usage:
    from src.models import ResearchOutcome, ToolEffectiveness, ResearchAnomaly
"""

from src.models.anomaly import AnomalySeverity, AnomalyType, ResearchAnomaly
from src.models.base import Base
from src.models.outcome import OutcomeQuality, ResearchOutcome
from src.models.tool_effectiveness import GLOBAL_SCOPE, ToolEffectiveness

__all__ = [
    # Base
    "Base",
    # Learning loop models
    "ResearchOutcome",
    "ToolEffectiveness",
    "ResearchAnomaly",
    # Enums and sentinels
    "OutcomeQuality",
    "AnomalyType",
    "AnomalySeverity",
    "GLOBAL_SCOPE",
]
