"""
Scheduled Learning Loop Jobs for ListLoop.

Weekly tool recalibration and the daily anomaly sweep, as coroutines an
external scheduler invokes.
"""

from src.workflows.learning_jobs import (
    JobResult,
    LearningJob,
    LearningJobs,
    get_learning_jobs,
)

__all__ = [
    "LearningJob",
    "JobResult",
    "LearningJobs",
    "get_learning_jobs",
]
