"""
Custom exception hierarchy for ListLoop.

Provides structured exception types for the learning loop subsystems:
- Configuration and database access
- Outcome lookups and corrections
- Tool calibration

All exceptions inherit from ListLoopException, enabling a catch-all
for ListLoop-specific errors while keeping the ability to catch
specific error types.
"""

from __future__ import annotations


class ListLoopException(Exception):
    """Base exception for all ListLoop errors."""


class ConfigurationError(ListLoopException):
    """Missing environment variables, invalid config values, or startup failures."""


class DatabaseError(ListLoopException):
    """Database connection, query, or write failures."""


class ValidationError(ListLoopException):
    """Input validation, parsing, or type conversion failures."""


class NotFoundError(ListLoopException):
    """A referenced listing, item, outcome or anomaly does not exist for the caller."""

    def __init__(self, resource: str, resource_id: str) -> None:
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(f"{resource} {resource_id} not found")


class CalibrationError(ListLoopException):
    """A calibration run failed and was rolled back."""


__all__ = [
    "ListLoopException",
    "ConfigurationError",
    "DatabaseError",
    "ValidationError",
    "NotFoundError",
    "CalibrationError",
]
