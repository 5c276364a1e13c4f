"""
Lib package for ListLoop.

Contains shared utilities:
- exceptions.py: Exception hierarchy (ListLoopException and subclasses)
- errors.py: Centralized error response builder
- logging.py: structlog + stdlib logging setup
- database.py: Async engine, session factory and FastAPI session dependency
"""

from src.lib.errors import (
    AUTH_REQUIRED,
    CALIBRATION_FAILED,
    FORBIDDEN,
    INTERNAL_ERROR,
    NOT_FOUND,
    VALIDATION_ERROR,
    build_error_response,
    get_error_message,
)
from src.lib.exceptions import (
    CalibrationError,
    ConfigurationError,
    DatabaseError,
    ListLoopException,
    NotFoundError,
    ValidationError,
)

__all__ = [
    # Errors
    "AUTH_REQUIRED",
    "FORBIDDEN",
    "NOT_FOUND",
    "VALIDATION_ERROR",
    "CALIBRATION_FAILED",
    "INTERNAL_ERROR",
    "get_error_message",
    "build_error_response",
    # Exceptions
    "ListLoopException",
    "ConfigurationError",
    "DatabaseError",
    "ValidationError",
    "NotFoundError",
    "CalibrationError",
]
