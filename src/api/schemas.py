"""
Pydantic Schemas for the ListLoop REST API.

Defines request schemas for the learning endpoints and the response
envelope every endpoint returns:

    {"success": bool, "data": Any | None, "error": {"code", "message", "details"?} | None}
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator

from src.lib.errors import build_error_response
from src.models.outcome import OutcomeQuality

# =============================================================================
# Response Envelope
# =============================================================================


def success_response(data: Any = None) -> dict[str, Any]:
    """Wrap a payload in the success envelope."""
    return {"success": True, "data": data, "error": None}


def error_response(
    code: str,
    message: str | None = None,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Wrap an error code (and optional override message) in the error envelope."""
    return {
        "success": False,
        "data": None,
        "error": build_error_response(code, message, details),
    }


class APIError(BaseModel):
    """Standard API error body."""

    code: str
    message: str
    details: dict[str, Any] | None = None


class ResponseEnvelope(BaseModel):
    """Standard API response envelope."""

    success: bool
    data: Any | None = None
    error: APIError | None = None


# =============================================================================
# Event Ingress Schemas
# =============================================================================


class SaleEventRequest(BaseModel):
    """A listing sold on a marketplace."""

    listing_id: str = Field(..., min_length=1, max_length=64)
    sold_price: float = Field(..., ge=0)
    sold_at: datetime
    marketplace: str | None = Field(default=None, max_length=20)


class ReturnEventRequest(BaseModel):
    """A sold listing came back."""

    listing_id: str = Field(..., min_length=1, max_length=64)
    returned_at: datetime | None = None
    reason: str | None = Field(default=None, max_length=2000)


# =============================================================================
# Learning Schemas
# =============================================================================


class CorrectOutcomeRequest(BaseModel):
    """Manual correction of an outcome."""

    identification_correct: bool | None = None
    outcome_quality: str | None = None

    @field_validator("outcome_quality")
    @classmethod
    def validate_quality(cls, v: str | None) -> str | None:
        if v is None:
            return v
        allowed = {q.value for q in OutcomeQuality}
        if v not in allowed:
            raise ValueError(f"outcome_quality must be one of {sorted(allowed)}")
        return v


class ResolveAnomalyRequest(BaseModel):
    """Resolution of an open anomaly."""

    notes: str | None = Field(default=None, max_length=5000)


class CalibrateRequest(BaseModel):
    """Manual recalibration trigger."""

    lookback_days: int | None = Field(default=None, ge=1, le=3650)


__all__ = [
    "success_response",
    "error_response",
    "APIError",
    "ResponseEnvelope",
    "SaleEventRequest",
    "ReturnEventRequest",
    "CorrectOutcomeRequest",
    "ResolveAnomalyRequest",
    "CalibrateRequest",
]
