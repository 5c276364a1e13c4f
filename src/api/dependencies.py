"""
FastAPI Dependencies for Authentication, Authorization and Services.

Services are built per request from the collaborators stored on
`app.state` by create_app(); the calibration and anomaly services are
long-lived so that their single-flight locks cover every request.
"""

from __future__ import annotations

import logging
import os
from collections.abc import AsyncIterator
from dataclasses import dataclass
from functools import lru_cache

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.auth import AuthService, AuthToken
from src.services.anomaly_detection import AnomalyDetectionService
from src.services.learning_reporting import LearningReportingService
from src.services.outcome_recorder import OutcomeRecorder
from src.services.tool_calibration import ToolCalibrationService

logger = logging.getLogger(__name__)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/token", auto_error=False)


@lru_cache(maxsize=1)
def get_auth_service() -> AuthService:
    """Process-wide AuthService (secret read from env on first use)."""
    return AuthService()


@dataclass(frozen=True)
class RequestContext:
    """Who is calling, and for which organization."""

    user_id: str
    org_id: str
    is_admin: bool = False


def _admin_user_ids() -> set[str]:
    raw = os.getenv("LISTLOOP_ADMIN_USER_IDS", "")
    return {x.strip() for x in raw.split(",") if x.strip()}


async def get_current_user_token(
    token: str | None = Depends(oauth2_scheme),
) -> AuthToken:
    """
    Dependency to get the current user's authenticated token.

    Raises HTTPException if token is missing or invalid.
    """
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    auth_token = get_auth_service().decode_token(token)
    if not auth_token or auth_token.is_expired():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return auth_token


async def get_request_context(
    token: AuthToken = Depends(get_current_user_token),
) -> RequestContext:
    """Dependency resolving the caller's user, organization and admin flag."""
    return RequestContext(
        user_id=token.user_id,
        org_id=token.org_id,
        is_admin=token.user_id in _admin_user_ids(),
    )


async def require_admin(
    ctx: RequestContext = Depends(get_request_context),
) -> RequestContext:
    """
    Dependency that requires the admin role.

    Checks user_id against the LISTLOOP_ADMIN_USER_IDS environment variable
    (comma-separated list of user ids).

    Raises HTTPException 403 if the user is not an admin.
    """
    if not ctx.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required.",
        )
    return ctx


# =============================================================================
# Database and services
# =============================================================================


async def get_session(request: Request) -> AsyncIterator[AsyncSession]:
    """Request-scoped session from the app's session factory."""
    async with request.app.state.session_factory() as session:
        yield session


def get_calibration_service(request: Request) -> ToolCalibrationService:
    return request.app.state.calibration_service


def get_anomaly_service(request: Request) -> AnomalyDetectionService:
    return request.app.state.anomaly_service


async def get_outcome_recorder(
    request: Request,
    session: AsyncSession = Depends(get_session),
) -> OutcomeRecorder:
    state = request.app.state
    return OutcomeRecorder(
        session,
        listing_reader=state.listing_reader,
        tool_usage_provider=state.tool_usage_provider,
        anomaly_detector=state.anomaly_service,
        clock=state.clock,
    )


async def get_reporting_service(
    request: Request,
    session: AsyncSession = Depends(get_session),
) -> LearningReportingService:
    state = request.app.state
    return LearningReportingService(
        session,
        anomaly_service=state.anomaly_service,
        calibration_service=state.calibration_service,
        clock=state.clock,
    )


__all__ = [
    "RequestContext",
    "get_auth_service",
    "get_current_user_token",
    "get_request_context",
    "require_admin",
    "get_session",
    "get_calibration_service",
    "get_anomaly_service",
    "get_outcome_recorder",
    "get_reporting_service",
]
