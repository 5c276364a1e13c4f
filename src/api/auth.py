"""
Authentication for the ListLoop REST API.

Implements:
- JWT token-based authentication (via PyJWT, HS256)
- Organization scoping: every token carries the caller's organization id
- Startup secrets validation (fail-fast if missing)
"""

from __future__ import annotations

import logging
import os
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

import jwt as pyjwt

logger = logging.getLogger(__name__)

TOKEN_ISSUER = "listloop"
TOKEN_AUDIENCE = "listloop-api"


@dataclass
class AuthToken:
    """
    JWT authentication token.

    Identifies the calling user and the organization whose learning data
    the request may read or change.
    """

    user_id: str
    org_id: str
    issued_at: datetime
    expires_at: datetime
    token_type: str = "Bearer"
    jti: str = field(default_factory=lambda: str(uuid.uuid4()))

    def is_expired(self) -> bool:
        """Check if token is expired."""
        return datetime.now(UTC) >= self.expires_at

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict for JSON serialization."""
        return {
            "user_id": self.user_id,
            "org_id": self.org_id,
            "issued_at": self.issued_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "token_type": self.token_type,
            "jti": self.jti,
        }


class AuthService:
    """
    Authentication service for the REST API.

    Handles:
    - Token generation
    - Token encoding/decoding
    - Request authentication
    """

    # Token expiry: 30 days
    TOKEN_EXPIRY_DAYS = 30

    def __init__(self, secret_key: str | None = None) -> None:
        """
        Initialize auth service.

        Args:
            secret_key: Secret key for token signing (from env if not provided)

        Raises:
            RuntimeError: If no secret key is available
        """
        resolved_key = secret_key or os.getenv("LISTLOOP_API_SECRET_KEY")
        if not resolved_key:
            raise RuntimeError(
                "LISTLOOP_API_SECRET_KEY environment variable is required. "
                "Set it to a cryptographically random string."
            )
        self.secret_key: str = resolved_key

    def generate_token(self, user_id: str, org_id: str) -> AuthToken:
        """Generate a token for a user of an organization."""
        now = datetime.now(UTC)
        return AuthToken(
            user_id=user_id,
            org_id=org_id,
            issued_at=now,
            expires_at=now + timedelta(days=self.TOKEN_EXPIRY_DAYS),
        )

    def encode_token(self, token: AuthToken) -> str:
        """Encode token to a JWT string."""
        payload: dict[str, Any] = {
            "sub": token.user_id,
            "org": token.org_id,
            "iat": token.issued_at,
            "exp": token.expires_at,
            "type": token.token_type,
            "jti": token.jti,
            "iss": TOKEN_ISSUER,
            "aud": TOKEN_AUDIENCE,
        }
        return pyjwt.encode(payload, self.secret_key, algorithm="HS256")

    def decode_token(self, jwt_token: str) -> AuthToken | None:
        """
        Decode a JWT string.

        Returns:
            Auth token, or None if invalid, expired or missing claims
        """
        try:
            payload = pyjwt.decode(
                jwt_token,
                self.secret_key,
                algorithms=["HS256"],
                audience=TOKEN_AUDIENCE,
                issuer=TOKEN_ISSUER,
            )
            return AuthToken(
                user_id=str(payload["sub"]),
                org_id=str(payload["org"]),
                issued_at=datetime.fromtimestamp(payload["iat"], tz=UTC),
                expires_at=datetime.fromtimestamp(payload["exp"], tz=UTC),
                token_type=payload.get("type", "Bearer"),
                jti=payload.get("jti", ""),
            )
        except pyjwt.ExpiredSignatureError:
            logger.warning("Token expired")
            return None
        except pyjwt.InvalidTokenError as e:
            logger.error("Token decode error: %s", e)
            return None
        except KeyError as e:
            logger.error("Token missing claim: %s", e)
            return None

    def authenticate_request(self, authorization_header: str | None) -> AuthToken | None:
        """Authenticate an "Authorization: Bearer <token>" header value."""
        if not authorization_header:
            return None

        parts = authorization_header.split()
        if len(parts) != 2 or parts[0].lower() != "bearer":
            logger.warning("Invalid Authorization header format")
            return None

        return self.decode_token(parts[1])


def validate_secrets() -> None:
    """
    Fail fast at startup if required secrets are missing.

    Raises:
        RuntimeError: If LISTLOOP_API_SECRET_KEY is not set
    """
    if not os.getenv("LISTLOOP_API_SECRET_KEY"):
        raise RuntimeError(
            "Missing required secret: LISTLOOP_API_SECRET_KEY. "
            "The API cannot start without it."
        )


__all__ = ["AuthToken", "AuthService", "validate_secrets", "TOKEN_ISSUER", "TOKEN_AUDIENCE"]
