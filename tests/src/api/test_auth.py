"""
Tests for API Authentication (src/api/auth.py).

Tests:
- Token generation
- Token encoding/decoding
- Token validation (wrong secret, tampering, missing claims)
- Request authentication
- Startup secret validation
"""

import os
from datetime import UTC, datetime, timedelta
from unittest.mock import patch

import jwt as pyjwt
import pytest

from src.api.auth import (
    TOKEN_AUDIENCE,
    TOKEN_ISSUER,
    AuthService,
    AuthToken,
    validate_secrets,
)

_SECRET = "test-secret-key-for-unit-tests-32-bytes"


class TestAuthService:
    """Tests for AuthService."""

    def test_generate_token(self) -> None:
        service = AuthService(secret_key=_SECRET)
        token = service.generate_token(user_id="user-1", org_id="org-1")

        assert token.user_id == "user-1"
        assert token.org_id == "org-1"
        assert token.issued_at <= datetime.now(UTC)
        assert token.expires_at > token.issued_at
        assert token.token_type == "Bearer"
        assert token.jti

    def test_token_jti_uniqueness(self) -> None:
        service = AuthService(secret_key=_SECRET)
        token1 = service.generate_token(user_id="user-1", org_id="org-1")
        token2 = service.generate_token(user_id="user-1", org_id="org-1")
        assert token1.jti != token2.jti

    def test_token_expiry_is_thirty_days(self) -> None:
        service = AuthService(secret_key=_SECRET)
        token = service.generate_token(user_id="user-1", org_id="org-1")

        expected_expiry = token.issued_at + timedelta(days=30)
        assert abs((token.expires_at - expected_expiry).total_seconds()) < 60

    def test_encode_and_decode_token(self) -> None:
        service = AuthService(secret_key=_SECRET)
        original = service.generate_token(user_id="user-1", org_id="org-1")

        decoded = service.decode_token(service.encode_token(original))

        assert decoded is not None
        assert decoded.user_id == "user-1"
        assert decoded.org_id == "org-1"
        assert decoded.jti == original.jti
        assert not decoded.is_expired()

    def test_claims_carry_issuer_and_audience(self) -> None:
        service = AuthService(secret_key=_SECRET)
        encoded = service.encode_token(service.generate_token("user-1", "org-1"))

        payload = pyjwt.decode(
            encoded, _SECRET, algorithms=["HS256"], audience=TOKEN_AUDIENCE, issuer=TOKEN_ISSUER
        )
        assert payload["sub"] == "user-1"
        assert payload["org"] == "org-1"

    def test_decode_with_wrong_secret(self) -> None:
        encoded = AuthService(secret_key=_SECRET).encode_token(
            AuthService(secret_key=_SECRET).generate_token("user-1", "org-1")
        )
        other = AuthService(secret_key="another-secret-key-that-is-long-enough")
        assert other.decode_token(encoded) is None

    def test_decode_expired_token(self) -> None:
        service = AuthService(secret_key=_SECRET)
        token = AuthToken(
            user_id="user-1",
            org_id="org-1",
            issued_at=datetime.now(UTC) - timedelta(days=60),
            expires_at=datetime.now(UTC) - timedelta(days=1),
        )
        assert service.decode_token(service.encode_token(token)) is None

    def test_decode_garbage(self) -> None:
        assert AuthService(secret_key=_SECRET).decode_token("not.a.jwt") is None

    def test_decode_missing_org_claim(self) -> None:
        now = datetime.now(UTC)
        encoded = pyjwt.encode(
            {
                "sub": "user-1",
                "iat": now,
                "exp": now + timedelta(hours=1),
                "iss": TOKEN_ISSUER,
                "aud": TOKEN_AUDIENCE,
            },
            _SECRET,
            algorithm="HS256",
        )
        assert AuthService(secret_key=_SECRET).decode_token(encoded) is None

    def test_missing_secret_raises(self) -> None:
        with patch.dict(os.environ, {}, clear=True):
            with pytest.raises(RuntimeError):
                AuthService()


class TestAuthenticateRequest:

    def test_bearer_header(self) -> None:
        service = AuthService(secret_key=_SECRET)
        encoded = service.encode_token(service.generate_token("user-1", "org-1"))

        token = service.authenticate_request(f"Bearer {encoded}")

        assert token is not None
        assert token.org_id == "org-1"

    @pytest.mark.parametrize("header", [None, "", "Basic abc", "Bearer", "Bearer a b"])
    def test_malformed_headers(self, header) -> None:
        assert AuthService(secret_key=_SECRET).authenticate_request(header) is None


class TestValidateSecrets:

    def test_passes_with_secret(self) -> None:
        with patch.dict(os.environ, {"LISTLOOP_API_SECRET_KEY": _SECRET}):
            validate_secrets()

    def test_fails_without_secret(self) -> None:
        with patch.dict(os.environ, {}, clear=True):
            with pytest.raises(RuntimeError):
                validate_secrets()


class TestAuthToken:

    def test_to_dict(self) -> None:
        issued = datetime(2026, 3, 18, 12, 0, tzinfo=UTC)
        token = AuthToken(
            user_id="user-1",
            org_id="org-1",
            issued_at=issued,
            expires_at=issued + timedelta(days=30),
            jti="jti-1",
        )
        assert token.to_dict() == {
            "user_id": "user-1",
            "org_id": "org-1",
            "issued_at": "2026-03-18T12:00:00+00:00",
            "expires_at": "2026-04-17T12:00:00+00:00",
            "token_type": "Bearer",
            "jti": "jti-1",
        }
