"""
Centralized Error Response Builder for ListLoop.

Provides consistent error codes and messages for the API and
event-ingress layers. Error codes are constants that map to
translatable message strings; the builder returns structured
error dicts compatible with the API response envelope.
"""

from __future__ import annotations

from typing import Any

# =============================================================================
# Error Code Constants
# =============================================================================

AUTH_REQUIRED = "AUTH_REQUIRED"
FORBIDDEN = "FORBIDDEN"
NOT_FOUND = "NOT_FOUND"
VALIDATION_ERROR = "VALIDATION_ERROR"
CALIBRATION_FAILED = "CALIBRATION_FAILED"
INTERNAL_ERROR = "INTERNAL_ERROR"

# =============================================================================
# Message Registry
#
# Maps (error_code, language) -> message string. Falls back to "en" if a
# translation is missing for the requested language.
# =============================================================================

_ERROR_MESSAGES: dict[str, dict[str, str]] = {
    AUTH_REQUIRED: {
        "en": "Authentication is required.",
        "de": "Authentifizierung erforderlich.",
    },
    FORBIDDEN: {
        "en": "You do not have permission to perform this action.",
        "de": "Sie haben keine Berechtigung fuer diese Aktion.",
    },
    NOT_FOUND: {
        "en": "The requested resource was not found.",
        "de": "Die angeforderte Ressource wurde nicht gefunden.",
    },
    VALIDATION_ERROR: {
        "en": "Invalid input. Please check your request.",
        "de": "Ungueltige Eingabe. Bitte ueberpruefen Sie Ihre Anfrage.",
    },
    CALIBRATION_FAILED: {
        "en": "Tool calibration failed. No weights were changed.",
        "de": "Kalibrierung fehlgeschlagen. Es wurden keine Gewichte geaendert.",
    },
    INTERNAL_ERROR: {
        "en": "An internal error occurred. Please try again.",
        "de": "Ein interner Fehler ist aufgetreten. Bitte erneut versuchen.",
    },
}

_DEFAULT_LANG = "en"


# =============================================================================
# Error Response Builder
# =============================================================================


def get_error_message(code: str, lang: str = "en") -> str:
    """
    Get an error message for a given error code.

    Falls back to English if the requested language is not available,
    and to a generic message if the error code is unknown.
    """
    messages = _ERROR_MESSAGES.get(code, {})
    return messages.get(lang, messages.get(_DEFAULT_LANG, "An error occurred."))


def build_error_response(
    code: str,
    message: str | None = None,
    details: dict[str, Any] | None = None,
    lang: str = "en",
) -> dict[str, Any]:
    """
    Build a structured error response dict.

    Args:
        code: Error code constant (e.g. NOT_FOUND)
        message: Optional override message (bypasses registry lookup)
        details: Optional additional error details
        lang: ISO 639-1 language code for message lookup

    Returns:
        Structured error dict: {"code": str, "message": str, "details": dict | None}
    """
    resolved_message = message if message is not None else get_error_message(code, lang)
    error: dict[str, Any] = {
        "code": code,
        "message": resolved_message,
    }
    if details is not None:
        error["details"] = details
    return error


__all__ = [
    "AUTH_REQUIRED",
    "FORBIDDEN",
    "NOT_FOUND",
    "VALIDATION_ERROR",
    "CALIBRATION_FAILED",
    "INTERNAL_ERROR",
    "get_error_message",
    "build_error_response",
]
