"""
Ecosystem — Error taxonomy.

Every expected failure mode of the engine is raised as a subclass of
``EcosystemError``.  Each class carries the HTTP status it maps to, a stable
machine-readable ``code`` and a user-facing message; ``ecosystem.main``
installs a single exception handler that renders them.
"""

from __future__ import annotations

from typing import Any


class EcosystemError(Exception):
    """Base class for all domain errors."""

    status_code: int = 500
    code: str = "internal_error"
    default_user_message: str = "Something went wrong. Please try again or contact support."

    def __init__(
        self,
        message: str,
        *,
        user_message: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.user_message = user_message or self.default_user_message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.code, "detail": self.user_message}
        if self.details:
            body["context"] = self.details
        return body


# ── Caller errors ─────────────────────────────────────────────────────────────

class ValidationError(EcosystemError):
    status_code = 422
    code = "validation_error"
    default_user_message = "Please check your input and try again."


class TranscriptionRejected(ValidationError):
    """The transcript came back empty, too short, or as a known artifact."""

    code = "transcription_rejected"
    default_user_message = "Audio quality too poor. Please try recording again or type your answer."


class AuthenticationError(EcosystemError):
    status_code = 401
    code = "authentication_required"
    default_user_message = "Please sign in again to continue."


class AuthorizationError(EcosystemError):
    status_code = 403
    code = "forbidden"
    default_user_message = "You do not have access to this resource."


class NotFoundError(EcosystemError):
    status_code = 404
    code = "not_found"
    default_user_message = "The requested resource was not found."


class RateLimitError(EcosystemError):
    status_code = 429
    code = "rate_limited"
    default_user_message = "Too many requests. Please wait a moment and try again."

    def __init__(self, message: str, *, retry_after: float, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = max(0.0, retry_after)


class InvalidTransition(EcosystemError):
    status_code = 409
    code = "invalid_transition"
    default_user_message = "This match can no longer be updated that way."


# ── External-provider errors ──────────────────────────────────────────────────

class ProviderUnavailable(EcosystemError):
    status_code = 503
    code = "provider_unavailable"
    default_user_message = "Our AI service is temporarily unavailable. Please try again in a moment."


class InvalidResponseShape(EcosystemError):
    status_code = 502
    code = "invalid_provider_response"
    default_user_message = "AI service returned unexpected data. Please try again."


class MissingCredential(EcosystemError):
    status_code = 500
    code = "missing_credential"
    default_user_message = "AI service configuration error. Please contact support."


class ContentRejected(EcosystemError):
    status_code = 422
    code = "content_rejected"
    default_user_message = "Content not appropriate for our community. Please try again."
