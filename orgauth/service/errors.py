from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


# --- bearer token gate -------------------------------------------------------


class TokenRejected(ForbiddenError):
    """A presented bearer token was not accepted.

    Callers only ever see "forbidden"; ``reason`` is kept for logs.
    """

    reason = "rejected"

    def __init__(self, reason: Optional[str] = None) -> None:
        super().__init__("forbidden")
        if reason is not None:
            self.reason = reason


class MissingToken(TokenRejected):
    reason = "missing"


class MalformedToken(TokenRejected):
    reason = "malformed"


class InvalidSignature(TokenRejected):
    reason = "invalid_signature"


class RevokedOrUnknownToken(TokenRejected):
    reason = "revoked_or_unknown"


# --- second factor -----------------------------------------------------------


class ChallengeFailed(AuthenticationError):
    """A second-factor check failed.

    Every sub-check answers with the same "Invalid code" message.
    """

    reason = "failed"

    def __init__(self, reason: Optional[str] = None) -> None:
        super().__init__("Invalid code")
        if reason is not None:
            self.reason = reason


class MissingContact(ChallengeFailed):
    reason = "missing_contact"


class CodeExpiredOrUnknown(ChallengeFailed):
    reason = "code_expired_or_unknown"


class CodeMismatch(ChallengeFailed):
    reason = "code_mismatch"


class ChallengeExpiredOrUnknown(ChallengeFailed):
    reason = "challenge_expired_or_unknown"


class ChallengeVerificationFailed(ChallengeFailed):
    reason = "challenge_verification_failed"


# --- membership --------------------------------------------------------------


class NotAMember(ForbiddenError):
    def __init__(self, organization_id: str) -> None:
        super().__init__(
            "user does not belong to organization",
            detail={"organization_id": organization_id},
        )


# --- accounts (silenced) -----------------------------------------------------


class UserNotFound(NotFoundError):
    def __init__(self, message: str = "user not found") -> None:
        super().__init__(message)


class UserAlreadyExists(ConflictError):
    def __init__(self, message: str = "email already in use by another user") -> None:
        super().__init__(message)


# Outcomes answered with a success-shaped response so callers cannot
# enumerate accounts.
SILENCED_ERRORS = (UserNotFound, UserAlreadyExists)


def should_silence(exc: BaseException) -> bool:
    return isinstance(exc, SILENCED_ERRORS)


# --- collaborators -----------------------------------------------------------


class StoreError(ServerError):
    """The ephemeral store or directory failed."""


class SigningError(ServerError):
    """Token signing failed."""


class ProviderError(ServerError):
    """A delivery or verification provider failed."""


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "TokenRejected",
    "MissingToken",
    "MalformedToken",
    "InvalidSignature",
    "RevokedOrUnknownToken",
    "ChallengeFailed",
    "MissingContact",
    "CodeExpiredOrUnknown",
    "CodeMismatch",
    "ChallengeExpiredOrUnknown",
    "ChallengeVerificationFailed",
    "NotAMember",
    "UserNotFound",
    "UserAlreadyExists",
    "SILENCED_ERRORS",
    "should_silence",
    "StoreError",
    "SigningError",
    "ProviderError",
]
