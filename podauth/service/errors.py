from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions.

    Each exception class defines both an HTTP-style ``status_code`` and a
    stable ``error_code`` so callers can branch on the failure kind without
    parsing messages:
    - validation_error (400)
    - unauthorized (401)
    - expired (401)
    - not_found (404)
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


class PasswordTooWeakError(ValidationError):
    """Password failed one or more strength rules.

    ``detail["violations"]`` carries every unmet rule, not just the first.
    """
    error_code = "weak_password"

    @property
    def violations(self) -> list[str]:
        return list(self.detail.get("violations", []))


class ExternalIdentityInvalidError(ValidationError):
    """External profile is missing id, provider or email."""
    error_code = "invalid_external_identity"


class UnsupportedError(ValidationError):
    """Unknown OAuth provider or authentication method."""
    error_code = "unsupported"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Deliberately undifferentiated login failure."""
    error_code = "invalid_credentials"


class InvalidTokenError(AuthenticationError):
    error_code = "invalid_token"


class TokenRevokedError(AuthenticationError):
    """Token was explicitly revoked before its natural expiry."""
    error_code = "revoked"


class TrustVerificationError(AuthenticationError):
    """Any WebID-OIDC verification step failed."""
    error_code = "trust_verification_failed"


class ExternalAuthError(AuthenticationError):
    """OAuth provider exchange or profile fetch failed."""
    error_code = "external_auth_failed"


class ExpiredError(AuthenticationError):
    error_code = "expired"


class SessionExpiredError(ExpiredError):
    """Session has expired (401)."""
    pass


class TokenExpiredError(ExpiredError):
    pass


class ResetTokenExpiredError(ExpiredError):
    pass


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class UserNotFoundError(NotFoundError):
    pass


class SessionNotFoundError(NotFoundError):
    pass


class CredentialNotFoundError(NotFoundError):
    pass


class ResetTokenNotFoundError(NotFoundError):
    pass


class ExternalIdentityNotFoundError(NotFoundError):
    pass


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class AlreadyLinkedError(ConflictError):
    """External identity is already linked to a local user."""
    error_code = "already_linked"


class RefreshNotNeededError(ConflictError):
    """Token is still outside its refresh window."""
    error_code = "refresh_not_needed"


class ResetTokenUsedError(ConflictError):
    error_code = "reset_token_used"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "PasswordTooWeakError",
    "ExternalIdentityInvalidError",
    "UnsupportedError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "InvalidTokenError",
    "TokenRevokedError",
    "TrustVerificationError",
    "ExternalAuthError",
    "ExpiredError",
    "SessionExpiredError",
    "TokenExpiredError",
    "ResetTokenExpiredError",
    "NotFoundError",
    "UserNotFoundError",
    "SessionNotFoundError",
    "CredentialNotFoundError",
    "ResetTokenNotFoundError",
    "ExternalIdentityNotFoundError",
    "ConflictError",
    "AlreadyLinkedError",
    "RefreshNotNeededError",
    "ResetTokenUsedError",
    "ServerError",
]
