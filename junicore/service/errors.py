from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer failures mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``
    that the API layer places in the error envelope:
    - validation_error (400)
    - invalid_signature (400)
    - unauthorized (401)
    - forbidden (403)
    - conflict (409)
    - rate_limited (429)
    - unavailable (503)
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


class ValidationFailure(ServiceError):
    """Malformed input, or an unknown/expired single-use token (400)."""
    status_code = 400
    error_code = "validation_error"


class SignatureFailure(ServiceError):
    """Webhook signature missing, malformed, or wrong (400)."""
    status_code = 400
    error_code = "invalid_signature"


class AuthenticationFailure(ServiceError):
    """Bad, expired, or revoked credential (401)."""
    status_code = 401
    error_code = "unauthorized"


class AuthorizationFailure(ServiceError):
    """Valid credential without the required role (403)."""
    status_code = 403
    error_code = "forbidden"


class ConflictFailure(ServiceError):
    """Duplicate resource or an already-consumed single-use token (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedFailure(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class TransientFailure(ServiceError):
    """Backing store or work queue unavailable; safe to retry (503)."""
    status_code = 503
    error_code = "unavailable"


__all__ = [
    "ServiceError",
    "ValidationFailure",
    "SignatureFailure",
    "AuthenticationFailure",
    "AuthorizationFailure",
    "ConflictFailure",
    "RateLimitedFailure",
    "TransientFailure",
]
