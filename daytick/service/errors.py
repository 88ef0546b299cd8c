from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Account or session failure that maps onto an HTTP error envelope.

    Subclasses pin ``status_code`` and the envelope ``error_code``; both can
    be overridden per instance.
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


class AuthenticationError(ServiceError):
    """Credentials were rejected (401)."""
    status_code = 401
    error_code = "unauthorized"


class UnauthenticatedError(AuthenticationError):
    """No usable session: the token is missing, malformed, unknown or expired.

    Callers only ever see the one message, whichever case applied.
    """

    def __init__(self, message: str = "missing or invalid session token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Operation not allowed for this caller or deployment (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Account already exists (409)."""
    status_code = 409
    error_code = "conflict"


__all__ = [
    "ServiceError",
    "AuthenticationError",
    "UnauthenticatedError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
]
