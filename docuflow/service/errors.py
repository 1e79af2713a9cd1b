from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries a stable ``error_code`` and the HTTP ``status_code``
    the API layer answers with:

    - invalid_input (400)
    - invalid_token (400)
    - unauthorized (401)
    - forbidden (403)
    - conflict (409)
    - rate_limited (429)
    - delivery_error (502)
    - downstream_update_failed, generation_failed, server_error (500)
    """

    status_code: int = 400
    error_code: str = "invalid_input"

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


class InvalidInputError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "invalid_input"


class InvalidTokenError(ServiceError):
    """Token is unknown, spent, expired or meant for another flow (400).

    The message is deliberately identical for every cause.
    """
    status_code = 400
    error_code = "invalid_token"

    def __init__(self, message: str = "Invalid or expired token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class UnauthorizedError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate account (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class DeliveryError(ServiceError):
    """Outbound email could not be handed to the SMTP relay (502)."""
    status_code = 502
    error_code = "delivery_error"

    def __init__(self, message: str, *, stage: str, **kwargs) -> None:
        detail = {"stage": stage, **(kwargs.pop("detail", None) or {})}
        super().__init__(message, detail=detail, **kwargs)
        self.stage = stage

    def __str__(self) -> str:
        return f"{self.stage}: {self.message}"


class DownstreamUpdateError(ServiceError):
    """Token was consumed but its side effect failed (500)."""
    status_code = 500
    error_code = "downstream_update_failed"


class GenerationError(ServiceError):
    """No usable token could be generated (500)."""
    status_code = 500
    error_code = "generation_failed"


__all__ = [
    "ServiceError",
    "InvalidInputError",
    "InvalidTokenError",
    "UnauthorizedError",
    "ForbiddenError",
    "ConflictError",
    "RateLimitedError",
    "DeliveryError",
    "DownstreamUpdateError",
    "GenerationError",
]
