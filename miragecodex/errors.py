"""Client-visible failure taxonomy.

Every pipeline failure is raised as one of these and rendered by the
exception handler in ``miragecodex.main`` as
``{"error": <reason>, "message": <text>, **extra}``. Messages are written
for the client; provider bodies and tracebacks only go to the log.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class MirageError(RuntimeError):
    status_code: int = 500
    reason: str = "internal_error"
    default_message: str = "Internal server error"

    def __init__(self, message: Optional[str] = None, **extra: Any):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        self.extra: Dict[str, Any] = extra

    def to_payload(self) -> Dict[str, Any]:
        return {"error": self.reason, "message": self.message, **self.extra}


class NotFoundError(MirageError):
    status_code = 404
    reason = "not_found"
    default_message = "Not found"


class UnauthenticatedError(MirageError):
    status_code = 401
    reason = "unauthenticated"
    default_message = "Authentication required"


class ForbiddenError(MirageError):
    status_code = 403
    reason = "forbidden"
    default_message = "Not allowed"


class InsufficientCreditsError(MirageError):
    status_code = 402
    reason = "insufficient_credits"
    default_message = "Not enough credits"

    def __init__(self, credits_needed: int, credits_available: int, message: Optional[str] = None):
        super().__init__(message, credits_needed=credits_needed, credits_available=credits_available)
        self.credits_needed = credits_needed
        self.credits_available = credits_available


class InvalidRequestError(MirageError):
    status_code = 400
    reason = "invalid_request"
    default_message = "Invalid request"


class ConflictError(MirageError):
    status_code = 409
    reason = "conflict"
    default_message = "Already exists"


class ProviderError(MirageError):
    """Non-success or unreachable text/image provider."""
    status_code = 502
    reason = "provider_error"
    default_message = "Generation provider failed"


class ProviderNotConfiguredError(MirageError):
    status_code = 503
    reason = "provider_not_configured"
    default_message = "Generation service not configured"


class StorageError(MirageError):
    status_code = 500
    reason = "storage_error"
    default_message = "Failed to store content"


__all__ = [
    "MirageError",
    "NotFoundError",
    "UnauthenticatedError",
    "ForbiddenError",
    "InsufficientCreditsError",
    "InvalidRequestError",
    "ConflictError",
    "ProviderError",
    "ProviderNotConfiguredError",
    "StorageError",
]
