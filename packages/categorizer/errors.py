"""Error taxonomy for the categorization engine.

Validation and authorization errors propagate to the caller immediately.
``ExternalServiceError`` and ``AuditWriteError`` are absorbed by the engine
with degraded-but-safe behavior (Pass1 fallback, logged audit failure).

Each class also derives from the closest builtin so callers that only know
about ``ValueError``/``LookupError``/``PermissionError`` keep working.
"""

from __future__ import annotations


class CategorizerError(Exception):
    """Base class for every error raised by ``categorizer``."""


class ValidationError(CategorizerError, ValueError):
    """Malformed input: bad filter, out-of-range bounds, unparseable cursor."""


class NotFoundError(CategorizerError, LookupError):
    """A transaction or category does not exist or is not visible to the org."""


class AuthorizationError(CategorizerError, PermissionError):
    """Cross-tenant access attempt. Raised before any mutation happens."""


class ExternalServiceError(CategorizerError, RuntimeError):
    """The generative model provider failed or timed out after retries."""

    def __init__(self, message: str, *, attempts: int = 1) -> None:
        super().__init__(message)
        self.attempts = attempts


class AuditWriteError(CategorizerError, RuntimeError):
    """An append to an audit table failed after the primary mutation succeeded."""


__all__ = [
    "AuditWriteError",
    "AuthorizationError",
    "CategorizerError",
    "ExternalServiceError",
    "NotFoundError",
    "ValidationError",
]
