"""
Error taxonomy for the sync engine.

Every failure the engine can report derives from FicSyncError and carries an
ErrorKind, so callers can branch on the kind instead of on the class tree.
"""

from enum import Enum


class ErrorKind(str, Enum):
    """Classification of a sync failure."""

    VALIDATION = "validation"
    RATE_LIMITED = "rate_limited"
    CIRCUIT_OPEN = "circuit_open"
    AUTHENTICATION = "authentication"
    NOT_FOUND = "not_found"
    RETRY_EXHAUSTED = "retry_exhausted"
    DEADLINE = "deadline"
    UNCLASSIFIED = "unclassified"

    @property
    def is_terminal(self) -> bool:
        """Terminal kinds must not be retried automatically."""
        return self not in (ErrorKind.RATE_LIMITED, ErrorKind.CIRCUIT_OPEN)


class FicSyncError(Exception):
    """Base exception for all sync engine errors."""

    kind: ErrorKind = ErrorKind.UNCLASSIFIED

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_body: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body

    def __str__(self) -> str:
        base = super().__str__()
        if self.status_code:
            return f"{base} (HTTP {self.status_code})"
        return base


# ---------------------------------------------------------------------------
# Local validation
# ---------------------------------------------------------------------------

class ValidationError(FicSyncError):
    """Bad credential or input shape. Never retried."""
    kind = ErrorKind.VALIDATION


class VaultError(FicSyncError):
    """Stored secret could not be encrypted or decrypted."""
    kind = ErrorKind.VALIDATION


class MissingCredentialsError(FicSyncError):
    """API key or company id has not been configured."""
    kind = ErrorKind.VALIDATION


class LineItemError(FicSyncError):
    """Order line items could not be parsed in strict mode."""
    kind = ErrorKind.VALIDATION


# ---------------------------------------------------------------------------
# Flow control
# ---------------------------------------------------------------------------

class RateLimitExceeded(FicSyncError):
    """Caller exhausted its request budget for the current window."""
    kind = ErrorKind.RATE_LIMITED


class CircuitOpen(FicSyncError):
    """Circuit breaker is open; outbound traffic is suspended."""
    kind = ErrorKind.CIRCUIT_OPEN


# ---------------------------------------------------------------------------
# Remote API
# ---------------------------------------------------------------------------

class AuthenticationError(FicSyncError):
    """API key rejected (401)."""
    kind = ErrorKind.AUTHENTICATION


class NotFoundError(FicSyncError):
    """Resource or company not found (404)."""
    kind = ErrorKind.NOT_FOUND


class RetryExhausted(FicSyncError):
    """Transient failure persisted past the retry budget."""
    kind = ErrorKind.RETRY_EXHAUSTED


class DeadlineExceeded(FicSyncError):
    """Caller's deadline expired before the request could complete."""
    kind = ErrorKind.DEADLINE


class UnclassifiedApiError(FicSyncError):
    """Any other non-2xx response, surfaced verbatim."""
    kind = ErrorKind.UNCLASSIFIED
