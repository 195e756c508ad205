"""
Error taxonomy for the save path.

Every failure that can come out of the request gate, the commit pipeline or
the autosave scheduler is one of these classes. ``retryable`` tells the
retry policy and the scheduler whether trying again can help; ``attempts``
is filled in by the request gate when an error surfaces after retries.
"""

from datetime import datetime
from typing import Optional


class PortfolioSyncError(Exception):
    """Base class for all save-path errors."""

    retryable: bool = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message
        self.attempts = 1

    def to_dict(self) -> dict:
        """Serializable summary used for events and API responses."""
        return {
            "type": type(self).__name__,
            "message": self.message,
            "retryable": self.retryable,
            "attempts": self.attempts,
        }


class ChangeValidationError(PortfolioSyncError):
    """A file change batch was rejected before any remote call."""

    def __init__(self, reason: str, path: Optional[str] = None, index: Optional[int] = None):
        message = reason if path is None else f"{reason}: '{path}'"
        super().__init__(message)
        self.reason = reason
        self.path = path
        self.index = index

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["path"] = self.path
        data["index"] = self.index
        return data


class ConcurrentModificationError(PortfolioSyncError):
    """The branch moved between reading its tip and updating it."""

    def __init__(
        self,
        branch: str,
        expected_sha: Optional[str] = None,
        actual_sha: Optional[str] = None,
        message: Optional[str] = None,
    ):
        super().__init__(
            message or f"Branch '{branch}' was modified concurrently"
        )
        self.branch = branch
        self.expected_sha = expected_sha
        self.actual_sha = actual_sha


class RemoteRequestError(PortfolioSyncError):
    """The remote API rejected a request with a non-retryable client error."""

    def __init__(self, message: str, status_code: int, operation: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.operation = operation


class PermanentAuthError(RemoteRequestError):
    """Authentication or authorization failed for reasons other than rate limiting."""


class RateLimitedError(PortfolioSyncError):
    """The credential's request quota is exhausted."""

    retryable = True

    def __init__(
        self,
        message: str = "GitHub API rate limit exceeded",
        reset_at: Optional[datetime] = None,
        limit: Optional[int] = None,
        remaining: Optional[int] = 0,
    ):
        super().__init__(message)
        self.reset_at = reset_at
        self.limit = limit
        self.remaining = remaining


class SecondaryRateLimitError(RateLimitedError):
    """Short-lived, burst-triggered throttling signal."""

    def __init__(self, message: str = "GitHub secondary rate limit hit", retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class TransientNetworkError(PortfolioSyncError):
    """Timeout, transport failure or 5xx response."""

    retryable = True

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class OfflineError(PortfolioSyncError):
    """No network connectivity; the current save attempt is abandoned."""

    def __init__(self, message: str = "Cannot save while offline"):
        super().__init__(message)
