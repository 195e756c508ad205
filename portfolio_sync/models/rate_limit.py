"""Rate limit quota model."""

from datetime import datetime, timezone
from typing import Mapping, Optional

from pydantic import BaseModel


def _parse_int(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class RateLimitState(BaseModel):
    """
    Remaining request quota for one credential.

    Refreshed from the ``x-ratelimit-*`` headers of every response. A state
    that has never seen those headers is unrestricted. ``remaining`` never
    goes below zero; a zero quota blocks new calls until ``reset_at``.
    """

    limit: Optional[int] = None
    remaining: Optional[int] = None
    used: Optional[int] = None
    reset_at: Optional[datetime] = None

    @property
    def is_known(self) -> bool:
        return self.remaining is not None

    def update_from_headers(self, headers: Mapping[str, str]) -> bool:
        """
        Refresh quota from response headers.

        Args:
            headers: Response headers (case-insensitive mapping)

        Returns:
            True if any quota header was present
        """
        limit = _parse_int(headers.get("x-ratelimit-limit"))
        remaining = _parse_int(headers.get("x-ratelimit-remaining"))
        used = _parse_int(headers.get("x-ratelimit-used"))
        reset = _parse_int(headers.get("x-ratelimit-reset"))

        if limit is None and remaining is None and used is None and reset is None:
            return False

        if limit is not None:
            self.limit = limit
        if remaining is not None:
            self.remaining = max(0, remaining)
        if used is not None:
            self.used = used
        if reset is not None:
            self.reset_at = datetime.fromtimestamp(reset, tz=timezone.utc)
        return True

    def replenish_if_reset(self, now: datetime) -> None:
        """Treat the window as renewed once ``reset_at`` has passed."""
        if self.reset_at is None or now < self.reset_at:
            return
        if self.remaining is not None and self.remaining <= 0:
            # Without a known limit the quota is unknown again
            self.remaining = self.limit
            self.used = 0 if self.limit is not None else None

    def is_exhausted(self, now: datetime) -> bool:
        """True when no call may be dispatched before ``reset_at``."""
        return (
            self.remaining is not None
            and self.remaining <= 0
            and self.reset_at is not None
            and now < self.reset_at
        )

    def seconds_until_reset(self, now: datetime) -> float:
        if self.reset_at is None:
            return 0.0
        return max(0.0, (self.reset_at - now).total_seconds())

    def reserve(self) -> None:
        """Account locally for one dispatched call."""
        if self.remaining is not None:
            self.remaining = max(0, self.remaining - 1)
        if self.used is not None:
            self.used += 1
