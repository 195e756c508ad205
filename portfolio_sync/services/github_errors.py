"""
Mapping of GitHub REST responses onto the save-path error taxonomy.
"""

from datetime import datetime, timezone
from typing import Optional

import httpx

from portfolio_sync.exceptions import (
    PermanentAuthError,
    PortfolioSyncError,
    RateLimitedError,
    RemoteRequestError,
    SecondaryRateLimitError,
    TransientNetworkError,
)


def _response_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return response.text or response.reason_phrase or f"HTTP {response.status_code}"


def _header_float(response: httpx.Response, name: str) -> Optional[float]:
    value = response.headers.get(name)
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def error_from_response(response: httpx.Response, operation: Optional[str] = None) -> PortfolioSyncError:
    """
    Build the taxonomy error for a non-2xx GitHub response.

    403/429 responses are rate-limit signals when they say so (secondary
    limit message or ``Retry-After``) or when the quota headers show zero
    remaining; any other 401/403 is a permanent auth failure.

    Args:
        response: Failed response
        operation: Human readable operation name for the message

    Returns:
        Error instance (not raised)
    """
    status = response.status_code
    detail = _response_message(response)
    message = f"{operation}: {detail}" if operation else detail

    if status in (403, 429):
        retry_after = _header_float(response, "retry-after")
        remaining = response.headers.get("x-ratelimit-remaining")

        if "secondary rate limit" in detail.lower() or (retry_after is not None and remaining != "0"):
            return SecondaryRateLimitError(message, retry_after=retry_after)

        if remaining == "0":
            reset = _header_float(response, "x-ratelimit-reset")
            limit = _header_float(response, "x-ratelimit-limit")
            return RateLimitedError(
                message,
                reset_at=datetime.fromtimestamp(reset, tz=timezone.utc) if reset else None,
                limit=int(limit) if limit is not None else None,
                remaining=0,
            )

        if status == 429:
            return SecondaryRateLimitError(message, retry_after=retry_after)

    if status in (401, 403):
        return PermanentAuthError(message, status_code=status, operation=operation)

    if status == 408 or status >= 500:
        return TransientNetworkError(message, status_code=status)

    return RemoteRequestError(message, status_code=status, operation=operation)
