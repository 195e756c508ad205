"""
Shared dependencies and error translation for the REST API.
"""

import logging
from typing import Optional

from fastapi import Header, HTTPException

from portfolio_sync.config import settings
from portfolio_sync.exceptions import (
    ChangeValidationError,
    ConcurrentModificationError,
    OfflineError,
    PermanentAuthError,
    PortfolioSyncError,
    RateLimitedError,
    RemoteRequestError,
    TransientNetworkError,
)
from portfolio_sync.services.save_registry import SaveRegistry, get_save_registry

logger = logging.getLogger(__name__)

PASSTHROUGH_STATUS_CODES = {404, 422}


async def get_github_token(x_github_token: Optional[str] = Header(None)) -> str:
    """
    Resolve the GitHub credential for a request.

    Args:
        x_github_token: Token from the X-GitHub-Token header

    Raises:
        HTTPException: If no token is supplied or configured
    """
    token = x_github_token or settings.github_token
    if not token:
        raise HTTPException(status_code=401, detail="GitHub token required")
    return token


def get_registry() -> SaveRegistry:
    return get_save_registry()


def status_code_for(error: PortfolioSyncError) -> int:
    """HTTP status for a save-path error."""
    if isinstance(error, ChangeValidationError):
        return 400
    if isinstance(error, PermanentAuthError):
        return 401
    if isinstance(error, ConcurrentModificationError):
        return 409
    if isinstance(error, RateLimitedError):
        return 429
    if isinstance(error, TransientNetworkError):
        return 502
    if isinstance(error, OfflineError):
        return 503
    if isinstance(error, RemoteRequestError):
        return error.status_code if error.status_code in PASSTHROUGH_STATUS_CODES else 400
    return 500


def http_error(error: PortfolioSyncError) -> HTTPException:
    """Translate a save-path error into an HTTPException."""
    status_code = status_code_for(error)
    if status_code >= 500:
        logger.error(f"Save path failed: {error.message}")
    else:
        logger.warning(f"Request rejected ({status_code}): {error.message}")

    headers = None
    if isinstance(error, RateLimitedError) and error.reset_at is not None:
        headers = {"X-RateLimit-Reset": str(int(error.reset_at.timestamp()))}
    return HTTPException(status_code=status_code, detail=error.to_dict(), headers=headers)
