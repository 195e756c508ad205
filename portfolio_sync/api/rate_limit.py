"""
Rate limit status REST API endpoint.
"""

from fastapi import APIRouter, Depends

from portfolio_sync.api.dependencies import get_github_token, get_registry
from portfolio_sync.services.save_registry import SaveRegistry

router = APIRouter(prefix="/api", tags=["rate-limit"])


@router.get("/rate-limit")
async def get_rate_limit(
    token: str = Depends(get_github_token),
    registry: SaveRegistry = Depends(get_registry),
) -> dict:
    """Quota, queue and counters of the gate serving the caller's credential."""
    return registry.rate_limit_status(token)
