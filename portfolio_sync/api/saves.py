"""
Autosave REST API endpoints.

Each route acts on the caller's scheduler for one (owner, repo, branch)
save target, identified by the X-GitHub-Token credential. Save and
connectivity calls create the scheduler; the others answer 404 without one.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException

from portfolio_sync.api.dependencies import get_github_token, get_registry, http_error
from portfolio_sync.exceptions import PortfolioSyncError
from portfolio_sync.models.api_response import (
    ActionResponse,
    ConnectivityUpdate,
    ScheduleSaveRequest,
)
from portfolio_sync.models.conflict import ConflictResolution
from portfolio_sync.models.save_state import SaveStatusSnapshot
from portfolio_sync.services.autosave import AutoSaveScheduler
from portfolio_sync.services.save_registry import SaveRegistry

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/saves", tags=["saves"])


async def _scheduler(
    registry: SaveRegistry, token: str, owner: str, repo: str, branch: str
) -> AutoSaveScheduler:
    try:
        return await registry.get_scheduler(token, owner, repo, branch)
    except PortfolioSyncError as e:
        raise http_error(e)


def _existing_scheduler(
    registry: SaveRegistry, token: str, owner: str, repo: str, branch: str
) -> AutoSaveScheduler:
    scheduler = registry.find_scheduler(token, owner, repo, branch)
    if scheduler is None:
        raise HTTPException(status_code=404, detail=f"No autosave for {owner}/{repo}:{branch}")
    return scheduler


@router.post("/{owner}/{repo}/{branch}", response_model=ActionResponse)
async def schedule_save(
    owner: str,
    repo: str,
    branch: str,
    request: ScheduleSaveRequest,
    token: str = Depends(get_github_token),
    registry: SaveRegistry = Depends(get_registry),
) -> ActionResponse:
    """
    Schedule a debounced save of the latest editor snapshot.

    Returns:
        'scheduled', or 'unchanged' when the data equals the last saved snapshot
    """
    scheduler = await _scheduler(registry, token, owner, repo, branch)
    if scheduler.schedule_save(request.data, immediate=request.immediate):
        return ActionResponse(status="scheduled", message=f"Save scheduled for {owner}/{repo}:{branch}")
    return ActionResponse(status="unchanged", message="Data matches the last saved snapshot")


@router.post("/{owner}/{repo}/{branch}/force", response_model=SaveStatusSnapshot)
async def force_save(
    owner: str,
    repo: str,
    branch: str,
    request: ScheduleSaveRequest,
    token: str = Depends(get_github_token),
    registry: SaveRegistry = Depends(get_registry),
) -> SaveStatusSnapshot:
    """
    Save immediately and wait for the outcome.

    The outcome (saved, retrying, conflict or error) is reported in the
    returned status.
    """
    scheduler = await _scheduler(registry, token, owner, repo, branch)
    result = await scheduler.force_save(request.data)
    if result is not None:
        logger.info(f"Forced save committed {result.commit_sha[:7]} to {owner}/{repo}:{branch}")
    return scheduler.get_status()


@router.delete("/{owner}/{repo}/{branch}/pending", response_model=ActionResponse)
async def cancel_save(
    owner: str,
    repo: str,
    branch: str,
    token: str = Depends(get_github_token),
    registry: SaveRegistry = Depends(get_registry),
) -> ActionResponse:
    """Cancel a pending save."""
    scheduler = _existing_scheduler(registry, token, owner, repo, branch)

    if scheduler.cancel_save():
        return ActionResponse(status="cancelled", message="Pending save cancelled")
    return ActionResponse(status="idle", message="No pending save")


@router.post("/{owner}/{repo}/{branch}/resolve", response_model=ActionResponse)
async def resolve_conflicts(
    owner: str,
    repo: str,
    branch: str,
    resolution: ConflictResolution,
    token: str = Depends(get_github_token),
    registry: SaveRegistry = Depends(get_registry),
) -> ActionResponse:
    """Resolve the current conflict with the chosen strategy."""
    scheduler = _existing_scheduler(registry, token, owner, repo, branch)

    try:
        scheduled = scheduler.resolve_conflicts(resolution)
    except ValueError as e:
        logger.warning(f"Conflict resolution rejected: {e}")
        raise HTTPException(status_code=409, detail=str(e))

    if scheduled:
        return ActionResponse(status="scheduled", message="Resolved data scheduled for saving")
    return ActionResponse(status="resolved", message="Remote content adopted")


@router.post("/{owner}/{repo}/{branch}/retry", response_model=ActionResponse)
async def retry_save(
    owner: str,
    repo: str,
    branch: str,
    token: str = Depends(get_github_token),
    registry: SaveRegistry = Depends(get_registry),
) -> ActionResponse:
    """Retry a save that ended in the error state."""
    scheduler = _existing_scheduler(registry, token, owner, repo, branch)

    if not scheduler.retry():
        raise HTTPException(status_code=409, detail="No failed save to retry")
    return ActionResponse(status="scheduled", message="Failed save scheduled again")


@router.put("/{owner}/{repo}/{branch}/connectivity", response_model=ActionResponse)
async def set_connectivity(
    owner: str,
    repo: str,
    branch: str,
    update: ConnectivityUpdate,
    token: str = Depends(get_github_token),
    registry: SaveRegistry = Depends(get_registry),
) -> ActionResponse:
    """Forward the editor's connectivity state to the scheduler."""
    scheduler = await _scheduler(registry, token, owner, repo, branch)
    scheduler.set_online(update.online)
    state = "online" if update.online else "offline"
    return ActionResponse(status=state, message=f"Connectivity set to {state}")


@router.get("/{owner}/{repo}/{branch}/status", response_model=SaveStatusSnapshot)
async def get_status(
    owner: str,
    repo: str,
    branch: str,
    token: str = Depends(get_github_token),
    registry: SaveRegistry = Depends(get_registry),
) -> SaveStatusSnapshot:
    """
    Current autosave status for a save target.

    Read-only: answers 404 until a save or connectivity call has created
    the scheduler.
    """
    scheduler = _existing_scheduler(registry, token, owner, repo, branch)
    return scheduler.get_status()
