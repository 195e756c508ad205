"""
Direct batch commit REST API endpoint.
"""

import logging

from fastapi import APIRouter, Depends

from portfolio_sync.api.dependencies import get_github_token, get_registry, http_error
from portfolio_sync.config import settings
from portfolio_sync.exceptions import PortfolioSyncError
from portfolio_sync.models.api_response import CommitRequest, CommitResponse
from portfolio_sync.models.commit import CommitOptions
from portfolio_sync.models.file_change import ChangeOperation
from portfolio_sync.services.save_registry import SaveRegistry

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/content", tags=["content"])


@router.post("/{owner}/{repo}/commit", response_model=CommitResponse)
async def commit_changes(
    owner: str,
    repo: str,
    request: CommitRequest,
    token: str = Depends(get_github_token),
    registry: SaveRegistry = Depends(get_registry),
) -> CommitResponse:
    """
    Commit a batch of file changes as a single commit.

    Optionally opens a pull request from the branch into ``pull_request_base``.

    Raises:
        HTTPException: 400 invalid batch, 409 branch moved, 429 rate limited
    """
    branch = request.branch or settings.default_branch
    options = CommitOptions(
        create_backup=request.create_backup,
        author=request.author,
        expected_head_sha=request.expected_head_sha,
        create_pull_request=request.create_pull_request,
        pull_request_base=request.pull_request_base or settings.default_branch,
        pull_request_title=request.pull_request_title,
        pull_request_body=request.pull_request_body,
    )

    pipeline = registry.get_pipeline(token)
    try:
        result = await pipeline.push_changes(owner, repo, branch, request.changes, request.message, options)
    except PortfolioSyncError as e:
        raise http_error(e)

    summary = {operation.value: 0 for operation in ChangeOperation}
    for change in request.changes:
        summary[change.operation.value] += 1

    return CommitResponse(
        success=True,
        commit=result.commit,
        pull_request=result.pull_request,
        summary=summary,
    )
