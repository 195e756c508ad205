"""API request and response data models."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from .commit import CommitAuthor, CommitResult, PullRequestInfo
from .file_change import FileChange


class ScheduleSaveRequest(BaseModel):
    """Body of a schedule or force save call."""

    data: Any
    immediate: bool = False


class ConnectivityUpdate(BaseModel):
    """Connectivity signal forwarded by the editing UI."""

    online: bool


class CommitRequest(BaseModel):
    """Body of a direct batch commit."""

    changes: List[FileChange]
    message: str
    branch: Optional[str] = None
    author: Optional[CommitAuthor] = None
    expected_head_sha: Optional[str] = None
    create_backup: bool = False
    create_pull_request: bool = False
    pull_request_base: Optional[str] = None
    pull_request_title: Optional[str] = None
    pull_request_body: Optional[str] = None


class CommitResponse(BaseModel):
    """Result of a direct batch commit."""

    success: bool
    commit: CommitResult
    pull_request: Optional[PullRequestInfo] = None
    summary: Dict[str, int]


class ActionResponse(BaseModel):
    """Acknowledgement for scheduler commands."""

    status: str
    message: str
