"""Branch, commit and commit-option data models."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict


class BranchTip(BaseModel):
    """Last observed position of a branch."""

    model_config = ConfigDict(frozen=True)

    branch_name: str
    commit_sha: str
    tree_sha: str


class CommitAuthor(BaseModel):
    """Author identity attached to created commits."""

    name: str
    email: str


class CommitOptions(BaseModel):
    """Per-call knobs for the commit pipeline."""

    create_backup: bool = False
    author: Optional[CommitAuthor] = None
    expected_head_sha: Optional[str] = None
    create_pull_request: bool = False
    pull_request_base: str = "main"
    pull_request_title: Optional[str] = None
    pull_request_body: Optional[str] = None


class CommitResult(BaseModel):
    """Outcome of a successful commit; becomes the new branch tip."""

    model_config = ConfigDict(frozen=True)

    commit_sha: str
    tree_sha: str
    parent_sha: str
    files_changed: int
    timestamp: datetime
    branch: str
    html_url: Optional[str] = None
    backup_ref: Optional[str] = None

    def as_branch_tip(self) -> BranchTip:
        return BranchTip(
            branch_name=self.branch,
            commit_sha=self.commit_sha,
            tree_sha=self.tree_sha,
        )


class PullRequestInfo(BaseModel):
    """Pull request opened after a push."""

    number: int
    url: Optional[str] = None
    head: str
    base: str


class PushResult(BaseModel):
    """Commit plus the optional pull request opened for it."""

    commit: CommitResult
    pull_request: Optional[PullRequestInfo] = None


class CommitSummary(BaseModel):
    """A remote commit listed when local edits are stale."""

    sha: str
    message: str = ""
    author_name: Optional[str] = None
    author_email: Optional[str] = None
    date: Optional[datetime] = None
    url: Optional[str] = None
