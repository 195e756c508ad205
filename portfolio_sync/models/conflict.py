"""Conflict detection and resolution data models."""

from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel

from .commit import CommitSummary


class ConflictType(str, Enum):
    """Kind of overlap between a local edit and remote history."""

    CONTENT_CONFLICT = "content_conflict"
    DELETE_CONFLICT = "delete_conflict"


class ConflictRecord(BaseModel):
    """A local path that was also touched by remote commits."""

    path: str
    type: ConflictType
    remote_commits: List[CommitSummary] = []
    local_content: Optional[bytes] = None
    remote_sha: Optional[str] = None
    remote_status: Optional[str] = None


class ConflictReport(BaseModel):
    """Result of comparing the last known branch tip with the remote one."""

    has_conflicts: bool
    last_known_sha: Optional[str] = None
    remote_sha: Optional[str] = None
    remote_commits: List[CommitSummary] = []
    conflicts: List[ConflictRecord] = []


class ResolutionStrategy(str, Enum):
    """How the user chose to settle a conflict."""

    PREFER_LOCAL = "prefer_local"
    PREFER_REMOTE = "prefer_remote"
    MANUAL = "manual"


class ConflictResolution(BaseModel):
    """Resolution supplied by the caller for the current conflict."""

    strategy: ResolutionStrategy
    data: Optional[Any] = None
