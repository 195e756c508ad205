"""Data models for the portfolio save pipeline."""

from .api_response import (
    ActionResponse,
    CommitRequest,
    CommitResponse,
    ConnectivityUpdate,
    ScheduleSaveRequest,
)
from .commit import (
    BranchTip,
    CommitAuthor,
    CommitOptions,
    CommitResult,
    CommitSummary,
    PullRequestInfo,
    PushResult,
)
from .conflict import (
    ConflictRecord,
    ConflictReport,
    ConflictResolution,
    ConflictType,
    ResolutionStrategy,
)
from .file_change import ChangeOperation, FileChange
from .rate_limit import RateLimitState
from .save_state import SaveSnapshot, SaveState, SaveStatus, SaveStatusSnapshot

__all__ = [
    # File change models
    "ChangeOperation",
    "FileChange",
    # Commit models
    "BranchTip",
    "CommitAuthor",
    "CommitOptions",
    "CommitResult",
    "CommitSummary",
    "PullRequestInfo",
    "PushResult",
    # Conflict models
    "ConflictType",
    "ConflictRecord",
    "ConflictReport",
    "ResolutionStrategy",
    "ConflictResolution",
    # Rate limit models
    "RateLimitState",
    # Save state models
    "SaveStatus",
    "SaveState",
    "SaveStatusSnapshot",
    "SaveSnapshot",
    # API models
    "ScheduleSaveRequest",
    "ConnectivityUpdate",
    "CommitRequest",
    "CommitResponse",
    "ActionResponse",
]
