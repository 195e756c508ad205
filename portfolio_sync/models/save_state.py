"""Autosave state data models."""

from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel

from .conflict import ConflictRecord


class SaveStatus(str, Enum):
    """Autosave scheduler states."""

    IDLE = "idle"
    PENDING = "pending"
    SAVING = "saving"
    RETRYING = "retrying"
    CONFLICT = "conflict"
    ERROR = "error"
    SAVED = "saved"


class SaveState(BaseModel):
    """Current scheduler state plus the details that state carries."""

    status: SaveStatus = SaveStatus.IDLE
    attempt: int = 0
    reason: Optional[str] = None
    error_type: Optional[str] = None
    conflicts: List[ConflictRecord] = []


class SaveStatusSnapshot(BaseModel):
    """Status reported to the editing UI."""

    state: SaveState
    is_online: bool
    has_pending_save: bool
    last_saved_data: Optional[Any] = None
    last_known_commit_sha: Optional[str] = None
    retry_count: int = 0
    conflict_detection_enabled: bool = True


class SaveSnapshot(BaseModel):
    """Persisted baseline for one save target under one credential."""

    owner: str
    repo: str
    branch: str
    last_known_commit_sha: Optional[str] = None
    last_saved_data: Optional[Any] = None
    # SHA-256 digest of the owning token
    credential: Optional[str] = None
