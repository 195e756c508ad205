"""Business logic services package."""

from portfolio_sync.services.request_gate import (
    GateStats,
    RequestGate,
)
from portfolio_sync.services.github_client import GitHubClient
from portfolio_sync.services.commit_pipeline import (
    CommitPipeline,
    validate_changes,
)
from portfolio_sync.services.conflict_detector import ConflictDetector
from portfolio_sync.services.event_bus import (
    EventBus,
    SaveEvent,
)
from portfolio_sync.services.autosave import (
    AutoSaveScheduler,
    json_change_builder,
)
from portfolio_sync.services.snapshot_store import (
    SnapshotStore,
    SnapshotStoreError,
    get_snapshot_store,
)
from portfolio_sync.services.save_registry import (
    SaveRegistry,
    get_save_registry,
)

__all__ = [
    'GateStats',
    'RequestGate',
    'GitHubClient',
    'CommitPipeline',
    'validate_changes',
    'ConflictDetector',
    'EventBus',
    'SaveEvent',
    'AutoSaveScheduler',
    'json_change_builder',
    'SnapshotStore',
    'SnapshotStoreError',
    'get_snapshot_store',
    'SaveRegistry',
    'get_save_registry',
]
