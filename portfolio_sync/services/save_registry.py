"""
Registry of per-credential gates and autosave schedulers.

One RequestGate (and one GitHubClient) exists per credential, so every
pipeline using that credential shares the same quota state. One
AutoSaveScheduler exists per credential and (owner, repo, branch) save
target, so a scheduler only ever commits with the token of its caller.
"""

import asyncio
import hashlib
from typing import Dict, Optional, Tuple

from portfolio_sync.config import settings
from portfolio_sync.models.commit import CommitAuthor, CommitOptions
from portfolio_sync.models.save_state import SaveSnapshot
from portfolio_sync.services.autosave import AutoSaveScheduler, json_change_builder
from portfolio_sync.services.commit_pipeline import CommitPipeline
from portfolio_sync.services.conflict_detector import ConflictDetector
from portfolio_sync.services.event_bus import SaveEvent
from portfolio_sync.services.github_client import GitHubClient
from portfolio_sync.services.request_gate import RequestGate
from portfolio_sync.services.snapshot_store import SnapshotStore
from portfolio_sync.utils.logging import get_logger
from portfolio_sync.utils.resilience import RetryPolicy


logger = get_logger(__name__)

SchedulerKey = Tuple[str, str, str, str]


def credential_key(token: Optional[str]) -> str:
    """Stable identifier for a credential that never holds the token itself."""
    return hashlib.sha256((token or "").encode("utf-8")).hexdigest()


class SaveRegistry:
    """
    Owns gates, clients and schedulers for the running service.

    Args:
        snapshot_store: Store for saved baselines; None disables persistence
        client_factory: Builds a GitHubClient from (token, gate); tests inject one
    """

    def __init__(self, snapshot_store: Optional[SnapshotStore] = None, client_factory=None):
        self.snapshot_store = snapshot_store
        self._client_factory = client_factory or (lambda token, gate: GitHubClient(token, gate))
        self._gates: Dict[str, RequestGate] = {}
        self._clients: Dict[str, GitHubClient] = {}
        self._schedulers: Dict[SchedulerKey, AutoSaveScheduler] = {}
        self._lock = asyncio.Lock()

    def _build_gate(self) -> RequestGate:
        policy = RetryPolicy(
            max_retries=settings.max_retries,
            base_delay=settings.retry_base_delay_seconds,
            max_delay=settings.retry_max_delay_seconds,
            secondary_wait=settings.secondary_rate_limit_default_wait_seconds,
        )
        return RequestGate(
            retry_policy=policy,
            request_timeout=settings.request_timeout_seconds,
            max_wait=settings.rate_limit_max_wait_seconds,
            max_queue_size=settings.rate_limit_max_queue_size,
        )

    def get_gate(self, token: Optional[str]) -> RequestGate:
        key = credential_key(token)
        if key not in self._gates:
            self._gates[key] = self._build_gate()
        return self._gates[key]

    def get_client(self, token: Optional[str]) -> GitHubClient:
        key = credential_key(token)
        if key not in self._clients:
            self._clients[key] = self._client_factory(token, self.get_gate(token))
        return self._clients[key]

    def get_pipeline(self, token: Optional[str]) -> CommitPipeline:
        return CommitPipeline(self.get_client(token), max_file_size=settings.max_file_size_bytes)

    def find_scheduler(
        self, token: Optional[str], owner: str, repo: str, branch: str
    ) -> Optional[AutoSaveScheduler]:
        """Existing scheduler for the target under this credential, if any."""
        return self._schedulers.get((credential_key(token), owner, repo, branch))

    async def get_scheduler(
        self, token: Optional[str], owner: str, repo: str, branch: str
    ) -> AutoSaveScheduler:
        """
        Get or create the scheduler for a save target under a credential.

        A new scheduler starts from the persisted baseline when one exists,
        otherwise from the current branch tip.
        """
        credential = credential_key(token)
        target = (credential, owner, repo, branch)
        async with self._lock:
            scheduler = self._schedulers.get(target)
            if scheduler is not None:
                return scheduler

            client = self.get_client(token)
            pipeline = CommitPipeline(client, max_file_size=settings.max_file_size_bytes)
            snapshot = await self._load_snapshot(owner, repo, branch, credential)

            if snapshot is not None and snapshot.last_known_commit_sha:
                initial_sha = snapshot.last_known_commit_sha
                initial_data = {"initial_data": snapshot.last_saved_data}
            else:
                initial_sha = await client.get_branch_ref(owner, repo, branch)
                initial_data = {}

            author = None
            if settings.commit_author_name and settings.commit_author_email:
                author = CommitAuthor(
                    name=settings.commit_author_name, email=settings.commit_author_email
                )

            scheduler = AutoSaveScheduler(
                owner,
                repo,
                branch,
                pipeline,
                detector=ConflictDetector(client),
                change_builder=json_change_builder(settings.portfolio_data_path),
                debounce_seconds=settings.autosave_debounce_seconds,
                max_retries=settings.max_retries,
                retry_delay=settings.autosave_retry_delay_seconds,
                conflict_check_interval=settings.conflict_check_interval_seconds,
                enable_conflict_detection=settings.enable_conflict_detection,
                commit_message=settings.autosave_commit_message,
                commit_options=CommitOptions(
                    create_backup=settings.create_backup_refs, author=author
                ),
                initial_commit_sha=initial_sha,
                **initial_data,
            )
            scheduler.on(SaveEvent.SAVE, self._persist_listener(scheduler, credential))
            scheduler.start()
            self._schedulers[target] = scheduler

            logger.info(
                f"Autosave scheduler created at {initial_sha[:7]}",
                extra={"owner": owner, "repo": repo, "branch": branch},
            )
            return scheduler

    async def _load_snapshot(
        self, owner: str, repo: str, branch: str, credential: str
    ) -> Optional[SaveSnapshot]:
        if self.snapshot_store is None or not self.snapshot_store.is_initialized:
            return None
        try:
            return await self.snapshot_store.get_snapshot(owner, repo, branch, credential)
        except Exception as e:
            logger.warning(
                f"Could not load save snapshot: {e}",
                extra={"owner": owner, "repo": repo, "branch": branch},
            )
            return None

    def _persist_listener(self, scheduler: AutoSaveScheduler, credential: str):
        async def persist(event: dict) -> None:
            if self.snapshot_store is None or not self.snapshot_store.is_initialized:
                return
            snapshot = SaveSnapshot(
                owner=scheduler.owner,
                repo=scheduler.repo,
                branch=scheduler.branch,
                last_known_commit_sha=event["result"]["commit_sha"],
                last_saved_data=event.get("data"),
                credential=credential,
            )
            try:
                await self.snapshot_store.save_snapshot(snapshot)
            except Exception as e:
                logger.warning(
                    f"Could not persist save snapshot: {e}",
                    extra={"owner": scheduler.owner, "repo": scheduler.repo, "branch": scheduler.branch},
                )

        return persist

    def rate_limit_status(self, token: Optional[str]) -> dict:
        return self.get_gate(token).get_status()

    async def close(self) -> None:
        """Stop all schedulers and close HTTP clients."""
        for scheduler in self._schedulers.values():
            await scheduler.close()
        self._schedulers.clear()

        for client in self._clients.values():
            await client.close()
        self._clients.clear()
        self._gates.clear()


_save_registry: Optional[SaveRegistry] = None


def get_save_registry() -> SaveRegistry:
    """Get or create the global save registry."""
    global _save_registry
    if _save_registry is None:
        from portfolio_sync.services.snapshot_store import get_snapshot_store

        _save_registry = SaveRegistry(snapshot_store=get_snapshot_store())
    return _save_registry


def reset_save_registry() -> None:
    global _save_registry
    _save_registry = None
