"""
AutoSave Scheduler component.

Debounces editor snapshots, runs a conflict pre-flight against the last
known branch tip, commits through the CommitPipeline and exposes the
outcome as a small state machine::

    idle -> pending -> saving -> saved -> idle
                              -> retrying(n) -> saving
                              -> conflict
                              -> error

Only the latest snapshot is ever sent; superseded snapshots are dropped.
At most one save cycle is in flight per scheduler, and each scheduler owns
exactly one (owner, repo, branch) target.
"""

import asyncio
import contextlib
import json
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional

from portfolio_sync.exceptions import (
    ConcurrentModificationError,
    OfflineError,
    PortfolioSyncError,
)
from portfolio_sync.models.commit import CommitOptions, CommitResult
from portfolio_sync.models.conflict import (
    ConflictReport,
    ConflictResolution,
    ResolutionStrategy,
)
from portfolio_sync.models.file_change import ChangeOperation, FileChange
from portfolio_sync.models.save_state import SaveState, SaveStatus, SaveStatusSnapshot
from portfolio_sync.services.commit_pipeline import CommitPipeline
from portfolio_sync.services.conflict_detector import ConflictDetector
from portfolio_sync.services.event_bus import EventBus, Listener, SaveEvent
from portfolio_sync.utils.logging import get_logger, log_error_with_context, log_save_transition


logger = get_logger(__name__)

ChangeBuilder = Callable[[Any], List[FileChange]]

_NO_DATA = object()


def json_change_builder(path: str = "data.json") -> ChangeBuilder:
    """Build a change set writing the snapshot as pretty-printed JSON to ``path``."""

    def build(data: Any) -> List[FileChange]:
        if isinstance(data, bytes):
            content = data
        else:
            content = (json.dumps(data, indent=2, ensure_ascii=False) + "\n").encode("utf-8")
        return [FileChange(path=path, operation=ChangeOperation.UPDATE, content=content)]

    return build


def _same_snapshot(left: Any, right: Any) -> bool:
    if isinstance(left, bytes) or isinstance(right, bytes):
        return isinstance(left, bytes) and isinstance(right, bytes) and left == right
    return left == right


class AutoSaveScheduler:
    """
    Autosave state machine for one save target.

    Args:
        owner: Repository owner
        repo: Repository name
        branch: Branch the edits are committed to
        pipeline: Commit pipeline
        detector: Conflict detector (optional when detection is disabled)
        change_builder: Maps a data snapshot to file changes
        debounce_seconds: Quiet period before a scheduled save is sent
        max_retries: Retryable failures tolerated before entering 'error'
        retry_delay: Base delay; retry n waits ``retry_delay * n``
        conflict_check_interval: Background polling period in seconds
        enable_conflict_detection: Run pre-flight and background checks
        commit_message: Message used for autosave commits
        commit_options: Base options for every commit
        initial_commit_sha: Branch tip the editor loaded its data from
        initial_data: Data the editor loaded (treated as already saved)
    """

    def __init__(
        self,
        owner: str,
        repo: str,
        branch: str,
        pipeline: CommitPipeline,
        detector: Optional[ConflictDetector] = None,
        change_builder: Optional[ChangeBuilder] = None,
        debounce_seconds: float = 2.0,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        conflict_check_interval: float = 30.0,
        enable_conflict_detection: bool = True,
        commit_message: str = "Update portfolio content",
        commit_options: Optional[CommitOptions] = None,
        initial_commit_sha: Optional[str] = None,
        initial_data: Any = _NO_DATA,
    ):
        self.owner = owner
        self.repo = repo
        self.branch = branch
        self.pipeline = pipeline
        self.detector = detector
        self.change_builder = change_builder or json_change_builder()
        self.debounce_seconds = debounce_seconds
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.conflict_check_interval = conflict_check_interval
        self.enable_conflict_detection = enable_conflict_detection and detector is not None
        self.commit_message = commit_message
        self.commit_options = commit_options or CommitOptions()

        self.events = EventBus()
        self.is_online = True
        self.retry_count = 0
        self.last_known_commit_sha = initial_commit_sha
        self.last_saved_data: Any = None
        self._has_saved_data = False
        if initial_data is not _NO_DATA:
            self.last_saved_data = initial_data
            self._has_saved_data = True

        self._state = SaveState()
        self._pending_data: Any = None
        self._has_pending = False
        self._failed_data: Any = _NO_DATA
        self._conflict_data: Any = _NO_DATA
        self._conflict_report: Optional[ConflictReport] = None
        self._last_notified_remote_sha: Optional[str] = None

        self._save_timer: Optional[asyncio.TimerHandle] = None
        self._retry_timer: Optional[asyncio.TimerHandle] = None
        self._save_task: Optional[asyncio.Task] = None
        self._poll_task: Optional[asyncio.Task] = None

        self._log = logger.with_context(owner=owner, repo=repo, branch=branch)

    # ========== Observers ==========

    @property
    def state(self) -> SaveState:
        return self._state

    def on(self, event, listener: Listener) -> Callable[[], None]:
        return self.events.on(event, listener)

    def off(self, event, listener: Listener) -> None:
        self.events.off(event, listener)

    def get_status(self) -> SaveStatusSnapshot:
        return SaveStatusSnapshot(
            state=self._state.model_copy(),
            is_online=self.is_online,
            has_pending_save=self._has_pending,
            last_saved_data=self.last_saved_data,
            last_known_commit_sha=self.last_known_commit_sha,
            retry_count=self.retry_count,
            conflict_detection_enabled=self.enable_conflict_detection,
        )

    def _set_state(self, status: SaveStatus, attempt: int = 0, reason: Optional[str] = None,
                   error_type: Optional[str] = None, conflicts=None, **payload: Any) -> None:
        previous = self._state.status
        self._state = SaveState(
            status=status,
            attempt=attempt,
            reason=reason,
            error_type=error_type,
            conflicts=conflicts or [],
        )
        log_save_transition(self._log, previous.value, status.value, attempt=attempt, reason=reason)

        event = {"status": status.value, "previous": previous.value}
        if attempt:
            event["attempt"] = attempt
            event["max_retries"] = self.max_retries
        if reason:
            event["reason"] = reason
        event.update(payload)
        self.events.emit(SaveEvent.STATUS_CHANGE, event)

    # ========== Scheduling ==========

    def _in_flight(self) -> bool:
        return self._save_task is not None and not self._save_task.done()

    def _cancel_save_timer(self) -> None:
        if self._save_timer is not None:
            self._save_timer.cancel()
            self._save_timer = None

    def _cancel_retry_timer(self) -> None:
        if self._retry_timer is not None:
            self._retry_timer.cancel()
            self._retry_timer = None

    def _take_pending(self) -> Any:
        data = self._pending_data
        self._pending_data = None
        self._has_pending = False
        return data

    def _queue(self, data: Any, delay: float) -> None:
        """Replace the pending snapshot and restart the debounce timer."""
        self._pending_data = data
        self._has_pending = True
        self._cancel_save_timer()
        self._cancel_retry_timer()
        self._save_timer = asyncio.get_running_loop().call_later(delay, self._on_save_timer)

        if not self._in_flight() and self._state.status != SaveStatus.PENDING:
            self._set_state(SaveStatus.PENDING)

    def schedule_save(self, data: Any, immediate: bool = False) -> bool:
        """
        Schedule a save of ``data`` after the debounce interval.

        While a save is in flight the snapshot is always queued, since the
        remote is about to hold the in-flight data rather than the last
        saved one. In 'conflict' the snapshot is held for
        ``resolve_conflicts()`` and no save is started.

        Args:
            data: Latest editor snapshot
            immediate: Send without waiting for the debounce interval

        Returns:
            True if the snapshot was queued or held, False if ``data``
            equals the last saved snapshot
        """
        if self._state.status == SaveStatus.CONFLICT and not self._in_flight():
            self._pending_data = data
            self._has_pending = True
            return True

        if (
            not self._in_flight()
            and self._has_saved_data
            and _same_snapshot(data, self.last_saved_data)
        ):
            self._drop_unsent()
            return False

        self._queue(data, 0 if immediate else self.debounce_seconds)
        return True

    def _drop_unsent(self) -> None:
        """Edits reverted to the saved snapshot: forget anything not yet sent."""
        self._cancel_save_timer()
        self._take_pending()

        status = self._state.status
        if status == SaveStatus.RETRYING:
            self._cancel_retry_timer()
            self.retry_count = 0
        elif status == SaveStatus.ERROR:
            self._failed_data = _NO_DATA
        elif status != SaveStatus.PENDING:
            return
        self._set_state(SaveStatus.IDLE, reason="unchanged")

    def _on_save_timer(self) -> None:
        self._save_timer = None
        if not self._has_pending or self._in_flight():
            # Coalesced: dispatched when the running cycle completes
            return
        if self._state.status == SaveStatus.CONFLICT:
            # Held until the conflict is resolved
            return
        self._start_cycle(self._take_pending())

    def _on_retry_timer(self, data: Any) -> None:
        self._retry_timer = None
        if self._in_flight():
            return
        if self._has_pending:
            self._cancel_save_timer()
            data = self._take_pending()
        self._start_cycle(data)

    def _start_cycle(self, data: Any) -> asyncio.Task:
        self._save_task = asyncio.ensure_future(self._run_cycle(data))
        return self._save_task

    async def _run_cycle(self, data: Any) -> Optional[CommitResult]:
        try:
            return await self.perform_save(data)
        finally:
            self._after_cycle()

    def _after_cycle(self) -> None:
        status = self._state.status
        if not self._has_pending or status in (SaveStatus.CONFLICT, SaveStatus.RETRYING):
            return
        self._set_state(SaveStatus.PENDING)
        if self._save_timer is None:
            asyncio.get_running_loop().call_soon(self._on_save_timer)

    async def force_save(self, data: Any) -> Optional[CommitResult]:
        """
        Save ``data`` now, bypassing the debounce and the unchanged check.

        Waits for an in-flight cycle to finish first; the pending snapshot,
        if any, is superseded by ``data``.
        """
        self._cancel_save_timer()
        self._cancel_retry_timer()
        self._take_pending()

        while self._in_flight():
            await asyncio.wait({self._save_task})
            self._cancel_save_timer()
            self._take_pending()

        return await self._start_cycle(data)

    def cancel_save(self) -> bool:
        """
        Drop the pending snapshot and its timer.

        An in-flight remote call is not aborted.

        Returns:
            True if something was cancelled
        """
        had_pending = self._has_pending or self._retry_timer is not None
        self._cancel_save_timer()
        self._cancel_retry_timer()
        self._take_pending()

        if self._state.status in (SaveStatus.PENDING, SaveStatus.RETRYING):
            self.retry_count = 0
            self._set_state(SaveStatus.IDLE, reason="cancelled")
        return had_pending

    def retry(self) -> bool:
        """Re-send the snapshot that ended in 'error'."""
        if self._state.status != SaveStatus.ERROR:
            return False
        if self._has_pending:
            data = self._take_pending()
        elif self._failed_data is not _NO_DATA:
            data = self._failed_data
        else:
            return False
        self._failed_data = _NO_DATA
        self._queue(data, 0)
        return True

    # ========== Save cycle ==========

    async def perform_save(self, data: Any) -> Optional[CommitResult]:
        """
        Run one save cycle for ``data``.

        Returns:
            CommitResult on success, None when the cycle ended in retrying,
            conflict or error (the outcome is reported through state and events)
        """
        if not self.is_online:
            self._fail(data, OfflineError())
            return None

        self._set_state(SaveStatus.SAVING)

        changes: List[FileChange] = []
        try:
            changes = self.change_builder(data)

            if self.enable_conflict_detection and self.last_known_commit_sha:
                report = await self.detector.check(
                    self.owner, self.repo, self.branch, self.last_known_commit_sha, changes
                )
                if report.has_conflicts:
                    self._enter_conflict(data, report)
                    return None

            options = self.commit_options.model_copy(
                update={"expected_head_sha": self.last_known_commit_sha}
            )
            result = await self.pipeline.create_commit(
                self.owner, self.repo, self.branch, changes, self.commit_message, options
            )

        except ConcurrentModificationError as e:
            report = await self._report_after_concurrent_update(changes, e)
            self._enter_conflict(data, report)
            return None

        except PortfolioSyncError as e:
            self._handle_failure(data, e)
            return None

        except Exception as e:
            log_error_with_context(self._log, "Autosave failed unexpectedly", e)
            self._fail(data, e)
            return None

        self._on_success(data, result)
        return result

    def _on_success(self, data: Any, result: CommitResult) -> None:
        self.last_saved_data = data
        self._has_saved_data = True
        self.last_known_commit_sha = result.commit_sha
        self.retry_count = 0
        self._failed_data = _NO_DATA

        self._set_state(SaveStatus.SAVED, commit_sha=result.commit_sha)
        self.events.emit(SaveEvent.SAVE, {
            "success": True,
            "data": data,
            "result": result.model_dump(mode="json"),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })
        self._set_state(SaveStatus.IDLE)

    def _handle_failure(self, data: Any, error: PortfolioSyncError) -> None:
        if not error.retryable:
            self._fail(data, error)
            return

        self.retry_count += 1
        if self.retry_count > self.max_retries:
            self._fail(data, error)
            return

        delay = self.retry_delay * self.retry_count
        self._set_state(SaveStatus.RETRYING, attempt=self.retry_count, reason=error.message)
        self._retry_timer = asyncio.get_running_loop().call_later(delay, self._on_retry_timer, data)

    def _fail(self, data: Any, error: Exception) -> None:
        retries = min(self.retry_count, self.max_retries)
        self.retry_count = 0
        self._failed_data = data

        if isinstance(error, PortfolioSyncError):
            reason = error.message
            details = error.to_dict()
        else:
            reason = str(error) or type(error).__name__
            details = {"type": type(error).__name__, "message": reason, "retryable": False}

        error_kind = "offline" if isinstance(error, OfflineError) else "save_failed"
        self._set_state(
            SaveStatus.ERROR,
            reason=error_kind if error_kind == "offline" else reason,
            error_type=type(error).__name__,
        )
        self.events.emit(SaveEvent.ERROR, {
            "type": error_kind,
            "message": reason,
            "error": details,
            "data": data,
            "retry_count": retries,
        })

    # ========== Conflicts ==========

    async def _report_after_concurrent_update(
        self, changes: List[FileChange], error: ConcurrentModificationError
    ) -> ConflictReport:
        if self.detector is not None and self.last_known_commit_sha:
            try:
                return await self.detector.check(
                    self.owner, self.repo, self.branch, self.last_known_commit_sha, changes
                )
            except PortfolioSyncError as e:
                self._log.warning(f"Could not collect conflict details: {e.message}")
        return ConflictReport(
            has_conflicts=True,
            last_known_sha=self.last_known_commit_sha,
            remote_sha=error.actual_sha,
        )

    def _enter_conflict(self, data: Any, report: ConflictReport) -> None:
        self.retry_count = 0
        self._conflict_data = data
        self._conflict_report = report
        self._last_notified_remote_sha = report.remote_sha

        self._set_state(
            SaveStatus.CONFLICT,
            reason=f"{self.branch} moved to {report.remote_sha or 'an unknown commit'}",
            conflicts=report.conflicts,
        )
        self.events.emit(SaveEvent.CONFLICT, self._conflict_payload(report, data, source="save"))

    def _conflict_payload(self, report: ConflictReport, data: Any, source: str) -> dict:
        return {
            "source": source,
            "conflicts": [
                record.model_dump(mode="json", exclude={"local_content"})
                for record in report.conflicts
            ],
            "remote_commits": [commit.model_dump(mode="json") for commit in report.remote_commits],
            "remote_sha": report.remote_sha,
            "last_known_sha": report.last_known_sha,
            "data": data,
        }

    def resolve_conflicts(self, resolution: ConflictResolution) -> bool:
        """
        Apply the caller's resolution of the current conflict.

        The remote tip becomes the new base. ``prefer_local`` and ``manual``
        re-enter 'pending' with the resolved payload; ``prefer_remote`` adopts
        the remote content and returns to 'idle' without committing.

        Returns:
            True if a save was scheduled

        Raises:
            ValueError: Not in 'conflict', or a manual resolution without data
        """
        if self._state.status != SaveStatus.CONFLICT:
            raise ValueError("No conflict to resolve")
        if resolution.strategy == ResolutionStrategy.MANUAL and resolution.data is None:
            raise ValueError("Manual resolution requires data")

        report = self._conflict_report
        if report is not None and report.remote_sha:
            self.last_known_commit_sha = report.remote_sha

        local_data = self._take_pending() if self._has_pending else self._conflict_data
        self._conflict_data = _NO_DATA
        self._conflict_report = None
        self._cancel_save_timer()

        self._log.info(
            f"Resolving conflict with strategy {resolution.strategy.value}",
            extra={"strategy": resolution.strategy.value},
        )

        if resolution.strategy == ResolutionStrategy.PREFER_REMOTE:
            if resolution.data is not None:
                self.last_saved_data = resolution.data
                self._has_saved_data = True
            self._set_state(SaveStatus.IDLE, reason="resolved_prefer_remote")
            return False

        payload = local_data if resolution.strategy == ResolutionStrategy.PREFER_LOCAL else resolution.data
        self._queue(payload, 0)
        return True

    def sync(self, commit_sha: str, data: Any = _NO_DATA) -> None:
        """Adopt ``commit_sha`` (and optionally ``data``) as the saved baseline."""
        self.last_known_commit_sha = commit_sha
        if data is not _NO_DATA:
            self.last_saved_data = data
            self._has_saved_data = True
        if self._state.status in (SaveStatus.CONFLICT, SaveStatus.ERROR):
            self._conflict_data = _NO_DATA
            self._conflict_report = None
            self._failed_data = _NO_DATA
            self._set_state(SaveStatus.IDLE, reason="synced")

    # ========== Connectivity ==========

    def set_online(self, online: bool) -> None:
        """Record a connectivity change; pending snapshots are kept."""
        if online == self.is_online:
            return
        self.is_online = online
        self._log.info(f"Connectivity changed: {'online' if online else 'offline'}")
        self.events.emit(SaveEvent.STATUS_CHANGE, {
            "status": self._state.status.value,
            "connectivity": "online" if online else "offline",
        })

    # ========== Background conflict polling ==========

    def start(self) -> None:
        """Start background conflict polling."""
        if self.enable_conflict_detection and self._poll_task is None:
            self._poll_task = asyncio.ensure_future(self._poll_loop())

    async def stop(self) -> None:
        """Stop background conflict polling."""
        if self._poll_task is not None:
            self._poll_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._poll_task
            self._poll_task = None

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self.conflict_check_interval)
            try:
                await self.check_remote()
            except Exception as e:
                log_error_with_context(self._log, "Background conflict check failed", e)

    async def check_remote(self) -> Optional[ConflictReport]:
        """
        Compare the known tip with the remote branch without saving.

        Emits 'conflict' (source ``background``) once per new remote tip;
        the scheduler state is not changed.
        """
        if not self.is_online or not self.last_known_commit_sha or self.detector is None:
            return None
        if self._in_flight() or self._state.status in (SaveStatus.CONFLICT, SaveStatus.RETRYING):
            return None

        changes = self.change_builder(self.last_saved_data) if self._has_saved_data else []
        try:
            report = await self.detector.check(
                self.owner, self.repo, self.branch, self.last_known_commit_sha, changes
            )
        except PortfolioSyncError as e:
            self._log.warning(f"Background conflict check failed: {e.message}")
            return None

        if report.has_conflicts and report.remote_sha != self._last_notified_remote_sha:
            self._last_notified_remote_sha = report.remote_sha
            self.events.emit(
                SaveEvent.CONFLICT,
                self._conflict_payload(report, self.last_saved_data, source="background"),
            )
        return report

    async def close(self) -> None:
        """Stop polling and drop timers; an in-flight save is left to finish."""
        self._cancel_save_timer()
        self._cancel_retry_timer()
        await self.stop()
        self.events.clear()
