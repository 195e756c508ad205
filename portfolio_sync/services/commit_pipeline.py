"""
Commit Pipeline component.

Turns a batch of file changes into exactly one new commit on a branch using
GitHub's low-level object API (blobs, tree, commit, ref). The branch only
moves in the final step, and only as a fast-forward, so a failure at any
step leaves the branch untouched.
"""

from datetime import datetime, timezone
from typing import Dict, List, Optional

from portfolio_sync.config import settings
from portfolio_sync.exceptions import (
    ChangeValidationError,
    ConcurrentModificationError,
    PortfolioSyncError,
)
from portfolio_sync.models.commit import (
    BranchTip,
    CommitOptions,
    CommitResult,
    PullRequestInfo,
    PushResult,
)
from portfolio_sync.models.file_change import ChangeOperation, FileChange
from portfolio_sync.services.github_client import GitHubClient
from portfolio_sync.utils.logging import get_logger


logger = get_logger(__name__)

MAX_PATH_LENGTH = 4096
FILE_MODE = "100644"


def validate_changes(changes: List[FileChange], max_file_size: Optional[int] = None) -> None:
    """
    Validate a whole batch of file changes.

    Args:
        changes: Batch to validate
        max_file_size: Byte ceiling per file (default: settings.max_file_size_bytes)

    Raises:
        ChangeValidationError: On the first invalid entry; the batch is rejected as a whole
    """
    if max_file_size is None:
        max_file_size = settings.max_file_size_bytes

    if not changes:
        raise ChangeValidationError("nothing to commit")

    seen = set()
    for index, change in enumerate(changes):
        path = change.path

        if not path:
            raise ChangeValidationError("path is required", path=path, index=index)
        if len(path) > MAX_PATH_LENGTH:
            raise ChangeValidationError(
                f"path exceeds {MAX_PATH_LENGTH} characters", path=path[:80], index=index
            )
        if path.startswith("/"):
            raise ChangeValidationError("path must be repository-relative", path=path, index=index)
        if "\x00" in path or "\\" in path:
            raise ChangeValidationError("path contains illegal characters", path=path, index=index)

        segments = path.split("/")
        if ".." in segments:
            raise ChangeValidationError("path traversal is not allowed", path=path, index=index)
        if any(segment in ("", ".") for segment in segments):
            raise ChangeValidationError("path contains an empty segment", path=path, index=index)

        if path in seen:
            raise ChangeValidationError("path appears more than once in the batch", path=path, index=index)
        seen.add(path)

        if change.operation in (ChangeOperation.CREATE, ChangeOperation.UPDATE):
            if change.content is None:
                raise ChangeValidationError(
                    f"content is required for {change.operation.value} operations",
                    path=path,
                    index=index,
                )
            if len(change.content) > max_file_size:
                raise ChangeValidationError(
                    f"file size exceeds limit ({max_file_size} bytes)",
                    path=path,
                    index=index,
                )
        elif change.content is not None:
            raise ChangeValidationError(
                "content must be absent for delete operations", path=path, index=index
            )


class CommitPipeline:
    """
    Creates atomic multi-file commits.

    Args:
        client: GitHub client (its gate carries rate limiting and retries)
        max_file_size: Byte ceiling per file
    """

    def __init__(self, client: GitHubClient, max_file_size: Optional[int] = None):
        self.client = client
        self.max_file_size = max_file_size or settings.max_file_size_bytes

    async def resolve_branch_tip(self, owner: str, repo: str, branch: str) -> BranchTip:
        """Read the branch reference and the tree of the commit it points to."""
        commit_sha = await self.client.get_branch_ref(owner, repo, branch)
        commit = await self.client.get_commit(owner, repo, commit_sha)
        return BranchTip(branch_name=branch, commit_sha=commit_sha, tree_sha=commit["tree_sha"])

    async def create_commit(
        self,
        owner: str,
        repo: str,
        branch: str,
        changes: List[FileChange],
        message: str,
        options: Optional[CommitOptions] = None,
    ) -> CommitResult:
        """
        Commit a batch of changes as one new commit on ``branch``.

        Args:
            owner: Repository owner
            repo: Repository name
            branch: Branch to advance
            changes: File changes (not mutated)
            message: Commit message
            options: Commit options

        Returns:
            CommitResult for the new branch tip

        Raises:
            ChangeValidationError: Invalid batch, before any remote call
            ConcurrentModificationError: The branch moved during the operation
            PortfolioSyncError: Remote failure surfaced by the request gate
        """
        options = options or CommitOptions()
        log = logger.with_context(owner=owner, repo=repo, branch=branch)

        validate_changes(changes, self.max_file_size)

        log.info(
            f"Creating commit with {len(changes)} change(s)",
            extra={"change_count": len(changes), "commit_message": message[:100]},
        )

        tip = await self.resolve_branch_tip(owner, repo, branch)

        if options.expected_head_sha and tip.commit_sha != options.expected_head_sha:
            raise ConcurrentModificationError(
                branch,
                expected_sha=options.expected_head_sha,
                actual_sha=tip.commit_sha,
                message=(
                    f"Branch '{branch}' is at {tip.commit_sha[:7]}, "
                    f"expected {options.expected_head_sha[:7]}"
                ),
            )

        backup_ref = None
        if options.create_backup:
            backup_ref = await self._create_backup(owner, repo, tip)

        blobs = await self._create_blobs(owner, repo, changes)
        tree_sha = await self._create_tree(owner, repo, tip, changes, blobs)

        commit = await self.client.create_commit(
            owner,
            repo,
            message,
            tree_sha,
            [tip.commit_sha],
            author=options.author,
        )

        try:
            await self.client.update_ref(owner, repo, branch, commit["sha"])
        except ConcurrentModificationError as e:
            e.expected_sha = tip.commit_sha
            log.warning(
                f"Branch moved while committing, commit {commit['sha'][:7]} left unreachable",
                extra={"expected_sha": tip.commit_sha},
            )
            raise

        result = CommitResult(
            commit_sha=commit["sha"],
            tree_sha=tree_sha,
            parent_sha=tip.commit_sha,
            files_changed=len(changes),
            timestamp=datetime.now(timezone.utc),
            branch=branch,
            html_url=commit.get("html_url"),
            backup_ref=backup_ref,
        )

        log.info(
            f"Commit created successfully: {result.commit_sha[:7]}",
            extra={"commit_sha": result.commit_sha, "files_changed": result.files_changed},
        )
        return result

    async def push_changes(
        self,
        owner: str,
        repo: str,
        branch: str,
        changes: List[FileChange],
        message: str,
        options: Optional[CommitOptions] = None,
    ) -> PushResult:
        """
        Commit changes and optionally open a pull request into the base branch.

        A failed pull request does not undo the commit; it is logged and
        reported as ``pull_request=None``.
        """
        options = options or CommitOptions()
        commit = await self.create_commit(owner, repo, branch, changes, message, options)

        pull_request = None
        if options.create_pull_request and branch != options.pull_request_base:
            try:
                data = await self.client.create_pull_request(
                    owner,
                    repo,
                    head=branch,
                    base=options.pull_request_base,
                    title=options.pull_request_title or message,
                    body=options.pull_request_body
                    or f"Automated pull request for changes in {branch}",
                )
                pull_request = PullRequestInfo(**data)
            except PortfolioSyncError as e:
                logger.warning(
                    f"Failed to open pull request for {owner}/{repo}:{branch}: {e.message}",
                    extra={"owner": owner, "repo": repo, "branch": branch},
                )

        return PushResult(commit=commit, pull_request=pull_request)

    async def _create_backup(self, owner: str, repo: str, tip: BranchTip) -> Optional[str]:
        """Point a backup branch at the current tip; failures are not fatal."""
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        backup_ref = f"backup-{tip.branch_name.replace('/', '-')}-{stamp}"
        try:
            await self.client.create_ref(owner, repo, f"refs/heads/{backup_ref}", tip.commit_sha)
        except PortfolioSyncError as e:
            logger.warning(
                f"Failed to create backup ref: {e.message}",
                extra={"owner": owner, "repo": repo, "branch": tip.branch_name},
            )
            return None

        logger.info(
            f"Backup created: {backup_ref}",
            extra={"owner": owner, "repo": repo, "commit_sha": tip.commit_sha},
        )
        return backup_ref

    async def _create_blobs(self, owner: str, repo: str, changes: List[FileChange]) -> Dict[str, str]:
        blobs: Dict[str, str] = {}
        for change in changes:
            if change.operation == ChangeOperation.DELETE:
                continue
            blobs[change.path] = await self.client.create_blob(
                owner, repo, change.content, path=change.path
            )
        return blobs

    async def _create_tree(
        self,
        owner: str,
        repo: str,
        tip: BranchTip,
        changes: List[FileChange],
        blobs: Dict[str, str],
    ) -> str:
        existing_paths = None
        if any(change.operation == ChangeOperation.DELETE for change in changes):
            paths, truncated = await self.client.get_tree_paths(owner, repo, tip.tree_sha)
            if not truncated:
                existing_paths = paths

        entries = []
        for change in changes:
            if change.operation == ChangeOperation.DELETE:
                if existing_paths is not None and change.path not in existing_paths:
                    logger.debug(f"Skipping delete of missing path {change.path}")
                    continue
                sha = None
            else:
                sha = blobs[change.path]
            entries.append({"path": change.path, "mode": FILE_MODE, "type": "blob", "sha": sha})

        if not entries:
            return tip.tree_sha

        return await self.client.create_tree(owner, repo, tip.tree_sha, entries)
