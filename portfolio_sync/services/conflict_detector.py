"""
Conflict Detector component.

Compares the last branch tip an editor saw with the current remote tip.
Any divergence makes local edits stale; local paths that were also touched
remotely are reported individually so the UI can offer a resolution.
"""

from typing import List, Optional

from portfolio_sync.exceptions import RemoteRequestError
from portfolio_sync.models.commit import CommitSummary
from portfolio_sync.models.conflict import ConflictRecord, ConflictReport, ConflictType
from portfolio_sync.models.file_change import ChangeOperation, FileChange
from portfolio_sync.services.github_client import GitHubClient
from portfolio_sync.utils.logging import get_logger


logger = get_logger(__name__)


class ConflictDetector:
    """Detects remote movement of a branch since the last known commit."""

    def __init__(self, client: GitHubClient):
        self.client = client

    async def check(
        self,
        owner: str,
        repo: str,
        branch: str,
        last_known_sha: Optional[str],
        local_changes: Optional[List[FileChange]] = None,
    ) -> ConflictReport:
        """
        Check whether the branch moved since ``last_known_sha``.

        Args:
            owner: Repository owner
            repo: Repository name
            branch: Branch name
            last_known_sha: Commit the editor last saw; None skips the check
            local_changes: Local edits to match against remote changes

        Returns:
            ConflictReport; ``has_conflicts`` is True whenever the tips differ
        """
        if not last_known_sha:
            return ConflictReport(has_conflicts=False)

        remote_sha = await self.client.get_branch_ref(owner, repo, branch)
        if remote_sha == last_known_sha:
            return ConflictReport(
                has_conflicts=False,
                last_known_sha=last_known_sha,
                remote_sha=remote_sha,
            )

        try:
            comparison = await self.client.compare_commits(owner, repo, last_known_sha, remote_sha)
        except RemoteRequestError as e:
            if e.status_code != 404:
                raise
            # Known commit no longer reachable (history rewritten)
            logger.warning(
                f"Cannot compare {last_known_sha[:7]} with {remote_sha[:7]}: {e.message}",
                extra={"owner": owner, "repo": repo, "branch": branch},
            )
            comparison = {"commits": [CommitSummary(sha=remote_sha)], "files": []}

        remote_commits = comparison["commits"]
        remote_files = {item["filename"]: item for item in comparison["files"]}

        conflicts = []
        for change in local_changes or []:
            remote_file = remote_files.get(change.path)
            if remote_file is None:
                continue

            if remote_file["status"] == "removed" or change.operation == ChangeOperation.DELETE:
                conflict_type = ConflictType.DELETE_CONFLICT
            else:
                conflict_type = ConflictType.CONTENT_CONFLICT

            conflicts.append(
                ConflictRecord(
                    path=change.path,
                    type=conflict_type,
                    remote_commits=remote_commits,
                    local_content=change.content,
                    remote_sha=remote_file.get("sha"),
                    remote_status=remote_file.get("status"),
                )
            )

        logger.info(
            f"Branch {branch} moved from {last_known_sha[:7]} to {remote_sha[:7]}",
            extra={
                "owner": owner,
                "repo": repo,
                "branch": branch,
                "remote_commit_count": len(remote_commits),
                "conflicting_paths": [record.path for record in conflicts],
            },
        )

        return ConflictReport(
            has_conflicts=True,
            last_known_sha=last_known_sha,
            remote_sha=remote_sha,
            remote_commits=remote_commits,
            conflicts=conflicts,
        )
