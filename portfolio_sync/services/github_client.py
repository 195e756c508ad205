"""
GitHub REST client for the git object model.

Wraps ``httpx.AsyncClient`` and sends every call through a RequestGate so
quota, deadlines and retries are handled in one place.
"""

import base64
from datetime import datetime
from typing import Any, Dict, List, Optional, Set, Tuple
from urllib.parse import quote

import httpx

from portfolio_sync.config import settings
from portfolio_sync.exceptions import ConcurrentModificationError, RemoteRequestError
from portfolio_sync.models.commit import CommitAuthor, CommitSummary
from portfolio_sync.services.request_gate import RequestGate
from portfolio_sync.utils.logging import get_logger


logger = get_logger(__name__)


def _segment(value: str) -> str:
    return quote(value, safe="")


def _repo_path(owner: str, repo: str) -> str:
    return f"/repos/{_segment(owner)}/{_segment(repo)}"


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def commit_summary_from_api(item: Dict[str, Any]) -> CommitSummary:
    """Build a CommitSummary from a commit object of the commits/compare APIs."""
    commit = item.get("commit") or {}
    author = commit.get("author") or {}
    return CommitSummary(
        sha=item["sha"],
        message=commit.get("message", ""),
        author_name=author.get("name"),
        author_email=author.get("email"),
        date=_parse_datetime(author.get("date")),
        url=item.get("html_url"),
    )


class GitHubClient:
    """
    Low-level GitHub git data API client.

    Args:
        token: Credential sent as a bearer token
        gate: Request gate shared by all clients of this credential
        base_url: GitHub API base URL
        http_client: Preconfigured httpx client (tests pass one with a MockTransport)
    """

    def __init__(
        self,
        token: Optional[str],
        gate: RequestGate,
        base_url: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.gate = gate
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": settings.github_api_version,
            "User-Agent": "portfolio-sync",
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"

        if http_client is not None:
            http_client.headers.update(headers)
            self._client = http_client
        else:
            self._client = httpx.AsyncClient(
                base_url=base_url or settings.github_api_url,
                headers=headers,
            )

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        operation: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        response = await self.gate.execute(
            lambda: self._client.request(method, path, json=json, params=params),
            operation=operation,
            method=method,
        )
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    # ========== Reads ==========

    async def get_branch_ref(self, owner: str, repo: str, branch: str) -> str:
        """Return the commit sha the branch points to."""
        data = await self._request(
            "GET",
            f"{_repo_path(owner, repo)}/git/ref/heads/{quote(branch, safe='/')}",
            operation=f"get branch reference {branch}",
        )
        return data["object"]["sha"]

    async def get_commit(self, owner: str, repo: str, commit_sha: str) -> Dict[str, Any]:
        """Return ``{sha, tree_sha, parents}`` for a commit."""
        data = await self._request(
            "GET",
            f"{_repo_path(owner, repo)}/git/commits/{_segment(commit_sha)}",
            operation=f"get commit {commit_sha}",
        )
        return {
            "sha": data["sha"],
            "tree_sha": data["tree"]["sha"],
            "parents": [parent["sha"] for parent in data.get("parents", [])],
        }

    async def get_tree_paths(self, owner: str, repo: str, tree_sha: str) -> Tuple[Set[str], bool]:
        """
        List blob paths of a tree recursively.

        Returns:
            Tuple of (paths, truncated); a truncated listing is incomplete
        """
        data = await self._request(
            "GET",
            f"{_repo_path(owner, repo)}/git/trees/{_segment(tree_sha)}",
            operation=f"get tree {tree_sha}",
            params={"recursive": "1"},
        )
        paths = {
            entry["path"]
            for entry in data.get("tree", [])
            if entry.get("type") == "blob"
        }
        return paths, bool(data.get("truncated", False))

    async def compare_commits(self, owner: str, repo: str, base: str, head: str) -> Dict[str, Any]:
        """
        Compare two commits.

        Returns:
            ``{status, commits: [CommitSummary], files: [{filename, status, sha}]}``
        """
        data = await self._request(
            "GET",
            f"{_repo_path(owner, repo)}/compare/{_segment(base)}...{_segment(head)}",
            operation=f"compare {base[:7]}...{head[:7]}",
        )
        return {
            "status": data.get("status"),
            "commits": [commit_summary_from_api(item) for item in data.get("commits", [])],
            "files": [
                {
                    "filename": item["filename"],
                    "status": item.get("status"),
                    "sha": item.get("sha"),
                    "previous_filename": item.get("previous_filename"),
                }
                for item in data.get("files", [])
            ],
        }

    async def get_authenticated_user(self) -> Dict[str, Any]:
        return await self._request("GET", "/user", operation="get authenticated user")

    # ========== Object creation ==========

    async def create_blob(self, owner: str, repo: str, content: bytes, path: str = "") -> str:
        """Create a blob from raw bytes and return its sha."""
        data = await self._request(
            "POST",
            f"{_repo_path(owner, repo)}/git/blobs",
            operation=f"create blob for {path}" if path else "create blob",
            json={
                "content": base64.b64encode(content).decode("ascii"),
                "encoding": "base64",
            },
        )
        return data["sha"]

    async def create_tree(
        self,
        owner: str,
        repo: str,
        base_tree: str,
        entries: List[Dict[str, Any]],
    ) -> str:
        """Create a tree on top of ``base_tree``; entries with ``sha: None`` delete paths."""
        data = await self._request(
            "POST",
            f"{_repo_path(owner, repo)}/git/trees",
            operation="create tree with changes",
            json={"base_tree": base_tree, "tree": entries},
        )
        return data["sha"]

    async def create_commit(
        self,
        owner: str,
        repo: str,
        message: str,
        tree_sha: str,
        parents: List[str],
        author: Optional[CommitAuthor] = None,
    ) -> Dict[str, Any]:
        """Create a commit object; returns ``{sha, html_url}``."""
        payload: Dict[str, Any] = {
            "message": message,
            "tree": tree_sha,
            "parents": parents,
        }
        if author is not None:
            payload["author"] = {"name": author.name, "email": author.email}

        data = await self._request(
            "POST",
            f"{_repo_path(owner, repo)}/git/commits",
            operation="create commit",
            json=payload,
        )
        return {"sha": data["sha"], "html_url": data.get("html_url")}

    # ========== References ==========

    async def update_ref(self, owner: str, repo: str, branch: str, commit_sha: str) -> None:
        """
        Move a branch to ``commit_sha`` without forcing.

        Raises:
            ConcurrentModificationError: The update is not a fast-forward
        """
        try:
            await self._request(
                "PATCH",
                f"{_repo_path(owner, repo)}/git/refs/heads/{quote(branch, safe='/')}",
                operation=f"update branch reference {branch}",
                json={"sha": commit_sha, "force": False},
            )
        except RemoteRequestError as e:
            if e.status_code == 409 or (
                e.status_code == 422 and "fast forward" in e.message.lower()
            ):
                raise ConcurrentModificationError(
                    branch,
                    message=f"Branch '{branch}' moved while committing: {e.message}",
                ) from e
            raise

    async def create_ref(self, owner: str, repo: str, ref: str, commit_sha: str) -> None:
        await self._request(
            "POST",
            f"{_repo_path(owner, repo)}/git/refs",
            operation=f"create reference {ref}",
            json={"ref": ref, "sha": commit_sha},
        )

    async def create_pull_request(
        self,
        owner: str,
        repo: str,
        head: str,
        base: str,
        title: str,
        body: str = "",
    ) -> Dict[str, Any]:
        data = await self._request(
            "POST",
            f"{_repo_path(owner, repo)}/pulls",
            operation="create pull request",
            json={"title": title, "body": body, "head": head, "base": base},
        )
        return {
            "number": data["number"],
            "url": data.get("html_url"),
            "head": data.get("head", {}).get("ref", head),
            "base": data.get("base", {}).get("ref", base),
        }
