"""
Shared fixtures: an in-memory GitHub git data API served through
httpx.MockTransport, plus a RequestGate that never really sleeps.
"""

import base64
import hashlib
import json
import re
import time
from typing import Callable, Dict, List, Optional, Tuple
from unittest.mock import AsyncMock, patch

import fakeredis
import httpx
import pytest

from portfolio_sync.config import settings
from portfolio_sync.services.github_client import GitHubClient
from portfolio_sync.services.request_gate import RequestGate
from portfolio_sync.services.save_registry import SaveRegistry, reset_save_registry
from portfolio_sync.services.snapshot_store import SnapshotStore
from portfolio_sync.utils.resilience import RetryPolicy


ROUTE = re.compile(r"^/repos/(?P<owner>[^/]+)/(?P<repo>[^/]+)(?P<rest>/.*)$")


class FakeGitHub:
    """In-memory repository implementing the endpoints GitHubClient uses."""

    def __init__(self, files: Optional[Dict[str, bytes]] = None, branch: str = "main"):
        self.blobs: Dict[str, bytes] = {}
        self.trees: Dict[str, Dict[str, str]] = {}
        self.commits: Dict[str, dict] = {}
        self.refs: Dict[str, str] = {}
        self.pull_requests: List[dict] = []
        self.requests: List[Tuple[str, str]] = []
        # Authorization header of each request, aligned with ``requests``
        self.authorizations: List[Optional[str]] = []
        self.overrides: List[Callable[[httpx.Request], Optional[httpx.Response]]] = []
        self.remaining = 5000
        self.reset_at = int(time.time()) + 3600
        self._counter = 0

        blob_shas = {path: self._store_blob(content) for path, content in (files or {}).items()}
        self.refs[branch] = self._store_commit(self._store_tree(blob_shas), [], "Initial commit")

    # ---- object store ----

    def _next_sha(self, kind: str) -> str:
        self._counter += 1
        return hashlib.sha1(f"{kind}-{self._counter}".encode()).hexdigest()

    def _store_blob(self, content: bytes) -> str:
        sha = self._next_sha("blob")
        self.blobs[sha] = content
        return sha

    def _store_tree(self, entries: Dict[str, str]) -> str:
        sha = self._next_sha("tree")
        self.trees[sha] = dict(entries)
        return sha

    def _store_commit(self, tree_sha: str, parents: List[str], message: str) -> str:
        sha = self._next_sha("commit")
        self.commits[sha] = {"tree": tree_sha, "parents": parents, "message": message}
        return sha

    def head(self, branch: str = "main") -> str:
        return self.refs[branch]

    def tree_of(self, commit_sha: str) -> str:
        return self.commits[commit_sha]["tree"]

    def files(self, branch: str = "main") -> Dict[str, bytes]:
        tree = self.trees[self.tree_of(self.refs[branch])]
        return {path: self.blobs[sha] for path, sha in tree.items()}

    def push_remote(
        self, files: Dict[str, Optional[bytes]], branch: str = "main", message: str = "Remote edit"
    ) -> str:
        """Commit directly to the branch as another editor would."""
        entries = dict(self.trees[self.tree_of(self.refs[branch])])
        for path, content in files.items():
            if content is None:
                entries.pop(path, None)
            else:
                entries[path] = self._store_blob(content)
        sha = self._store_commit(self._store_tree(entries), [self.refs[branch]], message)
        self.refs[branch] = sha
        return sha

    # ---- request inspection / failure injection ----

    def authorizations_for(self, method: str, fragment: str = "") -> List[Optional[str]]:
        return [
            auth
            for (m, path), auth in zip(self.requests, self.authorizations)
            if m == method and fragment in path
        ]

    def count(self, method: str, fragment: str = "") -> int:
        return sum(1 for m, path in self.requests if m == method and fragment in path)

    @property
    def mutating_requests(self) -> List[Tuple[str, str]]:
        return [(m, path) for m, path in self.requests if m != "GET"]

    def fail(
        self,
        method: str,
        fragment: str,
        status: int,
        body: Optional[dict] = None,
        headers: Optional[dict] = None,
        times: int = 1,
    ) -> None:
        """Answer the next ``times`` matching requests with an error."""
        remaining = [times]

        def override(request: httpx.Request) -> Optional[httpx.Response]:
            if remaining[0] <= 0 or request.method != method or fragment not in request.url.path:
                return None
            remaining[0] -= 1
            return httpx.Response(status, json=body or {"message": "Injected failure"}, headers=headers)

        self.overrides.append(override)

    # ---- HTTP ----

    def _headers(self) -> Dict[str, str]:
        return {
            "x-ratelimit-limit": "5000",
            "x-ratelimit-remaining": str(self.remaining),
            "x-ratelimit-used": str(5000 - self.remaining),
            "x-ratelimit-reset": str(self.reset_at),
        }

    def _json(self, status: int, body) -> httpx.Response:
        return httpx.Response(status, json=body, headers=self._headers())

    def handler(self, request: httpx.Request) -> httpx.Response:
        method = request.method
        path = request.url.path
        self.requests.append((method, path))
        self.authorizations.append(request.headers.get("authorization"))

        for override in list(self.overrides):
            response = override(request)
            if response is not None:
                return response

        self.remaining = max(0, self.remaining - 1)

        if path == "/user":
            return self._json(200, {"login": "octocat"})

        match = ROUTE.match(path)
        if not match:
            return self._json(404, {"message": "Not Found"})
        owner, repo, rest = match.group("owner"), match.group("repo"), match.group("rest")
        body = json.loads(request.content) if request.content else {}

        if method == "GET" and rest.startswith("/git/ref/heads/"):
            branch = rest[len("/git/ref/heads/"):]
            if branch not in self.refs:
                return self._json(404, {"message": "Not Found"})
            return self._json(200, {
                "ref": f"refs/heads/{branch}",
                "object": {"sha": self.refs[branch], "type": "commit"},
            })

        if method == "GET" and rest.startswith("/git/commits/"):
            sha = rest[len("/git/commits/"):]
            commit = self.commits.get(sha)
            if commit is None:
                return self._json(404, {"message": "Not Found"})
            return self._json(200, {
                "sha": sha,
                "tree": {"sha": commit["tree"]},
                "parents": [{"sha": parent} for parent in commit["parents"]],
                "message": commit["message"],
            })

        if method == "GET" and rest.startswith("/git/trees/"):
            sha = rest[len("/git/trees/"):]
            tree = self.trees.get(sha)
            if tree is None:
                return self._json(404, {"message": "Not Found"})
            return self._json(200, {
                "sha": sha,
                "tree": [{"path": p, "type": "blob", "mode": "100644", "sha": s} for p, s in tree.items()],
                "truncated": False,
            })

        if method == "GET" and rest.startswith("/compare/"):
            base, head = rest[len("/compare/"):].split("...")
            return self._compare(owner, repo, base, head)

        if method == "POST" and rest == "/git/blobs":
            content = base64.b64decode(body["content"])
            return self._json(201, {"sha": self._store_blob(content)})

        if method == "POST" and rest == "/git/trees":
            entries = dict(self.trees[body["base_tree"]])
            for entry in body["tree"]:
                if entry["sha"] is None:
                    if entry["path"] not in entries:
                        return self._json(422, {"message": f"path '{entry['path']}' does not exist"})
                    del entries[entry["path"]]
                else:
                    entries[entry["path"]] = entry["sha"]
            return self._json(201, {"sha": self._store_tree(entries)})

        if method == "POST" and rest == "/git/commits":
            sha = self._store_commit(body["tree"], body["parents"], body["message"])
            self.commits[sha]["author"] = body.get("author")
            return self._json(201, {
                "sha": sha,
                "html_url": f"https://github.com/{owner}/{repo}/commit/{sha}",
            })

        if method == "PATCH" and rest.startswith("/git/refs/heads/"):
            branch = rest[len("/git/refs/heads/"):]
            if branch not in self.refs:
                return self._json(422, {"message": "Reference does not exist"})
            if not body.get("force") and not self._is_ancestor(self.refs[branch], body["sha"]):
                return self._json(422, {"message": "Update is not a fast forward"})
            self.refs[branch] = body["sha"]
            return self._json(200, {"ref": f"refs/heads/{branch}", "object": {"sha": body["sha"]}})

        if method == "POST" and rest == "/git/refs":
            name = body["ref"][len("refs/heads/"):]
            if name in self.refs:
                return self._json(422, {"message": "Reference already exists"})
            self.refs[name] = body["sha"]
            return self._json(201, {"ref": body["ref"], "object": {"sha": body["sha"]}})

        if method == "POST" and rest == "/pulls":
            number = len(self.pull_requests) + 1
            self.pull_requests.append(body)
            return self._json(201, {
                "number": number,
                "html_url": f"https://github.com/{owner}/{repo}/pull/{number}",
                "head": {"ref": body["head"]},
                "base": {"ref": body["base"]},
            })

        return self._json(404, {"message": "Not Found"})

    def _is_ancestor(self, ancestor: str, commit_sha: str) -> bool:
        sha = commit_sha
        while sha:
            if sha == ancestor:
                return True
            parents = self.commits.get(sha, {}).get("parents", [])
            sha = parents[0] if parents else None
        return False

    def _compare(self, owner: str, repo: str, base: str, head: str) -> httpx.Response:
        if base not in self.commits or head not in self.commits:
            return self._json(404, {"message": "Not Found"})

        chain = []
        sha = head
        while sha and sha != base:
            chain.append(sha)
            parents = self.commits[sha]["parents"]
            sha = parents[0] if parents else None
        if sha != base:
            return self._json(404, {"message": "No common ancestor"})
        chain.reverse()

        base_tree = self.trees[self.tree_of(base)]
        head_tree = self.trees[self.tree_of(head)]
        files = []
        for path in sorted(set(base_tree) | set(head_tree)):
            if path not in base_tree:
                status = "added"
            elif path not in head_tree:
                status = "removed"
            elif base_tree[path] != head_tree[path]:
                status = "modified"
            else:
                continue
            files.append({"filename": path, "status": status, "sha": head_tree.get(path)})

        return self._json(200, {
            "status": "ahead" if chain else "identical",
            "ahead_by": len(chain),
            "commits": [
                {
                    "sha": sha,
                    "html_url": f"https://github.com/{owner}/{repo}/commit/{sha}",
                    "commit": {
                        "message": self.commits[sha]["message"],
                        "author": {
                            "name": "Remote Editor",
                            "email": "remote@example.com",
                            "date": "2024-01-01T00:00:00Z",
                        },
                    },
                }
                for sha in chain
            ],
            "files": files,
        })

    def http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=httpx.MockTransport(self.handler),
            base_url="https://api.github.com",
        )


@pytest.fixture
def fake_github() -> FakeGitHub:
    """Repository with a single data.json on main."""
    return FakeGitHub({"data.json": b'{"name": "Ada"}\n'})


@pytest.fixture
def no_jitter_policy() -> RetryPolicy:
    return RetryPolicy(max_retries=3, base_delay=1.0, max_delay=30.0, jitter=lambda low, high: 1.0)


@pytest.fixture
def gate(no_jitter_policy) -> RequestGate:
    """Gate whose waits return immediately."""
    return RequestGate(retry_policy=no_jitter_policy, sleep=AsyncMock())


@pytest.fixture
def github_client(fake_github, gate) -> GitHubClient:
    return GitHubClient("test-token", gate, http_client=fake_github.http_client())


@pytest.fixture
def api_registry(fake_github, monkeypatch) -> SaveRegistry:
    """Registry whose clients talk to the in-memory GitHub, with fast timings."""
    monkeypatch.setattr(settings, "github_token", None)
    monkeypatch.setattr(settings, "autosave_debounce_seconds", 0.01)
    monkeypatch.setattr(settings, "conflict_check_interval_seconds", 3600)
    monkeypatch.setattr(settings, "max_retries", 0)
    return SaveRegistry(
        client_factory=lambda token, gate: GitHubClient(token, gate, http_client=fake_github.http_client()),
    )


@pytest.fixture
def api_client(api_registry):
    """TestClient running the app on a single event loop for the whole test."""
    from fastapi.testclient import TestClient

    from portfolio_sync.api.dependencies import get_registry
    from portfolio_sync.main import app

    store = SnapshotStore(client=fakeredis.FakeAsyncRedis(decode_responses=True), sleep=AsyncMock())
    app.dependency_overrides[get_registry] = lambda: api_registry
    with patch("portfolio_sync.services.snapshot_store.get_snapshot_store", return_value=store):
        with TestClient(app) as client:
            yield client
            client.portal.call(api_registry.close)
    app.dependency_overrides.clear()
    reset_save_registry()
