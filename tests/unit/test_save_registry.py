"""Unit tests for the SaveRegistry."""

import asyncio
from unittest.mock import AsyncMock

import fakeredis
import pytest

from portfolio_sync.models.save_state import SaveSnapshot
from portfolio_sync.services.github_client import GitHubClient
from portfolio_sync.services.save_registry import SaveRegistry, credential_key
from portfolio_sync.services.snapshot_store import SnapshotStore


@pytest.fixture
def store():
    return SnapshotStore(
        ttl_seconds=60,
        client=fakeredis.FakeAsyncRedis(decode_responses=True),
        sleep=AsyncMock(),
    )


@pytest.fixture
def registry(fake_github, store):
    return SaveRegistry(
        snapshot_store=store,
        client_factory=lambda token, gate: GitHubClient(token, gate, http_client=fake_github.http_client()),
    )


def test_credential_key_hides_token():
    key = credential_key("ghp_secret")

    assert "ghp_secret" not in key
    assert key == credential_key("ghp_secret")
    assert key != credential_key("ghp_other")


def test_one_gate_per_credential(registry):
    assert registry.get_gate("token-a") is registry.get_gate("token-a")
    assert registry.get_gate("token-a") is not registry.get_gate("token-b")
    assert registry.get_client("token-a").gate is registry.get_gate("token-a")


@pytest.mark.asyncio
async def test_scheduler_starts_at_branch_head(registry, fake_github):
    scheduler = await registry.get_scheduler("token", "octo", "portfolio", "main")

    assert scheduler.last_known_commit_sha == fake_github.head()
    assert await registry.get_scheduler("token", "octo", "portfolio", "main") is scheduler
    assert registry.find_scheduler("token", "octo", "portfolio", "main") is scheduler
    assert registry.find_scheduler("token", "octo", "portfolio", "draft") is None
    assert registry.find_scheduler("other-token", "octo", "portfolio", "main") is None

    await registry.close()


@pytest.mark.asyncio
async def test_scheduler_restores_persisted_baseline(registry, store, fake_github):
    await store.initialize()
    await store.save_snapshot(SaveSnapshot(
        owner="octo",
        repo="portfolio",
        branch="main",
        last_known_commit_sha="persisted-sha",
        last_saved_data={"name": "Ada"},
        credential=credential_key("token"),
    ))

    scheduler = await registry.get_scheduler("token", "octo", "portfolio", "main")

    assert scheduler.last_known_commit_sha == "persisted-sha"
    assert scheduler.schedule_save({"name": "Ada"}) is False
    assert fake_github.count("GET", "/git/ref/") == 0

    await registry.close()


@pytest.mark.asyncio
async def test_successful_save_is_persisted(registry, store, fake_github):
    await store.initialize()
    scheduler = await registry.get_scheduler("token", "octo", "portfolio", "main")

    result = await scheduler.force_save({"name": "Grace"})
    for _ in range(20):
        snapshot = await store.get_snapshot("octo", "portfolio", "main", credential_key("token"))
        if snapshot is not None:
            break
        await asyncio.sleep(0.01)

    assert snapshot.last_known_commit_sha == result.commit_sha
    assert snapshot.last_saved_data == {"name": "Grace"}

    await registry.close()


@pytest.mark.asyncio
async def test_works_without_snapshot_store(fake_github):
    registry = SaveRegistry(
        client_factory=lambda token, gate: GitHubClient(token, gate, http_client=fake_github.http_client()),
    )

    scheduler = await registry.get_scheduler("token", "octo", "portfolio", "main")
    result = await scheduler.force_save({"name": "Grace"})

    assert result.commit_sha == fake_github.head()
    await registry.close()


@pytest.mark.asyncio
async def test_each_credential_gets_its_own_scheduler(registry, fake_github):
    alice = await registry.get_scheduler("token-alice", "octo", "portfolio", "main")
    await alice.force_save({"name": "Alice"})
    bob = await registry.get_scheduler("token-bob", "octo", "portfolio", "main")

    assert alice is not bob
    await bob.force_save({"name": "Bob"})

    assert fake_github.authorizations_for("PATCH") == ["Bearer token-alice", "Bearer token-bob"]
    await registry.close()


@pytest.mark.asyncio
async def test_persisted_baseline_is_not_shared_between_credentials(registry, store):
    await store.initialize()
    await store.save_snapshot(SaveSnapshot(
        owner="octo",
        repo="portfolio",
        branch="main",
        last_known_commit_sha="alice-sha",
        last_saved_data={"name": "Alice"},
        credential=credential_key("token-alice"),
    ))

    bob = await registry.get_scheduler("token-bob", "octo", "portfolio", "main")

    assert bob.last_known_commit_sha != "alice-sha"
    assert bob.last_saved_data is None
    await registry.close()
