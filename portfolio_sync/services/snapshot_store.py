"""
Redis-backed store for autosave baselines.

Keeps, per save target, the last commit the editor saved on top of and the
data it saved, so a restarted service can rebuild its schedulers without
asking the editor again. Includes connection pooling and retry logic for
resilience.
"""

import asyncio
import json
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Optional

import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool
from redis.exceptions import ConnectionError, TimeoutError

from portfolio_sync.exceptions import TransientNetworkError
from portfolio_sync.models.save_state import SaveSnapshot
from portfolio_sync.utils.logging import get_logger
from portfolio_sync.utils.resilience import RetryPolicy, retry_with_backoff


logger = get_logger(__name__)


class SnapshotStoreError(Exception):
    """Raised when the Redis connection cannot be established."""
    pass


def _classify_redis_error(error: BaseException) -> TransientNetworkError:
    return TransientNetworkError(f"Redis unavailable: {error}")


class SnapshotStore:
    """
    Redis wrapper for SaveSnapshot persistence.

    Snapshots are stored as JSON strings under
    ``portfolio_sync:snapshot:{owner}/{repo}/{branch}``, suffixed with
    ``:{credential}`` for credential-scoped baselines, with a TTL.
    """

    SNAPSHOT_KEY = "portfolio_sync:snapshot:{owner}/{repo}/{branch}"

    def __init__(
        self,
        redis_url: Optional[str] = None,
        ttl_seconds: Optional[int] = None,
        connection_timeout: int = 5,
        client: Optional[redis.Redis] = None,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize the snapshot store.

        Args:
            redis_url: Redis connection URL. If None, will load from settings.
            ttl_seconds: Snapshot expiry. If None, will load from settings.
            connection_timeout: Connection timeout in seconds
            client: Ready Redis client (tests pass a fakeredis instance)
            retry_policy: Policy for connection and timeout errors
            sleep: Awaitable sleep used between retries
        """
        self._redis_url = redis_url
        self._ttl_seconds = ttl_seconds
        self._connection_timeout = connection_timeout
        self._pool: Optional[ConnectionPool] = None
        self._client: Optional[redis.Redis] = client
        self._retry = retry_with_backoff(
            retry_policy or RetryPolicy(max_retries=2, base_delay=0.5, max_delay=2.0),
            exceptions=(ConnectionError, TimeoutError),
            classify=_classify_redis_error,
            sleep=sleep,
        )

    @property
    def is_initialized(self) -> bool:
        return self._client is not None

    async def initialize(self) -> None:
        """
        Initialize Redis connection pool.

        Should be called during application startup.

        Raises:
            SnapshotStoreError: If connection fails
        """
        from portfolio_sync.config import settings

        if self._ttl_seconds is None:
            self._ttl_seconds = settings.snapshot_ttl_seconds
        if self._client is not None:
            return

        try:
            self._pool = ConnectionPool.from_url(
                self._redis_url or settings.redis_url,
                max_connections=10,
                decode_responses=True,
                socket_timeout=self._connection_timeout,
                socket_connect_timeout=self._connection_timeout,
            )
            self._client = redis.Redis(connection_pool=self._pool)
            await self._client.ping()
            logger.info("Redis connection pool initialized successfully")

        except Exception as e:
            self._client = None
            logger.error(f"Failed to initialize Redis connection pool: {e}")
            raise SnapshotStoreError(f"Failed to connect to Redis: {e}") from e

    async def close(self) -> None:
        """Close Redis connection pool."""
        if self._client:
            await self._client.aclose()
            self._client = None

        if self._pool:
            await self._pool.disconnect()
            self._pool = None

        logger.info("Redis connection pool closed")

    @asynccontextmanager
    async def _get_client(self):
        if not self._client:
            raise RuntimeError("Snapshot store not initialized. Call initialize() first.")
        yield self._client

    async def _retry_operation(self, operation):
        """Run a Redis operation, retrying connection and timeout errors."""
        return await self._retry(operation)()

    def _snapshot_key(self, owner: str, repo: str, branch: str, credential: Optional[str] = None) -> str:
        key = self.SNAPSHOT_KEY.format(owner=owner, repo=repo, branch=branch)
        return f"{key}:{credential}" if credential else key

    async def save_snapshot(self, snapshot: SaveSnapshot) -> None:
        """
        Store the baseline for a save target, replacing any previous one.

        Args:
            snapshot: Baseline to store
        """
        async def _save():
            async with self._get_client() as client:
                key = self._snapshot_key(
                    snapshot.owner, snapshot.repo, snapshot.branch, snapshot.credential
                )
                payload = json.dumps(snapshot.model_dump(mode="json"))
                await client.set(key, payload, ex=self._ttl_seconds)

        await self._retry_operation(_save)
        logger.debug(
            f"Saved snapshot at {snapshot.last_known_commit_sha}",
            extra={"owner": snapshot.owner, "repo": snapshot.repo, "branch": snapshot.branch},
        )

    async def get_snapshot(
        self, owner: str, repo: str, branch: str, credential: Optional[str] = None
    ) -> Optional[SaveSnapshot]:
        """
        Load the baseline for a save target.

        Returns:
            SaveSnapshot if found, None otherwise
        """
        async def _get():
            async with self._get_client() as client:
                payload = await client.get(self._snapshot_key(owner, repo, branch, credential))
                if not payload:
                    return None
                return SaveSnapshot(**json.loads(payload))

        return await self._retry_operation(_get)

    async def delete_snapshot(
        self, owner: str, repo: str, branch: str, credential: Optional[str] = None
    ) -> None:
        async def _delete():
            async with self._get_client() as client:
                await client.delete(self._snapshot_key(owner, repo, branch, credential))

        await self._retry_operation(_delete)

    async def ping(self) -> bool:
        """Check Redis connectivity."""
        if not self._client:
            return False
        try:
            return bool(await self._client.ping())
        except (ConnectionError, TimeoutError) as e:
            logger.warning(f"Redis ping failed: {e}")
            return False


_snapshot_store: Optional[SnapshotStore] = None


def get_snapshot_store() -> SnapshotStore:
    """Get or create global snapshot store instance."""
    global _snapshot_store
    if _snapshot_store is None:
        _snapshot_store = SnapshotStore()
    return _snapshot_store
