from __future__ import annotations

import asyncio
import logging
import threading
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from redis.asyncio import ConnectionPool, Redis
from redis.exceptions import RedisError

from backend.app.config import Settings


logger = logging.getLogger(__name__)

_REDIS_LOCK = threading.Lock()
_REDIS_CLIENT: Redis | None = None
_REDIS_POOL: ConnectionPool | None = None


class LockNotAcquired(RuntimeError):
    """Raised when a distributed lock could not be taken before the timeout."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"lock '{name}' is held elsewhere")


def make_key(settings: Settings, *parts: str) -> str:
    """Construct a namespaced Redis key with the standard saaskit:{env}: prefix."""
    prefix = f"{settings.SAASKIT_REDIS_PREFIX}:{settings.APP_ENV}:"
    suffix = ":".join(part.strip(":") for part in parts if part)
    return f"{prefix}{suffix}"


def get_redis_client(settings: Settings) -> Redis:
    """Return a shared async Redis client instance."""
    global _REDIS_CLIENT, _REDIS_POOL
    if _REDIS_CLIENT is None:
        with _REDIS_LOCK:
            if _REDIS_CLIENT is None:
                _REDIS_POOL = ConnectionPool.from_url(
                    settings.REDIS_URL,
                    max_connections=settings.REDIS_MAX_CONNECTIONS
                    or settings.REDIS_POOL_SIZE,
                    decode_responses=True,
                )
                _REDIS_CLIENT = Redis(connection_pool=_REDIS_POOL)
    assert _REDIS_CLIENT is not None
    return _REDIS_CLIENT


_LOCK_RELEASE_SCRIPT = """\
if redis.call('get', KEYS[1]) == ARGV[1] then
  return redis.call('del', KEYS[1])
else
  return 0
end
"""


class RedisLocker:
    """Simple distributed locks using SET NX with a TTL.

    Used to serialise work on a single resource across independent request
    invocations, e.g. two reconciliations of the same checkout session.
    """

    def __init__(
        self,
        client: Redis,
        settings: Settings,
        *,
        ttl_seconds: int = 30,
        retry_interval: float = 0.1,
    ) -> None:
        self._client = client
        self._settings = settings
        self._ttl_seconds = ttl_seconds
        self._retry_interval = retry_interval

    async def acquire(self, name: str, *, timeout: Optional[float] = None) -> Optional[str]:
        """Acquire the lock, returning its token, or None on timeout or Redis failure."""
        token = uuid.uuid4().hex
        lock_key = make_key(self._settings, "lock", name)

        loop = asyncio.get_running_loop()
        start = loop.time()
        while True:
            try:
                ok = await self._client.set(lock_key, token, nx=True, ex=self._ttl_seconds)
            except RedisError:
                logger.exception("redis_acquire_lock_failed", extra={"lock_name": name})
                return None

            if ok:
                return token

            if timeout is not None and loop.time() - start >= timeout:
                return None

            await asyncio.sleep(self._retry_interval)

    async def release(self, name: str, token: str) -> bool:
        """Release a lock previously acquired with acquire()."""
        lock_key = make_key(self._settings, "lock", name)
        try:
            result = await self._client.eval(_LOCK_RELEASE_SCRIPT, 1, lock_key, token)
            return bool(result)
        except RedisError:
            logger.exception("redis_release_lock_failed", extra={"lock_name": name})
            return False

    @asynccontextmanager
    async def hold(self, name: str, *, timeout: Optional[float] = 0.0) -> AsyncIterator[str]:
        """Hold the named lock for the duration of the block.

        Raises:
            LockNotAcquired: if the lock is not free within ``timeout`` seconds
        """
        token = await self.acquire(name, timeout=timeout)
        if token is None:
            raise LockNotAcquired(name)
        try:
            yield token
        finally:
            await self.release(name, token)
