from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from backend.app.tests.fakes import make_settings
from backend.app.utils.redis_client import LockNotAcquired, RedisLocker, make_key


class InMemoryRedis:
    """Just enough of the async Redis API for SET NX and the release script."""

    def __init__(self) -> None:
        self.values: dict[str, str] = {}
        self.ttls: dict[str, Optional[int]] = {}

    async def set(self, key: str, value: str, *, nx: bool = False, ex: Optional[int] = None) -> Optional[bool]:
        if nx and key in self.values:
            return None
        self.values[key] = value
        self.ttls[key] = ex
        return True

    async def eval(self, script: str, numkeys: int, key: str, token: str) -> int:
        if self.values.get(key) == token:
            del self.values[key]
            return 1
        return 0


class DownRedis(InMemoryRedis):
    async def set(self, *args: Any, **kwargs: Any) -> Optional[bool]:
        raise RedisConnectionError("connection refused")


class ReadOnlyRedis(InMemoryRedis):
    async def eval(self, *args: Any) -> int:
        raise RedisConnectionError("connection reset")


def _locker(client: InMemoryRedis) -> RedisLocker:
    return RedisLocker(client, make_settings(), ttl_seconds=15, retry_interval=0.01)  # type: ignore[arg-type]


def test_lock_keys_are_namespaced() -> None:
    settings = make_settings()

    key = make_key(settings, "lock", "reconcile:cs_1")

    assert key == f"{settings.SAASKIT_REDIS_PREFIX}:{settings.APP_ENV}:lock:reconcile:cs_1"


def test_acquire_sets_key_with_ttl() -> None:
    client = InMemoryRedis()
    locker = _locker(client)

    token = asyncio.run(locker.acquire("job"))

    key = make_key(make_settings(), "lock", "job")
    assert token and client.values[key] == token
    assert client.ttls[key] == 15


def test_second_acquire_times_out() -> None:
    locker = _locker(InMemoryRedis())

    async def scenario() -> tuple[Optional[str], Optional[str]]:
        first = await locker.acquire("job")
        second = await locker.acquire("job", timeout=0.0)
        return first, second

    first, second = asyncio.run(scenario())

    assert first is not None
    assert second is None


def test_release_requires_owning_token() -> None:
    client = InMemoryRedis()
    locker = _locker(client)

    async def scenario() -> tuple[bool, bool]:
        token = await locker.acquire("job")
        assert token is not None
        refused = await locker.release("job", "someone-else")
        released = await locker.release("job", token)
        return refused, released

    refused, released = asyncio.run(scenario())

    assert not refused
    assert released
    assert client.values == {}


def test_hold_raises_when_lock_is_taken() -> None:
    locker = _locker(InMemoryRedis())

    async def scenario() -> None:
        await locker.acquire("job")
        async with locker.hold("job"):
            pass

    with pytest.raises(LockNotAcquired) as excinfo:
        asyncio.run(scenario())

    assert excinfo.value.name == "job"


def test_hold_releases_on_exit_even_after_error() -> None:
    client = InMemoryRedis()
    locker = _locker(client)

    async def scenario() -> None:
        async with locker.hold("job"):
            assert client.values
            raise ValueError("work failed")

    with pytest.raises(ValueError):
        asyncio.run(scenario())

    assert client.values == {}


def test_acquire_returns_none_when_redis_is_down(caplog: pytest.LogCaptureFixture) -> None:
    locker = _locker(DownRedis())

    with caplog.at_level(logging.ERROR):
        token = asyncio.run(locker.acquire("job"))

    assert token is None
    record = next(r for r in caplog.records if r.message == "redis_acquire_lock_failed")
    assert record.lock_name == "job"


def test_release_failure_is_logged_not_raised(caplog: pytest.LogCaptureFixture) -> None:
    locker = _locker(ReadOnlyRedis())

    async def scenario() -> str:
        async with locker.hold("job") as token:
            return token

    with caplog.at_level(logging.ERROR):
        token = asyncio.run(scenario())

    assert token
    record = next(r for r in caplog.records if r.message == "redis_release_lock_failed")
    assert record.lock_name == "job"
