from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from pathlib import Path

import allure
import pytest

from report_orchestrator.reporting import locks as locks_module
from report_orchestrator.reporting.locks import (
    LockCoordinator,
    RedisLockStore,
    SqliteLockStore,
    lock_key,
)
from report_orchestrator.reporting.repository import ReportingRepository
from report_orchestrator.storage.common import utc_now

pytestmark = [
    allure.epic("Coordination"),
    allure.feature("Distributed Leases"),
]


class _FakeRedis:
    """Just enough of the redis client surface for lease semantics."""

    def __init__(self) -> None:
        self.values: dict[str, str] = {}
        self.ttls: dict[str, int] = {}

    def set(self, key: str, value: str, *, nx: bool = False, ex: int | None = None) -> bool | None:
        if nx and key in self.values:
            return None
        self.values[key] = value
        if ex is not None:
            self.ttls[key] = ex
        return True

    def eval(self, script: str, numkeys: int, key: str, token: str) -> int:
        assert numkeys == 1
        assert 'redis.call("get", KEYS[1]) == ARGV[1]' in script
        if self.values.get(key) == token:
            del self.values[key]
            return 1
        return 0

    def expire(self, key: str) -> None:
        self.values.pop(key, None)


@pytest.fixture()
def sqlite_store(db_path: Path, repository: ReportingRepository):
    store = SqliteLockStore(db_path)
    yield store
    store.close()


def test_lock_key_layout_for_global_and_tenant_scoped_locks() -> None:
    assert (
        lock_key(env="development", resource="scheduler", lock_id="report-scheduler")
        == "dev:global:_:lock:scheduler:report-scheduler"
    )
    assert (
        lock_key(env="production", resource="report-run", lock_id="run-1", tenant_id="acme")
        == "prod:t:{acme}:lock:report-run:run-1"
    )
    assert lock_key(env="unknown", resource="schedule", lock_id="s 1", tenant_id="a").startswith(
        "dev:t:{a}:lock:schedule:s_1",
    )


def test_sqlite_lease_is_exclusive_until_released(sqlite_store: SqliteLockStore) -> None:
    first = LockCoordinator(sqlite_store, holder_id="worker-a")
    second = LockCoordinator(sqlite_store, holder_id="worker-b")
    key = lock_key(env="test", resource="report-run", lock_id="run-1", tenant_id="tenant-a")

    assert first.try_acquire(key, 60) is True
    assert second.try_acquire(key, 60) is False

    second.release(key)
    assert second.try_acquire(key, 60) is False

    first.release(key)
    assert second.try_acquire(key, 60) is True


def test_sqlite_lease_can_be_taken_over_after_expiry(
    sqlite_store: SqliteLockStore,
    monkeypatch,
) -> None:
    first = LockCoordinator(sqlite_store, holder_id="crashed")
    second = LockCoordinator(sqlite_store, holder_id="survivor")
    key = lock_key(env="test", resource="schedule", lock_id="s-1", tenant_id="tenant-a")
    assert first.try_acquire(key, 30) is True

    later = utc_now() + timedelta(seconds=31)
    monkeypatch.setattr(locks_module, "utc_now", lambda: later)

    assert second.try_acquire(key, 30) is True
    # The expired holder's release must not drop the new holder's lease.
    first.release(key)
    assert LockCoordinator(sqlite_store, holder_id="third").try_acquire(key, 30) is False


def test_lease_context_manager_releases_on_exit(sqlite_store: SqliteLockStore) -> None:
    coordinator = LockCoordinator(sqlite_store)
    other = LockCoordinator(sqlite_store)
    key = lock_key(env="test", resource="scheduler", lock_id="report-scheduler")

    with coordinator.lease(key, 60) as granted:
        assert granted is True
        with other.lease(key, 60) as nested:
            assert nested is False

    assert other.try_acquire(key, 60) is True


def test_non_positive_ttl_is_rejected(sqlite_store: SqliteLockStore) -> None:
    with pytest.raises(ValueError, match="TTL"):
        LockCoordinator(sqlite_store).try_acquire("dev:global:_:lock:x:y", 0)


def test_redis_store_uses_set_nx_with_expiry_and_owner_checked_release() -> None:
    client = _FakeRedis()
    store = RedisLockStore(client)
    first = LockCoordinator(store, holder_id="a")
    second = LockCoordinator(store, holder_id="b")
    key = lock_key(env="production", resource="report-run", lock_id="run-9", tenant_id="acme")

    assert first.try_acquire(key, 600) is True
    assert client.ttls[key] == 600
    assert client.values[key].startswith("a:")
    assert second.try_acquire(key, 600) is False

    client.expire(key)
    assert second.try_acquire(key, 600) is True
    first.release(key)
    assert client.values[key].startswith("b:")

    second.release(key)
    assert key not in client.values


def test_concurrent_acquirers_get_exactly_one_lease(sqlite_store: SqliteLockStore) -> None:
    key = lock_key(env="test", resource="report-run", lock_id="run-race", tenant_id="tenant-a")
    barrier = threading.Barrier(6)

    def _attempt(index: int) -> bool:
        coordinator = LockCoordinator(sqlite_store, holder_id=f"worker-{index}")
        barrier.wait()
        return coordinator.try_acquire(key, 60)

    with ThreadPoolExecutor(max_workers=6) as pool:
        results = list(pool.map(_attempt, range(6)))

    assert results.count(True) == 1
