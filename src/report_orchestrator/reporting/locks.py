"""TTL-bound mutual exclusion leases over a shared key-value store.

A lease is granted by one atomic set-if-absent-with-expiry operation. Denial is
a normal outcome meaning another holder is active; callers skip instead of
waiting. Expiry is the safety net for holders that crash without releasing.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import timedelta
from pathlib import Path
from typing import Any, Protocol
from uuid import uuid4

import redis
from sqlalchemy import delete
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlmodel import Session, col

from report_orchestrator.storage.common import build_sqlite_engine, to_db_datetime, utc_now
from report_orchestrator.storage.sqlmodel_models import LockLease

logger = logging.getLogger(__name__)

_ENV_SHORT = {
    "development": "dev",
    "dev": "dev",
    "test": "stg",
    "stg": "stg",
    "production": "prod",
    "prod": "prod",
}

_RELEASE_IF_OWNER_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


def lock_key(*, env: str, resource: str, lock_id: str, tenant_id: str | None = None) -> str:
    """Build ``<env>:<scope>:<tenant>:lock:<resource>:<id>``.

    Tenant-bound keys wrap the tenant in braces so Redis Cluster keeps all
    keys of one tenant in the same hash slot.
    """

    effective_env = _ENV_SHORT.get(env.strip().lower(), "dev")
    if tenant_id is None:
        scope, tenant_segment = "global", "_"
    else:
        scope, tenant_segment = "t", "{" + _encode(tenant_id) + "}"
    return ":".join(
        [effective_env, scope, tenant_segment, "lock", _encode(resource), _encode(lock_id)],
    )


class LockStore(Protocol):
    """Minimal shared store contract needed by the coordinator."""

    def set_if_absent(self, key: str, token: str, ttl_seconds: int) -> bool: ...

    def delete_if_owner(self, key: str, token: str) -> bool: ...

    def close(self) -> None: ...


class SqliteLockStore:
    """Lease table in the shared SQLite database.

    Acquisition is one ``INSERT .. ON CONFLICT DO UPDATE .. WHERE expired``
    statement, so there is no read-then-write window between processes.
    """

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def set_if_absent(self, key: str, token: str, ttl_seconds: int) -> bool:
        now = to_db_datetime(utc_now())
        expires_at = now + timedelta(seconds=ttl_seconds)
        statement = sqlite_insert(LockLease).values(
            lock_key=key,
            holder_token=token,
            acquired_at=now,
            expires_at=expires_at,
        )
        statement = statement.on_conflict_do_update(
            index_elements=[LockLease.lock_key],
            set_={
                "holder_token": statement.excluded.holder_token,
                "acquired_at": statement.excluded.acquired_at,
                "expires_at": statement.excluded.expires_at,
            },
            where=col(LockLease.expires_at) <= now,
        )
        with Session(self.engine) as session:
            result = session.exec(statement)  # type: ignore[call-overload]
            session.commit()
            return result.rowcount == 1

    def delete_if_owner(self, key: str, token: str) -> bool:
        with Session(self.engine) as session:
            result = session.exec(  # type: ignore[call-overload]
                delete(LockLease).where(
                    col(LockLease.lock_key) == key,
                    col(LockLease.holder_token) == token,
                ),
            )
            session.commit()
            return result.rowcount == 1


class RedisLockStore:
    """Lease keys in Redis using ``SET NX EX`` and an owner-checked delete."""

    def __init__(self, client: Any) -> None:
        self.client = client

    @classmethod
    def from_url(cls, url: str) -> RedisLockStore:
        return cls(redis.Redis.from_url(url, decode_responses=True))

    def close(self) -> None:
        close = getattr(self.client, "close", None)
        if callable(close):
            close()

    def set_if_absent(self, key: str, token: str, ttl_seconds: int) -> bool:
        return bool(self.client.set(key, token, nx=True, ex=max(1, int(ttl_seconds))))

    def delete_if_owner(self, key: str, token: str) -> bool:
        return bool(self.client.eval(_RELEASE_IF_OWNER_SCRIPT, 1, key, token))


class LockCoordinator:
    """Acquire and release leases on behalf of one process-level holder."""

    def __init__(self, store: LockStore, *, holder_id: str | None = None) -> None:
        self.store = store
        self.holder_id = holder_id or f"holder-{uuid4().hex[:12]}"
        self._tokens: dict[str, str] = {}
        self._guard = threading.Lock()

    def try_acquire(self, key: str, ttl_seconds: int) -> bool:
        """Grant the lease if nobody else holds it; never blocks or retries."""

        if ttl_seconds <= 0:
            raise ValueError("Lock TTL must be > 0 seconds.")
        token = f"{self.holder_id}:{uuid4().hex}"
        granted = self.store.set_if_absent(key, token, ttl_seconds)
        if granted:
            with self._guard:
                self._tokens[key] = token
            logger.debug("Lock acquired key=%s ttl=%ss", key, ttl_seconds)
        else:
            logger.debug("Lock denied key=%s", key)
        return granted

    def release(self, key: str) -> None:
        """Best-effort release; failures are logged and left to TTL expiry."""

        with self._guard:
            token = self._tokens.pop(key, None)
        if token is None:
            return
        try:
            released = self.store.delete_if_owner(key, token)
        except Exception:  # noqa: BLE001
            logger.exception("Failed to release lock key=%s", key)
            return
        if not released:
            logger.warning("Lock key=%s expired or was taken over before release", key)

    @contextmanager
    def lease(self, key: str, ttl_seconds: int) -> Iterator[bool]:
        """Yield whether the lease was granted and release it afterwards."""

        granted = self.try_acquire(key, ttl_seconds)
        try:
            yield granted
        finally:
            if granted:
                self.release(key)


def _encode(value: str) -> str:
    return str(value).strip().replace(" ", "_")
