"""Deployment target locks.

Manifesto:
    Two runs must never interleave a partial deploy on the same target.
    Whichever run reaches the Deploy stage first holds the target until
    Verify (and Cleanup, if any) have finished; the other run waits a
    bounded time and is then rejected. Locks carry a TTL so a crashed
    orchestrator cannot wedge a target forever.

Locks live in a small SQLite table. With a file path the table is shared
by every orchestrator process on the host; ``":memory:"`` keeps it
process-local (tests, single-shot CLI runs).

    Lock flow::

        run A ── acquire("web") ──► OK ─── deploy ── verify ── release
        run B ── acquire("web") ──► held by A ... poll ... ──► OK
                                            (or TargetBusy after timeout)

Tags:
    locking, concurrency, TTL, release-spine
"""

from __future__ import annotations

import sqlite3
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime, timedelta
from pathlib import Path
from uuid import uuid4

from release_spine.core.errors import TargetBusy
from release_spine.core.logging import get_logger
from release_spine.execution.cancellation import CancellationToken

logger = get_logger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS target_locks (
    target TEXT PRIMARY KEY,
    locked_by TEXT NOT NULL,
    locked_at TEXT NOT NULL,
    expires_at TEXT NOT NULL
)
"""


class TargetLockManager:
    """TTL-based exclusive locks keyed by deployment target name.

    Example:
        >>> locks = TargetLockManager()
        >>> locks.acquire("web", holder="run-1")
        True
        >>> locks.acquire("web", holder="run-2")
        False
        >>> locks.release("web", holder="run-1")
        True
    """

    def __init__(self, db_path: str | Path = ":memory:") -> None:
        if str(db_path) != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False, timeout=30)
        self._mutex = threading.Lock()
        with self._mutex:
            self._conn.execute(_SCHEMA)
            self._conn.commit()

    def acquire(self, target: str, holder: str | None = None, ttl_seconds: int = 3600) -> bool:
        """Try once to take the lock for ``target``.

        Returns True if acquired (or already held by ``holder``, in which
        case the expiry is refreshed), False if another holder owns it.
        """
        holder = holder or str(uuid4())
        now = datetime.now(UTC)
        expires = now + timedelta(seconds=ttl_seconds)

        with self._mutex:
            self._conn.execute(
                "DELETE FROM target_locks WHERE target = ? AND expires_at < ?",
                (target, now.isoformat()),
            )
            cursor = self._conn.execute(
                "INSERT OR IGNORE INTO target_locks (target, locked_by, locked_at, expires_at) "
                "VALUES (?, ?, ?, ?)",
                (target, holder, now.isoformat(), expires.isoformat()),
            )
            if cursor.rowcount > 0:
                self._conn.commit()
                logger.debug("lock.acquired", target=target, holder=holder)
                return True

            cursor = self._conn.execute(
                "UPDATE target_locks SET expires_at = ? WHERE target = ? AND locked_by = ?",
                (expires.isoformat(), target, holder),
            )
            self._conn.commit()
            return cursor.rowcount > 0

    def release(self, target: str, holder: str) -> bool:
        """Release ``target`` if held by ``holder``."""
        with self._mutex:
            cursor = self._conn.execute(
                "DELETE FROM target_locks WHERE target = ? AND locked_by = ?",
                (target, holder),
            )
            self._conn.commit()
        released = cursor.rowcount > 0
        if released:
            logger.debug("lock.released", target=target, holder=holder)
        return released

    def is_locked(self, target: str) -> bool:
        return self.get_lock_holder(target) is not None

    def get_lock_holder(self, target: str) -> str | None:
        """Return the current (unexpired) holder of ``target``."""
        with self._mutex:
            row = self._conn.execute(
                "SELECT locked_by FROM target_locks WHERE target = ? AND expires_at >= ?",
                (target, datetime.now(UTC).isoformat()),
            ).fetchone()
        return row[0] if row else None

    def cleanup_expired(self) -> int:
        """Delete expired locks; return how many were removed."""
        with self._mutex:
            cursor = self._conn.execute(
                "DELETE FROM target_locks WHERE expires_at < ?",
                (datetime.now(UTC).isoformat(),),
            )
            self._conn.commit()
        return cursor.rowcount

    @contextmanager
    def hold(
        self,
        target: str,
        holder: str,
        *,
        timeout: float,
        poll_interval: float = 1.0,
        ttl_seconds: int = 3600,
        cancel: CancellationToken | None = None,
    ) -> Iterator[None]:
        """Hold ``target`` for the duration of the ``with`` block.

        Polls until the lock is free for at most ``timeout`` seconds.

        Raises:
            TargetBusy: If another run still holds the target after ``timeout``
            RunCancelled: If ``cancel`` fires while waiting
        """
        deadline = time.monotonic() + timeout
        waited = False
        while not self.acquire(target, holder, ttl_seconds=ttl_seconds):
            if not waited:
                logger.info(
                    "lock.waiting",
                    target=target,
                    held_by=self.get_lock_holder(target),
                    timeout=timeout,
                )
                waited = True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TargetBusy(
                    f"deployment target {target!r} is held by run "
                    f"{self.get_lock_holder(target)!r}; waited {timeout:.0f}s",
                    stage="deploy",
                )
            pause = min(poll_interval, remaining)
            if cancel is not None:
                cancel.sleep(pause)
            else:
                time.sleep(pause)
        try:
            yield
        finally:
            self.release(target, holder)

    def close(self) -> None:
        with self._mutex:
            self._conn.close()


__all__ = ["TargetLockManager"]
