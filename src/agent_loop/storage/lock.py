"""Single-holder worker lock with pid liveness and lease expiry."""

from __future__ import annotations

import fcntl
import json
import logging
import os
import socket
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path

from agent_loop.storage.common import from_iso, load_json, utc_now, write_json

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class LockInfo:
    """Contents of the lock marker."""

    holder_pid: int
    acquired_at: datetime
    renewed_at: datetime
    hostname: str
    ttl_seconds: int

    def to_payload(self) -> dict[str, object]:
        return {
            "holder_pid": self.holder_pid,
            "acquired_at": self.acquired_at.isoformat(),
            "renewed_at": self.renewed_at.isoformat(),
            "hostname": self.hostname,
            "ttl_seconds": self.ttl_seconds,
        }

    @classmethod
    def from_payload(cls, raw: dict[str, object]) -> LockInfo:
        holder_pid = raw.get("holder_pid")
        acquired_at = raw.get("acquired_at")
        if isinstance(holder_pid, bool) or not isinstance(holder_pid, int):
            raise ValueError("lock.holder_pid must be an integer")
        if not isinstance(acquired_at, str):
            raise ValueError("lock.acquired_at must be an ISO timestamp")
        renewed_at = raw.get("renewed_at")
        ttl_seconds = raw.get("ttl_seconds", 0)
        return cls(
            holder_pid=holder_pid,
            acquired_at=from_iso(acquired_at),
            renewed_at=from_iso(renewed_at) if isinstance(renewed_at, str) else from_iso(acquired_at),
            hostname=str(raw.get("hostname", "")),
            ttl_seconds=ttl_seconds if isinstance(ttl_seconds, int) else 0,
        )


@dataclass(slots=True)
class LockSnapshot:
    """Observed lock state."""

    present: bool
    live: bool
    info: LockInfo | None = None
    stale_reason: str | None = None

    @property
    def stale(self) -> bool:
        return self.present and not self.live


@dataclass(slots=True)
class LockAcquireResult:
    """Outcome of an acquire attempt: either the new lock or the busy holder."""

    acquired: bool
    info: LockInfo | None
    holder: LockInfo | None = None
    reclaimed: LockInfo | None = None


def pid_alive(pid: int) -> bool:
    """True when ``pid`` names a running, non-zombie process."""

    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    stat_path = Path(f"/proc/{pid}/stat")
    try:
        stat = stat_path.read_text("utf-8")
    except OSError:
        return True
    # State is the first field after the parenthesised command name.
    state = stat.rsplit(")", 1)[-1].split()[:1]
    return state != ["Z"]


class LockManager:
    """Mutual exclusion over the worker slot.

    Creation is ``O_CREAT | O_EXCL``; the check-reclaim-create sequence is
    serialised across processes by an ``flock`` on a sibling guard file so
    two reclaimers cannot both win.
    """

    def __init__(self, path: Path, *, ttl_seconds: int = 0) -> None:
        self.path = path
        self.guard_path = path.with_name(path.name + ".guard")
        self.ttl_seconds = ttl_seconds

    def read(self) -> LockInfo | None:
        try:
            return LockInfo.from_payload(load_json(self.path))
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError, ValueError, TypeError) as error:
            logger.warning("Unreadable lock marker %s: %s", self.path, error)
            return None

    def inspect(self) -> LockSnapshot:
        if not self.path.exists():
            return LockSnapshot(present=False, live=False)
        info = self.read()
        if info is None:
            return LockSnapshot(present=True, live=False, stale_reason="unreadable")
        if not pid_alive(info.holder_pid):
            return LockSnapshot(present=True, live=False, info=info, stale_reason="holder_dead")
        if info.ttl_seconds > 0 and utc_now() - info.renewed_at > timedelta(
            seconds=info.ttl_seconds,
        ):
            return LockSnapshot(present=True, live=False, info=info, stale_reason="lease_expired")
        return LockSnapshot(present=True, live=True, info=info)

    def acquire(self, holder_pid: int | None = None) -> LockAcquireResult:
        pid = holder_pid if holder_pid is not None else os.getpid()
        with self._guard():
            reclaimed: LockInfo | None = None
            snapshot = self.inspect()
            if snapshot.live:
                return LockAcquireResult(acquired=False, info=None, holder=snapshot.info)
            if snapshot.stale:
                reclaimed = snapshot.info
                logger.warning(
                    "Reclaiming stale lock %s (reason=%s holder_pid=%s)",
                    self.path,
                    snapshot.stale_reason,
                    snapshot.info.holder_pid if snapshot.info else "unknown",
                )
                self.path.unlink(missing_ok=True)

            now = utc_now()
            info = LockInfo(
                holder_pid=pid,
                acquired_at=now,
                renewed_at=now,
                hostname=socket.gethostname(),
                ttl_seconds=self.ttl_seconds,
            )
            try:
                fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                return LockAcquireResult(acquired=False, info=None, holder=self.read())
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(json.dumps(info.to_payload(), indent=2, sort_keys=True) + "\n")
                handle.flush()
                os.fsync(handle.fileno())
            logger.info("Lock acquired by pid=%s", pid)
            return LockAcquireResult(acquired=True, info=info, reclaimed=reclaimed)

    def release(self, holder_pid: int | None = None) -> bool:
        """Remove the lock; safe when none is held. Return whether a marker was removed.

        With ``holder_pid`` the marker is removed only when that pid holds it
        or the lock is stale; a live lock of another process is left alone.
        """

        with self._guard():
            if holder_pid is not None:
                snapshot = self.inspect()
                if not snapshot.present:
                    return False
                if snapshot.live and snapshot.info and snapshot.info.holder_pid != holder_pid:
                    logger.warning(
                        "Lock held by live pid=%s, not releasing for pid=%s",
                        snapshot.info.holder_pid,
                        holder_pid,
                    )
                    return False
            try:
                self.path.unlink()
            except FileNotFoundError:
                return False
        logger.info("Lock released: %s", self.path)
        return True

    def transfer(self, holder_pid: int) -> LockInfo:
        """Hand the held lock to a freshly started worker process."""

        with self._guard():
            current = self.read()
            now = utc_now()
            info = LockInfo(
                holder_pid=holder_pid,
                acquired_at=current.acquired_at if current else now,
                renewed_at=now,
                hostname=socket.gethostname(),
                ttl_seconds=self.ttl_seconds,
            )
            write_json(self.path, info.to_payload())
            return info

    def renew(self, holder_pid: int) -> LockInfo | None:
        """Refresh the lease for ``holder_pid``.

        A missing or stale lock is taken over (a worker started by hand
        adopts the slot). A lock held by another live process is left alone
        and ``None`` is returned.
        """

        with self._guard():
            snapshot = self.inspect()
            if snapshot.live and snapshot.info and snapshot.info.holder_pid != holder_pid:
                logger.warning(
                    "Lock held by live pid=%s, not renewing for pid=%s",
                    snapshot.info.holder_pid,
                    holder_pid,
                )
                return None
            now = utc_now()
            acquired_at = snapshot.info.acquired_at if snapshot.live and snapshot.info else now
            if not snapshot.live:
                if snapshot.stale:
                    logger.warning(
                        "Replacing stale lock (reason=%s) with pid=%s",
                        snapshot.stale_reason,
                        holder_pid,
                    )
                else:
                    logger.info("Adopting unlocked worker pid=%s", holder_pid)
            info = LockInfo(
                holder_pid=holder_pid,
                acquired_at=acquired_at,
                renewed_at=now,
                hostname=socket.gethostname(),
                ttl_seconds=self.ttl_seconds,
            )
            write_json(self.path, info.to_payload())
            return info

    def reclaim_if_stale(self) -> LockSnapshot | None:
        """Remove a stale lock marker; return the stale snapshot when one was removed."""

        with self._guard():
            snapshot = self.inspect()
            if not snapshot.stale:
                return None
            logger.warning(
                "Reclaiming stale lock %s (reason=%s)",
                self.path,
                snapshot.stale_reason,
            )
            self.path.unlink(missing_ok=True)
            return snapshot

    @contextmanager
    def _guard(self) -> Iterator[None]:
        self.guard_path.parent.mkdir(parents=True, exist_ok=True)
        with self.guard_path.open("a", encoding="utf-8") as handle:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
