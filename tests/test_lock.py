from __future__ import annotations

import os
import subprocess
import sys
import threading
from datetime import timedelta
from pathlib import Path

import allure

from agent_loop.storage.common import utc_now, write_json
from agent_loop.storage.lock import LockInfo, LockManager, pid_alive

pytestmark = [
    allure.epic("Agent Loop"),
    allure.feature("Worker Lock"),
]


def _dead_pid() -> int:
    process = subprocess.Popen([sys.executable, "-c", "pass"])  # noqa: S603
    process.wait()
    return process.pid


def _write_lock(path: Path, *, pid: int, renewed_seconds_ago: int = 0, ttl_seconds: int = 0) -> None:
    now = utc_now()
    write_json(
        path,
        LockInfo(
            holder_pid=pid,
            acquired_at=now - timedelta(seconds=renewed_seconds_ago),
            renewed_at=now - timedelta(seconds=renewed_seconds_ago),
            hostname="test-host",
            ttl_seconds=ttl_seconds,
        ).to_payload(),
    )


def test_acquire_is_exclusive_while_holder_lives(tmp_path: Path) -> None:
    lock = LockManager(tmp_path / "agent.lock")

    first = lock.acquire(os.getpid())
    second = lock.acquire(os.getpid())

    assert first.acquired
    assert not second.acquired
    assert second.holder is not None
    assert second.holder.holder_pid == os.getpid()


def test_release_is_idempotent(tmp_path: Path) -> None:
    lock = LockManager(tmp_path / "agent.lock")
    lock.acquire()

    assert lock.release()
    assert not lock.release()
    assert not lock.inspect().present


def test_dead_holder_is_reclaimed_with_stale_reason(tmp_path: Path) -> None:
    path = tmp_path / "agent.lock"
    dead = _dead_pid()
    _write_lock(path, pid=dead)
    lock = LockManager(path)

    assert not pid_alive(dead)
    snapshot = lock.inspect()
    assert snapshot.stale
    assert snapshot.stale_reason == "holder_dead"

    result = lock.acquire(os.getpid())
    assert result.acquired
    assert result.reclaimed is not None
    assert result.reclaimed.holder_pid == dead


def test_expired_lease_is_stale_even_with_live_pid(tmp_path: Path) -> None:
    path = tmp_path / "agent.lock"
    _write_lock(path, pid=os.getpid(), renewed_seconds_ago=120, ttl_seconds=60)

    snapshot = LockManager(path, ttl_seconds=60).inspect()

    assert snapshot.stale
    assert snapshot.stale_reason == "lease_expired"


def test_unreadable_marker_is_stale(tmp_path: Path) -> None:
    path = tmp_path / "agent.lock"
    path.write_text("not json", "utf-8")

    lock = LockManager(path)

    assert lock.inspect().stale_reason == "unreadable"
    assert lock.reclaim_if_stale() is not None
    assert not path.exists()


def test_renew_refuses_other_live_holder_and_adopts_free_slot(tmp_path: Path) -> None:
    lock = LockManager(tmp_path / "agent.lock")

    adopted = lock.renew(os.getpid())
    assert adopted is not None
    assert lock.read().holder_pid == os.getpid()

    assert lock.renew(os.getppid()) is None
    assert lock.read().holder_pid == os.getpid()


def test_transfer_hands_lock_to_new_pid(tmp_path: Path) -> None:
    lock = LockManager(tmp_path / "agent.lock")
    acquired = lock.acquire(os.getpid())

    info = lock.transfer(os.getppid())

    assert info.holder_pid == os.getppid()
    assert info.acquired_at == acquired.info.acquired_at


def test_concurrent_acquire_has_single_winner(tmp_path: Path) -> None:
    path = tmp_path / "agent.lock"
    _write_lock(path, pid=_dead_pid())
    barrier = threading.Barrier(8)
    results: list[bool] = []
    results_lock = threading.Lock()

    def _contend() -> None:
        manager = LockManager(path)
        barrier.wait()
        acquired = manager.acquire(os.getpid()).acquired
        with results_lock:
            results.append(acquired)

    threads = [threading.Thread(target=_contend) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert results.count(True) == 1
    assert LockManager(path).inspect().live


def test_release_for_holder_leaves_other_live_lock(tmp_path: Path) -> None:
    lock = LockManager(tmp_path / "agent.lock")
    lock.acquire(os.getppid())

    assert not lock.release(os.getpid())
    assert lock.read().holder_pid == os.getppid()

    assert lock.release(os.getppid())
    assert not lock.inspect().present


def test_release_for_holder_removes_stale_lock(tmp_path: Path) -> None:
    path = tmp_path / "agent.lock"
    _write_lock(path, pid=_dead_pid())

    assert LockManager(path).release(os.getpid())
    assert not path.exists()
