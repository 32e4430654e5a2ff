from __future__ import annotations

import os
import threading
from dataclasses import dataclass, field

import allure
import pytest

from agent_loop.loop.launcher import WorkerHandle, WorkerStartError
from agent_loop.loop.models import OutcomeStatus, TickAction
from agent_loop.loop.supervisor import HeartbeatFailure, HeartbeatSupervisor
from agent_loop.loop.workspace import LoopWorkspace
from agent_loop.storage.common import utc_now, write_json
from agent_loop.storage.lock import LockInfo

pytestmark = [
    allure.epic("Agent Loop"),
    allure.feature("Heartbeat Supervisor"),
]


@dataclass
class _FakeLauncher:
    survives: bool = True
    start_error: str | None = None
    prompts: list[str] = field(default_factory=list)

    def start(self, prompt: str) -> WorkerHandle:
        if self.start_error:
            raise WorkerStartError(self.start_error)
        self.prompts.append(prompt)
        return WorkerHandle(pid=os.getpid(), command_head="fake-agent")

    def verify(self, handle: WorkerHandle, timeout_seconds: float) -> bool:
        return self.survives


def _supervisor(workspace: LoopWorkspace, launcher: _FakeLauncher, **kwargs) -> HeartbeatSupervisor:
    return HeartbeatSupervisor(workspace=workspace, launcher=launcher, start_probe_seconds=0, **kwargs)


def test_idle_when_queue_and_goals_are_empty(workspace) -> None:
    launcher = _FakeLauncher()

    result = _supervisor(workspace, launcher).tick()

    assert result.action == TickAction.IDLE
    assert launcher.prompts == []
    assert not workspace.paths.lock.exists()
    assert workspace.paths.status.is_file()


def test_starts_worker_with_context_and_hands_over_lock(workspace, seed_tasks) -> None:
    seed_tasks("- [ ] Fix the flaky upload test")
    launcher = _FakeLauncher()

    result = _supervisor(workspace, launcher).tick()

    assert result.action == TickAction.WORKER_STARTED
    assert result.worker_pid == os.getpid()
    assert result.active_tasks == 1
    assert "Fix the flaky upload test" in launcher.prompts[0]
    assert workspace.lock.read().holder_pid == os.getpid()
    assert workspace.notifier.recent()[-1].level == "info"


def test_live_worker_short_circuits_the_tick(workspace, seed_tasks) -> None:
    seed_tasks("- [ ] one")
    workspace.lock.acquire(os.getpid())
    inbox_file = workspace.paths.inbox_dir / "request.md"
    inbox_file.write_text("- new request\n", "utf-8")
    launcher = _FakeLauncher()

    result = _supervisor(workspace, launcher).tick()

    assert result.action == TickAction.WORKER_ALIVE
    assert result.steps == []
    assert inbox_file.exists()
    assert launcher.prompts == []


def test_probe_failure_releases_lock_and_notifies_critical(workspace, seed_tasks) -> None:
    seed_tasks("- [ ] one")

    result = _supervisor(workspace, _FakeLauncher(survives=False)).tick()

    assert result.action == TickAction.START_FAILED
    assert not workspace.paths.lock.exists()
    assert workspace.notifier.recent()[-1].level == "critical"


def test_start_error_is_reported_as_start_failed(workspace, seed_tasks) -> None:
    seed_tasks("- [ ] one")

    result = _supervisor(workspace, _FakeLauncher(start_error="agent binary missing")).tick()

    assert result.action == TickAction.START_FAILED
    assert result.detail == "agent binary missing"
    assert not workspace.paths.lock.exists()


def test_stale_lock_is_recovered(workspace, seed_tasks) -> None:
    seed_tasks("- [ ] one")
    now = utc_now()
    write_json(
        workspace.paths.lock,
        LockInfo(
            holder_pid=2**22 + 12_345,
            acquired_at=now,
            renewed_at=now,
            hostname="gone",
            ttl_seconds=0,
        ).to_payload(),
    )

    result = _supervisor(workspace, _FakeLauncher()).tick()

    assert result.action == TickAction.WORKER_STARTED
    watchdog = next(step for step in result.steps if step.name == "watchdog")
    assert "stale lock reclaimed" in watchdog.detail


def test_inbox_requests_become_work(workspace) -> None:
    (workspace.paths.inbox_dir / "request.txt").write_text("Upgrade the CI image\n", "utf-8")
    launcher = _FakeLauncher()

    result = _supervisor(workspace, launcher).tick()

    assert result.action == TickAction.WORKER_STARTED
    assert "Upgrade the CI image" in launcher.prompts[0]
    assert (workspace.paths.inbox_processed_dir / "request.txt").is_file()


def test_failing_maintenance_step_does_not_block_start(workspace, seed_tasks) -> None:
    seed_tasks("- [ ] one")

    def _explode(_: LoopWorkspace):
        raise RuntimeError("mail server down")

    result = _supervisor(workspace, _FakeLauncher(), maintenance=(("mailbox", _explode),)).tick()

    assert result.action == TickAction.WORKER_STARTED
    assert result.steps[0].status == OutcomeStatus.FAILED
    assert result.steps[0].detail == "mail server down"


def test_concurrent_ticks_start_a_single_worker(settings, workspace, seed_tasks) -> None:
    seed_tasks("- [ ] one")
    launcher = _FakeLauncher()
    barrier = threading.Barrier(4)
    actions: list[TickAction] = []
    actions_lock = threading.Lock()

    def _tick() -> None:
        supervisor = _supervisor(LoopWorkspace.from_settings(settings), launcher, maintenance=())
        barrier.wait()
        action = supervisor.tick().action
        with actions_lock:
            actions.append(action)

    threads = [threading.Thread(target=_tick) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert actions.count(TickAction.WORKER_STARTED) == 1
    assert len(launcher.prompts) == 1
    assert set(actions) <= {TickAction.WORKER_STARTED, TickAction.WORKER_ALIVE, TickAction.LOCK_BUSY}


def test_run_forever_honours_max_ticks(workspace) -> None:
    seen = []
    supervisor = _supervisor(workspace, _FakeLauncher())

    ticks = supervisor.run_forever(interval_seconds=0, max_ticks=2, on_tick=seen.append)

    assert ticks == 2
    assert [result.action for result in seen] == [TickAction.IDLE, TickAction.IDLE]


def test_unreadable_memory_fails_start_and_frees_the_slot(workspace, seed_tasks) -> None:
    seed_tasks("- [ ] one")
    workspace.paths.memory.write_bytes(b"\xff\xfe")
    launcher = _FakeLauncher()
    supervisor = _supervisor(workspace, launcher)

    assert supervisor.run_forever(interval_seconds=0, max_ticks=2) == 2
    assert not workspace.paths.lock.exists()
    assert workspace.notifier.recent()[-1].level == "critical"
    assert launcher.prompts == []

    workspace.memory.write("recovered\n")
    assert supervisor.tick().action == TickAction.WORKER_STARTED


def test_lock_handover_error_is_reported_as_start_failed(workspace, seed_tasks, monkeypatch) -> None:
    seed_tasks("- [ ] one")

    def _broken_transfer(holder_pid: int):
        raise OSError("read-only file system")

    monkeypatch.setattr(workspace.lock, "transfer", _broken_transfer)

    result = _supervisor(workspace, _FakeLauncher()).tick()

    assert result.action == TickAction.START_FAILED
    assert "read-only file system" in result.detail
    assert not workspace.paths.lock.exists()
    assert workspace.notifier.recent()[-1].level == "critical"


def test_tick_failure_is_notified_critical(workspace, monkeypatch) -> None:
    def _broken_counts():
        raise RuntimeError("task store exploded")

    monkeypatch.setattr(workspace.tasks, "counts", _broken_counts)
    supervisor = _supervisor(workspace, _FakeLauncher(), maintenance=())

    with pytest.raises(HeartbeatFailure, match="task store exploded"):
        supervisor.tick_or_notify()

    latest = workspace.notifier.recent()[-1]
    assert latest.level == "critical"
    assert "task store exploded" in latest.message
