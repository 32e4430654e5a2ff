from __future__ import annotations

import os
import subprocess
import sys

import allure
import pytest

from agent_loop.loop.controller import ContinuationController, ControllerError
from agent_loop.loop.models import DecisionAction, ExitReason
from agent_loop.storage.checkpoints import CheckpointFailure
from agent_loop.storage.records import RESET_ALL_TASKS_COMPLETE, LoopState

pytestmark = [
    allure.epic("Agent Loop"),
    allure.feature("Continuation Controller"),
]


def _last_notification(workspace):
    records = workspace.notifier.recent()
    assert records, "expected a notification"
    return records[-1]


def test_pending_tasks_continue_and_inject_both_task_texts(workspace, seed_tasks) -> None:
    seed_tasks("- [ ] Write the parser", "- [ ] Document the CLI flags")
    workspace.state.write(LoopState(iteration=5))

    decision = ContinuationController(workspace).evaluate()

    assert decision.action == DecisionAction.CONTINUE
    assert decision.iteration == 6
    assert workspace.state.read().iteration == 6
    assert "Write the parser" in (decision.context or "")
    assert "Document the CLI flags" in (decision.context or "")
    assert "iteration 6 of 100" in (decision.context or "")
    payload = decision.to_hook_payload()
    assert payload["decision"] == "block"
    assert payload["reason"] == decision.context
    assert payload["statusSummary"] == "iteration 6/100, 2 pending, 0 in progress"


def test_empty_queue_without_goals_resets_iteration_and_completes(workspace, seed_tasks) -> None:
    seed_tasks("- [x] Shipped already")
    workspace.state.write(LoopState(iteration=7))

    decision = ContinuationController(workspace).evaluate()

    assert decision.action == DecisionAction.EXIT
    assert decision.reason == ExitReason.COMPLETE
    state = workspace.state.read()
    assert state.iteration == 0
    assert state.reset_reason == RESET_ALL_TASKS_COMPLETE
    assert _last_notification(workspace).level == "success"
    assert decision.to_hook_payload() == {
        "decision": "allow",
        "reason": "complete",
        "statusSummary": "all tasks complete",
    }


def test_iteration_at_limit_exits_and_keeps_counter(workspace, seed_tasks) -> None:
    seed_tasks("- [ ] one", "- [ ] two", "- [ ] three")
    workspace.state.write(LoopState(iteration=100))

    decision = ContinuationController(workspace).evaluate()

    assert decision.reason == ExitReason.LIMIT_REACHED
    assert decision.iteration == 100
    assert workspace.state.read().iteration == 100
    assert _last_notification(workspace).level == "warning"


def test_increment_reaching_limit_exits_without_reset(workspace, seed_tasks) -> None:
    seed_tasks("- [ ] one")
    workspace.state.write(LoopState(iteration=99))

    decision = ContinuationController(workspace).evaluate()

    assert decision.reason == ExitReason.LIMIT_REACHED
    assert workspace.state.read().iteration == 100

    again = ContinuationController(workspace).evaluate()
    assert again.reason == ExitReason.LIMIT_REACHED
    assert workspace.state.read().iteration == 100


def test_stop_signal_wins_over_pending_tasks(workspace, seed_tasks) -> None:
    seed_tasks(*(f"- [ ] task {index}" for index in range(10)))
    workspace.state.write(LoopState(iteration=3))
    workspace.stop_signal.request("test")

    decision = ContinuationController(workspace).evaluate()

    assert decision.reason == ExitReason.STOP_REQUESTED
    assert not workspace.stop_signal.is_present()
    assert workspace.state.read().iteration == 3
    assert _last_notification(workspace).level == "info"


def test_stop_signal_wins_over_iteration_limit(workspace, seed_tasks) -> None:
    seed_tasks("- [ ] one")
    workspace.state.write(LoopState(iteration=500))
    workspace.stop_signal.request()

    decision = ContinuationController(workspace).evaluate()

    assert decision.reason == ExitReason.STOP_REQUESTED
    assert not workspace.stop_signal.is_present()


def test_missing_task_store_is_no_work(workspace) -> None:
    workspace.paths.tasks.unlink()

    decision = ContinuationController(workspace).evaluate()

    assert decision.reason == ExitReason.NO_WORK
    assert decision.iteration == 0
    assert workspace.notifier.recent() == []


def test_iteration_increases_by_one_per_continue(workspace, seed_tasks) -> None:
    seed_tasks("- [.] long task")
    controller = ContinuationController(workspace)

    iterations = [controller.evaluate().iteration for _ in range(4)]

    assert iterations == [1, 2, 3, 4]


def test_generator_refills_empty_queue_before_exit(workspace, seed_tasks) -> None:
    seed_tasks("- [x] done")
    workspace.paths.goals.write_text(
        "# Goals\n\n## Maintenance\n- Review open dependency updates\n",
        "utf-8",
    )

    decision = ContinuationController(workspace).evaluate()

    assert decision.action == DecisionAction.CONTINUE
    assert decision.iteration == 1
    assert "[Maintenance] Review open dependency updates" in (decision.context or "")
    assert workspace.tasks.counts().pending == 1


def test_exit_releases_lock_and_writes_checkpoint(workspace, seed_tasks) -> None:
    seed_tasks("- [x] done")
    assert workspace.lock.acquire(os.getpid()).acquired

    ContinuationController(workspace).evaluate()

    assert not workspace.paths.lock.exists()
    latest = workspace.checkpoints.latest()
    assert latest is not None
    assert latest.label == "complete"
    assert "tasks.md" in latest.files


def test_checkpoint_failure_does_not_block_exit(workspace, seed_tasks, monkeypatch) -> None:
    seed_tasks("- [ ] one")
    workspace.state.write(LoopState(iteration=100))
    assert workspace.lock.acquire(os.getpid()).acquired

    def _fail(label: str):
        raise CheckpointFailure(f"disk full while saving {label}")

    monkeypatch.setattr(workspace.checkpoints, "save", _fail)

    decision = ContinuationController(workspace).evaluate()

    assert decision.reason == ExitReason.LIMIT_REACHED
    assert not workspace.paths.lock.exists()


def test_core_failure_cleans_up_and_raises(workspace, seed_tasks, monkeypatch) -> None:
    seed_tasks("- [ ] one")
    assert workspace.lock.acquire(os.getpid()).acquired

    def _broken_counts():
        raise RuntimeError("task store exploded")

    monkeypatch.setattr(workspace.tasks, "counts", _broken_counts)

    with pytest.raises(ControllerError, match="task store exploded"):
        ContinuationController(workspace).evaluate()

    assert not workspace.paths.lock.exists()
    assert _last_notification(workspace).level == "error"


def test_continue_renews_lock_for_worker(workspace, seed_tasks) -> None:
    seed_tasks("- [ ] one")

    ContinuationController(workspace).evaluate(worker_pid=os.getpid())

    info = workspace.lock.read()
    assert info is not None
    assert info.holder_pid == os.getpid()


def test_memory_over_limit_warns_but_continues(workspace, seed_tasks) -> None:
    seed_tasks("- [ ] one")
    workspace.memory.write("x" * (101 * 1024))

    decision = ContinuationController(workspace).evaluate()

    assert decision.action == DecisionAction.CONTINUE
    assert _last_notification(workspace).level == "warning"
    assert workspace.memory.size_bytes() == 101 * 1024


def test_exit_keeps_lock_of_another_live_worker(workspace, seed_tasks) -> None:
    seed_tasks("- [x] done")
    other = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(30)"])  # noqa: S603
    try:
        assert workspace.lock.acquire(other.pid).acquired

        decision = ContinuationController(workspace).evaluate(worker_pid=os.getpid())

        assert decision.reason == ExitReason.COMPLETE
        snapshot = workspace.lock.inspect()
        assert snapshot.live
        assert snapshot.info.holder_pid == other.pid
    finally:
        other.kill()
        other.wait()


def test_exit_releases_lock_held_by_exiting_worker(workspace, seed_tasks) -> None:
    seed_tasks("- [ ] one")
    workspace.stop_signal.request()
    assert workspace.lock.acquire(os.getpid()).acquired

    decision = ContinuationController(workspace).evaluate(worker_pid=os.getpid())

    assert decision.reason == ExitReason.STOP_REQUESTED
    assert not workspace.paths.lock.exists()
