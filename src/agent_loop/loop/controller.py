"""Continuation controller: decides, at every worker exit attempt, whether to loop again.

Evaluation order is fixed:

1. stop signal (consumed, always wins),
2. task presence (generator consulted when the queue is empty),
3. drain to empty (iteration reset),
4. iteration bound (counter kept for a human to raise the limit),
5. continue with a re-injected context bundle.

Every exit path releases the lock (unless another live worker holds it) and
checkpoints even when a previous step failed. Sub-operations are isolated;
only the decision logic itself may fail an evaluation, and it still cleans
up before re-raising.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from agent_loop.loop.generator import GeneratorFailure
from agent_loop.loop.models import (
    Decision,
    ExitReason,
    OutcomeStatus,
    StepOutcome,
    run_step,
)
from agent_loop.loop.notifier import NotifyLevel
from agent_loop.loop.workspace import LoopWorkspace
from agent_loop.storage.checkpoints import CheckpointFailure
from agent_loop.storage.records import RESET_ALL_TASKS_COMPLETE
from agent_loop.storage.task_store import TaskCounts

logger = logging.getLogger(__name__)

OPERATING_RULES = """\
1. Work on exactly one task per iteration: the first `- [.]` task, otherwise the first `- [ ]` task.
2. Mark the task `- [.]` before starting and `- [x]` when it is done. Never reopen a `- [x]` task.
3. Use `- [u]` when you need a human answer and `- [@YYYY-MM-DD]` to defer work to a date.
4. Add follow-up work as new `- [ ]` lines under `## Pending`.
5. Rewrite the memory file with anything the next iteration must know.
6. Finish the iteration by simply stopping; the loop decides whether to continue."""


class ControllerError(RuntimeError):
    """Core decision logic failed; cleanup was attempted before this was raised."""


@dataclass(slots=True)
class ContextBundle:
    """Inputs for the prompt that re-invokes the worker."""

    iteration: int
    max_iterations: int
    memory_path: str
    memory: str
    tasks_path: str
    tasks: str

    def render(self) -> str:
        return (
            f"# Agent loop: iteration {self.iteration} of {self.max_iterations}\n"
            "\n"
            "## Operating rules\n"
            f"{OPERATING_RULES}\n"
            "\n"
            f"## Memory ({self.memory_path})\n"
            f"{self.memory.strip() or '(empty)'}\n"
            "\n"
            f"## Tasks ({self.tasks_path})\n"
            f"{self.tasks.strip() or '(empty)'}\n"
        )


def build_context_bundle(workspace: LoopWorkspace, *, iteration: int) -> str:
    """Compose operating rules, memory and the full task store into the next worker input."""

    return ContextBundle(
        iteration=iteration,
        max_iterations=workspace.settings.loop.max_iterations,
        memory_path=str(workspace.paths.memory),
        memory=workspace.memory.read(),
        tasks_path=str(workspace.paths.tasks),
        tasks=workspace.tasks.read_text(),
    ).render()


def _summary(counts: TaskCounts, *, iteration: int, max_iterations: int) -> str:
    return (
        f"iteration {iteration}/{max_iterations}, "
        f"{counts.pending} pending, {counts.in_progress} in progress"
    )


class ContinuationController:
    """Evaluates one worker exit attempt."""

    def __init__(self, workspace: LoopWorkspace) -> None:
        self.workspace = workspace
        self.max_iterations = workspace.settings.loop.max_iterations
        self.max_memory_kb = workspace.settings.loop.max_memory_kb

    def evaluate(self, *, worker_pid: int | None = None) -> Decision:
        """Return ``Continue(context)`` or ``Exit(reason)`` for the current exit attempt."""

        try:
            return self._evaluate(worker_pid=worker_pid)
        except Exception as error:
            logger.exception("Continuation evaluation failed")
            self._cleanup(label="error", worker_pid=worker_pid)
            self._notify(NotifyLevel.ERROR, f"Loop controller failed, worker allowed to exit: {error}")
            raise ControllerError(str(error)) from error

    def _evaluate(self, *, worker_pid: int | None) -> Decision:
        ws = self.workspace

        if ws.stop_signal.consume():
            iteration = ws.state.read().iteration
            logger.info("Stop signal observed at iteration %d", iteration)
            self._cleanup(label="stop", worker_pid=worker_pid)
            self._notify(NotifyLevel.INFO, f"Agent loop stopped on request at iteration {iteration}.")
            return Decision.exit(
                ExitReason.STOP_REQUESTED,
                iteration=iteration,
                summary=f"stopped on request at iteration {iteration}",
            )

        if not ws.tasks.exists():
            logger.info("No task store at %s, nothing to do", ws.paths.tasks)
            self._release_lock(worker_pid)
            return Decision.exit(ExitReason.NO_WORK, iteration=0, summary="no task store")

        counts = ws.tasks.counts()
        if counts.active == 0:
            generated = self._generate_tasks()
            if generated.count:
                counts = ws.tasks.counts()

        if counts.active == 0:
            ws.state.reset(RESET_ALL_TASKS_COMPLETE)
            logger.info("Task queue drained, iteration counter reset")
            self._cleanup(label="complete", worker_pid=worker_pid)
            self._notify(NotifyLevel.SUCCESS, "All tasks complete; agent loop finished its batch.")
            return Decision.exit(ExitReason.COMPLETE, iteration=0, summary="all tasks complete")

        current = ws.state.read().iteration
        if current >= self.max_iterations:
            return self._limit_exit(current, counts, worker_pid=worker_pid)
        iteration = ws.state.increment().iteration
        if iteration >= self.max_iterations:
            return self._limit_exit(iteration, counts, worker_pid=worker_pid)

        if ws.memory.exceeds(self.max_memory_kb):
            self._notify(
                NotifyLevel.WARNING,
                f"Memory file is {ws.memory.size_bytes() // 1024} KB "
                f"(advisory limit {self.max_memory_kb} KB); consider condensing it.",
            )
        if worker_pid is not None:
            run_step("lock_renew", lambda: self._renew_lock(worker_pid), logger=logger)

        summary = _summary(counts, iteration=iteration, max_iterations=self.max_iterations)
        logger.info("Continuing loop: %s", summary)
        return Decision.continue_with(
            context=build_context_bundle(ws, iteration=iteration),
            iteration=iteration,
            summary=summary,
        )

    def _limit_exit(
        self,
        iteration: int,
        counts: TaskCounts,
        *,
        worker_pid: int | None,
    ) -> Decision:
        logger.warning("Iteration limit reached (%d/%d)", iteration, self.max_iterations)
        self._cleanup(label="limit", worker_pid=worker_pid)
        self._notify(
            NotifyLevel.WARNING,
            f"Iteration limit reached ({iteration}/{self.max_iterations}) with "
            f"{counts.active} active task(s); raise MAX_ITERATIONS or reset to resume.",
        )
        return Decision.exit(
            ExitReason.LIMIT_REACHED,
            iteration=iteration,
            summary=_summary(counts, iteration=iteration, max_iterations=self.max_iterations),
        )

    def _generate_tasks(self) -> StepOutcome:
        def _run() -> StepOutcome:
            try:
                result = self.workspace.generator.generate()
            except GeneratorFailure as error:
                logger.warning("%s", error)
                return StepOutcome(name="generate", status=OutcomeStatus.FAILED, detail=str(error))
            if not result.count:
                return StepOutcome(name="generate", status=OutcomeStatus.EMPTY)
            return StepOutcome(
                name="generate",
                status=OutcomeStatus.OK,
                detail=result.category or "",
                count=result.count,
            )

        return run_step("generate", _run, logger=logger)

    def _renew_lock(self, worker_pid: int) -> StepOutcome:
        info = self.workspace.lock.renew(worker_pid)
        if info is None:
            return StepOutcome(name="lock_renew", status=OutcomeStatus.SKIPPED, detail="held elsewhere")
        return StepOutcome(name="lock_renew", status=OutcomeStatus.OK)

    def _cleanup(self, *, label: str, worker_pid: int | None) -> None:
        """Checkpoint then release the lock; each half runs even if the other fails."""

        run_step("checkpoint", lambda: self._checkpoint(label), logger=logger)
        self._release_lock(worker_pid)

    def _checkpoint(self, label: str) -> StepOutcome:
        try:
            info = self.workspace.checkpoints.save(label)
        except CheckpointFailure as error:
            logger.error("%s", error)  # noqa: TRY400
            return StepOutcome(name="checkpoint", status=OutcomeStatus.FAILED, detail=str(error))
        return StepOutcome(name="checkpoint", status=OutcomeStatus.OK, detail=info.path.name)

    def _release_lock(self, worker_pid: int | None) -> None:
        def _run() -> StepOutcome:
            removed = self.workspace.lock.release(worker_pid)
            return StepOutcome(
                name="lock_release",
                status=OutcomeStatus.OK if removed else OutcomeStatus.EMPTY,
            )

        run_step("lock_release", _run, logger=logger)

    def _notify(self, level: NotifyLevel, message: str) -> None:
        def _run() -> StepOutcome:
            self.workspace.notifier.notify(level, message)
            return StepOutcome(name="notify", status=OutcomeStatus.OK)

        run_step("notify", _run, logger=logger)
