"""Domain models for loop decisions, supervisor ticks and best-effort steps."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum


class ExitReason(str, Enum):
    """Why the controller let the worker terminate."""

    NO_WORK = "no_work"
    STOP_REQUESTED = "stop_requested"
    COMPLETE = "complete"
    LIMIT_REACHED = "limit_reached"


class DecisionAction(str, Enum):
    CONTINUE = "continue"
    EXIT = "exit"


@dataclass(slots=True)
class Decision:
    """Controller verdict for one exit attempt."""

    action: DecisionAction
    iteration: int
    summary: str
    reason: ExitReason | None = None
    context: str | None = None

    @classmethod
    def continue_with(cls, *, context: str, iteration: int, summary: str) -> Decision:
        return cls(
            action=DecisionAction.CONTINUE,
            iteration=iteration,
            summary=summary,
            context=context,
        )

    @classmethod
    def exit(cls, reason: ExitReason, *, iteration: int, summary: str) -> Decision:
        return cls(action=DecisionAction.EXIT, iteration=iteration, summary=summary, reason=reason)

    @property
    def is_continue(self) -> bool:
        return self.action == DecisionAction.CONTINUE

    def to_hook_payload(self) -> dict[str, str]:
        """Serialize for the stop-hook harness: ``block`` re-invokes the worker, ``allow`` ends it."""

        if self.is_continue:
            return {
                "decision": "block",
                "reason": self.context or "",
                "statusSummary": self.summary,
            }
        return {
            "decision": "allow",
            "reason": self.reason.value if self.reason else "",
            "statusSummary": self.summary,
        }


class OutcomeStatus(str, Enum):
    """Result class of a best-effort sub-operation."""

    OK = "ok"
    EMPTY = "empty"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(slots=True)
class StepOutcome:
    """Logged, never-raised result of an isolated step."""

    name: str
    status: OutcomeStatus
    detail: str = ""
    count: int = 0

    @property
    def failed(self) -> bool:
        return self.status == OutcomeStatus.FAILED


def run_step(
    name: str,
    operation: Callable[[], StepOutcome],
    *,
    logger: logging.Logger,
) -> StepOutcome:
    """Run ``operation`` in isolation, converting any exception into a failed outcome."""

    try:
        outcome = operation()
    except Exception as error:  # noqa: BLE001
        logger.exception("Step %s failed", name)
        return StepOutcome(name=name, status=OutcomeStatus.FAILED, detail=str(error) or repr(error))
    logger.debug("Step %s: %s %s", name, outcome.status.value, outcome.detail)
    return outcome


class TickAction(str, Enum):
    """What one supervisor tick ended up doing."""

    WORKER_ALIVE = "worker_alive"
    LOCK_BUSY = "lock_busy"
    IDLE = "idle"
    WORKER_STARTED = "worker_started"
    START_FAILED = "start_failed"


@dataclass(slots=True)
class TickResult:
    """Summary of a supervisor tick."""

    action: TickAction
    worker_pid: int | None = None
    active_tasks: int = 0
    steps: list[StepOutcome] = field(default_factory=list)
    detail: str = ""

    def lines(self) -> list[str]:
        out = [f"Heartbeat: {self.action.value}" + (f" ({self.detail})" if self.detail else "")]
        if self.worker_pid is not None:
            out.append(f"  worker_pid={self.worker_pid}")
        out.append(f"  active_tasks={self.active_tasks}")
        out.extend(
            f"  step {step.name}: {step.status.value}"
            + (f" - {step.detail}" if step.detail else "")
            for step in self.steps
        )
        return out
