"""Heartbeat supervisor: restarts the worker when it is gone and work remains."""

from __future__ import annotations

import logging
import os
import signal
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager

from agent_loop.loop.controller import build_context_bundle
from agent_loop.loop.generator import GeneratorFailure
from agent_loop.loop.launcher import WorkerHandle, WorkerLauncher, WorkerStartError
from agent_loop.loop.maintenance import (
    check_resources,
    intake_inbox,
    poll_mailbox,
    refresh_dashboard,
    run_watchdog,
)
from agent_loop.loop.models import OutcomeStatus, StepOutcome, TickAction, TickResult, run_step
from agent_loop.loop.notifier import NotifyLevel
from agent_loop.loop.workspace import LoopWorkspace

logger = logging.getLogger(__name__)

MaintenanceStep = tuple[str, Callable[[LoopWorkspace], StepOutcome]]

DEFAULT_MAINTENANCE: tuple[MaintenanceStep, ...] = (
    ("resources", check_resources),
    ("inbox", intake_inbox),
    ("mailbox", poll_mailbox),
    ("watchdog", run_watchdog),
    ("dashboard", refresh_dashboard),
)


class HeartbeatFailure(RuntimeError):
    """A supervisor tick failed outside the isolated steps."""


class HeartbeatSupervisor:
    """One tick per interval; never blocks on the worker."""

    def __init__(
        self,
        *,
        workspace: LoopWorkspace,
        launcher: WorkerLauncher,
        maintenance: tuple[MaintenanceStep, ...] = DEFAULT_MAINTENANCE,
        start_probe_seconds: float | None = None,
    ) -> None:
        self.workspace = workspace
        self.launcher = launcher
        self.maintenance = maintenance
        self.start_probe_seconds = (
            workspace.settings.supervisor.start_probe_seconds
            if start_probe_seconds is None
            else start_probe_seconds
        )
        self._stop_requested = False

    def tick(self) -> TickResult:
        ws = self.workspace
        snapshot = ws.lock.inspect()
        if snapshot.live:
            holder = snapshot.info.holder_pid if snapshot.info else None
            logger.debug("Worker alive (pid=%s), nothing to do", holder)
            return TickResult(action=TickAction.WORKER_ALIVE, worker_pid=holder)

        steps = [
            run_step(name, lambda step=step: step(ws), logger=logger)
            for name, step in self.maintenance
        ]

        active = ws.tasks.counts().active
        if active == 0:
            steps.append(run_step("generate", self._generate, logger=logger))
            active = ws.tasks.counts().active
        if active == 0:
            logger.info("Heartbeat: queue empty, worker not started")
            return TickResult(action=TickAction.IDLE, steps=steps)

        acquired = ws.lock.acquire(os.getpid())
        if not acquired.acquired:
            holder = acquired.holder.holder_pid if acquired.holder else None
            logger.info("Heartbeat: lock taken concurrently by pid=%s", holder)
            return TickResult(
                action=TickAction.LOCK_BUSY,
                worker_pid=holder,
                active_tasks=active,
                steps=steps,
            )
        if acquired.reclaimed is not None:
            logger.warning("Heartbeat reclaimed lock of dead pid=%s", acquired.reclaimed.holder_pid)

        return self._start_worker(active=active, steps=steps)

    def run_forever(
        self,
        *,
        interval_seconds: float | None = None,
        max_ticks: int | None = None,
        on_tick: Callable[[TickResult], None] | None = None,
    ) -> int:
        """Tick on a fixed interval until signalled or ``max_ticks`` is reached."""

        interval = (
            self.workspace.settings.supervisor.interval_seconds
            if interval_seconds is None
            else interval_seconds
        )
        ticks = 0
        with self._signal_handlers():
            while not self._stop_requested:
                try:
                    result = self.tick_or_notify()
                except HeartbeatFailure:
                    pass
                else:
                    if on_tick is not None:
                        on_tick(result)
                ticks += 1
                if max_ticks is not None and ticks >= max_ticks:
                    break
                self._sleep_with_stop(interval)
        return ticks

    def tick_or_notify(self) -> TickResult:
        """Run one tick; an unexpected failure is notified ``critical`` and re-raised."""

        try:
            return self.tick()
        except Exception as error:
            logger.exception("Heartbeat tick failed")
            self.workspace.notifier.notify(NotifyLevel.CRITICAL, f"Heartbeat tick failed: {error}")
            raise HeartbeatFailure(str(error)) from error

    def request_stop(self) -> None:
        self._stop_requested = True

    def _generate(self) -> StepOutcome:
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

    def _start_worker(self, *, active: int, steps: list[StepOutcome]) -> TickResult:
        ws = self.workspace
        handle: WorkerHandle | None = None
        try:
            iteration = ws.state.read().iteration
            prompt = build_context_bundle(ws, iteration=iteration)
            handle = self.launcher.start(prompt)
            if not self.launcher.verify(handle, self.start_probe_seconds):
                return self._start_failed(
                    f"worker pid={handle.pid} did not survive the start probe",
                    active=active,
                    steps=steps,
                    worker_pid=handle.pid,
                )
            ws.lock.transfer(handle.pid)
        except WorkerStartError as error:
            return self._start_failed(str(error), active=active, steps=steps)
        except Exception as error:  # noqa: BLE001
            logger.exception("Worker start failed")
            return self._start_failed(
                f"{type(error).__name__}: {error}",
                active=active,
                steps=steps,
                worker_pid=handle.pid if handle else None,
            )

        ws.notifier.notify(
            NotifyLevel.INFO,
            f"Worker started (pid {handle.pid}) with {active} active task(s).",
        )
        return TickResult(
            action=TickAction.WORKER_STARTED,
            worker_pid=handle.pid,
            active_tasks=active,
            steps=steps,
        )

    def _start_failed(
        self,
        detail: str,
        *,
        active: int,
        steps: list[StepOutcome],
        worker_pid: int | None = None,
    ) -> TickResult:
        self.workspace.lock.release()
        self.workspace.notifier.notify(NotifyLevel.CRITICAL, f"Worker failed to start: {detail}")
        return TickResult(
            action=TickAction.START_FAILED,
            worker_pid=worker_pid,
            active_tasks=active,
            steps=steps,
            detail=detail,
        )

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            logger.info("Heartbeat loop stopping on signal %s", signum)
            self._stop_requested = True

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            yield
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
        finally:
            try:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)
            except ValueError:
                pass
