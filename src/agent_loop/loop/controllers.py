"""Controllers for agent-loop CLI commands."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from datetime import date
from pathlib import Path

from agent_loop.config import Settings
from agent_loop.loop.controller import ContinuationController
from agent_loop.loop.launcher import SubprocessWorkerLauncher
from agent_loop.loop.models import Decision, TickResult
from agent_loop.loop.notifier import NotifyLevel
from agent_loop.loop.status import build_status_snapshot, render_status_lines
from agent_loop.loop.supervisor import HeartbeatSupervisor
from agent_loop.loop.workspace import LoopWorkspace, setup_workspace
from agent_loop.storage.checkpoints import CheckpointFailure
from agent_loop.storage.records import RESET_MANUAL
from agent_loop.storage.task_store import TaskStatus

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SetupCommand:
    """CLI input for workspace initialization."""

    workspace: Path | None
    init_git: bool = True


@dataclass(slots=True)
class HookCommand:
    """CLI input for one stop-hook evaluation."""

    workspace: Path | None
    hook_input: str = ""
    worker_pid: int | None = None


@dataclass(slots=True)
class HeartbeatCommand:
    """CLI input for supervisor ticks."""

    workspace: Path | None
    loop: bool = False
    interval_seconds: int | None = None
    max_ticks: int | None = None


@dataclass(slots=True)
class StatusCommand:
    workspace: Path | None
    as_json: bool = False


@dataclass(slots=True)
class WorkspaceCommand:
    """CLI input for commands that only need the workspace."""

    workspace: Path | None


@dataclass(slots=True)
class TasksAddCommand:
    workspace: Path | None
    texts: tuple[str, ...]
    scheduled_for: date | None = None


@dataclass(slots=True)
class TasksListCommand:
    workspace: Path | None
    status: str | None = None


@dataclass(slots=True)
class TasksMarkCommand:
    """CLI input for moving one task to another status."""

    workspace: Path | None
    text: str
    status: str
    scheduled_for: date | None = None


@dataclass(slots=True)
class CheckpointSaveCommand:
    workspace: Path | None
    label: str = "manual"


@dataclass(slots=True)
class NotifyCommand:
    workspace: Path | None
    level: str
    message: str


class LoopCliController:
    """Coordinates hook, heartbeat and operator CLI operations."""

    def setup(self, command: SetupCommand) -> list[str]:
        settings = _settings(command.workspace)
        report = setup_workspace(settings, init_git=command.init_git)
        lines = [f"Workspace: {settings.paths.workspace}"]
        lines.extend(f"  created {path}" for path in report.created)
        lines.extend(f"  kept    {path}" for path in report.kept)
        lines.extend(f"Note: {note}" for note in report.notes)
        return lines

    def hook(self, command: HookCommand) -> Decision:
        """Evaluate one worker exit attempt; the caller prints ``to_hook_payload()``."""

        hook_input = _parse_hook_input(command.hook_input)
        if hook_input:
            logger.debug(
                "Stop hook input: session=%s stop_hook_active=%s",
                hook_input.get("session_id"),
                hook_input.get("stop_hook_active"),
            )
        workspace = LoopWorkspace.from_settings(_settings(command.workspace))
        worker_pid = command.worker_pid if command.worker_pid is not None else os.getppid()
        return ContinuationController(workspace).evaluate(worker_pid=worker_pid)

    def heartbeat(self, command: HeartbeatCommand) -> list[str]:
        settings = _settings(command.workspace)
        workspace = LoopWorkspace.from_settings(settings)
        supervisor = HeartbeatSupervisor(
            workspace=workspace,
            launcher=SubprocessWorkerLauncher(
                command_template=settings.supervisor.worker_command_template,
                workspace_dir=settings.paths.workspace,
                logs_dir=settings.paths.logs_dir,
            ),
        )
        if not command.loop:
            return supervisor.tick_or_notify().lines()

        results: list[TickResult] = []
        ticks = supervisor.run_forever(
            interval_seconds=command.interval_seconds,
            max_ticks=command.max_ticks,
            on_tick=results.append,
        )
        lines = [f"Heartbeat loop finished after {ticks} tick(s)."]
        if results:
            lines.extend(results[-1].lines())
        return lines

    def status(self, command: StatusCommand) -> list[str]:
        workspace = LoopWorkspace.from_settings(_settings(command.workspace))
        snapshot = build_status_snapshot(workspace)
        if command.as_json:
            return [json.dumps(snapshot.to_payload(), indent=2, sort_keys=True)]
        lines = render_status_lines(snapshot)
        recent = workspace.notifier.recent(limit=5)
        if recent:
            lines.append("Recent notifications:")
            lines.extend(
                f"  {record.created_at} [{record.level}] {record.message}" for record in recent
            )
        return lines

    def stop(self, command: WorkspaceCommand) -> list[str]:
        workspace = LoopWorkspace.from_settings(_settings(command.workspace))
        workspace.stop_signal.request("requested from CLI")
        return [
            f"Stop requested: {workspace.paths.stop_signal}",
            "The worker exits at its next exit attempt.",
        ]

    def reset_iterations(self, command: WorkspaceCommand) -> list[str]:
        workspace = LoopWorkspace.from_settings(_settings(command.workspace))
        previous = workspace.state.read().iteration
        workspace.state.reset(RESET_MANUAL)
        return [f"Iteration counter reset: {previous} -> 0"]

    def tasks_add(self, command: TasksAddCommand) -> list[str]:
        workspace = LoopWorkspace.from_settings(_settings(command.workspace))
        status = TaskStatus.SCHEDULED if command.scheduled_for else TaskStatus.PENDING
        added = workspace.tasks.add_tasks(
            list(command.texts),
            status=status,
            scheduled_for=command.scheduled_for,
        )
        lines = [f"Tasks added: {len(added)} of {len(command.texts)}"]
        lines.extend(f"  {task.render()}" for task in added)
        return lines

    def tasks_list(self, command: TasksListCommand) -> list[str]:
        workspace = LoopWorkspace.from_settings(_settings(command.workspace))
        document = workspace.tasks.load()
        status = _parse_status(command.status)
        tasks = document.by_status(status) if status else document.tasks
        if not tasks:
            return ["No tasks."]
        return [task.render() for task in tasks]

    def tasks_mark(self, command: TasksMarkCommand) -> list[str]:
        workspace = LoopWorkspace.from_settings(_settings(command.workspace))
        status = _parse_status(command.status)
        if status is None:
            raise ValueError("Task status is required.")
        task = workspace.tasks.set_status(
            command.text,
            status,
            scheduled_for=command.scheduled_for,
        )
        return [f"Task updated: {task.render()}"]

    def checkpoint_save(self, command: CheckpointSaveCommand) -> list[str]:
        workspace = LoopWorkspace.from_settings(_settings(command.workspace))
        try:
            info = workspace.checkpoints.save(command.label)
        except CheckpointFailure as error:
            raise ValueError(str(error)) from error
        return [
            f"Checkpoint saved: {info.path}",
            f"  files: {', '.join(info.files) or '-'}",
        ]

    def checkpoint_list(self, command: WorkspaceCommand) -> list[str]:
        workspace = LoopWorkspace.from_settings(_settings(command.workspace))
        checkpoints = workspace.checkpoints.list()
        if not checkpoints:
            return ["No checkpoints."]
        return [
            f"{info.sequence:>6} {info.created_at.isoformat()} {info.label} ({info.path.name})"
            for info in checkpoints
        ]

    def notify(self, command: NotifyCommand) -> list[str]:
        workspace = LoopWorkspace.from_settings(_settings(command.workspace))
        record = workspace.notifier.notify(NotifyLevel(command.level), command.message)
        return [
            "Notification recorded: "
            f"level={record.level} persisted={record.persisted} forwarded={record.forwarded}",
        ]


def _settings(workspace: Path | None) -> Settings:
    settings = Settings.from_env(workspace=workspace)
    settings.validate()
    return settings


def _parse_status(value: str | None) -> TaskStatus | None:
    if value is None:
        return None
    return TaskStatus(value.strip().lower().replace("-", "_"))


def _parse_hook_input(raw: str) -> dict[str, object]:
    if not raw.strip():
        return {}
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Stop hook input is not JSON, ignoring it")
        return {}
    return payload if isinstance(payload, dict) else {}
