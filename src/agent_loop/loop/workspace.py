"""Store wiring and first-time layout of the loop control directory."""

from __future__ import annotations

import json
import logging
import shlex
import subprocess
import sys
from dataclasses import dataclass, field
from pathlib import Path

from agent_loop.config import LoopPaths, Settings
from agent_loop.loop.generator import TaskGenerator
from agent_loop.loop.notifier import Notifier
from agent_loop.storage.checkpoints import CheckpointManager
from agent_loop.storage.common import load_json, write_json, write_text_atomic
from agent_loop.storage.lock import LockManager
from agent_loop.storage.records import MemoryRecord, StateStore, StopSignal
from agent_loop.storage.task_store import TaskStore

logger = logging.getLogger(__name__)

TASKS_TEMPLATE = """\
# Tasks

## In Progress

## Pending

## Scheduled

## Waiting On User

## Completed
"""

MEMORY_TEMPLATE = """\
# Memory

Identity, standing context and notes carried between iterations.
Rewrite this file whenever something worth remembering changes.
"""

GOALS_TEMPLATE = """\
# Standing Goals

Each `##` heading is a category; each bullet becomes a task when the queue
runs dry. Categories are rotated over time.
"""


@dataclass(slots=True)
class LoopWorkspace:
    """All durable stores and collaborators for one workspace."""

    settings: Settings
    paths: LoopPaths
    tasks: TaskStore
    memory: MemoryRecord
    state: StateStore
    lock: LockManager
    stop_signal: StopSignal
    checkpoints: CheckpointManager
    notifier: Notifier
    generator: TaskGenerator

    @classmethod
    def from_settings(cls, settings: Settings, *, notifier: Notifier | None = None) -> LoopWorkspace:
        paths = settings.paths
        tasks = TaskStore(paths.tasks)
        return cls(
            settings=settings,
            paths=paths,
            tasks=tasks,
            memory=MemoryRecord(paths.memory),
            state=StateStore(paths.state),
            lock=LockManager(paths.lock, ttl_seconds=settings.supervisor.lock_ttl_seconds),
            stop_signal=StopSignal(paths.stop_signal),
            checkpoints=CheckpointManager(
                root_dir=paths.checkpoints_dir,
                tracked_files={
                    "tasks.md": paths.tasks,
                    "memory.md": paths.memory,
                    "state.json": paths.state,
                },
                workspace_dir=paths.workspace,
                keep=settings.checkpoints.keep,
                capture_git=settings.checkpoints.capture_git,
            ),
            notifier=notifier
            or Notifier(notifications_dir=paths.notifications_dir, settings=settings.notify),
            generator=TaskGenerator(
                goals_path=paths.goals,
                task_store=tasks,
                rotation_seconds=settings.generator.rotation_seconds,
                max_tasks_per_run=settings.generator.max_tasks_per_run,
            ),
        )


@dataclass(slots=True)
class SetupReport:
    """What ``setup_workspace`` created or left in place."""

    created: list[Path] = field(default_factory=list)
    kept: list[Path] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)


def hook_command(executable: str | None = None) -> str:
    """Shell command the agent runtime should call on every exit attempt."""

    return f"{shlex.quote(executable or sys.executable)} -m agent_loop.main hook"


def heartbeat_command(paths: LoopPaths, executable: str | None = None) -> str:
    return (
        f"cd {shlex.quote(str(paths.workspace))} && "
        f"{shlex.quote(executable or sys.executable)} -m agent_loop.main heartbeat"
    )


def setup_workspace(settings: Settings, *, init_git: bool = True) -> SetupReport:
    """Create directories and seed stores; existing files are never overwritten."""

    paths = settings.paths
    report = SetupReport()

    for directory in (
        paths.loop_dir,
        paths.logs_dir,
        paths.inbox_processed_dir,
        paths.inbox_emails_dir,
        paths.notifications_dir,
        paths.checkpoints_dir,
        paths.services_dir,
    ):
        directory.mkdir(parents=True, exist_ok=True)

    _seed_text(paths.tasks, TASKS_TEMPLATE, report)
    _seed_text(paths.memory, MEMORY_TEMPLATE, report)
    _seed_text(paths.goals, GOALS_TEMPLATE, report)
    state = StateStore(paths.state)
    if state.exists():
        report.kept.append(paths.state)
    else:
        state.reset("initialized")
        report.created.append(paths.state)
    if paths.mailbox_state.exists():
        report.kept.append(paths.mailbox_state)
    else:
        write_json(paths.mailbox_state, {"last_checked": None, "processed_ids": []})
        report.created.append(paths.mailbox_state)

    if init_git:
        _init_git(paths.workspace, report)
    _register_stop_hook(paths, report)
    _write_service_units(settings, report)
    report.notes.append(f"Cron alternative: */5 * * * * {heartbeat_command(paths)}")
    return report


def _seed_text(path: Path, content: str, report: SetupReport) -> None:
    if path.exists():
        report.kept.append(path)
        return
    write_text_atomic(path, content)
    report.created.append(path)


def _init_git(workspace: Path, report: SetupReport) -> None:
    if (workspace / ".git").exists():
        report.notes.append("Git already initialized.")
        return
    try:
        completed = subprocess.run(
            ["git", "init", "--quiet"],
            cwd=workspace,
            capture_output=True,
            text=True,
            check=False,
        )
    except OSError as error:
        report.notes.append(f"Git not initialized: {error}")
        return
    if completed.returncode == 0:
        report.notes.append("Git initialized.")
    else:
        report.notes.append(f"Git not initialized: {completed.stderr.strip()}")


def _register_stop_hook(paths: LoopPaths, report: SetupReport) -> None:
    settings_path = paths.claude_settings
    command = hook_command()
    if settings_path.exists():
        try:
            existing = load_json(settings_path)
        except (OSError, ValueError, TypeError) as error:
            report.notes.append(f"Stop hook not registered, unreadable {settings_path}: {error}")
            return
        if command in json.dumps(existing):
            report.kept.append(settings_path)
            return
        report.notes.append(
            f"{settings_path} already exists; add a Stop hook running: {command}",
        )
        return
    write_json(
        settings_path,
        {
            "hooks": {
                "Stop": [
                    {"hooks": [{"type": "command", "command": command}]},
                ],
            },
        },
    )
    report.created.append(settings_path)


def _write_service_units(settings: Settings, report: SetupReport) -> None:
    paths = settings.paths
    service = paths.services_dir / "agent-loop-heartbeat.service"
    timer = paths.services_dir / "agent-loop-heartbeat.timer"
    _seed_text(
        service,
        "[Unit]\n"
        "Description=agent-loop heartbeat supervisor tick\n\n"
        "[Service]\n"
        "Type=oneshot\n"
        f"WorkingDirectory={paths.workspace}\n"
        f"ExecStart={sys.executable} -m agent_loop.main heartbeat\n",
        report,
    )
    _seed_text(
        timer,
        "[Unit]\n"
        "Description=Run agent-loop heartbeat periodically\n\n"
        "[Timer]\n"
        "OnBootSec=60\n"
        f"OnUnitActiveSec={settings.supervisor.interval_seconds}\n\n"
        "[Install]\n"
        "WantedBy=timers.target\n",
        report,
    )
    report.notes.append(
        f"Enable the timer: sudo cp {service} {timer} /etc/systemd/system/ && "
        "sudo systemctl daemon-reload && sudo systemctl enable --now agent-loop-heartbeat.timer",
    )
