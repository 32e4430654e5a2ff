"""CLI entrypoint for agent-loop."""

import json
import logging
import sys
from datetime import datetime
from pathlib import Path

import rich_click as click

from agent_loop import __version__
from agent_loop.config import NOTIFY_LEVELS, Settings
from agent_loop.loop.controller import ControllerError
from agent_loop.loop.controllers import (
    CheckpointSaveCommand,
    HeartbeatCommand,
    HookCommand,
    LoopCliController,
    NotifyCommand,
    SetupCommand,
    StatusCommand,
    TasksAddCommand,
    TasksListCommand,
    TasksMarkCommand,
    WorkspaceCommand,
)
from agent_loop.loop.supervisor import HeartbeatFailure
from agent_loop.storage.task_store import TaskStatus, TaskTransitionError

click.rich_click.USE_MARKDOWN = True
LOOP_CONTROLLER = LoopCliController()
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
LOG_FILE_NAME = "agent-loop.log"

_TASK_STATUSES = [status.value for status in TaskStatus]


@click.group()
@click.version_option(version=__version__, prog_name="agent-loop")
@click.option(
    "--workspace",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Workspace directory. Defaults to AGENT_LOOP_WORKSPACE or the current directory.",
)
@click.pass_context
def agent_loop(ctx: click.Context, workspace: Path | None) -> None:
    """Keep a CLI coding agent working through a persistent task queue.

    * `hook` is the stop hook the agent runtime calls on every exit attempt.
    * `heartbeat` restarts the worker when it died and work remains.
    """

    ctx.obj = workspace
    _configure_logging(workspace)


@agent_loop.command("setup")
@click.option("--no-git", is_flag=True, default=False, help="Do not run `git init`.")
@click.pass_obj
def setup(workspace: Path | None, no_git: bool) -> None:
    """Create the control directory layout and register the stop hook."""

    _emit_lines(LOOP_CONTROLLER.setup(SetupCommand(workspace=workspace, init_git=not no_git)))


@agent_loop.command("hook")
@click.option(
    "--worker-pid",
    type=click.IntRange(min=1),
    default=None,
    help="Worker process id. Defaults to the parent process of the hook.",
)
@click.pass_obj
def hook(workspace: Path | None, worker_pid: int | None) -> None:
    """Decide whether the exiting worker continues. Prints the decision JSON."""

    stdin = click.get_text_stream("stdin")
    hook_input = "" if stdin.isatty() else stdin.read()
    try:
        decision = LOOP_CONTROLLER.hook(
            HookCommand(workspace=workspace, hook_input=hook_input, worker_pid=worker_pid),
        )
    except ControllerError as error:
        click.echo(json.dumps({"decision": "allow", "reason": "controller_error"}))
        raise click.ClickException(f"Loop controller failed: {error}") from error
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    click.echo(json.dumps(decision.to_hook_payload()))


@agent_loop.command("heartbeat")
@click.option("--loop", "run_loop", is_flag=True, default=False, help="Tick until interrupted.")
@click.option(
    "--interval",
    type=click.IntRange(min=1),
    default=None,
    help="Seconds between ticks in --loop mode. Defaults to the configured interval.",
)
@click.option(
    "--max-ticks",
    type=click.IntRange(min=1),
    default=None,
    help="Stop the --loop mode after this many ticks.",
)
@click.pass_obj
def heartbeat(
    workspace: Path | None,
    run_loop: bool,
    interval: int | None,
    max_ticks: int | None,
) -> None:
    """Run one supervisor tick (or a blocking loop of ticks)."""

    try:
        lines = LOOP_CONTROLLER.heartbeat(
            HeartbeatCommand(
                workspace=workspace,
                loop=run_loop,
                interval_seconds=interval,
                max_ticks=max_ticks,
            ),
        )
    except HeartbeatFailure as error:
        raise click.ClickException(f"Heartbeat tick failed: {error}") from error
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@agent_loop.command("status")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the snapshot as JSON.")
@click.pass_obj
def status(workspace: Path | None, as_json: bool) -> None:
    """Show task counts, worker liveness and resource usage."""

    _emit_lines(LOOP_CONTROLLER.status(StatusCommand(workspace=workspace, as_json=as_json)))


@agent_loop.command("stop")
@click.pass_obj
def stop(workspace: Path | None) -> None:
    """Ask the worker to stop at its next exit attempt."""

    _emit_lines(LOOP_CONTROLLER.stop(WorkspaceCommand(workspace=workspace)))


@agent_loop.command("reset-iterations")
@click.pass_obj
def reset_iterations(workspace: Path | None) -> None:
    """Reset the iteration counter after the limit was reached."""

    _emit_lines(LOOP_CONTROLLER.reset_iterations(WorkspaceCommand(workspace=workspace)))


@agent_loop.group()
def tasks() -> None:
    """Task queue commands."""


@tasks.command("add")
@click.argument("texts", nargs=-1, required=True)
@click.option(
    "--scheduled",
    type=click.DateTime(formats=["%Y-%m-%d"]),
    default=None,
    help="Schedule the tasks for a date (YYYY-MM-DD) instead of queueing them now.",
)
@click.pass_obj
def tasks_add(workspace: Path | None, texts: tuple[str, ...], scheduled: datetime | None) -> None:
    """Append tasks to the queue; duplicates are skipped."""

    try:
        lines = LOOP_CONTROLLER.tasks_add(
            TasksAddCommand(
                workspace=workspace,
                texts=texts,
                scheduled_for=scheduled.date() if scheduled else None,
            ),
        )
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@tasks.command("list")
@click.option("--status", type=click.Choice(_TASK_STATUSES), default=None, help="Status filter.")
@click.pass_obj
def tasks_list(workspace: Path | None, status: str | None) -> None:
    """List tasks in store order."""

    _emit_lines(LOOP_CONTROLLER.tasks_list(TasksListCommand(workspace=workspace, status=status)))


@tasks.command("mark")
@click.argument("text")
@click.argument("status", type=click.Choice(_TASK_STATUSES))
@click.option(
    "--scheduled",
    type=click.DateTime(formats=["%Y-%m-%d"]),
    default=None,
    help="Date for the scheduled status (YYYY-MM-DD).",
)
@click.pass_obj
def tasks_mark(
    workspace: Path | None,
    text: str,
    status: str,
    scheduled: datetime | None,
) -> None:
    """Move a task to another status."""

    try:
        lines = LOOP_CONTROLLER.tasks_mark(
            TasksMarkCommand(
                workspace=workspace,
                text=text,
                status=status,
                scheduled_for=scheduled.date() if scheduled else None,
            ),
        )
    except KeyError as error:
        raise click.ClickException(str(error.args[0])) from error
    except (TaskTransitionError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@agent_loop.group()
def checkpoint() -> None:
    """Checkpoint commands."""


@checkpoint.command("save")
@click.option("--label", default="manual", show_default=True, help="Label stored with the snapshot.")
@click.pass_obj
def checkpoint_save(workspace: Path | None, label: str) -> None:
    """Snapshot the loop stores and the workspace git state."""

    try:
        lines = LOOP_CONTROLLER.checkpoint_save(
            CheckpointSaveCommand(workspace=workspace, label=label),
        )
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@checkpoint.command("list")
@click.pass_obj
def checkpoint_list(workspace: Path | None) -> None:
    """List retained checkpoints, oldest first."""

    _emit_lines(LOOP_CONTROLLER.checkpoint_list(WorkspaceCommand(workspace=workspace)))


@agent_loop.command("notify")
@click.argument("level", type=click.Choice(list(NOTIFY_LEVELS)))
@click.argument("message")
@click.pass_obj
def notify(workspace: Path | None, level: str, message: str) -> None:
    """Record a notification and forward it when a webhook is configured."""

    _emit_lines(
        LOOP_CONTROLLER.notify(NotifyCommand(workspace=workspace, level=level, message=message)),
    )


def _configure_logging(workspace: Path | None) -> None:
    if logging.getLogger().handlers:
        return
    try:
        settings = Settings.from_env(workspace=workspace)
    except ValueError:
        settings = Settings()
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    logs_dir = settings.paths.logs_dir
    if logs_dir.is_dir():
        handlers.append(logging.FileHandler(logs_dir / LOG_FILE_NAME, encoding="utf-8"))
    logging.basicConfig(
        level=logging.DEBUG if settings.loop.debug_mode else logging.INFO,
        format=LOG_FORMAT,
        handlers=handlers,
    )


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_loop()
