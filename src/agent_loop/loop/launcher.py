"""Detached subprocess launcher for the worker agent CLI."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from agent_loop.storage.common import utc_now, write_text_atomic

logger = logging.getLogger(__name__)


class WorkerStartError(RuntimeError):
    """Worker process could not be started or died during the start probe."""


@dataclass(slots=True)
class WorkerHandle:
    """A started worker process."""

    pid: int
    command_head: str
    log_path: Path | None = None
    process: subprocess.Popen[bytes] | None = None


class WorkerLauncher(Protocol):
    """Protocol implemented by worker launchers."""

    def start(self, prompt: str) -> WorkerHandle:
        """Start a worker with ``prompt`` as its first input."""

    def verify(self, handle: WorkerHandle, timeout_seconds: float) -> bool:
        """Return whether the worker is still running (or exited cleanly) after the probe."""


class SubprocessWorkerLauncher:
    """Render the worker command template and start it in its own session."""

    def __init__(
        self,
        *,
        command_template: str,
        workspace_dir: Path,
        logs_dir: Path,
        env: dict[str, str] | None = None,
    ) -> None:
        self.command_template = command_template
        self.workspace_dir = workspace_dir
        self.logs_dir = logs_dir
        self.env = env

    def start(self, prompt: str) -> WorkerHandle:
        stamp = utc_now().strftime("%Y%m%dT%H%M%SZ")
        self.logs_dir.mkdir(parents=True, exist_ok=True)
        prompt_file = self.logs_dir / f"worker-{stamp}.prompt.md"
        write_text_atomic(prompt_file, prompt)
        argv = build_worker_args(
            command_template=self.command_template,
            prompt=prompt,
            prompt_file=prompt_file,
            workspace_dir=self.workspace_dir,
        )
        log_path = self.logs_dir / f"worker-{stamp}.log"
        env = os.environ.copy()
        env.update(self.env or {})
        env["AGENT_LOOP_WORKSPACE"] = str(self.workspace_dir)
        try:
            with log_path.open("ab") as log_handle:
                process = subprocess.Popen(  # noqa: S603
                    argv,
                    cwd=self.workspace_dir,
                    stdin=subprocess.DEVNULL,
                    stdout=log_handle,
                    stderr=subprocess.STDOUT,
                    env=env,
                    start_new_session=True,
                )
        except FileNotFoundError as error:
            raise WorkerStartError(f"Worker command not found: {argv[0]}") from error
        except OSError as error:
            raise WorkerStartError(f"Worker failed to start: {error}") from error
        logger.info("Worker started pid=%s command=%s log=%s", process.pid, argv[0], log_path)
        return WorkerHandle(
            pid=process.pid,
            command_head=argv[0],
            log_path=log_path,
            process=process,
        )

    def verify(self, handle: WorkerHandle, timeout_seconds: float) -> bool:
        process = handle.process
        if process is None:
            return False
        deadline = time.monotonic() + max(0.0, timeout_seconds)
        while True:
            exit_code = process.poll()
            if exit_code is not None:
                if exit_code != 0:
                    logger.error("Worker pid=%s exited during start probe: code=%s", handle.pid, exit_code)
                return exit_code == 0
            if time.monotonic() >= deadline:
                return True
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))


def build_worker_args(
    *,
    command_template: str,
    prompt: str,
    prompt_file: Path,
    workspace_dir: Path,
) -> list[str]:
    """Render a shell-style command template into argv."""

    stripped = command_template.strip()
    if not stripped:
        raise WorkerStartError("Worker command template is empty.")
    if "{prompt}" not in stripped and "{prompt_file}" not in stripped:
        raise WorkerStartError("Worker command template must include {prompt} or {prompt_file}.")
    try:
        rendered = stripped.format(
            prompt=shlex.quote(prompt),
            prompt_file=shlex.quote(str(prompt_file)),
            workspace=shlex.quote(str(workspace_dir)),
        )
    except (KeyError, IndexError) as error:
        raise WorkerStartError(f"Unsupported command template placeholder: {error}") from error
    argv = shlex.split(rendered)
    if not argv:
        raise WorkerStartError("Worker command template rendered empty command.")
    return argv
