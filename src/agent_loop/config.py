"""Runtime configuration for the loop controller and heartbeat supervisor."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

NOTIFY_LEVELS: tuple[str, ...] = ("critical", "error", "warning", "info", "success")

DEFAULT_WORKER_COMMAND_TEMPLATE = "claude --dangerously-skip-permissions -p {prompt}"


@dataclass(slots=True)
class LoopSettings:
    """Continuation controller bounds."""

    max_iterations: int = 100
    max_memory_kb: int = 100
    debug_mode: bool = False


@dataclass(slots=True)
class SupervisorSettings:
    """Heartbeat supervisor and worker start settings."""

    interval_seconds: int = 300
    worker_command_template: str = DEFAULT_WORKER_COMMAND_TEMPLATE
    start_probe_seconds: float = 5.0
    lock_ttl_seconds: int = 21_600
    min_free_disk_percent: float = 10.0


@dataclass(slots=True)
class CheckpointSettings:
    """Snapshot retention."""

    keep: int = 10
    capture_git: bool = True


@dataclass(slots=True)
class GeneratorSettings:
    """Standing-goal task generation."""

    rotation_seconds: int = 3_600
    max_tasks_per_run: int = 3


@dataclass(slots=True)
class NotifySettings:
    """Notification forwarding."""

    webhook_url: str | None = None
    forward_levels: tuple[str, ...] = ("critical", "error", "warning")
    timeout_seconds: float = 10.0


@dataclass(slots=True)
class MailboxSettings:
    """External mailbox polled for new task requests."""

    api_base_url: str | None = None
    inbox_id: str | None = None
    api_key_file: Path | None = None
    timeout_seconds: float = 20.0
    max_messages: int = 20

    @property
    def enabled(self) -> bool:
        return bool(self.api_base_url and self.inbox_id)


@dataclass(frozen=True, slots=True)
class LoopPaths:
    """Filesystem layout under the control directory."""

    workspace: Path
    control_dir: Path

    @property
    def loop_dir(self) -> Path:
        return self.control_dir / "loop"

    @property
    def tasks(self) -> Path:
        return self.loop_dir / "tasks.md"

    @property
    def memory(self) -> Path:
        return self.loop_dir / "memory.md"

    @property
    def state(self) -> Path:
        return self.loop_dir / "state.json"

    @property
    def goals(self) -> Path:
        return self.loop_dir / "goals.md"

    @property
    def lock(self) -> Path:
        return self.loop_dir / "agent.lock"

    @property
    def stop_signal(self) -> Path:
        return self.loop_dir / "STOP"

    @property
    def status(self) -> Path:
        return self.loop_dir / "status.json"

    @property
    def mailbox_state(self) -> Path:
        return self.loop_dir / "email-inbox-state.json"

    @property
    def checkpoints_dir(self) -> Path:
        return self.control_dir / "checkpoints"

    @property
    def notifications_dir(self) -> Path:
        return self.control_dir / "notifications"

    @property
    def logs_dir(self) -> Path:
        return self.control_dir / "logs"

    @property
    def inbox_dir(self) -> Path:
        return self.control_dir / "inbox"

    @property
    def inbox_processed_dir(self) -> Path:
        return self.inbox_dir / "processed"

    @property
    def inbox_emails_dir(self) -> Path:
        return self.inbox_dir / "processed-emails"

    @property
    def services_dir(self) -> Path:
        return self.control_dir / "services"

    @property
    def claude_settings(self) -> Path:
        return self.control_dir / "settings.json"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    workspace: Path = Path()
    control_dir_name: str = ".claude"
    loop: LoopSettings = field(default_factory=LoopSettings)
    supervisor: SupervisorSettings = field(default_factory=SupervisorSettings)
    checkpoints: CheckpointSettings = field(default_factory=CheckpointSettings)
    generator: GeneratorSettings = field(default_factory=GeneratorSettings)
    notify: NotifySettings = field(default_factory=NotifySettings)
    mailbox: MailboxSettings = field(default_factory=MailboxSettings)

    @property
    def paths(self) -> LoopPaths:
        workspace = self.workspace.resolve()
        return LoopPaths(workspace=workspace, control_dir=workspace / self.control_dir_name)

    @classmethod
    def from_env(cls, workspace: Path | None = None) -> Settings:
        """Load settings from environment with defaults suited to a single workspace."""

        api_key_file = os.getenv("AGENT_LOOP_MAILBOX_API_KEY_FILE", "").strip()
        return cls(
            workspace=workspace or Path(os.getenv("AGENT_LOOP_WORKSPACE", ".")),
            control_dir_name=os.getenv("AGENT_LOOP_CONTROL_DIR", ".claude"),
            loop=LoopSettings(
                max_iterations=int(
                    os.getenv("AGENT_LOOP_MAX_ITERATIONS", os.getenv("MAX_ITERATIONS", "100")),
                ),
                max_memory_kb=int(
                    os.getenv("AGENT_LOOP_MAX_MEMORY_KB", os.getenv("MAX_MEMORY_KB", "100")),
                ),
                debug_mode=_env_bool(
                    "AGENT_LOOP_DEBUG_MODE",
                    default=_env_bool("DEBUG_MODE", default=False),
                ),
            ),
            supervisor=SupervisorSettings(
                interval_seconds=int(os.getenv("AGENT_LOOP_HEARTBEAT_INTERVAL_SECONDS", "300")),
                worker_command_template=os.getenv(
                    "AGENT_LOOP_WORKER_COMMAND",
                    DEFAULT_WORKER_COMMAND_TEMPLATE,
                ),
                start_probe_seconds=float(os.getenv("AGENT_LOOP_START_PROBE_SECONDS", "5.0")),
                lock_ttl_seconds=int(os.getenv("AGENT_LOOP_LOCK_TTL_SECONDS", "21600")),
                min_free_disk_percent=float(
                    os.getenv("AGENT_LOOP_MIN_FREE_DISK_PERCENT", "10.0"),
                ),
            ),
            checkpoints=CheckpointSettings(
                keep=int(os.getenv("AGENT_LOOP_CHECKPOINT_KEEP", "10")),
                capture_git=_env_bool("AGENT_LOOP_CHECKPOINT_CAPTURE_GIT", default=True),
            ),
            generator=GeneratorSettings(
                rotation_seconds=int(os.getenv("AGENT_LOOP_GOAL_ROTATION_SECONDS", "3600")),
                max_tasks_per_run=int(os.getenv("AGENT_LOOP_GOAL_MAX_TASKS", "3")),
            ),
            notify=NotifySettings(
                webhook_url=os.getenv("AGENT_LOOP_NOTIFY_WEBHOOK_URL", "").strip() or None,
                forward_levels=_collect_levels(
                    os.getenv("AGENT_LOOP_NOTIFY_LEVELS", "critical,error,warning"),
                ),
                timeout_seconds=float(os.getenv("AGENT_LOOP_NOTIFY_TIMEOUT_SECONDS", "10.0")),
            ),
            mailbox=MailboxSettings(
                api_base_url=os.getenv("AGENT_LOOP_MAILBOX_API_URL", "").strip() or None,
                inbox_id=os.getenv("AGENT_LOOP_MAILBOX_INBOX_ID", "").strip() or None,
                api_key_file=Path(api_key_file) if api_key_file else None,
                timeout_seconds=float(os.getenv("AGENT_LOOP_MAILBOX_TIMEOUT_SECONDS", "20.0")),
                max_messages=int(os.getenv("AGENT_LOOP_MAILBOX_MAX_MESSAGES", "20")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the loop cannot run with."""

        if self.loop.max_iterations <= 0:
            raise ValueError("MAX_ITERATIONS must be > 0.")
        if self.loop.max_memory_kb < 0:
            raise ValueError("MAX_MEMORY_KB must be >= 0.")
        if self.supervisor.interval_seconds <= 0:
            raise ValueError("AGENT_LOOP_HEARTBEAT_INTERVAL_SECONDS must be > 0.")
        if self.supervisor.start_probe_seconds < 0:
            raise ValueError("AGENT_LOOP_START_PROBE_SECONDS must be >= 0.")
        if self.supervisor.lock_ttl_seconds < 0:
            raise ValueError("AGENT_LOOP_LOCK_TTL_SECONDS must be >= 0.")
        if "{prompt}" not in self.supervisor.worker_command_template and (
            "{prompt_file}" not in self.supervisor.worker_command_template
        ):
            raise ValueError(
                "AGENT_LOOP_WORKER_COMMAND must include {prompt} or {prompt_file}.",
            )
        if self.checkpoints.keep < 1:
            raise ValueError("AGENT_LOOP_CHECKPOINT_KEEP must be >= 1.")
        if self.generator.rotation_seconds <= 0:
            raise ValueError("AGENT_LOOP_GOAL_ROTATION_SECONDS must be > 0.")
        if self.generator.max_tasks_per_run < 0:
            raise ValueError("AGENT_LOOP_GOAL_MAX_TASKS must be >= 0.")
        if self.notify.webhook_url is not None:
            _validate_http_url(self.notify.webhook_url, name="AGENT_LOOP_NOTIFY_WEBHOOK_URL")
        if self.mailbox.api_base_url is not None:
            _validate_http_url(self.mailbox.api_base_url, name="AGENT_LOOP_MAILBOX_API_URL")


def _collect_levels(raw: str) -> tuple[str, ...]:
    levels: list[str] = []
    for part in raw.split(","):
        level = part.strip().lower()
        if not level:
            continue
        if level not in NOTIFY_LEVELS:
            raise ValueError(
                f"Invalid AGENT_LOOP_NOTIFY_LEVELS entry: {level!r}. "
                f"Expected one of: {', '.join(NOTIFY_LEVELS)}.",
            )
        if level not in levels:
            levels.append(level)
    return tuple(levels)


def _validate_http_url(value: str, *, name: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            f"Invalid {name}: {value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
