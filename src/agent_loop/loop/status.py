"""Read-only status snapshot built from the durable stores."""

from __future__ import annotations

import os
import shutil
from dataclasses import asdict, dataclass, field

from agent_loop.loop.workspace import LoopWorkspace
from agent_loop.storage.common import utc_now, write_json


@dataclass(slots=True)
class ResourceMetrics:
    """Host metrics exposed next to the queue state."""

    disk_total_bytes: int = 0
    disk_free_bytes: int = 0
    load_average: tuple[float, float, float] | None = None

    @property
    def disk_free_percent(self) -> float:
        if self.disk_total_bytes <= 0:
            return 100.0
        return round(100.0 * self.disk_free_bytes / self.disk_total_bytes, 1)


@dataclass(slots=True)
class StatusSnapshot:
    """Queue, loop and lock state at one instant."""

    generated_at: str
    task_counts: dict[str, int]
    current_task: str | None
    iteration: int
    max_iterations: int
    reset_reason: str | None
    lock_present: bool
    lock_live: bool
    lock_holder_pid: int | None
    lock_stale_reason: str | None
    stop_requested: bool
    memory_bytes: int
    last_checkpoint: str | None
    resources: ResourceMetrics = field(default_factory=ResourceMetrics)

    def to_payload(self) -> dict[str, object]:
        payload = asdict(self)
        payload["resources"]["disk_free_percent"] = self.resources.disk_free_percent
        return payload


def collect_resource_metrics(workspace: LoopWorkspace) -> ResourceMetrics:
    target = workspace.paths.workspace
    try:
        usage = shutil.disk_usage(target)
    except OSError:
        return ResourceMetrics()
    try:
        load = os.getloadavg()
    except OSError:
        load = None
    return ResourceMetrics(
        disk_total_bytes=usage.total,
        disk_free_bytes=usage.free,
        load_average=load,
    )


def build_status_snapshot(workspace: LoopWorkspace) -> StatusSnapshot:
    document = workspace.tasks.load()
    counts = document.counts()
    current = document.current_task()
    state = workspace.state.read()
    lock = workspace.lock.inspect()
    latest = workspace.checkpoints.latest()
    return StatusSnapshot(
        generated_at=utc_now().isoformat(),
        task_counts={
            "pending": counts.pending,
            "in_progress": counts.in_progress,
            "completed": counts.completed,
            "waiting_on_user": counts.waiting_on_user,
            "scheduled": counts.scheduled,
        },
        current_task=current.text if current else None,
        iteration=state.iteration,
        max_iterations=workspace.settings.loop.max_iterations,
        reset_reason=state.reset_reason,
        lock_present=lock.present,
        lock_live=lock.live,
        lock_holder_pid=lock.info.holder_pid if lock.info else None,
        lock_stale_reason=lock.stale_reason,
        stop_requested=workspace.stop_signal.is_present(),
        memory_bytes=workspace.memory.size_bytes(),
        last_checkpoint=latest.path.name if latest else None,
        resources=collect_resource_metrics(workspace),
    )


def write_status_file(workspace: LoopWorkspace) -> StatusSnapshot:
    snapshot = build_status_snapshot(workspace)
    write_json(workspace.paths.status, snapshot.to_payload())
    return snapshot


def render_status_lines(snapshot: StatusSnapshot) -> list[str]:
    counts = snapshot.task_counts
    if snapshot.lock_live:
        worker = f"running (pid {snapshot.lock_holder_pid})"
    elif snapshot.lock_present:
        worker = f"stale lock ({snapshot.lock_stale_reason})"
    else:
        worker = "not running"
    lines = [
        "Agent loop status:",
        f"  worker: {worker}",
        f"  iteration: {snapshot.iteration}/{snapshot.max_iterations}"
        + (f" (last reset: {snapshot.reset_reason})" if snapshot.reset_reason else ""),
        "  tasks: "
        f"pending={counts['pending']} in_progress={counts['in_progress']} "
        f"waiting_on_user={counts['waiting_on_user']} scheduled={counts['scheduled']} "
        f"completed={counts['completed']}",
        f"  current task: {snapshot.current_task or '-'}",
        f"  stop requested: {'yes' if snapshot.stop_requested else 'no'}",
        f"  memory: {snapshot.memory_bytes / 1024:.1f} KB",
        f"  last checkpoint: {snapshot.last_checkpoint or '-'}",
        f"  disk free: {snapshot.resources.disk_free_percent}%",
    ]
    if snapshot.resources.load_average is not None:
        one, five, fifteen = snapshot.resources.load_average
        lines.append(f"  load average: {one:.2f} {five:.2f} {fifteen:.2f}")
    return lines
