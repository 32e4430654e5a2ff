"""Versioned recovery snapshots of the loop stores and workspace state."""

from __future__ import annotations

import logging
import re
import shutil
import subprocess
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from agent_loop.storage.common import from_iso, load_json, utc_now, write_json

logger = logging.getLogger(__name__)

CHECKPOINT_META = "checkpoint.json"
_NAME_PATTERN = re.compile(r"^(?P<seq>\d{6,})-")
_LABEL_UNSAFE = re.compile(r"[^a-zA-Z0-9_.-]+")
_GIT_TIMEOUT_SECONDS = 30


class CheckpointFailure(RuntimeError):
    """Snapshot could not be written or rotated."""


@dataclass(slots=True)
class CheckpointInfo:
    """One stored snapshot."""

    sequence: int
    label: str
    created_at: datetime
    path: Path
    files: tuple[str, ...] = ()


class CheckpointManager:
    """Writes snapshots into ``root_dir`` and keeps only the newest ones."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        root_dir: Path,
        tracked_files: dict[str, Path],
        workspace_dir: Path | None = None,
        keep: int = 10,
        capture_git: bool = True,
    ) -> None:
        self.root_dir = root_dir
        self.tracked_files = tracked_files
        self.workspace_dir = workspace_dir
        self.keep = keep
        self.capture_git = capture_git

    def save(self, label: str) -> CheckpointInfo:
        """Snapshot tracked files and workspace state, then rotate."""

        safe_label = _LABEL_UNSAFE.sub("-", label).strip("-") or "checkpoint"
        created_at = utc_now()
        staging: Path | None = None
        try:
            self.root_dir.mkdir(parents=True, exist_ok=True)
            sequence = self._next_sequence()
            name = f"{sequence:06d}-{created_at.strftime('%Y%m%dT%H%M%SZ')}-{safe_label}"
            staging_path = self.root_dir / f".staging-{name}"
            staging_path.mkdir()
            staging = staging_path
            copied: list[str] = []
            for snapshot_name, source in self.tracked_files.items():
                if source.is_file():
                    shutil.copy2(source, staging / snapshot_name)
                    copied.append(snapshot_name)
            if self.capture_git and self.workspace_dir is not None:
                copied.extend(self._capture_git_state(staging))
            write_json(
                staging / CHECKPOINT_META,
                {
                    "sequence": sequence,
                    "label": safe_label,
                    "created_at": created_at.isoformat(),
                    "files": sorted(copied),
                },
            )
            target = self.root_dir / name
            staging.rename(target)
        except OSError as error:
            if staging is not None:
                shutil.rmtree(staging, ignore_errors=True)
            raise CheckpointFailure(f"Checkpoint {safe_label!r} failed: {error}") from error

        logger.info("Checkpoint saved: %s", target.name)
        info = CheckpointInfo(
            sequence=sequence,
            label=safe_label,
            created_at=created_at,
            path=target,
            files=tuple(sorted(copied)),
        )
        try:
            self.rotate(keep=self.keep)
        except CheckpointFailure as error:
            logger.warning("Checkpoint %s kept, rotation failed: %s", target.name, error)
        return info

    def list(self) -> list[CheckpointInfo]:
        """Stored checkpoints, oldest first."""

        if not self.root_dir.is_dir():
            return []
        entries: list[CheckpointInfo] = []
        for child in self.root_dir.iterdir():
            match = _NAME_PATTERN.match(child.name)
            if not child.is_dir() or match is None:
                continue
            entries.append(_read_info(child, sequence=int(match.group("seq"))))
        return sorted(entries, key=lambda entry: entry.sequence)

    def latest(self) -> CheckpointInfo | None:
        entries = self.list()
        return entries[-1] if entries else None

    def rotate(self, keep: int | None = None) -> list[Path]:
        """Delete all but the ``keep`` most recent checkpoints."""

        limit = self.keep if keep is None else keep
        if limit < 0:
            raise ValueError("keep must be >= 0")
        entries = self.list()
        excess = entries[: max(0, len(entries) - limit)]
        removed: list[Path] = []
        try:
            for entry in excess:
                shutil.rmtree(entry.path)
                removed.append(entry.path)
        except OSError as error:
            raise CheckpointFailure(f"Checkpoint rotation failed: {error}") from error
        if removed:
            logger.debug("Rotated out %d checkpoint(s)", len(removed))
        return removed

    def _next_sequence(self) -> int:
        highest = 0
        for child in self.root_dir.iterdir():
            match = _NAME_PATTERN.match(child.name.removeprefix(".staging-"))
            if match is not None:
                highest = max(highest, int(match.group("seq")))
        return highest + 1

    def _capture_git_state(self, staging: Path) -> list[str]:
        workspace = self.workspace_dir
        if workspace is None or not (workspace / ".git").exists():
            return []
        captured: list[str] = []
        head = _git(workspace, "rev-parse", "HEAD")
        status = _git(workspace, "status", "--porcelain")
        diff = _git(workspace, "diff", "HEAD") if head is not None else _git(workspace, "diff")
        if head is not None or status is not None:
            write_json(
                staging / "workspace.json",
                {
                    "head": (head or "").strip() or None,
                    "status": (status or "").splitlines(),
                },
            )
            captured.append("workspace.json")
        if diff:
            (staging / "workspace.patch").write_text(diff, "utf-8")
            captured.append("workspace.patch")
        return captured


def _git(workspace: Path, *args: str) -> str | None:
    try:
        completed = subprocess.run(
            ["git", *args],
            cwd=workspace,
            capture_output=True,
            text=True,
            check=False,
            timeout=_GIT_TIMEOUT_SECONDS,
        )
    except (OSError, subprocess.TimeoutExpired) as error:
        logger.debug("git %s failed: %s", " ".join(args), error)
        return None
    if completed.returncode != 0:
        return None
    return completed.stdout


def _read_info(path: Path, *, sequence: int) -> CheckpointInfo:
    try:
        meta = load_json(path / CHECKPOINT_META)
    except (OSError, ValueError, TypeError):
        meta = {}
    created_raw = meta.get("created_at")
    try:
        created_at = from_iso(created_raw) if isinstance(created_raw, str) else None
    except ValueError:
        created_at = None
    files = meta.get("files")
    return CheckpointInfo(
        sequence=sequence,
        label=str(meta.get("label", path.name.split("-", 2)[-1])),
        created_at=created_at or datetime.fromtimestamp(path.stat().st_mtime, tz=utc_now().tzinfo),
        path=path,
        files=tuple(str(item) for item in files) if isinstance(files, list) else (),
    )
