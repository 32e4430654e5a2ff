"""Shared test fixtures."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from agent_loop.config import CheckpointSettings, Settings
from agent_loop.loop.workspace import LoopWorkspace, setup_workspace

_ENV_PREFIXES = ("AGENT_LOOP_",)
_BARE_ENV_NAMES = ("MAX_ITERATIONS", "MAX_MEMORY_KB", "DEBUG_MODE")


@pytest.fixture(autouse=True)
def clean_env(monkeypatch) -> None:
    """Keep the host environment out of Settings.from_env()."""
    for name in list(os.environ):
        if name.startswith(_ENV_PREFIXES) or name in _BARE_ENV_NAMES:
            monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        workspace=tmp_path,
        checkpoints=CheckpointSettings(keep=10, capture_git=False),
    )


@pytest.fixture()
def workspace(settings: Settings) -> LoopWorkspace:
    setup_workspace(settings, init_git=False)
    return LoopWorkspace.from_settings(settings)


@pytest.fixture()
def seed_tasks(workspace: LoopWorkspace):
    """Replace the task store with a Pending section holding the given lines."""

    def _seed(*lines: str) -> None:
        body = "\n".join(lines)
        workspace.paths.tasks.write_text(f"# Tasks\n\n## Pending\n{body}\n", "utf-8")

    return _seed
