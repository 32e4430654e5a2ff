from __future__ import annotations

import json
from pathlib import Path

import allure

from agent_loop.config import Settings
from agent_loop.loop.workspace import hook_command, setup_workspace

pytestmark = [
    allure.epic("Agent Loop"),
    allure.feature("Workspace Setup"),
]


def test_setup_creates_layout_and_registers_stop_hook(tmp_path: Path) -> None:
    settings = Settings(workspace=tmp_path)

    report = setup_workspace(settings, init_git=False)

    paths = settings.paths
    for directory in (paths.logs_dir, paths.inbox_processed_dir, paths.inbox_emails_dir, paths.checkpoints_dir):
        assert directory.is_dir()
    assert paths.tasks in report.created
    assert json.loads(paths.state.read_text("utf-8"))["iteration"] == 0
    assert json.loads(paths.mailbox_state.read_text("utf-8")) == {
        "last_checked": None,
        "processed_ids": [],
    }
    hooks = json.loads(paths.claude_settings.read_text("utf-8"))["hooks"]["Stop"]
    assert hooks[0]["hooks"][0]["command"] == hook_command()
    assert (paths.services_dir / "agent-loop-heartbeat.timer").is_file()
    assert any(note.startswith("Cron alternative") for note in report.notes)


def test_setup_is_idempotent_and_keeps_existing_files(tmp_path: Path) -> None:
    settings = Settings(workspace=tmp_path)
    setup_workspace(settings, init_git=False)
    settings.paths.tasks.write_text("## Pending\n- [ ] keep me\n", "utf-8")

    report = setup_workspace(settings, init_git=False)

    assert report.created == []
    assert settings.paths.tasks in report.kept
    assert settings.paths.tasks.read_text("utf-8") == "## Pending\n- [ ] keep me\n"


def test_setup_leaves_foreign_settings_file_alone(tmp_path: Path) -> None:
    settings = Settings(workspace=tmp_path)
    settings.paths.claude_settings.parent.mkdir(parents=True)
    settings.paths.claude_settings.write_text('{"model": "custom"}\n', "utf-8")

    report = setup_workspace(settings, init_git=False)

    assert json.loads(settings.paths.claude_settings.read_text("utf-8")) == {"model": "custom"}
    assert any("add a Stop hook" in note for note in report.notes)
