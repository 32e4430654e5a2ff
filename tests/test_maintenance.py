from __future__ import annotations

import json
from dataclasses import replace
from datetime import date
from pathlib import Path

import allure
import httpx
import pytest

from agent_loop.config import MailboxSettings
from agent_loop.loop.maintenance import (
    MailboxPoller,
    check_resources,
    intake_inbox,
    parse_inbox_lines,
    refresh_dashboard,
    run_watchdog,
)
from agent_loop.loop.models import OutcomeStatus
from agent_loop.storage.records import RESET_REPAIRED
from agent_loop.storage.task_store import TaskStatus, TaskTransitionError

pytestmark = [
    allure.epic("Agent Loop"),
    allure.feature("Supervisor Maintenance"),
]


def test_parse_inbox_lines_strips_list_and_checkbox_prefixes() -> None:
    text = "# Requests\n\n- [ ] Fix login\n* Update docs\nPlain line\n\n+ [x] Already marked\n"

    assert parse_inbox_lines(text) == ["Fix login", "Update docs", "Plain line", "Already marked"]


def test_intake_inbox_adds_tasks_and_moves_files(workspace) -> None:
    inbox = workspace.paths.inbox_dir
    (inbox / "a.md").write_text("- Fix login\n- Update docs\n", "utf-8")
    (inbox / "b.txt").write_text("Fix login\n", "utf-8")
    (inbox / "ignored.json").write_text("{}", "utf-8")

    outcome = intake_inbox(workspace)

    assert outcome.status == OutcomeStatus.OK
    assert outcome.count == 2
    assert workspace.tasks.counts().pending == 2
    assert sorted(path.name for path in workspace.paths.inbox_processed_dir.iterdir()) == [
        "a.md",
        "b.txt",
    ]
    assert (inbox / "ignored.json").exists()


def test_intake_inbox_empty(workspace) -> None:
    assert intake_inbox(workspace).status == OutcomeStatus.EMPTY


def test_watchdog_promotes_due_tasks_and_repairs_state(workspace) -> None:
    workspace.paths.tasks.write_text(
        "## Pending\n\n## Scheduled\n- [@2026-10-01] Renew certificates\n",
        "utf-8",
    )
    workspace.paths.state.write_text("{broken", "utf-8")

    outcome = run_watchdog(workspace, today=date(2026, 10, 19))

    assert outcome.status == OutcomeStatus.OK
    assert workspace.tasks.counts().pending == 1
    state = workspace.state.read()
    assert state.iteration == 0
    assert state.reset_reason == RESET_REPAIRED


def test_watchdog_has_nothing_to_do_on_clean_workspace(workspace) -> None:
    assert run_watchdog(workspace).status == OutcomeStatus.EMPTY


def test_check_resources_warns_below_floor(workspace) -> None:
    workspace.settings.supervisor.min_free_disk_percent = 101.0

    outcome = check_resources(workspace)

    assert outcome.status == OutcomeStatus.OK
    assert workspace.notifier.recent()[-1].level == "warning"


def test_refresh_dashboard_writes_status_file(workspace, seed_tasks) -> None:
    seed_tasks("- [.] Active", "- [ ] Next")

    refresh_dashboard(workspace)

    payload = json.loads(workspace.paths.status.read_text("utf-8"))
    assert payload["task_counts"]["in_progress"] == 1
    assert payload["task_counts"]["pending"] == 1
    assert payload["current_task"] == "Active"
    assert payload["lock_live"] is False


def _poller(workspace, handler, tmp_path: Path) -> MailboxPoller:
    key_file = tmp_path / "mail.key"
    key_file.write_text("secret-token\n", "utf-8")
    settings = replace(
        MailboxSettings(),
        api_base_url="https://mail.example.test/v0/",
        inbox_id="agent-inbox",
        api_key_file=key_file,
    )
    paths = workspace.paths
    return MailboxPoller(
        settings=settings,
        state_path=paths.mailbox_state,
        inbox_dir=paths.inbox_dir,
        archive_dir=paths.inbox_emails_dir,
        transport=httpx.MockTransport(handler),
    )


def test_mailbox_poll_writes_unseen_messages_once(workspace, tmp_path: Path) -> None:
    requests: list[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(
            200,
            json={
                "messages": [
                    {"message_id": "<m1@example>", "from": "ops@example.test", "subject": "Rotate keys"},
                    {"id": "m2", "from": "pm@example.test", "subject": "Ship  v2"},
                ],
            },
        )

    poller = _poller(workspace, _handler, tmp_path)

    first = poller.poll()
    second = poller.poll()

    assert first.count == 2
    assert second.status == OutcomeStatus.EMPTY
    assert requests[0].headers["Authorization"] == "Bearer secret-token"
    assert requests[0].url.path == "/v0/inboxes/agent-inbox/messages"
    inbox_files = sorted(path.name for path in workspace.paths.inbox_dir.glob("email-*.md"))
    assert inbox_files == ["email-_m1_example_.md", "email-m2.md"]
    assert "Email from pm@example.test: Ship v2" in (
        workspace.paths.inbox_dir / "email-m2.md"
    ).read_text("utf-8")
    assert (workspace.paths.inbox_emails_dir / "m2.json").is_file()
    state = json.loads(workspace.paths.mailbox_state.read_text("utf-8"))
    assert state["processed_ids"] == ["<m1@example>", "m2"]
    assert state["last_checked"]


def test_mailbox_poll_skipped_when_not_configured(workspace, tmp_path: Path) -> None:
    poller = MailboxPoller(
        settings=MailboxSettings(),
        state_path=workspace.paths.mailbox_state,
        inbox_dir=workspace.paths.inbox_dir,
        archive_dir=workspace.paths.inbox_emails_dir,
    )

    assert poller.poll().status == OutcomeStatus.SKIPPED


def test_completed_task_is_not_revived_by_watchdog(workspace, seed_tasks) -> None:
    seed_tasks("- [x] finished work")

    with pytest.raises(TaskTransitionError):
        workspace.tasks.set_status(
            "finished work",
            TaskStatus.SCHEDULED,
            scheduled_for=date(2020, 1, 1),
        )
    run_watchdog(workspace, today=date(2026, 10, 19))

    counts = workspace.tasks.counts()
    assert counts.pending == 0
    assert counts.completed == 1


def test_intake_inbox_rejects_undecodable_file_and_keeps_going(workspace) -> None:
    inbox = workspace.paths.inbox_dir
    (inbox / "a.md").write_bytes(b"\xff\xfe")
    (inbox / "b.md").write_text("Real request\n", "utf-8")

    outcome = intake_inbox(workspace)

    assert outcome.status == OutcomeStatus.OK
    assert outcome.count == 1
    assert outcome.detail == "2 file(s), 1 rejected"
    assert workspace.tasks.counts().pending == 1
    assert sorted(path.name for path in workspace.paths.inbox_processed_dir.iterdir()) == [
        "a.md.rejected",
        "b.md",
    ]
    assert intake_inbox(workspace).status == OutcomeStatus.EMPTY
