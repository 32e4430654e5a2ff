"""Maintenance steps run by the supervisor while no worker holds the lock.

Each step returns a ``StepOutcome`` and is run through ``run_step`` so that a
failing step never blocks the others or the worker start.
"""

from __future__ import annotations

import json
import logging
import re
import shutil
from datetime import date
from pathlib import Path

import httpx

from agent_loop.config import MailboxSettings
from agent_loop.loop.models import OutcomeStatus, StepOutcome
from agent_loop.loop.notifier import NotifyLevel
from agent_loop.loop.status import collect_resource_metrics, write_status_file
from agent_loop.loop.workspace import LoopWorkspace
from agent_loop.storage.common import load_json, utc_now, write_json, write_text_atomic
from agent_loop.storage.records import RESET_REPAIRED

logger = logging.getLogger(__name__)

INBOX_SUFFIXES = (".md", ".txt")
MAX_PROCESSED_IDS = 500
_LIST_PREFIX = re.compile(r"^(?:[-*+]\s+)?(?:\[[^\]]*\]\s+)?")
_UNSAFE_NAME = re.compile(r"[^a-zA-Z0-9_.-]+")


def check_resources(workspace: LoopWorkspace) -> StepOutcome:
    """Warn when free disk space drops below the configured floor."""

    metrics = collect_resource_metrics(workspace)
    if metrics.disk_total_bytes == 0:
        return StepOutcome(name="resources", status=OutcomeStatus.SKIPPED, detail="disk usage unavailable")
    floor = workspace.settings.supervisor.min_free_disk_percent
    detail = f"disk free {metrics.disk_free_percent}%"
    if metrics.disk_free_percent < floor:
        workspace.notifier.notify(
            NotifyLevel.WARNING,
            f"Low disk space in {workspace.paths.workspace}: {detail} (floor {floor}%).",
        )
    return StepOutcome(name="resources", status=OutcomeStatus.OK, detail=detail)


def parse_inbox_lines(text: str) -> list[str]:
    """Task texts from an inbox drop file: one per non-empty, non-heading line."""

    texts: list[str] = []
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        cleaned = _LIST_PREFIX.sub("", line).strip()
        if cleaned:
            texts.append(cleaned)
    return texts


def intake_inbox(workspace: LoopWorkspace) -> StepOutcome:
    """Turn inbox drop files into pending tasks and move them to ``processed/``."""

    inbox = workspace.paths.inbox_dir
    if not inbox.is_dir():
        return StepOutcome(name="inbox", status=OutcomeStatus.EMPTY)
    files = sorted(
        path for path in inbox.iterdir() if path.is_file() and path.suffix in INBOX_SUFFIXES
    )
    if not files:
        return StepOutcome(name="inbox", status=OutcomeStatus.EMPTY)

    added = 0
    rejected = 0
    for path in files:
        try:
            texts = parse_inbox_lines(path.read_text("utf-8"))
        except (UnicodeDecodeError, OSError) as error:
            rejected += 1
            logger.warning("Rejecting unreadable inbox file %s: %s", path.name, error)
            _reject(path, workspace.paths.inbox_processed_dir)
            continue
        added += len(workspace.tasks.add_tasks(texts))
        _move_to(path, workspace.paths.inbox_processed_dir)
    logger.info(
        "Inbox intake: %d file(s), %d new task(s), %d rejected",
        len(files),
        added,
        rejected,
    )
    detail = f"{len(files)} file(s)"
    if rejected:
        detail += f", {rejected} rejected"
    return StepOutcome(
        name="inbox",
        status=OutcomeStatus.OK,
        detail=detail,
        count=added,
    )


class MailboxPoller:
    """Pulls unseen messages from a mail API into the inbox directory."""

    def __init__(
        self,
        *,
        settings: MailboxSettings,
        state_path: Path,
        inbox_dir: Path,
        archive_dir: Path,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.settings = settings
        self.state_path = state_path
        self.inbox_dir = inbox_dir
        self.archive_dir = archive_dir
        self._transport = transport

    def poll(self) -> StepOutcome:
        if not self.settings.enabled:
            return StepOutcome(name="mailbox", status=OutcomeStatus.SKIPPED, detail="not configured")

        state = self._load_state()
        processed: list[str] = [str(item) for item in state.get("processed_ids", [])]
        seen = set(processed)
        messages = self._fetch_messages()

        fresh = 0
        for message in messages:
            message_id = str(message.get("message_id") or message.get("id") or "").strip()
            if not message_id or message_id in seen:
                continue
            safe_id = _UNSAFE_NAME.sub("_", message_id)
            write_json(self.archive_dir / f"{safe_id}.json", message)
            sender = str(message.get("from") or "unknown sender")
            subject = " ".join(str(message.get("subject") or "(no subject)").split())
            write_text_atomic(
                self.inbox_dir / f"email-{safe_id}.md",
                f"- [ ] Email from {sender}: {subject} "
                f"(full message: {self.archive_dir.name}/{safe_id}.json)\n",
            )
            processed.append(message_id)
            seen.add(message_id)
            fresh += 1

        write_json(
            self.state_path,
            {
                "last_checked": utc_now().isoformat(),
                "processed_ids": processed[-MAX_PROCESSED_IDS:],
            },
        )
        if not fresh:
            return StepOutcome(name="mailbox", status=OutcomeStatus.EMPTY)
        logger.info("Mailbox poll: %d new message(s)", fresh)
        return StepOutcome(name="mailbox", status=OutcomeStatus.OK, count=fresh)

    def _load_state(self) -> dict[str, object]:
        try:
            return load_json(self.state_path)
        except FileNotFoundError:
            return {}
        except (OSError, ValueError, TypeError) as error:
            logger.warning("Mailbox state %s unreadable, starting fresh: %s", self.state_path, error)
            return {}

    def _fetch_messages(self) -> list[dict[str, object]]:
        headers = {"Accept": "application/json"}
        api_key = self._api_key()
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        base = (self.settings.api_base_url or "").rstrip("/")
        with httpx.Client(
            timeout=httpx.Timeout(self.settings.timeout_seconds, connect=10.0),
            headers=headers,
            transport=self._transport or httpx.HTTPTransport(retries=2),
        ) as client:
            response = client.get(
                f"{base}/inboxes/{self.settings.inbox_id}/messages",
                params={"limit": self.settings.max_messages},
            )
            response.raise_for_status()
            payload = response.json()
        raw_messages = payload.get("messages") if isinstance(payload, dict) else payload
        if not isinstance(raw_messages, list):
            raise TypeError("Mailbox response must contain a 'messages' array")
        return [message for message in raw_messages if isinstance(message, dict)]

    def _api_key(self) -> str | None:
        path = self.settings.api_key_file
        if path is None:
            return None
        return path.read_text("utf-8").strip() or None


def poll_mailbox(workspace: LoopWorkspace, transport: httpx.BaseTransport | None = None) -> StepOutcome:
    paths = workspace.paths
    return MailboxPoller(
        settings=workspace.settings.mailbox,
        state_path=paths.mailbox_state,
        inbox_dir=paths.inbox_dir,
        archive_dir=paths.inbox_emails_dir,
        transport=transport,
    ).poll()


def run_watchdog(workspace: LoopWorkspace, today: date | None = None) -> StepOutcome:
    """Reclaim a stale lock, promote due scheduled tasks and repair the state record."""

    repairs: list[str] = []
    stale = workspace.lock.reclaim_if_stale()
    if stale is not None:
        repairs.append(f"stale lock reclaimed ({stale.stale_reason})")

    if workspace.tasks.exists():
        document = workspace.tasks.load()
        promoted = document.promote_due(today or utc_now().date())
        if promoted:
            workspace.tasks.save(document)
            repairs.append(f"{len(promoted)} scheduled task(s) due")

    if workspace.state.exists():
        if not workspace.state.is_valid():
            workspace.state.reset(RESET_REPAIRED)
            repairs.append("state record rewritten")
    elif workspace.tasks.exists():
        workspace.state.reset(RESET_REPAIRED)
        repairs.append("missing state record created")

    if not repairs:
        return StepOutcome(name="watchdog", status=OutcomeStatus.EMPTY)
    for repair in repairs:
        logger.warning("Watchdog: %s", repair)
    return StepOutcome(
        name="watchdog",
        status=OutcomeStatus.OK,
        detail="; ".join(repairs),
        count=len(repairs),
    )


def refresh_dashboard(workspace: LoopWorkspace) -> StepOutcome:
    snapshot = write_status_file(workspace)
    return StepOutcome(
        name="dashboard",
        status=OutcomeStatus.OK,
        detail=json.dumps(snapshot.task_counts, sort_keys=True),
    )


def _move_to(path: Path, directory: Path) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    target = directory / path.name
    if target.exists():
        target = directory / f"{path.stem}-{utc_now().strftime('%Y%m%dT%H%M%S%f')}{path.suffix}"
    shutil.move(str(path), target)
    return target


def _reject(path: Path, directory: Path) -> None:
    directory.mkdir(parents=True, exist_ok=True)
    target = directory / f"{path.name}.rejected"
    if target.exists():
        target = directory / f"{path.name}-{utc_now().strftime('%Y%m%dT%H%M%S%f')}.rejected"
    try:
        shutil.move(str(path), target)
    except OSError as error:
        logger.error("Cannot move rejected inbox file %s aside: %s", path, error)  # noqa: TRY400
