"""Leveled notifications with a durable local record and optional webhook forwarding."""

from __future__ import annotations

import json
import logging
import socket
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path

import httpx

from agent_loop.config import NotifySettings
from agent_loop.storage.common import utc_now

logger = logging.getLogger(__name__)

NOTIFICATIONS_FILE = "notifications.jsonl"
DEFAULT_USER_AGENT = "agent-loop-notifier/1.0"


class NotifyLevel(str, Enum):
    CRITICAL = "critical"
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"
    SUCCESS = "success"


_LOG_LEVELS: dict[NotifyLevel, int] = {
    NotifyLevel.CRITICAL: logging.CRITICAL,
    NotifyLevel.ERROR: logging.ERROR,
    NotifyLevel.WARNING: logging.WARNING,
    NotifyLevel.INFO: logging.INFO,
    NotifyLevel.SUCCESS: logging.INFO,
}


class NotifierFailure(RuntimeError):
    """Local persistence or forwarding of a notification failed."""


@dataclass(slots=True)
class NotificationRecord:
    """One notification as persisted locally."""

    level: str
    message: str
    created_at: str
    host: str
    persisted: bool = False
    forwarded: bool = False
    error: str | None = None


class Notifier:
    """Persists every notification and forwards the configured levels."""

    def __init__(
        self,
        *,
        notifications_dir: Path,
        settings: NotifySettings | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.notifications_dir = notifications_dir
        self.settings = settings or NotifySettings()
        self._transport = transport

    @property
    def log_path(self) -> Path:
        return self.notifications_dir / NOTIFICATIONS_FILE

    def notify(self, level: NotifyLevel | str, message: str) -> NotificationRecord:
        """Record and maybe forward a notification. Never raises."""

        try:
            resolved = NotifyLevel(level)
        except ValueError:
            logger.warning("Unknown notification level %r, using error", level)
            resolved = NotifyLevel.ERROR

        record = NotificationRecord(
            level=resolved.value,
            message=message,
            created_at=utc_now().isoformat(),
            host=socket.gethostname(),
        )
        logger.log(_LOG_LEVELS[resolved], "[%s] %s", resolved.value, message)

        try:
            self._persist(record)
            record.persisted = True
        except NotifierFailure as error:
            record.error = str(error)
            logger.error("%s", error)  # noqa: TRY400

        if self.settings.webhook_url and resolved.value in self.settings.forward_levels:
            try:
                self._forward(record)
                record.forwarded = True
            except NotifierFailure as error:
                record.error = str(error)
                logger.warning("%s", error)
        return record

    def recent(self, limit: int = 20) -> list[NotificationRecord]:
        """Most recent locally persisted notifications, oldest first."""

        try:
            lines = self.log_path.read_text("utf-8").splitlines()
        except FileNotFoundError:
            return []
        records: list[NotificationRecord] = []
        for line in lines[-limit:]:
            try:
                raw = json.loads(line)
                records.append(
                    NotificationRecord(
                        level=str(raw["level"]),
                        message=str(raw["message"]),
                        created_at=str(raw["created_at"]),
                        host=str(raw.get("host", "")),
                        persisted=True,
                        forwarded=bool(raw.get("forwarded", False)),
                    ),
                )
            except (json.JSONDecodeError, KeyError, TypeError):
                continue
        return records

    def _persist(self, record: NotificationRecord) -> None:
        payload = {
            "level": record.level,
            "message": record.message,
            "created_at": record.created_at,
            "host": record.host,
        }
        try:
            self.notifications_dir.mkdir(parents=True, exist_ok=True)
            with self.log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(payload, ensure_ascii=False) + "\n")
        except OSError as error:
            raise NotifierFailure(f"Notification not persisted locally: {error}") from error

    def _forward(self, record: NotificationRecord) -> None:
        url = self.settings.webhook_url
        if not url:
            return
        body = {key: value for key, value in asdict(record).items() if key != "error"}
        try:
            with httpx.Client(
                timeout=httpx.Timeout(self.settings.timeout_seconds, connect=5.0),
                headers={"User-Agent": DEFAULT_USER_AGENT},
                transport=self._transport or httpx.HTTPTransport(retries=2),
            ) as client:
                response = client.post(url, json=body)
        except (httpx.HTTPError, httpx.InvalidURL) as error:
            raise NotifierFailure(f"Notification forward to {url} failed: {error}") from error
        if not response.is_success:
            raise NotifierFailure(
                f"Notification forward to {url} failed: HTTP {response.status_code}",
            )
