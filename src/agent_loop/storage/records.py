"""Memory blob, iteration state record and stop sentinel."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from agent_loop.storage.common import (
    from_iso,
    load_json,
    read_text_or_empty,
    utc_now,
    write_json,
    write_text_atomic,
)

logger = logging.getLogger(__name__)

RESET_ALL_TASKS_COMPLETE = "all_tasks_complete"
RESET_MANUAL = "manual_reset"
RESET_REPAIRED = "state_repaired"


class MemoryRecord:
    """Free-form context carried across iterations.

    The worker overwrites the whole document whenever it wants to. The size
    ceiling is advisory: callers warn, nothing is truncated.
    """

    def __init__(self, path: Path) -> None:
        self.path = path

    def read(self) -> str:
        return read_text_or_empty(self.path)

    def write(self, text: str) -> None:
        write_text_atomic(self.path, text)

    def size_bytes(self) -> int:
        try:
            return self.path.stat().st_size
        except FileNotFoundError:
            return 0

    def exceeds(self, limit_kb: int) -> bool:
        return limit_kb > 0 and self.size_bytes() > limit_kb * 1024


@dataclass(slots=True)
class LoopState:
    """Iteration counter for the current batch."""

    iteration: int = 0
    updated_at: datetime | None = None
    reset_reason: str | None = None

    def to_payload(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "iteration": self.iteration,
            "updated_at": (self.updated_at or utc_now()).isoformat(),
        }
        if self.reset_reason is not None:
            payload["reset_reason"] = self.reset_reason
        return payload

    @classmethod
    def from_payload(cls, raw: dict[str, object]) -> LoopState:
        iteration = raw.get("iteration", 0)
        if isinstance(iteration, bool) or not isinstance(iteration, int) or iteration < 0:
            raise ValueError(f"state.iteration must be an integer >= 0, got {iteration!r}")
        updated_at_raw = raw.get("updated_at")
        updated_at = from_iso(updated_at_raw) if isinstance(updated_at_raw, str) else None
        reset_reason = raw.get("reset_reason")
        if reset_reason is not None and not isinstance(reset_reason, str):
            raise TypeError("state.reset_reason must be a string when provided")
        return cls(iteration=iteration, updated_at=updated_at, reset_reason=reset_reason)


class StateStore:
    """Reads and writes the iteration state record."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def exists(self) -> bool:
        return self.path.is_file()

    def is_valid(self) -> bool:
        try:
            LoopState.from_payload(load_json(self.path))
        except (OSError, ValueError, TypeError):
            return False
        return True

    def read(self) -> LoopState:
        """Return the stored state; a missing or unreadable record reads as iteration 0."""

        try:
            return LoopState.from_payload(load_json(self.path))
        except FileNotFoundError:
            return LoopState()
        except (OSError, json.JSONDecodeError, ValueError, TypeError) as error:
            logger.warning("Unreadable state record %s treated as iteration 0: %s", self.path, error)
            return LoopState()

    def write(self, state: LoopState) -> LoopState:
        state.updated_at = utc_now()
        write_json(self.path, state.to_payload())
        return state

    def increment(self) -> LoopState:
        current = self.read()
        return self.write(LoopState(iteration=current.iteration + 1))

    def reset(self, reason: str) -> LoopState:
        return self.write(LoopState(iteration=0, reset_reason=reason))


class StopSignal:
    """Presence-only sentinel requesting a cooperative stop."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def is_present(self) -> bool:
        return self.path.exists()

    def request(self, note: str = "") -> None:
        write_text_atomic(self.path, f"{utc_now().isoformat()} {note}".strip() + "\n")

    def consume(self) -> bool:
        """Clear the sentinel; return whether it was present."""

        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        return True
