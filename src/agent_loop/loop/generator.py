"""Turns standing goals into pending tasks when the queue drains."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from agent_loop.storage.common import read_text_or_empty, utc_now
from agent_loop.storage.task_store import Task, TaskStore

logger = logging.getLogger(__name__)

_CATEGORY_LINE = re.compile(r"^#{2,6}\s+(?P<title>.+?)\s*#*\s*$")
_GOAL_LINE = re.compile(r"^[-*]\s+(?:\[[^\]]*\]\s+)?(?P<text>\S.*?)\s*$")


class GeneratorFailure(RuntimeError):
    """Task generation failed; callers treat this as zero generated tasks."""


@dataclass(slots=True)
class GoalCategory:
    """One ``## heading`` of the standing goals document with its bullets."""

    title: str
    goals: list[str] = field(default_factory=list)


@dataclass(slots=True)
class GenerationResult:
    """Tasks appended by one generator run."""

    added: list[Task] = field(default_factory=list)
    category: str | None = None

    @property
    def count(self) -> int:
        return len(self.added)


def parse_goals(text: str) -> list[GoalCategory]:
    """Parse standing goals; bullets before the first heading go to ``General``."""

    categories: list[GoalCategory] = []
    current: GoalCategory | None = None
    for line in text.splitlines():
        heading = _CATEGORY_LINE.match(line)
        if heading:
            current = GoalCategory(title=heading.group("title"))
            categories.append(current)
            continue
        goal = _GOAL_LINE.match(line)
        if goal is None:
            continue
        if current is None:
            current = GoalCategory(title="General")
            categories.append(current)
        current.goals.append(goal.group("text"))
    return [category for category in categories if category.goals]


def rotation_slot(now: datetime, *, rotation_seconds: int, category_count: int) -> int:
    """Index of the category that leads at ``now``; stable within one rotation window."""

    if category_count <= 0:
        return 0
    return int(now.timestamp() // rotation_seconds) % category_count


class TaskGenerator:
    """Appends goal-derived tasks to the task store."""

    def __init__(
        self,
        *,
        goals_path: Path,
        task_store: TaskStore,
        rotation_seconds: int = 3_600,
        max_tasks_per_run: int = 3,
    ) -> None:
        self.goals_path = goals_path
        self.task_store = task_store
        self.rotation_seconds = rotation_seconds
        self.max_tasks_per_run = max_tasks_per_run

    def generate(self, now: datetime | None = None) -> GenerationResult:
        """Add new tasks from the first category (in rotated order) that still has fresh goals."""

        try:
            categories = parse_goals(read_text_or_empty(self.goals_path))
            if not categories or self.max_tasks_per_run <= 0:
                return GenerationResult()

            document = self.task_store.load()
            known = document.all_texts()
            start = rotation_slot(
                now or utc_now(),
                rotation_seconds=self.rotation_seconds,
                category_count=len(categories),
            )
            for offset in range(len(categories)):
                category = categories[(start + offset) % len(categories)]
                fresh = [
                    text
                    for text in (f"[{category.title}] {goal}" for goal in category.goals)
                    if " ".join(text.split()).casefold() not in known
                ][: self.max_tasks_per_run]
                if not fresh:
                    continue
                added = self.task_store.add_tasks(fresh)
                logger.info("Generated %d task(s) from goal category %r", len(added), category.title)
                return GenerationResult(added=added, category=category.title)
        except (OSError, ValueError) as error:
            raise GeneratorFailure(f"Task generation failed: {error}") from error
        return GenerationResult()
