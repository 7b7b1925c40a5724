"""Read-only access to the story ledger (``prd.json``)."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_PRIORITY = 999


@dataclass(slots=True, frozen=True)
class Story:
    """One ledger record."""

    id: str
    story: str = ""
    category: str = ""
    priority: int = DEFAULT_PRIORITY
    passes: bool = False
    steps: tuple[str, ...] = ()
    acceptance: tuple[str, ...] = ()
    notes: str = ""


@dataclass(slots=True)
class LedgerSnapshot:
    """Ledger contents at one point in time.

    ``readable`` is false when the file could not be parsed; counts are then
    zero and must not be taken as "all stories complete".
    """

    stories: list[Story] = field(default_factory=list)
    branch_name: str | None = None
    readable: bool = True

    @property
    def total(self) -> int:
        return len(self.stories)

    @property
    def complete(self) -> int:
        return sum(1 for story in self.stories if story.passes)

    @property
    def incomplete(self) -> int:
        return self.total - self.complete

    @property
    def is_complete(self) -> bool:
        return self.readable and self.incomplete == 0

    def pending(self, limit: int | None = None) -> list[Story]:
        """Incomplete stories ordered by priority, then id."""

        ordered = sorted(
            (story for story in self.stories if not story.passes),
            key=lambda story: (story.priority, story.id),
        )
        return ordered if limit is None else ordered[:limit]

    def next_story(self) -> Story | None:
        pending = self.pending(limit=1)
        return pending[0] if pending else None


class TaskLedger:
    """Loads ledger snapshots from disk; never writes."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def exists(self) -> bool:
        return self.path.is_file()

    def load(self) -> LedgerSnapshot:
        try:
            raw = json.loads(self.path.read_text("utf-8"))
        except (OSError, ValueError) as error:
            logger.warning("Could not read story ledger %s: %s", self.path, error)
            return LedgerSnapshot(readable=False)
        return parse_ledger(raw, source=str(self.path))


def parse_ledger(raw: object, *, source: str = "<ledger>") -> LedgerSnapshot:
    """Accept both the bare-array and the ``userStories`` object layout."""

    branch_name: str | None = None
    if isinstance(raw, dict):
        value = raw.get("branchName")
        if isinstance(value, str) and value.strip():
            branch_name = value.strip()
        raw_stories = raw.get("userStories", [])
    else:
        raw_stories = raw

    if not isinstance(raw_stories, list):
        logger.warning("Story ledger %s has no story array", source)
        return LedgerSnapshot(branch_name=branch_name, readable=False)

    stories: list[Story] = []
    seen: set[str] = set()
    for index, item in enumerate(raw_stories):
        story = _parse_story(item)
        if story is None:
            logger.warning("Skipping malformed story #%d in %s", index, source)
            continue
        if story.id in seen:
            logger.warning("Skipping duplicate story id %s in %s", story.id, source)
            continue
        seen.add(story.id)
        stories.append(story)
    return LedgerSnapshot(stories=stories, branch_name=branch_name)


def _parse_story(raw: object) -> Story | None:
    if not isinstance(raw, dict):
        return None
    story_id = raw.get("id")
    if isinstance(story_id, bool) or not isinstance(story_id, (str, int)):
        return None
    priority = raw.get("priority", DEFAULT_PRIORITY)
    if isinstance(priority, bool) or not isinstance(priority, int):
        priority = DEFAULT_PRIORITY
    return Story(
        id=str(story_id),
        story=str(raw.get("story") or ""),
        category=str(raw.get("category") or ""),
        priority=priority,
        passes=raw.get("passes") is True,
        steps=_string_tuple(raw.get("steps")),
        acceptance=_string_tuple(raw.get("acceptance")),
        notes=str(raw.get("notes") or ""),
    )


def _string_tuple(value: object) -> tuple[str, ...]:
    if isinstance(value, list):
        return tuple(str(item) for item in value)
    if isinstance(value, str) and value:
        return (value,)
    return ()
