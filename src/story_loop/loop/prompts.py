"""Per-iteration prompt assembled from the project's ``PROMPT.md``."""

from __future__ import annotations

import os
from pathlib import Path

from story_loop.loop.contracts import LEDGER_FILE, PROMPT_FILE
from story_loop.loop.ledger import LedgerSnapshot

_PROJECT_FILES: tuple[tuple[str, str], ...] = (
    ("prd.md", "Full PRD with context"),
    (LEDGER_FILE, "User stories (`passes: false` = incomplete)"),
    ("progress.txt", "What previous iterations accomplished"),
    ("requirements.md", "Technical requirements"),
)

_BRANCH_RESTRICTION = """\
## BRANCH RESTRICTION

**You are ONLY allowed to push to branch: `{branch}`**
- DO NOT switch to any other branch, do not create new branches.
- DO NOT push to main, master, or any branch other than `{branch}`
"""

_FOOTER = """\
## Completion Token

When ALL user stories have `passes: true`, reply with:
{token}

---

Now, follow the instructions above and implement the next incomplete story \
(lowest priority number that has `passes: false`). STOP after completing ONE story.
"""


class PromptBuilder:
    """Renders the template plus file table, progress and completion rules."""

    def __init__(self, *, project_dir: Path, workdir: Path, complete_token: str) -> None:
        self.project_dir = project_dir
        self.workdir = workdir
        self.complete_token = complete_token

    def build(self, ledger: LedgerSnapshot) -> str:
        template = (self.project_dir / PROMPT_FILE).read_text("utf-8").rstrip()
        sections = [template, "---", self._file_table()]

        progress = (
            f"**Progress: {ledger.complete}/{ledger.total} complete "
            f"({ledger.incomplete} remaining)**"
        )
        if ledger.branch_name:
            sections.append(f"**Branch:** `{ledger.branch_name}`\n{progress}")
            sections.append(_BRANCH_RESTRICTION.format(branch=ledger.branch_name).rstrip())
        else:
            sections.append(progress)

        sections.append(_FOOTER.format(token=self.complete_token).rstrip())
        return "\n\n".join(sections) + "\n"

    def _file_table(self) -> str:
        rows = ["## Project Files", "", "| File | Description |", "|------|-------------|"]
        for name, description in _PROJECT_FILES:
            path = self.project_dir / name
            if name != LEDGER_FILE and not path.exists():
                continue
            rows.append(f"| @{self._display_path(path)} | {description} |")
        return "\n".join(rows)

    def _display_path(self, path: Path) -> str:
        try:
            relative = os.path.relpath(path.resolve(), self.workdir.resolve())
        except ValueError:
            return path.resolve().as_posix()
        return Path(relative).as_posix()
