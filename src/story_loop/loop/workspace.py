"""Working-tree change detection around one agent invocation."""

from __future__ import annotations

import logging
import subprocess
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class WorkspaceSnapshot:
    """Tree state recorded before the agent runs."""

    tree_ref: str
    untracked: frozenset[str]
    pathspecs: tuple[str, ...] = ()


class GitChangeProbe:
    """Counts files the agent touched, committed or not.

    ``git stash create`` captures the dirty tree as a dangling commit without
    touching the index or the working tree, so pre-existing edits are not
    attributed to the agent. Paths under ``exclude`` (the loop's own state and
    log directory) are never counted. Outside a git work tree both methods
    return ``None`` and callers fall back to text heuristics.
    """

    def __init__(
        self,
        workdir: Path,
        *,
        exclude: Iterable[Path] = (),
        timeout_seconds: float = 30.0,
    ) -> None:
        self.workdir = workdir
        self.exclude = tuple(exclude)
        self.timeout_seconds = timeout_seconds

    def snapshot(self) -> WorkspaceSnapshot | None:
        head = self._git("rev-parse", "--verify", "HEAD")
        if head is None:
            return None
        pathspecs = self._exclude_pathspecs()
        stash = self._git("stash", "create")
        untracked = self._untracked(pathspecs)
        if untracked is None:
            return None
        tree_ref = (stash or "").strip() or head.strip()
        return WorkspaceSnapshot(tree_ref=tree_ref, untracked=untracked, pathspecs=pathspecs)

    def changed_files(self, snapshot: WorkspaceSnapshot | None) -> int | None:
        if snapshot is None:
            return None
        tracked = self._git("diff", "--name-only", snapshot.tree_ref, "--", *snapshot.pathspecs)
        untracked = self._untracked(snapshot.pathspecs)
        if tracked is None or untracked is None:
            return None
        names = {line.strip() for line in tracked.splitlines() if line.strip()}
        names |= untracked - snapshot.untracked
        return len(names)

    def _exclude_pathspecs(self) -> tuple[str, ...]:
        """``:(top,exclude)`` pathspecs for excluded roots inside the repository."""

        if not self.exclude:
            return ()
        toplevel = self._git("rev-parse", "--show-toplevel")
        if toplevel is None:
            return ()
        root = Path(toplevel.strip()).resolve()
        pathspecs: list[str] = []
        for path in self.exclude:
            try:
                relative = path.resolve().relative_to(root)
            except ValueError:
                continue
            # excluding the repository root would hide every change
            if relative.parts:
                pathspecs.append(f":(top,exclude){relative.as_posix()}")
        return tuple(pathspecs)

    def _untracked(self, pathspecs: tuple[str, ...]) -> frozenset[str] | None:
        listing = self._git("ls-files", "--others", "--exclude-standard", "--", *pathspecs)
        if listing is None:
            return None
        return frozenset(line.strip() for line in listing.splitlines() if line.strip())

    def _git(self, *args: str) -> str | None:
        try:
            completed = subprocess.run(  # noqa: S603
                ["git", *args],  # noqa: S607
                cwd=self.workdir,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as error:
            logger.debug("git %s failed: %s", " ".join(args), error)
            return None
        if completed.returncode != 0:
            return None
        return completed.stdout
