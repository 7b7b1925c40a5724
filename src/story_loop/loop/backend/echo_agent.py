"""Local stand-in agent for CLI backend integration tests."""

from __future__ import annotations

import argparse
import json
import sys
import time
from pathlib import Path


def main(argv: list[str] | None = None) -> int:
    """Read the prompt from stdin, optionally complete a story, then exit."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--output", action="append", default=[])
    parser.add_argument("--exit-code", type=int, default=0)
    parser.add_argument("--sleep", type=float, default=0.0)
    parser.add_argument("--complete-story", type=Path, default=None)
    parser.add_argument("--echo-prompt", action="store_true")
    args = parser.parse_args(argv)

    prompt = sys.stdin.read()
    if args.echo_prompt:
        print(prompt)
    if args.sleep:
        time.sleep(args.sleep)

    if args.complete_story is not None:
        story_id = _complete_next_story(args.complete_story)
        if story_id is not None:
            print(f"Modified: {args.complete_story.name}")
            print(f"Completed story {story_id}")

    for line in args.output:
        print(line)
    sys.stdout.flush()
    return args.exit_code


def _complete_next_story(ledger_path: Path) -> str | None:
    raw = json.loads(ledger_path.read_text("utf-8"))
    stories = raw["userStories"] if isinstance(raw, dict) else raw
    pending = sorted(
        (story for story in stories if not story.get("passes")),
        key=lambda story: (story.get("priority", 999), str(story["id"])),
    )
    if not pending:
        return None
    pending[0]["passes"] = True
    ledger_path.write_text(json.dumps(raw, indent=2), "utf-8")
    return str(pending[0]["id"])


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
