"""Stand-in worker for the MOCK_CLI adapter.

Reads the prompt file passed as the only argument and reports the task it was
given, without touching the repository.
"""

from __future__ import annotations

import sys
from pathlib import Path

TASK_PREFIX = "Task: "


def main(argv: list[str] | None = None) -> int:
    args = sys.argv[1:] if argv is None else argv
    if len(args) != 1:
        print("usage: python -m taskpilot.mock_agent PROMPT_FILE", file=sys.stderr)
        return 2
    prompt_path = Path(args[0])
    try:
        prompt = prompt_path.read_text(encoding="utf-8")
    except OSError as exc:
        print(f"Unable to read prompt file {prompt_path}: {exc}", file=sys.stderr)
        return 1
    title = next(
        (
            chunk.removeprefix(TASK_PREFIX).strip()
            for chunk in prompt.split("\n\n")
            if chunk.startswith(TASK_PREFIX)
        ),
        "(untitled)",
    )
    print(f"Mock agent completed task: {title}")
    print(f"Prompt size: {len(prompt)} chars")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
