"""Scripted stand-in for the bd binary, used by runner integration tests.

Responses are read from the JSON list at ``$BEADS_EXEC_SCRIPT`` and consumed
front to back, one per invocation. Each invocation is appended to the JSONL
file at ``$BEADS_EXEC_SCRIPT_LOG`` when it is set.
"""

from __future__ import annotations

import json
import os
import sys
import time
from pathlib import Path


def main(argv: list[str] | None = None) -> int:
    """Replay the next scripted response."""

    args = list(sys.argv[1:] if argv is None else argv)
    _record_call(args)

    script_path = os.getenv("BEADS_EXEC_SCRIPT")
    if not script_path:
        sys.stdout.write("[]")
        return 0

    path = Path(script_path)
    responses = json.loads(path.read_text("utf-8"))
    if not responses:
        sys.stdout.write("[]")
        return 0
    response = responses.pop(0)
    path.write_text(json.dumps(responses), "utf-8")

    sleep_seconds = float(response.get("sleep", 0))
    if sleep_seconds > 0:
        time.sleep(sleep_seconds)
    sys.stdout.write(response.get("stdout", ""))
    sys.stderr.write(response.get("stderr", ""))
    return int(response.get("exit_code", 0))


def _record_call(args: list[str]) -> None:
    log_path = os.getenv("BEADS_EXEC_SCRIPT_LOG")
    if not log_path:
        return
    entry = {
        "args": args,
        "pid": os.getpid(),
        "cwd": os.getcwd(),
        "bd_no_db": os.getenv("BD_NO_DB"),
    }
    with Path(log_path).open("a", encoding="utf-8") as handle:
        handle.write(json.dumps(entry) + "\n")


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
