"""Scripted task process for local runs and end-to-end tests."""

from __future__ import annotations

import argparse
import json
import os
import signal
import sys
import time
from pathlib import Path

RATE_LIMIT_EXIT_CODE = 75
TERMINATED_EXIT_CODE = 143


def main(argv: list[str] | None = None) -> int:
    """Record the invocation, then behave as instructed by the flags."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--task-id", default=os.getenv("RUNLEDGER_TASK_ID", ""))
    parser.add_argument("--record", help="Append one JSON line per invocation to this file.")
    parser.add_argument("--sleep", type=float, default=0.0)
    parser.add_argument("--exit-code", type=int, default=0)
    parser.add_argument(
        "--fail-until-attempt",
        type=int,
        default=0,
        help="Exit with --exit-code while RUNLEDGER_TASK_ATTEMPT is at most this value.",
    )
    parser.add_argument("--stderr", default="", help="Text written to stderr on failure.")
    parser.add_argument("--key-env", default="ANTHROPIC_API_KEY")
    parser.add_argument(
        "--rate-limited-key",
        action="append",
        default=[],
        help="Exit with the rate-limit code when the injected key equals this value.",
    )
    args = parser.parse_args(argv)

    signal.signal(signal.SIGTERM, _exit_on_term)

    attempt = int(os.getenv("RUNLEDGER_TASK_ATTEMPT", "1"))
    key = os.getenv(args.key_env, "")
    if args.record:
        _append_record(
            Path(args.record),
            {
                "task_id": args.task_id,
                "attempt": attempt,
                "key": key,
                "pid": os.getpid(),
            },
        )

    if key and key in args.rate_limited_key:
        sys.stderr.write("error: usage_limit_reached, too many requests\n")
        return RATE_LIMIT_EXIT_CODE

    if args.sleep > 0:
        time.sleep(args.sleep)

    if args.exit_code != 0 and (args.fail_until_attempt == 0 or attempt <= args.fail_until_attempt):
        if args.stderr:
            sys.stderr.write(f"{args.stderr}\n")
        return args.exit_code

    sys.stdout.write(f"task {args.task_id} done (attempt {attempt})\n")
    return 0


def _append_record(path: Path, payload: dict[str, object]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as handle:
        handle.write(json.dumps(payload, sort_keys=True) + "\n")


def _exit_on_term(_signum: int, _frame: object | None) -> None:
    sys.stderr.write("terminated, checkpoint written\n")
    sys.exit(TERMINATED_EXIT_CODE)


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
