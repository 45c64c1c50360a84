"""Deterministic local agent for executor and coordinator integration tests."""

from __future__ import annotations

import argparse
import json
import sys
import time

from memento.orchestrator.protocol import RESULT_END, RESULT_START


def main(argv: list[str] | None = None) -> int:
    """Read the instruction from stdin and answer with a result block."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--sleep", type=float, default=0.0)
    parser.add_argument("--exit-code", type=int, default=0)
    parser.add_argument("--status", choices=("success", "failed"), default="success")
    parser.add_argument("--no-result", action="store_true")
    parser.add_argument("--split", action="store_true")
    parser.add_argument("--malformed-first", action="store_true")
    parser.add_argument("--memory", action="append", default=[], metavar="CATEGORY/FILE=TEXT")
    args = parser.parse_args(argv)

    instruction = sys.stdin.read()
    task_line = _section_first_line(instruction, "[Task]")
    print(f"echo agent received {len(instruction)} characters", flush=True)

    if args.sleep > 0:
        time.sleep(args.sleep)

    if args.no_result:
        print("finished without a result block", flush=True)
        return args.exit_code

    payload = {
        "status": args.status,
        "summary": f"Echo: {task_line}",
        "details": "echo_agent processed the instruction",
        "errors": "" if args.status == "success" else "echo_agent was asked to fail",
        "memoryUpdates": _memory_updates(args.memory),
    }
    if args.malformed_first:
        print(f"{RESULT_START}\n{{not json\n{RESULT_END}", flush=True)

    block = f"{RESULT_START}\n{json.dumps(payload)}\n{RESULT_END}\n"
    if args.split:
        middle = len(RESULT_START) // 2
        sys.stdout.write(block[:middle])
        sys.stdout.flush()
        time.sleep(0.2)
        sys.stdout.write(block[middle:])
        sys.stdout.flush()
    else:
        sys.stdout.write(block)
        sys.stdout.flush()
    return args.exit_code


def _section_first_line(instruction: str, header: str) -> str:
    lines = instruction.splitlines()
    try:
        index = lines.index(header)
    except ValueError:
        return ""
    for line in lines[index + 1 :]:
        if line.strip():
            return line.strip()
    return ""


def _memory_updates(entries: list[str]) -> dict[str, dict[str, str]]:
    updates: dict[str, dict[str, str]] = {}
    for entry in entries:
        target, _, text = entry.partition("=")
        category, _, name = target.partition("/")
        updates.setdefault(category, {})[name] = text
    return updates


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
