from __future__ import annotations

import json
from datetime import UTC, datetime

import allure
import pytest

from memento.orchestrator.models import FailureCause, ResultStatus, Task, TaskStatus
from memento.orchestrator.protocol import (
    RESULT_END,
    RESULT_START,
    ResultBlockScanner,
    ResultParseError,
    build_instruction,
    parse_result_payload,
)

pytestmark = [
    allure.epic("Agent Protocol"),
    allure.feature("Instruction & Result Framing"),
]


def _block(payload: dict[str, object]) -> str:
    return f"{RESULT_START}\n{json.dumps(payload)}\n{RESULT_END}\n"


def _task(**overrides: object) -> Task:
    values: dict[str, object] = {
        "id": "task_1700000000000_abcdef1234",
        "description": "Add retry to the uploader",
        "status": TaskStatus.PROCESSING,
        "created_at": datetime(2026, 5, 1, tzinfo=UTC),
        "memory_context": {"current.md": "# Current\nUploader work", "next.md": "# Next"},
    }
    values.update(overrides)
    return Task(**values)  # type: ignore[arg-type]


def test_build_instruction_contains_task_context_and_contract() -> None:
    text = build_instruction(_task(), now=datetime(2026, 5, 1, 9, 30, tzinfo=UTC))

    assert "Task ID: task_1700000000000_abcdef1234" in text
    assert "Issued at: 2026-05-01T09:30:00.000Z" in text
    assert "Add retry to the uploader" in text
    assert "--- current.md ---" in text
    assert "Uploader work" in text
    assert "--- next.md ---" in text
    lines = text.splitlines()
    assert RESULT_START in lines
    assert RESULT_END in lines
    assert lines.index(RESULT_START) < lines.index(RESULT_END)


def test_build_instruction_without_context() -> None:
    text = build_instruction(_task(memory_context={}))

    assert "(no project context captured)" in text


def test_scanner_parses_single_block() -> None:
    scanner = ResultBlockScanner()

    result = scanner.feed("working...\n" + _block({"status": "success", "summary": "ok"}))

    assert result is not None
    assert result.status == ResultStatus.SUCCESS
    assert result.summary == "ok"
    assert result.cause is None


def test_scanner_handles_block_split_into_single_characters() -> None:
    scanner = ResultBlockScanner()
    text = "log line\n" + _block(
        {
            "status": "success",
            "summary": "split",
            "memoryUpdates": {"core": {"current.md": "# Updated"}},
        },
    )

    results = [scanner.feed(char) for char in text]

    assert all(result is None for result in results[:-2])
    assert scanner.result is not None
    assert scanner.result.summary == "split"
    assert scanner.result.memory_updates == {"core": {"current.md": "# Updated"}}


def test_scanner_skips_malformed_block_and_uses_later_valid_one() -> None:
    scanner = ResultBlockScanner()

    scanner.feed(f"{RESULT_START}\n{{broken\n{RESULT_END}\n")
    assert scanner.result is None
    assert scanner.malformed_blocks == 1
    assert scanner.last_error is not None

    result = scanner.feed(_block({"status": "failed", "summary": "second", "errors": "boom"}))

    assert result is not None
    assert result.status == ResultStatus.FAILED
    assert result.cause == FailureCause.AGENT_REPORTED
    assert result.errors == "boom"


def test_scanner_keeps_first_valid_block() -> None:
    scanner = ResultBlockScanner()

    scanner.feed(_block({"status": "success", "summary": "first"}))
    scanner.feed(_block({"status": "success", "summary": "second"}))

    assert scanner.result is not None
    assert scanner.result.summary == "first"


def test_scanner_ignores_sentinels_mentioned_inline() -> None:
    scanner = ResultBlockScanner()

    scanner.feed(f"I will print {RESULT_START} and {RESULT_END} when done.\n")

    assert scanner.result is None
    assert scanner.malformed_blocks == 0


def test_scanner_moves_past_settled_chatter() -> None:
    scanner = ResultBlockScanner()
    chatter = "".join(f"step {index}: will print {RESULT_END} at the end\n" for index in range(200))

    for line in chatter.splitlines(keepends=True):
        assert scanner.feed(line) is None

    assert scanner._scan_from == len(chatter)

    scanner.feed(f"{RESULT_START}\n")
    assert scanner._scan_from == len(chatter)

    result = scanner.feed(f'{{"status": "success", "summary": "after chatter"}}\n{RESULT_END}\n')

    assert result is not None
    assert result.summary == "after chatter"


def test_scanner_recovers_after_unterminated_block() -> None:
    scanner = ResultBlockScanner()

    scanner.feed(f"{RESULT_START}\npartial thought that never closes\n")
    result = scanner.feed(_block({"status": "success", "summary": "recovered"}))

    assert result is not None
    assert result.summary == "recovered"


def test_scanner_skips_echoed_instruction_example() -> None:
    scanner = ResultBlockScanner()

    scanner.feed(build_instruction(_task()))
    assert scanner.result is None

    result = scanner.feed(_block({"status": "success", "summary": "real"}))

    assert result is not None
    assert result.summary == "real"


def test_parse_result_payload_normalizes_list_fields() -> None:
    result = parse_result_payload(
        json.dumps(
            {
                "status": "success",
                "summary": "done",
                "details": ["step one", "step two"],
                "memoryUpdates": {"core": {"next.md": "# Next", "bad": 3}, "other": "x"},
            },
        ),
    )

    assert result.details == "step one\nstep two"
    assert result.memory_updates == {"core": {"next.md": "# Next"}}


@pytest.mark.parametrize(
    ("payload", "message"),
    [
        ("[]", "JSON object"),
        ('{"status": "done"}', "status must be"),
        ('{"status": "success", "summary": 3}', "summary must be a string"),
        ('{"status": "success", "memoryUpdates": []}', "memoryUpdates must be an object"),
        ("{oops", "not valid JSON"),
    ],
)
def test_parse_result_payload_rejects_invalid_payloads(payload: str, message: str) -> None:
    with pytest.raises(ResultParseError, match=message):
        parse_result_payload(payload)
