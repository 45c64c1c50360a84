"""Agent I/O contract: instruction rendering and result-block extraction."""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime

from memento.orchestrator.contracts import (
    coerce_text,
    format_timestamp,
    normalize_memory_updates,
    utc_now,
)
from memento.orchestrator.models import FailureCause, ResultStatus, Task, TaskResult

logger = logging.getLogger(__name__)

RESULT_START = "RESULT_START"
RESULT_END = "RESULT_END"

# Sentinels must sit on their own lines; anything else is prose mentioning them.
_BLOCK_PATTERN = re.compile(
    rf"^[ \t]*{RESULT_START}[ \t]*\r?\n(?P<body>.*?)^[ \t]*{RESULT_END}[ \t]*$",
    re.DOTALL | re.MULTILINE,
)
_START_LINE = re.compile(rf"^[ \t]*{RESULT_START}[ \t]*\r?\n", re.MULTILINE)

_OUTPUT_SCHEMA_EXAMPLE = """\
{
  "status": "success" or "failed",
  "summary": "<one-paragraph summary of the outcome>",
  "details": "<what was done>",
  "errors": "<error details, empty when none>",
  "memoryUpdates": {
    "core": { "<file name>": "<full replacement content>" },
    "context": { "<file name>": "<full replacement content>" }
  }
}"""


class ResultParseError(ValueError):
    """Result block is present but its payload does not match the schema."""


def build_instruction(task: Task, *, now: datetime | None = None) -> str:
    """Render the instruction text fed to the agent on stdin."""

    timestamp = format_timestamp(now or utc_now())
    sections = [
        "=== Task execution instructions ===",
        f"Task ID: {task.id}",
        f"Issued at: {timestamp}",
        "",
        "[Task]",
        task.description.strip(),
        "",
        "[Project context]",
    ]
    if task.memory_context:
        for label, content in task.memory_context.items():
            sections.append(f"--- {label} ---")
            sections.append(content.rstrip())
            sections.append("")
    else:
        sections.append("(no project context captured)")
        sections.append("")

    sections.extend(
        [
            "[Requirements]",
            "1. Carry out the task above completely.",
            "2. If something fails, record detailed error information.",
            "3. Report the outcome in the structured format below.",
            "4. Propose memory updates for any new knowledge worth keeping.",
            "",
            "[Output format]",
            "When finished, print the result between two marker lines exactly like this:",
            RESULT_START,
            _OUTPUT_SCHEMA_EXAMPLE,
            RESULT_END,
            "",
        ],
    )
    return "\n".join(sections)


def parse_result_payload(text: str) -> TaskResult:
    """Parse and validate the JSON payload enclosed by the sentinels."""

    try:
        payload = json.loads(text)
    except json.JSONDecodeError as error:
        raise ResultParseError(f"Result block is not valid JSON: {error}") from error
    if not isinstance(payload, dict):
        raise ResultParseError("Result block must contain a JSON object.")

    status_raw = payload.get("status")
    try:
        status = ResultStatus(status_raw)
    except ValueError as error:
        raise ResultParseError(
            f"Result status must be 'success' or 'failed', got {status_raw!r}.",
        ) from error

    summary = payload.get("summary", "")
    if not isinstance(summary, str):
        raise ResultParseError("Result summary must be a string.")
    memory_updates_raw = payload.get("memoryUpdates", {})
    if memory_updates_raw is not None and not isinstance(memory_updates_raw, dict):
        raise ResultParseError("Result memoryUpdates must be an object.")

    return TaskResult(
        status=status,
        summary=summary,
        details=coerce_text(payload.get("details")),
        errors=coerce_text(payload.get("errors")),
        memory_updates=normalize_memory_updates(memory_updates_raw),
        cause=FailureCause.AGENT_REPORTED if status == ResultStatus.FAILED else None,
    )


class ResultBlockScanner:
    """Incremental sentinel matcher over the cumulative agent output.

    Chunks may split sentinels or payloads anywhere; matching only happens on
    the accumulated buffer. A complete block that fails to parse is logged and
    skipped so a later well-formed block can still be picked up. The first
    valid block wins.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._scan_from = 0
        self.result: TaskResult | None = None
        self.last_error: str | None = None
        self.malformed_blocks = 0

    def feed(self, chunk: str) -> TaskResult | None:
        """Append output and return the result once a valid block is complete."""

        self._buffer += chunk
        if self.result is not None:
            return self.result
        if self._buffer.find(RESULT_END, self._scan_from) == -1:
            self._skip_settled_output()
            return None

        for match in _BLOCK_PATTERN.finditer(self._buffer, self._scan_from):
            self._scan_from = match.end()
            try:
                self.result = parse_result_payload(_innermost_body(match.group("body")))
            except ResultParseError as error:
                self.malformed_blocks += 1
                self.last_error = str(error)
                logger.warning("Ignoring malformed result block: %s", error)
                continue
            logger.info("Result block parsed: status=%s", self.result.status.value)
            return self.result
        self._skip_settled_output()
        return None

    def _skip_settled_output(self) -> None:
        # A future block can only begin at the last open start line or on the unfinished last line.
        last_start = None
        for last_start in _START_LINE.finditer(self._buffer, self._scan_from):
            pass
        if last_start is not None:
            self._scan_from = last_start.start()
            return
        self._scan_from = max(self._scan_from, self._buffer.rfind("\n", self._scan_from) + 1)


def _innermost_body(body: str) -> str:
    # An unterminated earlier block swallows the next start marker; keep what follows it.
    starts = list(_START_LINE.finditer(body))
    if starts:
        body = body[starts[-1].end() :]
    return body.strip()
