"""Translate interactive session output into typed coordinator events.

Two signal forms are recognised, one per output line:

- structured: ``@memento {"type": "task", "description": "..."}`` or
  ``@memento {"type": "memory_update"}``;
- free text: ``TASK: <description>`` anywhere in a line, and ``/memory update``.

Output arrives in arbitrary fragments, so lines are buffered until their
newline shows up.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass

logger = logging.getLogger(__name__)

_ANSI_PATTERN = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]")
_STRUCTURED_PATTERN = re.compile(r"^\s*@memento\s+(?P<payload>\{.*\})\s*$")
_TASK_PATTERN = re.compile(r"TASK:\s*(?P<description>.+)")
_MEMORY_UPDATE_MARKER = "/memory update"


@dataclass(slots=True, frozen=True)
class TaskRequested:
    description: str


@dataclass(slots=True, frozen=True)
class MemoryUpdateRequested:
    pass


SessionEvent = TaskRequested | MemoryUpdateRequested


class SessionSignalTranslator:
    """Line-buffered detector for task and memory-update requests."""

    def __init__(self) -> None:
        self._partial = ""

    def feed(self, chunk: str) -> list[SessionEvent]:
        self._partial += chunk
        *lines, self._partial = self._partial.split("\n")
        events: list[SessionEvent] = []
        for line in lines:
            events.extend(translate_line(line))
        return events

    def flush(self) -> list[SessionEvent]:
        """Translate a trailing line that never got its newline (session exit)."""

        line, self._partial = self._partial, ""
        if not line:
            return []
        return translate_line(line)


def translate_line(line: str) -> list[SessionEvent]:
    text = _ANSI_PATTERN.sub("", line).rstrip("\r")
    structured = _STRUCTURED_PATTERN.match(text)
    if structured is not None:
        return _translate_structured(structured.group("payload"))

    events: list[SessionEvent] = []
    if _MEMORY_UPDATE_MARKER in text:
        events.append(MemoryUpdateRequested())
    task_match = _TASK_PATTERN.search(text)
    if task_match is not None:
        description = task_match.group("description").strip()
        if description:
            events.append(TaskRequested(description=description))
    return events


def _translate_structured(payload_text: str) -> list[SessionEvent]:
    try:
        payload = json.loads(payload_text)
    except json.JSONDecodeError as error:
        logger.warning("Ignoring malformed @memento signal: %s", error)
        return []
    if not isinstance(payload, dict):
        logger.warning("Ignoring @memento signal that is not a JSON object")
        return []

    kind = payload.get("type")
    if kind == "task":
        description = payload.get("description")
        if isinstance(description, str) and description.strip():
            return [TaskRequested(description=description.strip())]
        logger.warning("Ignoring @memento task signal without a description")
        return []
    if kind == "memory_update":
        return [MemoryUpdateRequested()]
    logger.warning("Ignoring @memento signal of unknown type %r", kind)
    return []
