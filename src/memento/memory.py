"""Project memory notes shared between the session and task agents."""

from __future__ import annotations

import logging
import re
from pathlib import Path

from memento.orchestrator.contracts import write_text_atomic

logger = logging.getLogger(__name__)

CORE_CATEGORY = "core"
CONTEXT_CATEGORY = "context"
CATEGORIES = (CORE_CATEGORY, CONTEXT_CATEGORY)

DEFAULT_FILES: dict[str, dict[str, str]] = {
    CORE_CATEGORY: {
        "current.md": "# Current task\n\n*No tasks yet*\n",
        "next.md": "# Next steps\n\n*Next steps are not defined yet*\n",
        "overview.md": "# Project overview\n\n*Describe the project here*\n",
    },
    CONTEXT_CATEGORY: {
        "tech.md": "# Technical decisions\n\n*Record technical decisions here*\n",
        "history.md": "# Development history\n\n*Record important decisions and changes here*\n",
    },
}

_FILE_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


class MemoryBank:
    """Markdown notes under ``memory/<category>/<file>``."""

    def __init__(self, memory_dir: Path) -> None:
        self.memory_dir = memory_dir

    def ensure_defaults(self) -> list[str]:
        """Create missing default notes; existing files are left alone."""

        created: list[str] = []
        for category, files in DEFAULT_FILES.items():
            directory = self.memory_dir / category
            directory.mkdir(parents=True, exist_ok=True)
            for name, content in files.items():
                path = directory / name
                if path.exists():
                    continue
                path.write_text(content, "utf-8")
                created.append(f"{category}/{name}")
        return created

    def snapshot(self) -> dict[str, str]:
        """Core notes keyed by file name; unreadable files are skipped."""

        context: dict[str, str] = {}
        for name in DEFAULT_FILES[CORE_CATEGORY]:
            path = self.memory_dir / CORE_CATEGORY / name
            try:
                context[name] = path.read_text("utf-8")
            except OSError as error:
                logger.warning("Memory file %s unreadable: %s", path, error)
        return context

    def apply_updates(self, updates: dict[str, dict[str, str]]) -> list[str]:
        """Replace note contents; returns the ``category/file`` labels written."""

        applied: list[str] = []
        for category, files in updates.items():
            if category not in CATEGORIES:
                logger.warning("Skipping memory update for unknown category %r", category)
                continue
            for name, content in files.items():
                if not _FILE_NAME_PATTERN.match(name) or ".." in name:
                    logger.warning("Skipping memory update with unsafe file name %r", name)
                    continue
                label = f"{category}/{name}"
                try:
                    write_text_atomic(self.memory_dir / category / name, content)
                except OSError as error:
                    logger.warning("Cannot write memory update %s: %s", label, error)
                    continue
                applied.append(label)
                logger.info("Memory updated: %s", label)
        return applied

    def describe(self) -> str:
        lines = ["Memory bank:"]
        for category in CATEGORIES:
            directory = self.memory_dir / category
            names = sorted(path.name for path in directory.glob("*.md")) if directory.exists() else []
            lines.append(f"  {category}: {', '.join(names) if names else '(empty)'}")
        return "\n".join(lines)
