from __future__ import annotations

from pathlib import Path

import allure

from memento.memory import DEFAULT_FILES, MemoryBank

pytestmark = [
    allure.epic("Project Memory"),
    allure.feature("Memory Bank"),
]


def test_ensure_defaults_creates_missing_notes_only(tmp_path: Path) -> None:
    bank = MemoryBank(tmp_path / "memory")
    (tmp_path / "memory" / "core").mkdir(parents=True)
    (tmp_path / "memory" / "core" / "current.md").write_text("# Mine\n", "utf-8")

    created = bank.ensure_defaults()

    assert "core/current.md" not in created
    assert set(created) == {
        "core/next.md",
        "core/overview.md",
        "context/tech.md",
        "context/history.md",
    }
    assert (tmp_path / "memory" / "core" / "current.md").read_text("utf-8") == "# Mine\n"
    assert bank.ensure_defaults() == []


def test_snapshot_holds_core_notes(tmp_path: Path) -> None:
    bank = MemoryBank(tmp_path / "memory")
    bank.ensure_defaults()

    snapshot = bank.snapshot()

    assert set(snapshot) == set(DEFAULT_FILES["core"])
    assert snapshot["current.md"] == DEFAULT_FILES["core"]["current.md"]


def test_snapshot_skips_missing_files(tmp_path: Path) -> None:
    assert MemoryBank(tmp_path / "memory").snapshot() == {}


def test_apply_updates_writes_known_categories(tmp_path: Path) -> None:
    bank = MemoryBank(tmp_path / "memory")
    bank.ensure_defaults()

    applied = bank.apply_updates(
        {
            "core": {"next.md": "# Next\n- ship\n"},
            "context": {"decisions.md": "# Decisions\n"},
        },
    )

    assert applied == ["core/next.md", "context/decisions.md"]
    assert (tmp_path / "memory" / "core" / "next.md").read_text("utf-8") == "# Next\n- ship\n"
    assert (tmp_path / "memory" / "context" / "decisions.md").exists()


def test_apply_updates_rejects_unsafe_targets(tmp_path: Path) -> None:
    bank = MemoryBank(tmp_path / "memory")
    bank.ensure_defaults()

    applied = bank.apply_updates(
        {
            "secrets": {"keys.md": "nope"},
            "core": {"../escape.md": "nope", "sub/dir.md": "nope", ".hidden": "nope"},
        },
    )

    assert applied == []
    assert not (tmp_path / "memory" / "escape.md").exists()
    assert not (tmp_path / "memory" / "secrets").exists()


def test_describe_lists_notes_per_category(tmp_path: Path) -> None:
    bank = MemoryBank(tmp_path / "memory")

    assert bank.describe() == "Memory bank:\n  core: (empty)\n  context: (empty)"

    bank.ensure_defaults()

    assert bank.describe() == (
        "Memory bank:\n  core: current.md, next.md, overview.md\n  context: history.md, tech.md"
    )


def test_apply_updates_skips_file_that_cannot_be_written(tmp_path: Path) -> None:
    bank = MemoryBank(tmp_path / "memory")
    bank.ensure_defaults()

    applied = bank.apply_updates(
        {"core": {"a" * 300 + ".md": "too long", "next.md": "# Next\n"}},
    )

    assert applied == ["core/next.md"]
    assert (tmp_path / "memory" / "core" / "next.md").read_text("utf-8") == "# Next\n"
    assert not any(path.name.endswith(".tmp") for path in (tmp_path / "memory" / "core").iterdir())
