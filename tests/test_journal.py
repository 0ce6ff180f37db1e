from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from commitsmith.journal import (
    JOURNAL_FILENAME,
    JournalError,
    add_entry,
    clear_current,
    initialize_journal,
    journal_path,
    read_journal,
    update_journal_meta,
)


def test_initialize_creates_empty_journal(tmp_path: Path) -> None:
    initialize_journal(tmp_path)

    data = yaml.safe_load((tmp_path / JOURNAL_FILENAME).read_text(encoding="utf-8"))
    assert data == {"current": [], "meta": {}}


def test_read_without_create_leaves_disk_alone(tmp_path: Path) -> None:
    journal = read_journal(tmp_path, create_if_missing=False)

    assert journal.current == []
    assert not journal_path(tmp_path).exists()


def test_entries_are_trimmed_and_kept_in_order(tmp_path: Path) -> None:
    add_entry(tmp_path, "  first change  ")
    add_entry(tmp_path, "second change")

    assert read_journal(tmp_path).current == ["first change", "second change"]


@pytest.mark.parametrize("entry", ["", "   \n"])
def test_blank_entries_are_rejected(tmp_path: Path, entry: str) -> None:
    with pytest.raises(JournalError):
        add_entry(tmp_path, entry)


def test_clear_keeps_metadata(tmp_path: Path) -> None:
    add_entry(tmp_path, "work")
    update_journal_meta(tmp_path, {"last_run": "2024-05-01"})

    clear_current(tmp_path)

    journal = read_journal(tmp_path)
    assert journal.current == []
    assert journal.meta == {"last_run": "2024-05-01"}


def test_null_meta_is_treated_as_empty(tmp_path: Path) -> None:
    journal_path(tmp_path).write_text("current:\n  - pending\nmeta:\n", encoding="utf-8")

    assert read_journal(tmp_path).meta == {}


@pytest.mark.parametrize(
    "text",
    [
        "current: [unterminated\n",
        "- not\n- a mapping\n",
        "current: pending\n",
        "current: []\nunexpected: 1\n",
    ],
)
def test_invalid_journal_files_raise(tmp_path: Path, text: str) -> None:
    journal_path(tmp_path).write_text(text, encoding="utf-8")

    with pytest.raises(JournalError):
        read_journal(tmp_path)
