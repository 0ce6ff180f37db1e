"""The ``.ai-commit-journal.yml`` file that collects notes for the next commit."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Mapping

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

__all__ = [
    "JOURNAL_FILENAME",
    "JournalData",
    "JournalError",
    "add_entry",
    "clear_current",
    "initialize_journal",
    "journal_path",
    "read_journal",
    "update_journal_meta",
]

JOURNAL_FILENAME = ".ai-commit-journal.yml"


class JournalError(RuntimeError):
    """Raised when the journal cannot be read, parsed, or updated."""


class JournalData(BaseModel):
    """Journal contents: pending entries plus free-form metadata."""

    model_config = ConfigDict(extra="forbid")

    current: List[str] = Field(default_factory=list)
    meta: Dict[str, Any] = Field(default_factory=dict)


def journal_path(root: Path | str) -> Path:
    return Path(root).resolve() / JOURNAL_FILENAME


def _write_journal(data: JournalData, path: Path) -> None:
    payload = data.model_dump()
    try:
        path.write_text(yaml.safe_dump(payload, sort_keys=False, allow_unicode=True), encoding="utf-8")
    except OSError as error:
        raise JournalError(f"Failed to write journal at {path}: {error}") from error


def _load_journal(path: Path) -> JournalData:
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as error:
        raise JournalError(f"Failed to read journal at {path}: {error}") from error
    try:
        parsed = yaml.safe_load(raw) or {}
    except yaml.YAMLError as error:
        raise JournalError(f"Journal file contains invalid YAML: {error}") from error
    if not isinstance(parsed, dict):
        raise JournalError("Journal schema validation failed: top level must be a mapping.")
    if parsed.get("meta") is None:
        parsed["meta"] = {}
    try:
        return JournalData.model_validate(parsed)
    except ValidationError as error:
        raise JournalError(f"Journal schema validation failed: {error}") from error


def initialize_journal(root: Path | str, *, create_if_missing: bool = True) -> None:
    """Create an empty journal when absent, or validate the existing one."""
    path = journal_path(root)
    if not path.exists():
        if create_if_missing:
            _write_journal(JournalData(), path)
        return
    try:
        _load_journal(path)
    except JournalError as error:
        raise JournalError(f"Existing journal failed validation: {error}") from error


def read_journal(root: Path | str, *, create_if_missing: bool = True) -> JournalData:
    path = journal_path(root)
    if create_if_missing:
        initialize_journal(root)
    elif not path.exists():
        return JournalData()
    return _load_journal(path)


def add_entry(root: Path | str, entry: str) -> JournalData:
    """Append a trimmed, non-empty entry to ``current``."""
    if not entry or not entry.strip():
        raise JournalError("Journal entry text must be a non-empty string.")
    journal = read_journal(root)
    journal.current.append(entry.strip())
    _write_journal(journal, journal_path(root))
    return journal


def update_journal_meta(root: Path | str, updates: Mapping[str, Any]) -> JournalData:
    journal = read_journal(root)
    if not updates:
        return journal
    journal.meta.update(dict(updates))
    _write_journal(journal, journal_path(root))
    return journal


def clear_current(root: Path | str) -> None:
    """Drop every pending entry while keeping ``meta``."""
    journal = read_journal(root)
    journal.current = []
    _write_journal(journal, journal_path(root))
