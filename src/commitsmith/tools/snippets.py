"""Locate the file a failing command complains about and slice out context."""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

__all__ = [
    "UNKNOWN_PATH",
    "FailureLocation",
    "Snippet",
    "collect_snippet",
    "extract_failure_location",
]

UNKNOWN_PATH = "unknown"

_LOCATION_RE = re.compile(
    r"(?:^|[\s(\"'])(?P<path>[^\s:\"'(),]+\.[A-Za-z0-9]+)(?::(?P<line>\d+))?"
)


@dataclass(slots=True, frozen=True)
class FailureLocation:
    """Best guess at where a tool reported its first problem."""

    path: str
    line: int | None = None


@dataclass(slots=True)
class Snippet:
    """Captured slice of a repository file."""

    path: str
    start_line: int
    end_line: int
    content: str


def extract_failure_location(output: str) -> FailureLocation:
    """Return the first ``name.ext`` token (with optional ``:line``) in ``output``."""

    for match in _LOCATION_RE.finditer(output or ""):
        path = match.group("path")
        # Version strings and bare numbers look like ``name.ext`` too.
        if path[0].isdigit() and path.replace(".", "").isdigit():
            continue
        line_text = match.group("line")
        return FailureLocation(path=path, line=int(line_text) if line_text else None)
    return FailureLocation(path=UNKNOWN_PATH)


def collect_snippet(
    repo_root: Path,
    location: FailureLocation,
    *,
    window: int = 20,
    max_lines: int = 200,
) -> Snippet | None:
    """Read a window of ``location`` from inside ``repo_root``.

    Paths that escape the repository, missing files and undecodable files
    produce ``None``. Without a line number the head of the file is used.
    """

    if location.path == UNKNOWN_PATH:
        return None
    repo_root = repo_root.resolve()
    resolved = _resolve_repo_path(repo_root, location.path)
    if resolved is None or not resolved.is_file():
        return None
    try:
        lines = resolved.read_text(encoding="utf-8").splitlines()
    except (OSError, UnicodeDecodeError):
        return None
    if not lines:
        return None

    total = len(lines)
    padding = max(window, 0)
    if location.line is not None and location.line > 0:
        centre = min(location.line, total)
        start = max(1, centre - padding)
        end = min(total, centre + padding)
    else:
        start = 1
        end = min(total, padding * 2 + 1)
    if end - start + 1 > max_lines:
        end = start + max_lines - 1

    return Snippet(
        path=resolved.relative_to(repo_root).as_posix(),
        start_line=start,
        end_line=end,
        content="\n".join(lines[start - 1 : end]),
    )


def _resolve_repo_path(repo_root: Path, requested: str) -> Path | None:
    """Resolve ``requested`` inside ``repo_root``, trying a few normalised variants."""

    fallback: Path | None = None
    for variant in _candidate_repo_paths(requested):
        candidate = Path(variant)
        try:
            if candidate.is_absolute():
                candidate = candidate.resolve()
            else:
                candidate = (repo_root / candidate).resolve()
            candidate.relative_to(repo_root)
        except ValueError:
            continue
        if candidate.exists():
            return candidate
        if fallback is None:
            fallback = candidate
    return fallback


def _candidate_repo_paths(requested: str) -> list[str]:
    trimmed = requested.strip()
    if not trimmed:
        return []

    variants: list[str] = []
    seen: set[str] = set()

    def _add(entry: str) -> None:
        key = entry.strip()
        if not key or key in seen:
            return
        seen.add(key)
        variants.append(key)

    _add(trimmed)
    normalised = trimmed.replace("\\", "/")
    _add(normalised)
    cleaned = normalised
    while cleaned.startswith("./"):
        cleaned = cleaned[2:]
    _add(cleaned)
    return variants
