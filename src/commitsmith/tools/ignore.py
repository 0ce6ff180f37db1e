"""Project-local exclusion rules that keep the pipeline away from selected paths."""

from __future__ import annotations

import re
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

IGNORE_FILENAME = ".commit-smith-ignore"

__all__ = ["IGNORE_FILENAME", "IgnoreFilter"]


@dataclass(slots=True, frozen=True)
class _Rule:
    regex: re.Pattern[str]
    negated: bool
    directory_only: bool


@dataclass(slots=True, frozen=True)
class IgnoreFilter:
    """Glob patterns loaded from ``.commit-smith-ignore``, with ``.gitignore`` semantics.

    ``*`` and ``?`` never cross ``/`` while ``**`` spans directories. A
    pattern without an inner slash matches at any depth and one with a slash
    is relative to the repository root. A trailing slash restricts the
    pattern to directories and ``!`` re-includes a path matched earlier.
    Patterns are applied in order, the last match wins, and a path below an
    ignored directory stays ignored.
    """

    patterns: tuple[str, ...] = ()

    @classmethod
    def load(cls, repo_root: Path | str) -> "IgnoreFilter":
        """Read the ignore file under ``repo_root``; a missing file ignores nothing."""
        ignore_path = Path(repo_root) / IGNORE_FILENAME
        try:
            content = ignore_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return cls()
        return cls.from_lines(content.splitlines())

    @classmethod
    def from_lines(cls, lines: Iterable[str]) -> "IgnoreFilter":
        patterns: List[str] = []
        for raw in lines:
            line = raw.strip()
            if not line or line.startswith("#"):
                continue
            patterns.append(line)
        return cls(patterns=tuple(patterns))

    def __bool__(self) -> bool:
        return bool(self.patterns)

    def is_ignored(self, path: str | Path) -> bool:
        """Return ``True`` when ``path`` (or one of its parent directories) is excluded.

        A trailing slash on ``path`` marks it as a directory.
        """
        text = str(path).replace("\\", "/")
        is_directory = text.endswith("/")
        candidate = _normalise(text)
        if not candidate or not self.patterns:
            return False

        rules = [rule for rule in map(_compile, self.patterns) if rule is not None]
        parts = candidate.split("/")
        for depth in range(1, len(parts) + 1):
            leaf = depth == len(parts)
            if _excluded(rules, "/".join(parts[:depth]), directory=is_directory or not leaf):
                return True
        return False

    def filter(self, paths: Iterable[str]) -> List[str]:
        """Return the subset of ``paths`` that is not ignored, preserving order."""
        return [path for path in paths if not self.is_ignored(path)]


def _normalise(path: str) -> str:
    while path.startswith("./"):
        path = path[2:]
    return path.strip("/")


def _excluded(rules: Sequence[_Rule], path: str, *, directory: bool) -> bool:
    excluded = False
    for rule in rules:
        if rule.directory_only and not directory:
            continue
        if rule.regex.fullmatch(path):
            excluded = not rule.negated
    return excluded


@lru_cache(maxsize=512)
def _compile(pattern: str) -> Optional[_Rule]:
    negated = pattern.startswith("!")
    body = pattern[1:] if negated else pattern
    directory_only = body.endswith("/")
    body = body.rstrip("/")
    # A slash anywhere but the end anchors the pattern to the repository root.
    anchored = "/" in body
    body = body.lstrip("/")
    if not body:
        return None
    expression = _translate(body)
    if not anchored and not body.startswith("**"):
        expression = "(?:.*/)?" + expression
    return _Rule(regex=re.compile(expression, re.DOTALL), negated=negated, directory_only=directory_only)


def _translate(glob: str) -> str:
    """Convert one gitignore glob into a regular expression."""
    out: List[str] = []
    index, length = 0, len(glob)
    while index < length:
        if glob.startswith("**/", index) and (index == 0 or glob[index - 1] == "/"):
            out.append("(?:.*/)?")
            index += 3
            continue
        if glob.startswith("/**", index) and index + 3 == length:
            out.append("/.*")
            index += 3
            continue
        if glob.startswith("**", index):
            out.append(".*")
            index += 2
            continue

        char = glob[index]
        if char == "*":
            out.append("[^/]*")
        elif char == "?":
            out.append("[^/]")
        elif char == "\\" and index + 1 < length:
            out.append(re.escape(glob[index + 1]))
            index += 2
            continue
        elif char == "[":
            closing = glob.find("]", index + 2)
            if closing == -1:
                out.append(re.escape(char))
            else:
                members = glob[index + 1 : closing]
                if members.startswith("!"):
                    members = "^" + members[1:]
                out.append("[" + members.replace("\\", "\\\\") + "]")
                index = closing + 1
                continue
        else:
            out.append(re.escape(char))
        index += 1
    return "".join(out)
