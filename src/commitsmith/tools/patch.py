"""Unified diff helpers with guard rails for AI-proposed patches."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import PurePosixPath
from typing import Any, Mapping, Tuple

from .ignore import IgnoreFilter
from .vcs import GitError, GitRepository


class PatchFailureKind(str, Enum):
    """Reasons a patch can be refused."""

    EMPTY = "empty"
    MISSING_HEADER = "missing-header"
    BAD_PREFIX = "bad-prefix"
    PATH_TRAVERSAL = "path-traversal"
    FORBIDDEN_PATH = "forbidden-path"
    MALFORMED_HUNK = "malformed-hunk"
    TOO_LARGE = "too-large"
    IGNORED_PATH = "ignored-path"
    APPLY_CHECK_FAILED = "apply-check-failed"
    APPLY_FAILED = "apply-failed"


class PatchError(RuntimeError):
    """Raised when a patch fails validation or application."""

    def __init__(
        self,
        message: str,
        *,
        kind: PatchFailureKind,
        details: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.details: dict[str, Any] = dict(details or {})


@dataclass(slots=True, frozen=True)
class PatchValidation:
    """Files referenced by a diff that passed validation."""

    touched_files: Tuple[str, ...]


@dataclass(slots=True)
class PatchTelemetry:
    """Structured telemetry for patch validation and application."""

    patch_bytes: int = 0
    patch_lines: int = 0
    check_stderr: str = ""
    failing_hunks: Tuple[Mapping[str, Any], ...] = ()
    touched_paths: Tuple[str, ...] = ()
    ignored_paths: Tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "patch_bytes": self.patch_bytes,
            "patch_lines": self.patch_lines,
            "check_stderr": self.check_stderr,
            "failing_hunks": [dict(item) for item in self.failing_hunks],
            "touched_paths": list(self.touched_paths),
            "ignored_paths": list(self.ignored_paths),
        }


@dataclass(slots=True)
class PatchResult:
    """Outcome of applying a patch to the repository."""

    paths: Tuple[str, ...]
    stdout: str
    stderr: str
    staged: bool
    telemetry: PatchTelemetry = field(default_factory=PatchTelemetry)


LOGGER = logging.getLogger(__name__)
TELEMETRY_LOGGER = logging.getLogger("commitsmith.telemetry")
NULL_PATH = "/dev/null"

_HUNK_HEADER = re.compile(
    r"^@@ -(?P<old_start>\d+)(?:,(?P<old_count>\d+))? "
    r"\+(?P<new_start>\d+)(?:,(?P<new_count>\d+))? @@"
)
_DRIVE_PATH = re.compile(r"^[A-Za-z]:")
_GIT_HEADER = "diff --git "
_EXTENDED_PATH_HEADERS = ("rename from ", "rename to ", "copy from ", "copy to ")
_C_ESCAPES = {"a": 7, "b": 8, "t": 9, "n": 10, "v": 11, "f": 12, "r": 13, '"': 34, "\\": 92}
_PATCH_FAILED_RE = re.compile(r"error: patch failed: (?P<path>.+?)(?::(?P<line>\d+))?$")
_PATCH_DOES_NOT_APPLY_RE = re.compile(r"error: (?P<path>.+?): patch does not apply")
_HUNK_FAILED_RE = re.compile(r"error: (?P<path>.+?): hunk #(?P<hunk>\d+) failed at (?P<line>-?\d+)")


def _serialise_event_value(value: Any) -> Any:
    """Convert telemetry payload values into JSON-friendly representations."""
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (list, tuple, set)):
        return [_serialise_event_value(item) for item in value]
    if isinstance(value, Mapping):
        return {str(key): _serialise_event_value(child) for key, child in value.items()}
    return str(value)


def _emit_patch_event(event: str, **fields: Any) -> None:
    """Log structured telemetry events when validating and applying patches."""
    payload = {"event": event, "timestamp": datetime.now(timezone.utc).isoformat()}
    for key, value in fields.items():
        payload[key] = _serialise_event_value(value)
    TELEMETRY_LOGGER.info(json.dumps(payload, separators=(",", ":"), ensure_ascii=True))


def _parse_git_apply_failures(output: str) -> Tuple[Mapping[str, Any], ...]:
    """Parse git apply stderr for failing hunk metadata."""
    if not output:
        return ()
    entries: list[dict[str, Any]] = []
    for raw_line in output.splitlines():
        line = raw_line.strip()
        if not line:
            continue
        match = _HUNK_FAILED_RE.match(line)
        if match:
            entries.append(
                {
                    "path": match.group("path"),
                    "hunk": int(match.group("hunk")),
                    "line": int(match.group("line")),
                    "reason": "hunk_failed",
                }
            )
            continue
        match = _PATCH_FAILED_RE.match(line)
        if match:
            line_text = match.group("line")
            entries.append(
                {
                    "path": match.group("path"),
                    "line": int(line_text) if line_text is not None else None,
                    "reason": "patch_failed",
                }
            )
            continue
        match = _PATCH_DOES_NOT_APPLY_RE.match(line)
        if match:
            entries.append({"path": match.group("path"), "reason": "does_not_apply"})
    return tuple(entries)


def _unquote_path(operand: str) -> str:
    """Decode a C-quoted git path (``"a/\\303\\244.txt"``) back into text.

    Octal escapes are raw bytes of the UTF-8 encoded name, so they are
    collected as bytes and decoded together.
    """
    if len(operand) < 2 or not (operand.startswith('"') and operand.endswith('"')):
        return operand
    body = operand[1:-1]
    decoded = bytearray()
    index = 0
    while index < len(body):
        char = body[index]
        if char != "\\":
            decoded += char.encode("utf-8")
            index += 1
            continue
        escape = body[index + 1 : index + 2]
        octal = body[index + 1 : index + 4]
        if escape in _C_ESCAPES:
            decoded.append(_C_ESCAPES[escape])
            index += 2
        elif len(octal) == 3 and all(digit in "01234567" for digit in octal):
            decoded.append(int(octal, 8))
            index += 4
        else:
            raise PatchError(f"Invalid escape in quoted path: {operand}", kind=PatchFailureKind.BAD_PREFIX)
    try:
        return decoded.decode("utf-8")
    except UnicodeDecodeError as error:
        raise PatchError(f"Quoted path is not valid UTF-8: {operand}", kind=PatchFailureKind.BAD_PREFIX) from error


def _header_operand(raw: str) -> str:
    """Strip trailing timestamps and git quoting from a ``---``/``+++`` operand."""
    return _unquote_path(raw.split("\t", 1)[0].rstrip())


def _split_git_header(line: str) -> tuple[str, str]:
    """Split the two operands of a ``diff --git a/X b/Y`` line."""
    rest = line[len(_GIT_HEADER) :].strip()
    if rest.startswith('"'):
        closing = _closing_quote(rest)
        if closing is not None:
            return rest[: closing + 1], rest[closing + 1 :].strip()
    elif ' "' in rest:
        # Unquoted names never contain a double quote, so this starts the right operand.
        left, right = rest.split(' "', 1)
        return left, '"' + right
    splits = [match.start() for match in re.finditer(" b/", rest)]
    for position in splits:
        left, right = rest[:position], rest[position + 1 :]
        if left[2:] == right[2:]:
            return left, right
    if splits:
        return rest[: splits[0]], rest[splits[0] + 1 :]
    raise PatchError(f"Cannot parse file names from '{line}'.", kind=PatchFailureKind.BAD_PREFIX)


def _closing_quote(text: str) -> int | None:
    escaped = False
    for index in range(1, len(text)):
        char = text[index]
        if escaped:
            escaped = False
        elif char == "\\":
            escaped = True
        elif char == '"':
            return index
    return None


def _strip_prefix(operand: str, prefix: str, header: str) -> str | None:
    """Return the repository-relative path for one side of a file header."""
    if operand == NULL_PATH:
        return None
    if operand.startswith(("/", "\\")) or _DRIVE_PATH.match(operand):
        raise PatchError(
            f"Absolute paths are not permitted in patches: {operand}",
            kind=PatchFailureKind.PATH_TRAVERSAL,
        )
    if not operand.startswith(prefix):
        raise PatchError(
            f"Expected '{header} {prefix}...' or '{header} {NULL_PATH}', got '{header} {operand}'.",
            kind=PatchFailureKind.BAD_PREFIX,
        )
    path = operand[len(prefix) :]
    if not path:
        raise PatchError(f"Empty path in '{header}' header.", kind=PatchFailureKind.BAD_PREFIX)
    return path


def _validate_path(path: str) -> None:
    """Enforce the repository-relative path contract for a diff entry."""
    normalised = path.replace("\\", "/")
    if normalised.startswith("/") or _DRIVE_PATH.match(normalised):
        raise PatchError(
            f"Absolute paths are not permitted in patches: {path}",
            kind=PatchFailureKind.PATH_TRAVERSAL,
        )
    parts = PurePosixPath(normalised).parts
    if any(part == ".." for part in parts):
        raise PatchError(f"Path escaping detected in patch: {path}", kind=PatchFailureKind.PATH_TRAVERSAL)
    if parts and parts[0] == ".git":
        raise PatchError("Patches may not target the .git directory.", kind=PatchFailureKind.FORBIDDEN_PATH)


def _default_count(value: str | None) -> int:
    """Return the number of lines represented in a hunk header."""
    return int(value) if value is not None else 1


def validate_patch(diff: str, *, max_bytes: int | None = None) -> PatchValidation:
    """Check ``diff`` against the unified-diff contract and collect touched files.

    Hunk bodies are consumed by their declared line counts, so removed lines
    that happen to start with ``--`` are never mistaken for file headers.
    """

    if not diff or not diff.strip():
        raise PatchError("Patch is empty.", kind=PatchFailureKind.EMPTY)
    if max_bytes is not None and max_bytes > 0:
        size = len(diff.encode("utf-8", errors="replace"))
        if size > max_bytes:
            raise PatchError(
                f"Patch size {size} bytes exceeds limit of {max_bytes} bytes.",
                kind=PatchFailureKind.TOO_LARGE,
            )

    lines = diff.splitlines()
    touched: dict[str, None] = {}
    seen_header = False
    current = "<unknown>"
    index = 0

    while index < len(lines):
        line = lines[index]

        if line.startswith("@@"):
            match = _HUNK_HEADER.match(line)
            if not match:
                raise PatchError(f"Malformed hunk header: {line}", kind=PatchFailureKind.MALFORMED_HUNK)
            if not seen_header:
                raise PatchError("Hunk appears before any ---/+++ header.", kind=PatchFailureKind.MISSING_HEADER)
            old_remaining = _default_count(match.group("old_count"))
            new_remaining = _default_count(match.group("new_count"))
            index += 1
            while index < len(lines) and (old_remaining > 0 or new_remaining > 0):
                body = lines[index]
                if body.startswith("\\"):
                    index += 1
                    continue
                prefix = body[:1]
                if prefix == "+":
                    new_remaining -= 1
                elif prefix == "-":
                    old_remaining -= 1
                elif prefix in {" ", ""}:
                    old_remaining -= 1
                    new_remaining -= 1
                else:
                    break
                if old_remaining < 0 or new_remaining < 0:
                    break
                index += 1
            if old_remaining != 0 or new_remaining != 0:
                raise PatchError(
                    f"Patch hunk line count mismatch for {current}: {line}",
                    kind=PatchFailureKind.MALFORMED_HUNK,
                )
            continue

        if line.startswith(_GIT_HEADER):
            # Blocks without ---/+++ (renames, mode changes, binaries) only name their files here.
            for operand, prefix in zip(_split_git_header(line), ("a/", "b/")):
                path = _strip_prefix(_header_operand(operand), prefix, "diff --git")
                if path is not None:
                    _validate_path(path)
                    touched.setdefault(path, None)
            index += 1
            continue

        if line.startswith(_EXTENDED_PATH_HEADERS):
            keyword = next(header for header in _EXTENDED_PATH_HEADERS if line.startswith(header))
            path = _unquote_path(line[len(keyword) :].rstrip())
            if not path:
                raise PatchError(f"Empty path in '{keyword.strip()}' header.", kind=PatchFailureKind.BAD_PREFIX)
            _validate_path(path)
            touched.setdefault(path, None)
            index += 1
            continue

        if line.startswith("--- "):
            if index + 1 >= len(lines) or not lines[index + 1].startswith("+++ "):
                raise PatchError(
                    f"'{line}' is not followed by a '+++' header.",
                    kind=PatchFailureKind.MISSING_HEADER,
                )
            left = _strip_prefix(_header_operand(line[4:]), "a/", "---")
            right = _strip_prefix(_header_operand(lines[index + 1][4:]), "b/", "+++")
            if left is None and right is None:
                raise PatchError(
                    f"Both sides of a file header are {NULL_PATH}.",
                    kind=PatchFailureKind.BAD_PREFIX,
                )
            for candidate in (left, right):
                if candidate is None:
                    continue
                _validate_path(candidate)
                touched.setdefault(candidate, None)
            current = right or left or current
            seen_header = True
            index += 2
            continue

        if line.startswith("+++ "):
            raise PatchError(f"'{line}' is not preceded by a '---' header.", kind=PatchFailureKind.MISSING_HEADER)

        index += 1

    if not seen_header:
        raise PatchError("Patch does not contain a ---/+++ header pair.", kind=PatchFailureKind.MISSING_HEADER)

    return PatchValidation(touched_files=tuple(touched))


def _revert(repo: GitRepository, diff: str) -> bool:
    try:
        repo.apply(diff, reverse=True)
    except GitError as error:
        LOGGER.warning("Reverting patch after staging failure failed: %s", error)
        return False
    return True


def apply_patch(
    repo: GitRepository,
    diff: str,
    *,
    ignore_filter: IgnoreFilter | None = None,
    stage: bool = True,
    max_bytes: int | None = None,
) -> PatchResult:
    """Apply ``diff`` to ``repo`` all-or-nothing and restage only the files it touched."""

    telemetry = PatchTelemetry(
        patch_bytes=len((diff or "").encode("utf-8", errors="replace")),
        patch_lines=(diff or "").count("\n"),
    )

    try:
        validation = validate_patch(diff, max_bytes=max_bytes)
    except PatchError as error:
        error.details.setdefault("telemetry", telemetry.to_dict())
        _emit_patch_event("patch_validation_failed", stage="validate", kind=error.kind, message=str(error))
        raise

    touched = validation.touched_files
    telemetry.touched_paths = touched

    if ignore_filter:
        ignored = tuple(path for path in touched if ignore_filter.is_ignored(path))
        telemetry.ignored_paths = ignored
        if ignored:
            if len(ignored) == len(touched):
                message = "Patch only touches ignored files; skipping application."
            else:
                message = "Patch includes ignored files; skipping application."
            payload = telemetry.to_dict()
            _emit_patch_event("patch_validation_failed", stage="ignore", telemetry=payload)
            raise PatchError(message, kind=PatchFailureKind.IGNORED_PATH, details={"telemetry": payload})

    try:
        repo.apply(diff, check=True)
    except GitError as error:
        telemetry.check_stderr = str(error)
        telemetry.failing_hunks = _parse_git_apply_failures(str(error))
        payload = telemetry.to_dict()
        _emit_patch_event("patch_validation_failed", stage="git-apply-check", telemetry=payload)
        raise PatchError(
            f"Patch failed validation: {error}",
            kind=PatchFailureKind.APPLY_CHECK_FAILED,
            details={"telemetry": payload},
        ) from error

    _emit_patch_event("patch_validation_passed", telemetry=telemetry.to_dict())

    try:
        result = repo.apply(diff)
    except GitError as error:
        payload = telemetry.to_dict()
        _emit_patch_event("patch_apply_failed", telemetry=payload, message=str(error))
        raise PatchError(
            f"Patch failed to apply: {error}",
            kind=PatchFailureKind.APPLY_FAILED,
            details={"telemetry": payload},
        ) from error

    if stage:
        try:
            repo.stage_paths(touched)
        except GitError as error:
            rolled_back = _revert(repo, diff)
            payload = telemetry.to_dict()
            _emit_patch_event("patch_apply_failed", telemetry=payload, message=str(error), rolled_back=rolled_back)
            suffix = "" if rolled_back else " and the patch could not be reverted"
            raise PatchError(
                f"Patch applied but staging failed{suffix}: {error}",
                kind=PatchFailureKind.APPLY_FAILED,
                details={"telemetry": payload, "rolled_back": rolled_back},
            ) from error

    _emit_patch_event("patch_apply_succeeded", telemetry=telemetry.to_dict(), staged=stage)

    return PatchResult(
        paths=touched,
        stdout=result.stdout,
        stderr=result.stderr,
        staged=stage,
        telemetry=telemetry,
    )


__all__ = [
    "NULL_PATH",
    "PatchError",
    "PatchFailureKind",
    "PatchResult",
    "PatchTelemetry",
    "PatchValidation",
    "apply_patch",
    "validate_patch",
]
