"""Capture and restore the full working state of a repository.

A snapshot records the staged diff, the unstaged diff, every untracked file,
fully untracked directories and empty directories. Restoring a snapshot yields
exactly the captured ``git status --porcelain`` again, which lets dry runs do
real work in the tree and then put everything back.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Tuple

from .vcs import GitError, GitRepository

__all__ = [
    "ARTIFACT_DIR",
    "RepoSnapshot",
    "SnapshotError",
    "capture_snapshot",
    "restore_snapshot",
    "snapshot_guard",
]

LOGGER = logging.getLogger(__name__)

# Engine artifacts survive restores and are never part of a snapshot.
ARTIFACT_DIR = ".commit-smith"


class SnapshotError(RuntimeError):
    """Raised when a snapshot cannot be captured or restored."""


@dataclass(slots=True, frozen=True)
class RepoSnapshot:
    """Everything needed to rebuild the working state of a repository."""

    staged_patch: bytes
    unstaged_patch: bytes
    untracked_files: Tuple[str, ...]
    untracked_dirs: Tuple[str, ...]
    empty_dirs: Tuple[str, ...]
    side_copy: Path | None = None

    def discard(self) -> None:
        """Remove the side copy of untracked files."""
        if self.side_copy is not None:
            shutil.rmtree(self.side_copy, ignore_errors=True)


def _is_artifact(path: str) -> bool:
    return path == ARTIFACT_DIR or path.startswith(ARTIFACT_DIR + "/")


def _ignored_directories(repo: GitRepository) -> Tuple[str, ...]:
    result = repo.git("ls-files", "--others", "--ignored", "--exclude-standard", "--directory", "-z")
    return tuple(entry.rstrip("/") for entry in result.stdout.split("\0") if entry.endswith("/"))


def _collect_empty_directories(root: Path, pruned: Tuple[str, ...]) -> Tuple[str, ...]:
    """Walk ``root`` and return directories that contain no entries at all."""

    skipped = {".git", ARTIFACT_DIR, *pruned}
    empty: list[str] = []
    for current, dirnames, filenames in os.walk(root, followlinks=False):
        relative = Path(current).relative_to(root).as_posix()
        if relative != "." and not dirnames and not filenames:
            empty.append(relative)
        kept: list[str] = []
        for name in dirnames:
            child = name if relative == "." else f"{relative}/{name}"
            if child in skipped or os.path.islink(os.path.join(current, name)):
                continue
            kept.append(name)
        dirnames[:] = kept
    return tuple(sorted(empty))


def _copy_entry(source: Path, destination: Path) -> None:
    """Copy a file into place, recreating symlinks as symlinks."""

    destination.parent.mkdir(parents=True, exist_ok=True)
    if destination.is_symlink() or destination.is_file():
        destination.unlink()
    elif destination.is_dir():
        shutil.rmtree(destination)

    if source.is_symlink():
        target = os.readlink(source)
        os.symlink(target, destination, target_is_directory=source.is_dir())
        return
    shutil.copy2(source, destination)


def capture_snapshot(repo: GitRepository) -> RepoSnapshot:
    """Record staged, unstaged and untracked state of ``repo``.

    The read-only git queries run concurrently and are combined once all of
    them have completed. Untracked files are copied to a temporary side
    location so they can be put back after a ``git clean``.
    """

    try:
        with ThreadPoolExecutor(max_workers=5, thread_name_prefix="commitsmith-snapshot") as pool:
            staged_future = pool.submit(repo.diff, staged=True, binary=True)
            unstaged_future = pool.submit(repo.diff, binary=True)
            untracked_future = pool.submit(repo.list_untracked)
            directories_future = pool.submit(repo.untracked_directories)
            ignored_future = pool.submit(_ignored_directories, repo)
            staged_patch = staged_future.result()
            unstaged_patch = unstaged_future.result()
            untracked = untracked_future.result()
            directories = directories_future.result()
            ignored = ignored_future.result()
    except GitError as error:
        raise SnapshotError(f"Unable to capture repository snapshot: {error}") from error

    untracked_files = tuple(path for path in untracked if not _is_artifact(path))
    untracked_dirs = tuple(path for path in directories if not _is_artifact(path))

    try:
        empty_dirs = _collect_empty_directories(repo.root, ignored)
    except OSError as error:
        raise SnapshotError(f"Unable to scan for empty directories: {error}") from error

    side_copy: Path | None = None
    if untracked_files:
        side_copy = Path(tempfile.mkdtemp(prefix="commitsmith-snapshot-"))
        try:
            for relative in untracked_files:
                _copy_entry(repo.root / relative, side_copy / relative)
        except OSError as error:
            shutil.rmtree(side_copy, ignore_errors=True)
            raise SnapshotError(f"Unable to copy untracked files aside: {error}") from error

    snapshot = RepoSnapshot(
        staged_patch=staged_patch,
        unstaged_patch=unstaged_patch,
        untracked_files=untracked_files,
        untracked_dirs=untracked_dirs,
        empty_dirs=empty_dirs,
        side_copy=side_copy,
    )
    LOGGER.debug(
        "Captured snapshot: %d staged bytes, %d unstaged bytes, %d untracked files, %d empty dirs",
        len(staged_patch),
        len(unstaged_patch),
        len(untracked_files),
        len(empty_dirs),
    )
    return snapshot


def restore_snapshot(repo: GitRepository, snapshot: RepoSnapshot) -> None:
    """Rebuild the state recorded in ``snapshot``; safe to call repeatedly."""

    try:
        repo.reset_hard()
        repo.clean(excludes=(ARTIFACT_DIR,))
        if snapshot.staged_patch.strip():
            repo.apply(snapshot.staged_patch, index=True, binary=True)
        if snapshot.unstaged_patch.strip():
            repo.apply(snapshot.unstaged_patch, binary=True)
        if snapshot.side_copy is not None:
            for relative in snapshot.untracked_files:
                _copy_entry(snapshot.side_copy / relative, repo.root / relative)
        for relative in sorted({*snapshot.untracked_dirs, *snapshot.empty_dirs}, key=len):
            (repo.root / relative).mkdir(parents=True, exist_ok=True)
    except (GitError, OSError) as error:
        location = snapshot.side_copy or "<none>"
        raise SnapshotError(
            f"Unable to restore repository snapshot: {error}. Untracked files are preserved at {location}."
        ) from error
    LOGGER.debug("Restored snapshot into %s", repo.root)


@contextmanager
def snapshot_guard(repo: GitRepository) -> Iterator[RepoSnapshot]:
    """Capture a snapshot and restore it however the block exits."""

    snapshot = capture_snapshot(repo)
    try:
        yield snapshot
    finally:
        restore_snapshot(repo, snapshot)
        snapshot.discard()
