"""Minimal git helpers
The helpers below expose the narrow plumbing surface the pipeline needs:
staging, committing, pushing, binary-safe diffs, untracked listings, and the
reset/clean/apply primitives used to restore snapshots.
"""

from __future__ import annotations

from pathlib import Path
from typing import Iterable, List, Sequence

import shutil
import subprocess


class GitError(RuntimeError):
    """Raised when a git command fails or the repository cannot be used."""


class GitRepository:
    """Lightweight wrapper around ``git`` commands."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root).resolve()
        if not (self.root / ".git").exists():
            raise GitError(f"Not a git repository: {self.root}")

    @classmethod
    def discover(cls, start: Path | str | None = None) -> "GitRepository":
        """Locate the nearest git repository starting from ``start``."""

        path = Path(start or Path.cwd()).resolve()
        for candidate in (path, *path.parents):
            if (candidate / ".git").exists():
                return cls(candidate)
        raise GitError(f"Unable to locate a git repository from {path}")

    @classmethod
    def initialise(cls, root: Path | str) -> "GitRepository":
        """Initialise a new git repository at ``root`` with an initial commit."""

        path = Path(root).resolve()
        path.mkdir(parents=True, exist_ok=True)
        git_dir = path / ".git"
        if git_dir.exists():
            shutil.rmtree(git_dir)

        def _run(args: Sequence[str], *, check: bool = True) -> subprocess.CompletedProcess[str]:
            process = subprocess.run(
                ["git", *args],
                cwd=path,
                capture_output=True,
                text=True,
                check=False,
            )
            if check and process.returncode != 0:
                message = process.stderr.strip() or process.stdout.strip() or "unknown git error"
                raise GitError(f"git {' '.join(args)} failed: {message}")
            return process

        _run(["init"])

        def _ensure_config(key: str, value: str) -> None:
            probe = _run(["config", "--get", key], check=False)
            if probe.returncode != 0 or not probe.stdout.strip():
                _run(["config", key, value])

        _ensure_config("user.email", "smith@example.com")
        _ensure_config("user.name", "Commit Smith")

        _run(["add", "."])
        _run(["commit", "--allow-empty", "-m", "Initial commit"])

        return cls(path)

    # ------------------------------------------------------------------ git IO
    def _run_git_bytes(
        self,
        args: Sequence[str],
        *,
        input: bytes | None = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess[bytes]:
        command = ["git", *args]
        try:
            process = subprocess.run(
                command,
                cwd=self.root,
                input=input,
                capture_output=True,
                check=False,
            )
        except OSError as error:
            raise GitError(f"Unable to run git {' '.join(args)}: {error}") from error
        if check and process.returncode != 0:
            stderr = process.stderr.decode("utf-8", errors="replace").strip()
            stdout = process.stdout.decode("utf-8", errors="replace").strip()
            message = stderr or stdout or "unknown git error"
            raise GitError(f"git {' '.join(args)} failed: {message}")
        return process

    def _run_git(
        self,
        args: Sequence[str],
        *,
        input: str | None = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        encoded = input.encode("utf-8") if input is not None else None
        process = self._run_git_bytes(args, input=encoded, check=check)
        stdout = process.stdout.decode("utf-8", errors="replace") if process.stdout else ""
        stderr = process.stderr.decode("utf-8", errors="replace") if process.stderr else ""
        return subprocess.CompletedProcess(process.args, process.returncode, stdout, stderr)

    def git(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        """Execute ``git`` with ``args`` relative to the repository root."""

        return self._run_git(list(args), check=check)

    def has_head(self) -> bool:
        """Return ``True`` once the repository has at least one commit."""

        result = self._run_git(["rev-parse", "--verify", "--quiet", "HEAD"], check=False)
        return result.returncode == 0 and bool(result.stdout.strip())

    # ------------------------------------------------------------- repo status
    def status_entries(self) -> List[tuple[str, str]]:
        """Return porcelain status entries as ``(status, path)`` pairs.

        Untracked directories are expanded to individual files and renames are
        reported under their new path.
        """

        result = self._run_git(["--no-optional-locks", "status", "--porcelain", "-z", "--untracked-files=all"], check=True)
        tokens = result.stdout.split("\0")
        entries: List[tuple[str, str]] = []
        index = 0
        while index < len(tokens):
            token = tokens[index]
            index += 1
            if not token:
                continue
            status = token[:2]
            path = token[3:]
            if status[0] in {"R", "C"}:
                # -z emits the source path as a separate trailing token.
                index += 1
            entries.append((status, path))
        return entries

    def changed_paths(self) -> List[str]:
        """Return every path with staged, unstaged, or untracked changes."""

        seen: dict[str, None] = {}
        for _, path in self.status_entries():
            seen.setdefault(path, None)
        return list(seen)

    def staged_paths(self) -> List[str]:
        """Return the paths currently recorded in the index relative to HEAD."""

        result = self._run_git(["diff", "--name-only", "--cached", "-z"], check=True)
        return [entry for entry in result.stdout.split("\0") if entry]

    def list_untracked(self) -> List[str]:
        """Return untracked files that are not excluded by ignore rules."""

        result = self._run_git(["ls-files", "--others", "--exclude-standard", "-z"], check=True)
        return [entry for entry in result.stdout.split("\0") if entry]

    def untracked_directories(self) -> List[str]:
        """Return directories whose entire content is untracked."""

        result = self._run_git(["--no-optional-locks", "status", "--porcelain=v2", "-z"], check=True)
        directories: List[str] = []
        for entry in result.stdout.split("\0"):
            if not entry.startswith("? "):
                continue
            path = entry[2:]
            if path.endswith("/"):
                directories.append(path[:-1])
        return directories

    # --------------------------------------------------------------- staging
    def stage_paths(self, paths: Iterable[str]) -> None:
        """Stage exactly ``paths`` (additions, modifications and deletions)."""

        selected = [path for path in paths if path]
        if not selected:
            return
        self._run_git(["add", "--all", "--", *selected], check=True)

    def stage_all(self) -> None:
        """Stage every pending change in the working tree."""

        self._run_git(["add", "--all"], check=True)

    def commit(self, message: str) -> str:
        """Commit the staged changes and return the new commit SHA."""

        if not message.strip():
            raise GitError("Commit message must not be empty.")
        self._run_git(["commit", "-F", "-"], input=message, check=True)
        rev = self._run_git(["rev-parse", "HEAD"], check=True)
        return rev.stdout.strip()

    def push(self, remote: str | None = None, branch: str | None = None) -> None:
        """Push the current branch, optionally to an explicit ``remote``/``branch``."""

        args: List[str] = ["push"]
        if remote:
            args.append(remote)
            if branch:
                args.append(branch)
        self._run_git(args, check=True)

    # ----------------------------------------------------------- diff helpers
    def diff(self, *paths: str, staged: bool = False, binary: bool = False) -> bytes:
        """Return the raw unified diff for ``paths`` (defaults to the whole repo)."""

        args: List[str] = ["diff"]
        if binary:
            args.append("--binary")
        if staged:
            args.append("--cached")
        if paths:
            args.extend(["--", *paths])
        return self._run_git_bytes(args, check=True).stdout

    def apply(
        self,
        patch: bytes | str,
        *,
        check: bool = False,
        index: bool = False,
        binary: bool = False,
        reverse: bool = False,
    ) -> subprocess.CompletedProcess[str]:
        """Feed ``patch`` to ``git apply`` over stdin; raises on rejection."""

        payload = patch.encode("utf-8") if isinstance(patch, str) else patch
        args: List[str] = ["apply", "--whitespace=nowarn"]
        if check:
            args.append("--check")
        if index:
            args.append("--index")
        if binary:
            args.append("--binary")
        if reverse:
            args.append("--reverse")
        args.append("-")
        process = self._run_git_bytes(args, input=payload, check=True)
        stdout = process.stdout.decode("utf-8", errors="replace") if process.stdout else ""
        stderr = process.stderr.decode("utf-8", errors="replace") if process.stderr else ""
        return subprocess.CompletedProcess(process.args, process.returncode, stdout, stderr)

    # -------------------------------------------------------------- recovery
    def reset_hard(self) -> None:
        """Reset the index and tracked files to ``HEAD``.

        Repositories without commits get an empty index instead, which leaves
        previously staged files untracked for :meth:`clean` to remove.
        """

        if self.has_head():
            self._run_git(["reset", "--hard", "HEAD"], check=True)
        else:
            self._run_git(["read-tree", "--empty"], check=True)

    def clean(self, *, excludes: Sequence[str] = ()) -> None:
        """Remove untracked files and directories, keeping ``excludes``."""

        args: List[str] = ["clean", "-fd"]
        for pattern in excludes:
            args.extend(["-e", pattern])
        self._run_git(args, check=True)


__all__ = ["GitError", "GitRepository"]
