"""Repository, command and patch tooling used by the pipeline."""

from .commands import CommandResult, run_command
from .ignore import IgnoreFilter
from .patch import PatchError, PatchFailureKind, PatchResult, apply_patch, validate_patch
from .snapshot import RepoSnapshot, SnapshotError, capture_snapshot, restore_snapshot, snapshot_guard
from .vcs import GitError, GitRepository
