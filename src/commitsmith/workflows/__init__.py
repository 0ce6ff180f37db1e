"""Host-facing workflows built on the pipeline engine."""

from .commit import ForgeCommitResult, forge_commit_from_journal
from .dry_run import DryRunResult, perform_dry_run

__all__ = [
    "DryRunResult",
    "ForgeCommitResult",
    "forge_commit_from_journal",
    "perform_dry_run",
]
