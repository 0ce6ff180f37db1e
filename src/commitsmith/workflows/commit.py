"""Run the pipeline over the journal and turn the result into a commit."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Literal, Optional

from ..config import Settings
from ..journal import JournalError, clear_current, read_journal
from ..pipeline import CommandRunner, DecisionResolver, PipelineMode, StepId, run_configured_pipeline
from ..tools.commands import run_command
from ..tools.vcs import GitError, GitRepository
from .base import CodexService, LogFn, draft_commit_message, fix_generator_for, make_hooks

__all__ = ["ForgeCommitResult", "ForgeCommitStatus", "forge_commit_from_journal"]

LOGGER = logging.getLogger(__name__)

ForgeCommitStatus = Literal["empty", "pipeline-aborted", "commit-success", "commit-warning", "error"]


@dataclass(slots=True, frozen=True)
class ForgeCommitResult:
    status: ForgeCommitStatus
    failed_step: Optional[StepId] = None
    commit_sha: Optional[str] = None
    commit_annotation: Optional[str] = None
    push_failed: bool = False
    offline: bool = False
    message: Optional[str] = None


def forge_commit_from_journal(
    repo: GitRepository,
    settings: Settings,
    *,
    log: LogFn,
    resolver: Optional[DecisionResolver] = None,
    codex: Optional[CodexService] = None,
    command_runner: CommandRunner = run_command,
) -> ForgeCommitResult:
    """Validate the tree, commit it with a drafted message and clear the journal.

    An aborted pipeline never commits or pushes. A commit-anyway decision
    commits with the failure annotation appended and skips the automatic push.
    """

    try:
        journal = read_journal(repo.root)
        if not journal.current:
            return ForgeCommitResult(status="empty")

        outcome = run_configured_pipeline(
            repo,
            settings,
            mode=PipelineMode.EXECUTE,
            hooks=make_hooks(log, resolver),
            fix_generator=fix_generator_for(codex),
            command_runner=command_runner,
        )
        if outcome.status == "aborted":
            return ForgeCommitResult(status="pipeline-aborted", failed_step=outcome.failed_step)

        message, offline = draft_commit_message(codex, journal.current, repo.staged_paths, log)
        if outcome.commit_annotation:
            message = f"{message}\n\n{outcome.commit_annotation}"

        sha = repo.commit(message)
        log(f"[COMMIT] Created git commit {sha[:12]}.")

        push_failed = False
        if settings.commit.push_after and not outcome.suppress_auto_push:
            try:
                repo.push()
                log("[PUSH] Changes pushed to remote.")
            except GitError as error:
                push_failed = True
                log(f"[PUSH] {error}")
        elif settings.commit.push_after:
            log("[PUSH] Skipped auto-push due to pipeline decision.")

        clear_current(repo.root)
        log("[JOURNAL] Cleared current entries.")

        if outcome.status == "commit-anyway":
            return ForgeCommitResult(
                status="commit-warning",
                failed_step=outcome.failed_step,
                commit_sha=sha,
                commit_annotation=outcome.commit_annotation,
                push_failed=push_failed,
                offline=offline,
            )
        return ForgeCommitResult(status="commit-success", commit_sha=sha, push_failed=push_failed, offline=offline)
    except (GitError, JournalError, OSError) as error:
        LOGGER.exception("Commit workflow failed")
        return ForgeCommitResult(status="error", message=str(error))
