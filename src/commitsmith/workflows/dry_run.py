"""Exercise the pipeline without changing the repository and keep the proposals."""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

from ..config import Settings
from ..journal import JournalError, read_journal
from ..pipeline import (
    CommandRunner,
    DecisionResolver,
    DryRunPatchInfo,
    PipelineMode,
    StepId,
    StepResult,
    run_configured_pipeline,
)
from ..tools.commands import run_command
from ..tools.snapshot import ARTIFACT_DIR
from ..tools.vcs import GitError, GitRepository
from .base import CodexService, LogFn, draft_commit_message, fix_generator_for, make_hooks

__all__ = [
    "COMMIT_MESSAGE_FILENAME",
    "DryRunResult",
    "SUMMARY_FILENAME",
    "artifact_timestamp",
    "perform_dry_run",
]

LOGGER = logging.getLogger(__name__)

SUMMARY_FILENAME = "summary.json"
COMMIT_MESSAGE_FILENAME = "COMMIT_MESSAGE.md"

DryRunStatus = Literal["empty", "aborted", "completed", "error"]


@dataclass(slots=True, frozen=True)
class DryRunResult:
    status: DryRunStatus
    folder: Optional[Path] = None
    failed_step: Optional[StepId] = None
    message: Optional[str] = None


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def artifact_timestamp(moment: Optional[datetime] = None) -> str:
    """ISO-8601 timestamp that is safe to use as a directory name."""
    moment = moment or datetime.now(timezone.utc)
    stamp = moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
    return stamp.replace(":", "-")


def _prepare_artifact_dir(repo_root: Path) -> Path:
    root = repo_root / ARTIFACT_DIR
    root.mkdir(parents=True, exist_ok=True)
    # Keep engine output out of ``git status``.
    marker = root / ".gitignore"
    if not marker.exists():
        marker.write_text("*\n", encoding="utf-8")
    folder = root / "patches" / artifact_timestamp()
    folder.mkdir(parents=True, exist_ok=True)
    return folder


def perform_dry_run(
    repo: GitRepository,
    settings: Settings,
    *,
    log: LogFn,
    resolver: Optional[DecisionResolver] = None,
    codex: Optional[CodexService] = None,
    command_runner: CommandRunner = run_command,
) -> DryRunResult:
    """Run the pipeline in dry-run mode and write its artefacts.

    The folder ``.commit-smith/patches/<timestamp>/`` receives one
    ``patch-NN.diff`` per proposed fix, the drafted commit message and a
    ``summary.json``. ``SnapshotError`` is not converted into a result: a dry
    run that could not restore the tree must fail loudly.
    """

    try:
        journal = read_journal(repo.root, create_if_missing=False)
        if not journal.current:
            return DryRunResult(status="empty")

        folder = _prepare_artifact_dir(repo.root)
        steps: List[Dict[str, Any]] = []
        patches: List[Dict[str, Any]] = []

        def _record_step(result: StepResult) -> None:
            steps.append(asdict(result))

        def _capture_patch(info: DryRunPatchInfo) -> None:
            file_name = f"patch-{len(patches) + 1:02d}.diff"
            (folder / file_name).write_text(info.diff, encoding="utf-8")
            patches.append(
                {
                    "step": info.step,
                    "files": list(info.files),
                    "file": file_name,
                    "meta": info.meta.model_dump(by_alias=True) if info.meta is not None else None,
                }
            )

        outcome = run_configured_pipeline(
            repo,
            settings,
            mode=PipelineMode.DRY_RUN,
            hooks=make_hooks(log, resolver, on_result=_record_step),
            fix_generator=fix_generator_for(codex),
            on_dry_run_patch=_capture_patch,
            command_runner=command_runner,
        )

        message, _ = draft_commit_message(codex, journal.current, repo.staged_paths, log)
        (folder / COMMIT_MESSAGE_FILENAME).write_text(f"{message}\n", encoding="utf-8")

        summary = {
            "timestamp": _utc_now_iso(),
            "status": outcome.status,
            "failedStep": outcome.failed_step,
            "steps": steps,
            "patches": patches,
        }
        (folder / SUMMARY_FILENAME).write_text(json.dumps(summary, indent=2), encoding="utf-8")
        log(f"[DRY-RUN] Artefacts saved to {folder}")
    except (GitError, JournalError, OSError) as error:
        LOGGER.exception("Dry run failed")
        return DryRunResult(status="error", message=str(error))

    if outcome.status == "aborted":
        return DryRunResult(status="aborted", folder=folder, failed_step=outcome.failed_step)
    return DryRunResult(status="completed", folder=folder)
