"""CLI commands for running the commit-smith pre-flight pipeline."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import typer

from .config import ConfigError, Settings, load_settings
from .journal import JournalError, add_entry, clear_current, journal_path, read_journal
from .models import CodexClient
from .pipeline import DecisionResolver, PipelineDecision, PipelineDecisionEvent
from .tools.snapshot import SnapshotError
from .tools.vcs import GitError, GitRepository
from .workflows import forge_commit_from_journal, perform_dry_run

APP_HELP = "commit-smith: validate, repair and commit journalled work."
ON_FAILURE_CHOICES = {
    "ask": None,
    "abort": PipelineDecision.ABORT,
    "commit-anyway": PipelineDecision.COMMIT_ANYWAY,
    "retry": PipelineDecision.RETRY,
}
_PROMPT_ANSWERS = {
    "c": PipelineDecision.COMMIT_ANYWAY,
    "commit": PipelineDecision.COMMIT_ANYWAY,
    "r": PipelineDecision.RETRY,
    "retry": PipelineDecision.RETRY,
    "a": PipelineDecision.ABORT,
    "abort": PipelineDecision.ABORT,
}

app = typer.Typer(help=APP_HELP)
journal_app = typer.Typer(help="Manage the pending-change journal.")
app.add_typer(journal_app, name="journal")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Emit debug logging."),
) -> None:
    """commit-smith entry point."""
    if verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def _prompt_decision(event: PipelineDecisionEvent) -> PipelineDecision:
    """Ask on the terminal how to handle a step that is still failing."""
    typer.echo(f"Step '{event.step}' is still failing after {event.attempts} AI fix attempt(s).")
    if event.stderr.strip():
        typer.echo(event.stderr.strip())
    while True:
        answer = typer.prompt("Commit anyway, retry without AI, or abort? [c/r/a]", default="a")
        decision = _PROMPT_ANSWERS.get(answer.strip().lower())
        if decision is not None:
            return decision
        typer.echo("Please answer 'c', 'r' or 'a'.")


def _resolver_for(on_failure: str) -> DecisionResolver:
    if on_failure not in ON_FAILURE_CHOICES:
        raise typer.BadParameter(
            f"--on-failure must be one of {', '.join(ON_FAILURE_CHOICES)}; got {on_failure!r}."
        )
    fixed = ON_FAILURE_CHOICES[on_failure]
    if fixed is None:
        return _prompt_decision
    return lambda _event: fixed


def _open_repo(repo: str) -> GitRepository:
    try:
        return GitRepository.discover(Path(repo))
    except GitError as error:
        typer.echo(str(error))
        raise typer.Exit(code=1) from error


def _load(repository: GitRepository, config: Optional[str]) -> Settings:
    try:
        return load_settings(repository.root, config)
    except ConfigError as error:
        typer.echo(f"Failed to load configuration: {error}")
        raise typer.Exit(code=1) from error


def _build_codex(settings: Settings, use_codex: bool) -> Optional[CodexClient]:
    if not use_codex:
        return None
    return CodexClient.from_settings(settings)


@app.command()
def commit(
    repo: str = typer.Option(".", "--repo", "-r", help="Repository to operate on."),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to a .commit-smith.yaml file."),
    on_failure: str = typer.Option(
        "ask",
        "--on-failure",
        help="Decision when a step keeps failing: ask, abort, commit-anyway or retry.",
    ),
    use_codex: bool = typer.Option(
        True,
        "--use-codex/--offline",
        help="Call the Codex endpoint for fixes and commit messages.",
    ),
) -> None:
    """Run the pipeline and commit the journalled work."""
    repository = _open_repo(repo)
    settings = _load(repository, config)
    result = forge_commit_from_journal(
        repository,
        settings,
        log=typer.echo,
        resolver=_resolver_for(on_failure),
        codex=_build_codex(settings, use_codex),
    )

    if result.status == "empty":
        typer.echo("Journal is empty; nothing to commit.")
        return
    if result.status == "pipeline-aborted":
        typer.echo(f"Pipeline aborted at {result.failed_step or 'unknown step'}; no commit created.")
        raise typer.Exit(code=1)
    if result.status == "error":
        typer.echo(f"Commit failed: {result.message}")
        raise typer.Exit(code=1)
    if result.status == "commit-warning":
        typer.echo(f"Committed with failing step {result.failed_step}: {result.commit_annotation}")
    else:
        typer.echo(f"Committed {result.commit_sha}.")
    if result.push_failed:
        typer.echo("Push failed; the commit is local only.")


@app.command("dry-run")
def dry_run(
    repo: str = typer.Option(".", "--repo", "-r", help="Repository to operate on."),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to a .commit-smith.yaml file."),
    on_failure: str = typer.Option(
        "abort",
        "--on-failure",
        help="Decision when a step keeps failing: ask, abort, commit-anyway or retry.",
    ),
    use_codex: bool = typer.Option(
        True,
        "--use-codex/--offline",
        help="Call the Codex endpoint for proposed fixes and the commit message.",
    ),
) -> None:
    """Run the pipeline without changing the repository and save its proposals."""
    repository = _open_repo(repo)
    settings = _load(repository, config)
    try:
        result = perform_dry_run(
            repository,
            settings,
            log=typer.echo,
            resolver=_resolver_for(on_failure),
            codex=_build_codex(settings, use_codex),
        )
    except SnapshotError as error:
        typer.echo(f"Dry run could not restore the repository: {error}")
        raise typer.Exit(code=2) from error

    if result.status == "empty":
        typer.echo("Journal is empty; nothing to dry-run.")
        return
    if result.status == "error":
        typer.echo(f"Dry run failed: {result.message}")
        raise typer.Exit(code=1)
    if result.status == "aborted":
        typer.echo(f"Dry run aborted at {result.failed_step or 'unknown step'}; artefacts in {result.folder}")
        raise typer.Exit(code=1)
    typer.echo(f"Dry run completed; artefacts in {result.folder}")


@journal_app.command("append")
def journal_append(
    entry: str = typer.Argument(..., help="Description of the pending change."),
    repo: str = typer.Option(".", "--repo", "-r", help="Repository holding the journal."),
) -> None:
    """Append an entry to .ai-commit-journal.yml."""
    repository = _open_repo(repo)
    try:
        add_entry(repository.root, entry)
    except JournalError as error:
        typer.echo(str(error))
        raise typer.Exit(code=1) from error
    typer.echo(f"Appended entry to {journal_path(repository.root).name}")


@journal_app.command("show")
def journal_show(
    repo: str = typer.Option(".", "--repo", "-r", help="Repository holding the journal."),
) -> None:
    """List pending journal entries."""
    repository = _open_repo(repo)
    try:
        journal = read_journal(repository.root, create_if_missing=False)
    except JournalError as error:
        typer.echo(str(error))
        raise typer.Exit(code=1) from error
    if not journal.current:
        typer.echo("No pending entries.")
        return
    for entry in journal.current:
        typer.echo(f"- {entry}")


@journal_app.command("clear")
def journal_clear(
    repo: str = typer.Option(".", "--repo", "-r", help="Repository holding the journal."),
) -> None:
    """Drop all pending journal entries."""
    repository = _open_repo(repo)
    try:
        clear_current(repository.root)
    except JournalError as error:
        typer.echo(str(error))
        raise typer.Exit(code=1) from error
    typer.echo("Cleared pending entries.")


if __name__ == "__main__":
    app()
