from __future__ import annotations

from pathlib import Path

from typer.testing import CliRunner

from commitsmith.cli import app
from commitsmith.config import CONFIG_FILENAME
from commitsmith.journal import read_journal
from commitsmith.tools.vcs import GitRepository

from conftest import porcelain

runner = CliRunner()


def _configure(root: Path, tests_command: str) -> None:
    (root / CONFIG_FILENAME).write_text(
        "format:\n"
        "  command: 'true'\n"
        "typecheck:\n"
        "  command: 'true'\n"
        "tests:\n"
        f"  command: '{tests_command}'\n"
        "pipeline:\n"
        "  max_ai_fix_attempts: 0\n",
        encoding="utf-8",
    )


def test_journal_append_show_and_clear(git_repo: GitRepository) -> None:
    repo = str(git_repo.root)

    appended = runner.invoke(app, ["journal", "append", "Document the CLI", "--repo", repo])
    shown = runner.invoke(app, ["journal", "show", "--repo", repo])
    cleared = runner.invoke(app, ["journal", "clear", "--repo", repo])
    empty = runner.invoke(app, ["journal", "show", "--repo", repo])

    assert appended.exit_code == 0, appended.stdout
    assert "- Document the CLI" in shown.stdout
    assert cleared.exit_code == 0
    assert "No pending entries." in empty.stdout


def test_journal_append_rejects_blank_entry(git_repo: GitRepository) -> None:
    result = runner.invoke(app, ["journal", "append", "   ", "--repo", str(git_repo.root)])

    assert result.exit_code == 1
    assert "non-empty" in result.stdout


def test_commit_offline_with_passing_commands(git_repo: GitRepository) -> None:
    _configure(git_repo.root, "true")
    runner.invoke(app, ["journal", "append", "Add config", "--repo", str(git_repo.root)])

    result = runner.invoke(app, ["commit", "--repo", str(git_repo.root), "--offline", "--on-failure", "abort"])

    assert result.exit_code == 0, result.stdout
    assert "Committed" in result.stdout
    message = git_repo.git("log", "-1", "--format=%s").stdout.strip()
    assert message == "chore(workspace): commit updated files [offline mode]"
    assert read_journal(git_repo.root).current == []


def test_commit_aborts_with_failing_tests(git_repo: GitRepository) -> None:
    _configure(git_repo.root, "false")
    runner.invoke(app, ["journal", "append", "Break things", "--repo", str(git_repo.root)])
    head = git_repo.git("rev-parse", "HEAD").stdout

    result = runner.invoke(app, ["commit", "--repo", str(git_repo.root), "--offline", "--on-failure", "abort"])

    assert result.exit_code == 1
    assert "Pipeline aborted at tests" in result.stdout
    assert git_repo.git("rev-parse", "HEAD").stdout == head


def test_dry_run_failure_exits_nonzero_and_restores(git_repo: GitRepository) -> None:
    _configure(git_repo.root, "false")
    runner.invoke(app, ["journal", "append", "Probe", "--repo", str(git_repo.root)])
    before = porcelain(git_repo)

    result = runner.invoke(app, ["dry-run", "--repo", str(git_repo.root), "--offline"])

    assert result.exit_code == 1
    assert "Dry run aborted at tests" in result.stdout
    assert porcelain(git_repo) == before
    assert list((git_repo.root / ".commit-smith" / "patches").iterdir())


def test_unknown_on_failure_choice_is_rejected(git_repo: GitRepository) -> None:
    _configure(git_repo.root, "true")
    runner.invoke(app, ["journal", "append", "Anything", "--repo", str(git_repo.root)])

    result = runner.invoke(app, ["commit", "--repo", str(git_repo.root), "--offline", "--on-failure", "maybe"])

    assert result.exit_code != 0


def test_commands_outside_a_repository_fail(tmp_path: Path) -> None:
    result = runner.invoke(app, ["journal", "show", "--repo", str(tmp_path)])

    assert result.exit_code == 1
