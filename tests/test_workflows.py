from __future__ import annotations

import json
from typing import List, Sequence

from commitsmith.config import CommandSettings, CommitSettings, PipelineSettings, Settings
from commitsmith.journal import add_entry, read_journal
from commitsmith.models import LLMTransportError
from commitsmith.pipeline import PipelineDecision
from commitsmith.structured import AIPatch, FixRequest, PatchMeta
from commitsmith.tools.vcs import GitRepository
from commitsmith.workflows import forge_commit_from_journal, perform_dry_run
from commitsmith.workflows.base import build_offline_commit_message, derive_scope

from conftest import ScriptedRunner, porcelain


class StubCodex:
    def __init__(self, message: str = "Add feature flag") -> None:
        self.message = message
        self.fix_requests: List[FixRequest] = []

    def generate_fix(self, request: FixRequest) -> AIPatch:
        current = len(self.fix_requests)
        self.fix_requests.append(request)
        diff = f"--- a/app.py\n+++ b/app.py\n@@ -1 +1 @@\n-value = {current}\n+value = {current + 1}\n"
        return AIPatch(diff=diff, meta=PatchMeta(produced_by="stub", step=request.step))

    def generate_commit_message(self, entries: Sequence[str]) -> str:
        return self.message


class OfflineCodex(StubCodex):
    def generate_commit_message(self, entries: Sequence[str]) -> str:
        raise LLMTransportError("connection refused")


def _settings(**pipeline: object) -> Settings:
    return Settings(
        format=CommandSettings(command="ruff format ."),
        typecheck=CommandSettings(command="types"),
        tests=CommandSettings(command="unit"),
        pipeline=PipelineSettings(**pipeline),
    )


def _head(repo: GitRepository) -> str:
    return repo.git("rev-parse", "HEAD").stdout.strip()


def _last_message(repo: GitRepository) -> str:
    return repo.git("log", "-1", "--format=%B").stdout.strip()


def test_commit_with_empty_journal_does_nothing(git_repo: GitRepository) -> None:
    runner = ScriptedRunner({})

    result = forge_commit_from_journal(git_repo, _settings(), log=lambda _line: None, command_runner=runner)

    assert result.status == "empty"
    assert runner.calls == []


def test_successful_pipeline_commits_and_clears_journal(git_repo: GitRepository) -> None:
    add_entry(git_repo.root, "Bump the default value")
    (git_repo.root / "app.py").write_text("value = 3\n", encoding="utf-8")
    before = _head(git_repo)
    lines: List[str] = []

    result = forge_commit_from_journal(
        git_repo,
        _settings(),
        log=lines.append,
        codex=StubCodex(),
        command_runner=ScriptedRunner({}),
    )

    assert result.status == "commit-success"
    assert not result.offline
    assert result.commit_sha == _head(git_repo) != before
    assert _last_message(git_repo) == "Add feature flag"
    assert "app.py" in git_repo.git("show", "--name-only", "--format=", "HEAD").stdout
    assert read_journal(git_repo.root).current == []
    assert any(line.startswith("[COMMIT]") for line in lines)


def test_aborted_pipeline_never_commits(git_repo: GitRepository) -> None:
    add_entry(git_repo.root, "Break the tests")
    before = _head(git_repo)

    result = forge_commit_from_journal(
        git_repo,
        _settings(max_ai_fix_attempts=0),
        log=lambda _line: None,
        command_runner=ScriptedRunner({"unit": [1]}),
    )

    assert result.status == "pipeline-aborted"
    assert result.failed_step == "tests"
    assert _head(git_repo) == before
    assert read_journal(git_repo.root).current == ["Break the tests"]


def test_commit_anyway_annotates_message_and_skips_push(git_repo: GitRepository) -> None:
    add_entry(git_repo.root, "Ship despite type errors")
    settings = _settings(max_ai_fix_attempts=0, abort_on_failure=False)
    settings.commit = CommitSettings(push_after=True)
    lines: List[str] = []

    result = forge_commit_from_journal(
        git_repo,
        settings,
        log=lines.append,
        resolver=lambda _event: PipelineDecision.COMMIT_ANYWAY,
        codex=StubCodex("Ship it"),
        command_runner=ScriptedRunner({"types": [1]}),
    )

    assert result.status == "commit-warning"
    assert result.failed_step == "typecheck"
    assert not result.push_failed
    assert _last_message(git_repo) == "Ship it\n\n[pipeline failed at typecheck: see commit-smith output]"
    assert "[PUSH] Skipped auto-push due to pipeline decision." in lines


def test_push_failure_is_reported_without_undoing_commit(git_repo: GitRepository) -> None:
    add_entry(git_repo.root, "Push without a remote")
    settings = _settings()
    settings.commit = CommitSettings(push_after=True)

    result = forge_commit_from_journal(
        git_repo,
        settings,
        log=lambda _line: None,
        codex=StubCodex(),
        command_runner=ScriptedRunner({}),
    )

    assert result.status == "commit-success"
    assert result.push_failed
    assert _head(git_repo) == result.commit_sha


def test_unreachable_codex_falls_back_to_offline_message(git_repo: GitRepository) -> None:
    add_entry(git_repo.root, "Work offline")
    lines: List[str] = []

    result = forge_commit_from_journal(
        git_repo,
        _settings(),
        log=lines.append,
        codex=OfflineCodex(),
        command_runner=ScriptedRunner({}),
    )

    assert result.status == "commit-success"
    assert result.offline
    assert _last_message(git_repo).startswith("chore(workspace): commit updated files [offline mode]")
    assert any(line.startswith("[OFFLINE]") for line in lines)


def test_offline_message_lists_at_most_three_files() -> None:
    message = build_offline_commit_message(["./src/a.py", "src/b.py", "docs/c.md", "d.txt"])

    assert message.splitlines() == [
        "chore(src): commit updated files [offline mode]",
        "",
        "- src/a.py",
        "- src/b.py",
        "- docs/c.md",
    ]


def test_derive_scope_normalises_directory_names() -> None:
    assert derive_scope([]) == "workspace"
    assert derive_scope(["README.md"]) == "workspace"
    assert derive_scope(["Web App/index.ts"]) == "web-app"
    assert derive_scope(["pkg\\mod.py"]) == "pkg"


def test_dry_run_writes_artifacts_and_leaves_repo_untouched(git_repo: GitRepository) -> None:
    (git_repo.root / "app.py").write_text("value = 0\nstaged = True\n", encoding="utf-8")
    git_repo.stage_paths(["app.py"])
    (git_repo.root / "scratch.txt").write_text("untracked\n", encoding="utf-8")
    add_entry(git_repo.root, "Try the new flag")
    before_status = porcelain(git_repo)
    before_head = _head(git_repo)

    def scribble(command: str, cwd) -> None:
        (cwd / "scratch.txt").write_text(f"clobbered by {command}\n", encoding="utf-8")
        (cwd / "coverage.xml").write_text("<coverage/>", encoding="utf-8")

    runner = ScriptedRunner({"unit": [1]}, side_effect=scribble)
    codex = StubCodex("Introduce flag")

    result = perform_dry_run(
        git_repo,
        _settings(max_ai_fix_attempts=2),
        log=lambda _line: None,
        codex=codex,
        command_runner=runner,
    )

    assert result.status == "aborted"
    assert result.failed_step == "tests"
    assert result.folder is not None
    assert result.folder.parent == git_repo.root / ".commit-smith" / "patches"
    assert (result.folder / "patch-01.diff").read_text(encoding="utf-8").startswith("--- a/app.py")
    assert (result.folder / "patch-02.diff").exists()
    assert not (result.folder / "patch-03.diff").exists()
    assert (result.folder / "COMMIT_MESSAGE.md").read_text(encoding="utf-8") == "Introduce flag\n"

    summary = json.loads((result.folder / "summary.json").read_text(encoding="utf-8"))
    assert summary["status"] == "aborted"
    assert summary["failedStep"] == "tests"
    assert [patch["file"] for patch in summary["patches"]] == ["patch-01.diff", "patch-02.diff"]
    assert summary["patches"][0]["files"] == ["app.py"]
    assert summary["patches"][0]["meta"]["producedBy"] == "stub"
    assert [step["step"] for step in summary["steps"]] == ["format", "typecheck", "tests", "tests", "tests"]
    assert summary["steps"][-1]["attempt"] == 2

    assert "ruff format --check ." in runner.calls
    assert porcelain(git_repo) == before_status
    assert _head(git_repo) == before_head
    assert (git_repo.root / "scratch.txt").read_text(encoding="utf-8") == "untracked\n"
    assert not (git_repo.root / "coverage.xml").exists()
    assert read_journal(git_repo.root).current == ["Try the new flag"]


def test_dry_run_with_empty_journal_creates_nothing(git_repo: GitRepository) -> None:
    result = perform_dry_run(
        git_repo,
        _settings(),
        log=lambda _line: None,
        command_runner=ScriptedRunner({}),
    )

    assert result.status == "empty"
    assert not (git_repo.root / ".commit-smith").exists()
    assert not (git_repo.root / ".ai-commit-journal.yml").exists()


def test_dry_run_hides_artifacts_when_repo_does_not_ignore_them(git_repo: GitRepository) -> None:
    (git_repo.root / ".gitignore").unlink()
    git_repo.stage_all()
    git_repo.commit("Stop ignoring artefacts")
    add_entry(git_repo.root, "Check artefact hygiene")
    before = porcelain(git_repo)

    result = perform_dry_run(
        git_repo,
        _settings(),
        log=lambda _line: None,
        codex=StubCodex(),
        command_runner=ScriptedRunner({}),
    )

    assert result.status == "completed"
    assert result.folder is not None and (result.folder / "summary.json").exists()
    assert (git_repo.root / ".commit-smith" / ".gitignore").read_text(encoding="utf-8") == "*\n"
    assert porcelain(git_repo) == before
