from __future__ import annotations

import subprocess
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from commitsmith.tools.commands import CommandResult  # noqa: E402
from commitsmith.tools.vcs import GitRepository  # noqa: E402


def porcelain(repo: GitRepository) -> bytes:
    """Raw ``git status --porcelain`` output, untracked files expanded."""

    return subprocess.run(
        ["git", "status", "--porcelain", "--untracked-files=all"],
        cwd=repo.root,
        capture_output=True,
        check=True,
    ).stdout


@dataclass(slots=True)
class ScriptedRunner:
    """Command runner stand-in that replays exit codes per command."""

    scripts: Dict[str, List[int]]
    calls: List[str] = field(default_factory=list)
    side_effect: Callable[[str, Path], None] | None = None

    def __call__(self, command: str, cwd: Path) -> CommandResult:
        self.calls.append(command)
        if self.side_effect is not None:
            self.side_effect(command, Path(cwd))
        codes = self.scripts.get(command, [0])
        code = codes.pop(0) if len(codes) > 1 else codes[0]
        stderr = "" if code == 0 else f"error: app.py:1: {command} failed"
        return CommandResult(command=command, stdout="", stderr=stderr, exit_code=code)

    def count(self, command: str) -> int:
        return self.calls.count(command)


@pytest.fixture()
def git_repo(tmp_path: Path) -> GitRepository:
    """Repository with one committed module and the artifact directory ignored."""

    repo = GitRepository.initialise(tmp_path / "repo")
    (repo.root / "app.py").write_text("value = 0\n", encoding="utf-8")
    (repo.root / "README.md").write_text("# demo\n", encoding="utf-8")
    (repo.root / ".gitignore").write_text(".commit-smith/\n", encoding="utf-8")
    repo.git("add", "--all")
    repo.git("commit", "-m", "Add app")
    return repo
