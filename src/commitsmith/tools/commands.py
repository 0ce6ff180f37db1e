"""Shell command execution for pipeline steps.

Steps are configured as shell command strings (``ruff format .``,
``npm run typecheck``), so they run through the platform shell in the
repository root. Failures never raise: a non-zero exit status and an inability
to spawn the command both come back as an unsuccessful :class:`CommandResult`,
which keeps the retry and decision logic free of exception plumbing.
"""

from __future__ import annotations

import subprocess
from dataclasses import dataclass
from pathlib import Path

__all__ = ["CommandResult", "run_command"]


@dataclass(slots=True, frozen=True)
class CommandResult:
    """Captured output of a single command execution."""

    command: str
    stdout: str
    stderr: str
    exit_code: int | None

    @property
    def success(self) -> bool:
        return self.exit_code == 0


def run_command(command: str, cwd: Path | str) -> CommandResult:
    """Run ``command`` through the shell in ``cwd`` and capture its output."""

    try:
        process = subprocess.run(  # noqa: S602  # commands come from project settings
            command,
            cwd=Path(cwd),
            shell=True,
            check=False,
            capture_output=True,
            text=True,
            encoding="utf-8",
            errors="replace",
        )
    except OSError as error:
        return CommandResult(command=command, stdout="", stderr=str(error), exit_code=None)

    return CommandResult(
        command=command,
        stdout=process.stdout or "",
        stderr=process.stderr or "",
        exit_code=process.returncode,
    )
