from __future__ import annotations

from pathlib import Path

from commitsmith.tools.commands import run_command


def test_run_command_captures_output(tmp_path: Path) -> None:
    result = run_command("echo hello && echo oops 1>&2", tmp_path)

    assert result.success
    assert result.exit_code == 0
    assert result.stdout.strip() == "hello"
    assert result.stderr.strip() == "oops"


def test_non_zero_exit_is_a_failure_not_an_exception(tmp_path: Path) -> None:
    result = run_command("echo broken 1>&2; exit 3", tmp_path)

    assert not result.success
    assert result.exit_code == 3
    assert result.stderr.strip() == "broken"


def test_missing_binary_is_reported_as_failure(tmp_path: Path) -> None:
    result = run_command("definitely-not-a-real-binary-xyz --version", tmp_path)

    assert not result.success
    assert result.stderr


def test_spawn_failure_is_captured(tmp_path: Path) -> None:
    result = run_command("echo never", tmp_path / "does-not-exist")

    assert not result.success
    assert result.exit_code is None
    assert result.stderr
