from __future__ import annotations

import logging
from pathlib import Path

import pytest

from commitsmith.config import CONFIG_FILENAME, ConfigError, Settings, load_settings


def _write(root: Path, text: str) -> Path:
    path = root / CONFIG_FILENAME
    path.write_text(text, encoding="utf-8")
    return path


def test_missing_default_config_yields_defaults(tmp_path: Path) -> None:
    settings = load_settings(tmp_path)

    assert settings == Settings()
    assert settings.format.command == "ruff format ."
    assert settings.pipeline.max_ai_fix_attempts == 2
    assert settings.pipeline.abort_on_failure
    assert not settings.commit.push_after


def test_missing_explicit_config_is_an_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="not found"):
        load_settings(tmp_path, tmp_path / "elsewhere.yaml")


def test_partial_config_merges_with_defaults(tmp_path: Path) -> None:
    _write(
        tmp_path,
        """
tests:
  command: "npm test"
pipeline:
  abort_on_failure: false
commit:
  push_after: true
""",
    )

    settings = load_settings(tmp_path)

    assert settings.tests.command == "npm test"
    assert settings.typecheck.command == "mypy ."
    assert not settings.pipeline.abort_on_failure
    assert settings.commit.push_after


def test_empty_command_disables_step(tmp_path: Path) -> None:
    _write(tmp_path, "format:\n  command: ''\n")

    assert load_settings(tmp_path).format.command == ""


@pytest.mark.parametrize("value", [-1, "many", True])
def test_invalid_attempt_budget_falls_back_with_warning(
    tmp_path: Path, value: object, caplog: pytest.LogCaptureFixture
) -> None:
    _write(tmp_path, f"pipeline:\n  max_ai_fix_attempts: {value!r}\n".replace("'", '"'))

    with caplog.at_level(logging.WARNING, logger="commitsmith.config"):
        settings = load_settings(tmp_path)

    assert settings.pipeline.max_ai_fix_attempts == 2
    assert "max_ai_fix_attempts must be >= 0" in caplog.text


def test_zero_attempts_is_allowed(tmp_path: Path) -> None:
    _write(tmp_path, "pipeline:\n  max_ai_fix_attempts: 0\n")

    assert load_settings(tmp_path).pipeline.max_ai_fix_attempts == 0


def test_unknown_keys_are_rejected(tmp_path: Path) -> None:
    _write(tmp_path, "pipeline:\n  retries: 4\n")

    with pytest.raises(ConfigError, match="Invalid configuration"):
        load_settings(tmp_path)


@pytest.mark.parametrize("text", ["- just\n- a list\n", "format: [unterminated\n"])
def test_malformed_documents_are_rejected(tmp_path: Path, text: str) -> None:
    _write(tmp_path, text)

    with pytest.raises(ConfigError):
        load_settings(tmp_path)
