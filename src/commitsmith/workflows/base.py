"""Pieces shared by the commit and dry-run workflows."""

from __future__ import annotations

import logging
import re
from typing import Callable, List, Optional, Protocol, Sequence

from ..models.llm_client import LLMClientError
from ..pipeline import (
    STEP_LABELS,
    DecisionResolver,
    FixGenerator,
    PipelineHooks,
    StepLifecycleEvent,
    StepResult,
)
from ..structured import AIPatch, FixRequest

LOGGER = logging.getLogger(__name__)

LogFn = Callable[[str], None]

_SCOPE_INVALID = re.compile(r"[^a-z0-9_-]+")
_HYPHEN_COLLAPSE = re.compile(r"-{2,}")


class CodexService(Protocol):
    """The AI operations the workflows depend on."""

    def generate_fix(self, request: FixRequest) -> AIPatch: ...

    def generate_commit_message(self, entries: Sequence[str]) -> str: ...


def make_hooks(
    log: LogFn,
    resolver: Optional[DecisionResolver],
    *,
    on_result: Optional[Callable[[StepResult], None]] = None,
) -> PipelineHooks:
    """Hooks that echo step progress to ``log`` and forward decisions to ``resolver``."""

    def _start(event: StepLifecycleEvent) -> None:
        log(f"[{STEP_LABELS[event.step]}] starting attempt {event.attempt + 1}")

    def _complete(result: StepResult) -> None:
        status = "ok" if result.success else "failed"
        log(f"[{STEP_LABELS[result.step]}] {status}")
        if on_result is not None:
            on_result(result)

    return PipelineHooks(
        on_step_start=_start,
        on_step_complete=_complete,
        on_decision_required=resolver,
        on_log=log,
    )


def fix_generator_for(codex: Optional[CodexService]) -> Optional[FixGenerator]:
    return codex.generate_fix if codex is not None else None


def derive_scope(files: Sequence[str]) -> str:
    """Use the top-level directory of the first file as the commit scope."""
    if not files:
        return "workspace"
    segments = [segment for segment in re.split(r"[\\/]", files[0].removeprefix("./")) if segment]
    first = segments[0] if len(segments) > 1 else ""
    scope = _SCOPE_INVALID.sub("-", first.lower())
    scope = _HYPHEN_COLLAPSE.sub("-", scope).strip("-")
    return scope or "workspace"


def build_offline_commit_message(staged_files: Sequence[str]) -> str:
    """Heuristic commit message used when the AI service is unavailable."""
    files = [path.removeprefix("./") for path in staged_files]
    subject = f"chore({derive_scope(files)}): commit updated files [offline mode]"
    lines: List[str] = [f"- {path}" for path in files[:3]]
    if not lines:
        return subject
    return subject + "\n\n" + "\n".join(lines)


def draft_commit_message(
    codex: Optional[CodexService],
    entries: Sequence[str],
    staged_files: Callable[[], Sequence[str]],
    log: LogFn,
) -> tuple[str, bool]:
    """Return ``(message, used_offline_fallback)``."""

    if codex is not None:
        try:
            return codex.generate_commit_message(entries), False
        except LLMClientError as error:
            log(f"[OFFLINE] Codex unavailable ({error}). Generated heuristic commit message.")
    else:
        log("[OFFLINE] No Codex client configured. Generated heuristic commit message.")
    return build_offline_commit_message(staged_files()), True
