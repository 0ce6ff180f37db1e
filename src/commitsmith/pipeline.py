"""Pre-flight pipeline: run format, typecheck and tests with bounded AI repair.

Each configured step runs as a shell command. A failing step may be repaired
by asking the fix generator for a unified diff, applying it (or, during a dry
run, handing it to a capture callback) and rerunning the command. When the
repair budget is spent the pipeline either aborts or asks the injected
decision resolver how to proceed. The terminal :class:`PipelineOutcome` is the
only value callers need to decide whether to commit.
"""

from __future__ import annotations

import json
import logging
import shlex
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, List, Literal, Optional, Sequence, Tuple

from pydantic import ValidationError

from .config import Settings
from .structured import AIPatch, FixRequest, PatchMeta
from .tools.commands import CommandResult, run_command
from .tools.ignore import IgnoreFilter
from .tools.patch import PatchError, PatchFailureKind, apply_patch, validate_patch
from .tools.snapshot import snapshot_guard
from .tools.snippets import collect_snippet, extract_failure_location
from .tools.vcs import GitRepository

__all__ = [
    "STEP_SEQUENCE",
    "CommandRunner",
    "DecisionResolver",
    "DryRunPatchInfo",
    "FixGenerator",
    "OutcomeStatus",
    "PipelineDecision",
    "PipelineDecisionEvent",
    "PipelineHooks",
    "PipelineMode",
    "PipelineOutcome",
    "StepDefinition",
    "StepId",
    "StepLifecycleEvent",
    "StepResult",
    "build_step_definitions",
    "commit_annotation_for",
    "run_configured_pipeline",
    "run_pipeline",
]

LOGGER = logging.getLogger(__name__)

StepId = Literal["format", "typecheck", "tests"]
OutcomeStatus = Literal["completed", "aborted", "commit-anyway", "skipped"]

STEP_SEQUENCE: Tuple[StepId, ...] = ("format", "typecheck", "tests")
STEP_LABELS = {"format": "FORMAT", "typecheck": "TYPECHECK", "tests": "TESTS"}


class PipelineMode(str, Enum):
    EXECUTE = "execute"
    DRY_RUN = "dry-run"


class PipelineDecision(str, Enum):
    """Choices a resolver can make for a step that is still failing."""

    COMMIT_ANYWAY = "commitAnyway"
    RETRY = "retry"
    ABORT = "abort"


@dataclass(slots=True, frozen=True)
class StepDefinition:
    id: StepId
    command: str
    dry_run_skip_reason: Optional[str] = None


@dataclass(slots=True, frozen=True)
class StepResult:
    """Result of a single command execution for a step."""

    step: StepId
    success: bool
    stdout: str
    stderr: str
    attempt: int


@dataclass(slots=True, frozen=True)
class StepLifecycleEvent:
    step: StepId
    attempt: int


@dataclass(slots=True, frozen=True)
class PipelineDecisionEvent:
    """Context handed to the decision resolver once retries are exhausted."""

    step: StepId
    stderr: str
    attempts: int
    commit_annotation: str
    suppress_auto_push: bool = True


@dataclass(slots=True, frozen=True)
class PipelineOutcome:
    status: OutcomeStatus
    failed_step: Optional[StepId] = None
    commit_annotation: Optional[str] = None
    suppress_auto_push: bool = False


@dataclass(slots=True, frozen=True)
class DryRunPatchInfo:
    """A patch proposed during a dry run; captured instead of applied."""

    step: StepId
    files: Tuple[str, ...]
    diff: str
    meta: Optional[PatchMeta] = None


DecisionResolver = Callable[[PipelineDecisionEvent], PipelineDecision]
FixGenerator = Callable[[FixRequest], Optional[AIPatch]]
CommandRunner = Callable[[str, Path], CommandResult]


@dataclass(slots=True)
class PipelineHooks:
    """Optional callbacks the host provides to observe and steer a run."""

    on_step_start: Optional[Callable[[StepLifecycleEvent], None]] = None
    on_step_complete: Optional[Callable[[StepResult], None]] = None
    on_decision_required: Optional[DecisionResolver] = None
    on_log: Optional[Callable[[str], None]] = None


@dataclass(slots=True)
class _RunContext:
    repo: GitRepository
    hooks: PipelineHooks
    fix_generator: Optional[FixGenerator]
    ignore_filter: IgnoreFilter
    dry_run: bool
    on_dry_run_patch: Optional[Callable[[DryRunPatchInfo], None]]
    command_runner: CommandRunner
    max_patch_bytes: Optional[int]
    fix_requests: int = 0
    results: List[StepResult] = field(default_factory=list)


def commit_annotation_for(step: StepId) -> str:
    return f"[pipeline failed at {step}: see commit-smith output]"


def _log(hooks: PipelineHooks, message: str) -> None:
    LOGGER.info(message)
    if hooks.on_log is not None:
        hooks.on_log(message)


def _format_label(step: StepId) -> str:
    return STEP_LABELS.get(step, step.upper())


# ---------------------------------------------------------------- step setup
def _package_scripts(repo_root: Path) -> set[str]:
    manifest = repo_root / "package.json"
    try:
        data = json.loads(manifest.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return set()
    scripts = data.get("scripts") if isinstance(data, dict) else None
    if not isinstance(scripts, dict):
        return set()
    return {str(name) for name in scripts}


def _translate_format_command(command: str, scripts: set[str]) -> Tuple[str, Optional[str]]:
    """Return a non-mutating variant of ``command`` or an empty command plus a skip reason."""

    trimmed = command.strip()
    if not trimmed:
        return "", None

    if trimmed.startswith("npm run "):
        script = trimmed[len("npm run ") :].strip()
        base = script[: -len(":fix")] if script.endswith(":fix") else script
        for candidate in (f"{base}:check", f"{base}:dry-run"):
            if candidate in scripts:
                return f"npm run {candidate}", None
        return "", f'No non-mutating variant found for "{trimmed}".'

    try:
        tokens = shlex.split(trimmed)
    except ValueError:
        tokens = trimmed.split()
    if not tokens:
        return "", None
    program = Path(tokens[0]).name

    if program == "ruff" and len(tokens) > 1 and tokens[1] == "format":
        if "--check" in tokens or "--diff" in tokens:
            return trimmed, None
        return " ".join(["ruff", "format", "--check", *map(shlex.quote, tokens[2:])]).strip(), None
    if program == "black":
        if "--check" in tokens or "--diff" in tokens:
            return trimmed, None
        return " ".join([tokens[0], "--check", *map(shlex.quote, tokens[1:])]), None
    if program == "prettier" or (program == "npx" and len(tokens) > 1 and tokens[1] == "prettier"):
        rewritten = ["--check" if token in {"--write", "-w"} else token for token in tokens]
        if "--check" not in rewritten:
            rewritten.insert(2 if program == "npx" else 1, "--check")
        return " ".join(map(shlex.quote, rewritten)), None
    if program == "isort":
        if "--check-only" in tokens or "--check" in tokens:
            return trimmed, None
        return " ".join([tokens[0], "--check-only", *map(shlex.quote, tokens[1:])]), None

    return "", f'Cannot derive non-mutating variant for "{trimmed}" during dry run.'


def build_step_definitions(
    settings: Settings,
    mode: PipelineMode = PipelineMode.EXECUTE,
    repo_root: Path | str | None = None,
) -> List[StepDefinition]:
    """Build the ordered step list; dry runs swap the format command for a check-only variant."""

    commands = {
        "format": settings.format.command,
        "typecheck": settings.typecheck.command,
        "tests": settings.tests.command,
    }
    if mode is not PipelineMode.DRY_RUN:
        return [StepDefinition(id=step, command=commands[step]) for step in STEP_SEQUENCE]

    scripts = _package_scripts(Path(repo_root)) if repo_root is not None else set()
    definitions: List[StepDefinition] = []
    for step in STEP_SEQUENCE:
        command = commands[step]
        if step == "format":
            translated, reason = _translate_format_command(command, scripts)
            definitions.append(StepDefinition(id=step, command=translated, dry_run_skip_reason=reason))
            continue
        definitions.append(StepDefinition(id=step, command=command))
    return definitions


# ------------------------------------------------------------------ running
def _execute(ctx: _RunContext, step: StepDefinition, attempt: int) -> StepResult:
    if ctx.hooks.on_step_start is not None:
        ctx.hooks.on_step_start(StepLifecycleEvent(step=step.id, attempt=attempt))
    _log(ctx.hooks, f"[{_format_label(step.id)}] attempt {attempt}: {step.command}")

    outcome = ctx.command_runner(step.command, ctx.repo.root)
    result = StepResult(
        step=step.id,
        success=outcome.success,
        stdout=outcome.stdout,
        stderr=outcome.stderr,
        attempt=attempt,
    )
    ctx.results.append(result)

    status = "passed" if result.success else "failed"
    _log(ctx.hooks, f"[{_format_label(step.id)}] {status} (attempt {attempt})")
    if ctx.hooks.on_step_complete is not None:
        ctx.hooks.on_step_complete(result)
    return result


def _stage_relevant_changes(ctx: _RunContext) -> None:
    if ctx.dry_run:
        return
    allowed = ctx.ignore_filter.filter(ctx.repo.changed_paths())
    if not allowed:
        return
    ctx.repo.stage_paths(allowed)
    LOGGER.debug("Staged %d changed path(s)", len(allowed))


def _coerce_patch(candidate: object) -> Optional[AIPatch]:
    if candidate is None or isinstance(candidate, AIPatch):
        return candidate
    return AIPatch.model_validate(candidate)


def _attempt_fix(ctx: _RunContext, step: StepId, result: StepResult) -> bool:
    """Request, validate and apply (or capture) one fix; ``False`` ends the retries."""

    if ctx.fix_generator is None:
        _log(ctx.hooks, f"[Codex] No fix generator configured; cannot repair {step}")
        return False

    output = result.stderr if result.stderr.strip() else result.stdout
    location = extract_failure_location(output)
    snippet = collect_snippet(ctx.repo.root, location)
    request = FixRequest(
        file_path=location.path,
        error_message=output,
        code_snippet=snippet.content if snippet is not None else None,
        step=step,
    )

    _log(ctx.hooks, f"[Codex] Attempting AI fix for {step} (attempt {result.attempt + 1})")
    ctx.fix_requests += 1
    try:
        patch = _coerce_patch(ctx.fix_generator(request))
        if patch is None or not patch.diff.strip():
            _log(ctx.hooks, "[Codex] Fix generator returned no patch")
            return False

        if ctx.dry_run:
            validation = validate_patch(patch.diff, max_bytes=ctx.max_patch_bytes)
            files = validation.touched_files
            ignored = [path for path in files if ctx.ignore_filter.is_ignored(path)]
            if ignored:
                reason = "only touches" if len(ignored) == len(files) else "includes"
                raise PatchError(
                    f"Patch {reason} ignored files; skipping application.",
                    kind=PatchFailureKind.IGNORED_PATH,
                )
            if ctx.on_dry_run_patch is not None:
                ctx.on_dry_run_patch(DryRunPatchInfo(step=step, files=files, diff=patch.diff, meta=patch.meta))
            _log(ctx.hooks, f"[Codex] Captured proposed patch touching {', '.join(files)}")
            return True

        applied = apply_patch(
            ctx.repo,
            patch.diff,
            ignore_filter=ctx.ignore_filter,
            max_bytes=ctx.max_patch_bytes,
        )
        _log(ctx.hooks, f"[Codex] Applied patch touching {', '.join(applied.paths)}")
        return True
    except PatchError as error:
        _log(ctx.hooks, f"[Codex] Patch rejected ({error.kind.value}): {error}")
        return False
    except ValidationError as error:
        _log(ctx.hooks, f"[Codex] Fix generator returned a malformed response: {error}")
        return False
    except Exception as error:
        _log(ctx.hooks, f"[Codex] Fix attempt failed: {error}")
        return False


def _resolve_decision(hooks: PipelineHooks, event: PipelineDecisionEvent) -> PipelineDecision:
    resolver = hooks.on_decision_required
    if resolver is None:
        _log(hooks, "No decision resolver configured; aborting")
        return PipelineDecision.ABORT
    try:
        decision = resolver(event)
    except Exception as error:
        _log(hooks, f"Decision resolver failed ({error}); aborting")
        return PipelineDecision.ABORT
    try:
        return PipelineDecision(decision)
    except ValueError:
        _log(hooks, f"Unknown decision {decision!r}; aborting")
        return PipelineDecision.ABORT


def _run_steps(ctx: _RunContext, steps: Sequence[StepDefinition], max_attempts: int, abort_on_failure: bool) -> PipelineOutcome:
    for definition in steps:
        command = definition.command.strip()
        if not command:
            reason = definition.dry_run_skip_reason or "No command configured; skipping."
            _log(ctx.hooks, f"[{_format_label(definition.id)} skipped] {reason}")
            continue
        step = StepDefinition(id=definition.id, command=command)

        attempt = 0
        result = _execute(ctx, step, attempt)
        while not result.success and attempt < max_attempts:
            if not _attempt_fix(ctx, step.id, result):
                break
            attempt += 1
            result = _execute(ctx, step, attempt)

        if result.success:
            if step.id == "format" or attempt > 0:
                _stage_relevant_changes(ctx)
            continue

        if abort_on_failure:
            _log(ctx.hooks, f"Pipeline aborted on {step.id}")
            return PipelineOutcome(status="aborted", failed_step=step.id)

        event = PipelineDecisionEvent(
            step=step.id,
            stderr=result.stderr,
            attempts=attempt,
            commit_annotation=commit_annotation_for(step.id),
            suppress_auto_push=True,
        )
        decision = _resolve_decision(ctx.hooks, event)
        _log(ctx.hooks, f"Decision for {step.id}: {decision.value}")

        if decision is PipelineDecision.COMMIT_ANYWAY:
            _log(ctx.hooks, f"Pipeline continuing via commit-anyway decision after {step.id}")
            return PipelineOutcome(
                status="commit-anyway",
                failed_step=step.id,
                commit_annotation=event.commit_annotation,
                suppress_auto_push=True,
            )

        if decision is PipelineDecision.RETRY:
            retry = _execute(ctx, step, attempt + 1)
            if not retry.success:
                _log(ctx.hooks, f"Pipeline aborted after retry on {step.id}")
                return PipelineOutcome(status="aborted", failed_step=step.id)
            _stage_relevant_changes(ctx)
            continue

        _log(ctx.hooks, f"Pipeline aborted by decision on {step.id}")
        return PipelineOutcome(status="aborted", failed_step=step.id)

    return PipelineOutcome(status="completed")


def run_pipeline(
    repo: GitRepository,
    steps: Sequence[StepDefinition],
    *,
    max_ai_fix_attempts: int,
    abort_on_failure: bool,
    mode: PipelineMode = PipelineMode.EXECUTE,
    hooks: Optional[PipelineHooks] = None,
    fix_generator: Optional[FixGenerator] = None,
    ignore_filter: Optional[IgnoreFilter] = None,
    on_dry_run_patch: Optional[Callable[[DryRunPatchInfo], None]] = None,
    command_runner: CommandRunner = run_command,
    max_patch_bytes: Optional[int] = None,
) -> PipelineOutcome:
    """Run ``steps`` in order and return the terminal outcome.

    Only snapshot failures (``SnapshotError``) and an unreadable ignore file
    escape this function; every command or patch problem ends up in the
    returned :class:`PipelineOutcome`. In dry-run mode the repository state is
    captured first and restored on every exit path.
    """

    hooks = hooks or PipelineHooks()
    filter_ = ignore_filter if ignore_filter is not None else IgnoreFilter.load(repo.root)
    ctx = _RunContext(
        repo=repo,
        hooks=hooks,
        fix_generator=fix_generator,
        ignore_filter=filter_,
        dry_run=mode is PipelineMode.DRY_RUN,
        on_dry_run_patch=on_dry_run_patch,
        command_runner=command_runner,
        max_patch_bytes=max_patch_bytes,
    )
    attempts = max(int(max_ai_fix_attempts), 0)
    # Run in STEP_SEQUENCE order whatever order the caller passed.
    ordered = sorted(steps, key=lambda definition: STEP_SEQUENCE.index(definition.id))

    if ctx.dry_run:
        with snapshot_guard(repo):
            outcome = _run_steps(ctx, ordered, attempts, abort_on_failure)
    else:
        outcome = _run_steps(ctx, ordered, attempts, abort_on_failure)

    suffix = f" at {outcome.failed_step}" if outcome.failed_step else ""
    _log(hooks, f"Pipeline {outcome.status}{suffix}")
    return outcome


def run_configured_pipeline(
    repo: GitRepository,
    settings: Settings,
    *,
    mode: PipelineMode = PipelineMode.EXECUTE,
    hooks: Optional[PipelineHooks] = None,
    fix_generator: Optional[FixGenerator] = None,
    on_dry_run_patch: Optional[Callable[[DryRunPatchInfo], None]] = None,
    command_runner: CommandRunner = run_command,
) -> PipelineOutcome:
    """Run the pipeline described by ``settings`` against ``repo``."""

    hooks = hooks or PipelineHooks()
    if not settings.pipeline.enable:
        _log(hooks, "Pipeline disabled via configuration")
        return PipelineOutcome(status="skipped")

    return run_pipeline(
        repo,
        build_step_definitions(settings, mode, repo.root),
        max_ai_fix_attempts=settings.pipeline.max_ai_fix_attempts,
        abort_on_failure=settings.pipeline.abort_on_failure,
        mode=mode,
        hooks=hooks,
        fix_generator=fix_generator,
        ignore_filter=IgnoreFilter.load(repo.root),
        on_dry_run_patch=on_dry_run_patch,
        command_runner=command_runner,
        max_patch_bytes=settings.pipeline.max_patch_bytes,
    )
