"""Prompt templates for the fix and commit-message requests."""

from __future__ import annotations

from typing import Sequence

from .structured import FixRequest

JSON_RESPONSE_INSTRUCTION = (
    "Return only JSON. Emit a single JSON object that satisfies the documented response schema. "
    "Do not include markdown fences, explanations, or trailing text. "
    "Use double-quoted keys and strings."
)

FIX_SYSTEM_PROMPT = (
    "You repair failing validation steps in a git repository. "
    "Answer with a unified diff whose file headers use the a/ and b/ prefixes "
    "(or /dev/null for created and deleted files). Only touch files inside the repository. "
    + JSON_RESPONSE_INSTRUCTION
)

COMMIT_SYSTEM_PROMPT = (
    "You write git commit messages. Summarise the work described in the journal "
    "as a short subject line, optionally followed by a blank line and a body. "
    + JSON_RESPONSE_INSTRUCTION
)


def render_fix_prompt(request: FixRequest) -> str:
    """Describe a failing step and the code around the reported location."""
    sections = [
        f"## Failing step\n{request.step}",
        f"## Suspected file\n{request.file_path}",
        f"## Tool output\n{request.error_message.strip() or '(no output)'}",
    ]
    if request.code_snippet:
        sections.append(f"## Code\n{request.code_snippet}")
    return "\n\n".join(sections)


def render_commit_prompt(entries: Sequence[str]) -> str:
    """Format journal entries as a bullet list for the commit-message request."""
    body = "\n".join(f"- {line.strip()}" for line in entries if line.strip())
    return f"## Journal\n{body or '- (no entries)'}"


__all__ = [
    "COMMIT_SYSTEM_PROMPT",
    "FIX_SYSTEM_PROMPT",
    "JSON_RESPONSE_INSTRUCTION",
    "render_commit_prompt",
    "render_fix_prompt",
]
