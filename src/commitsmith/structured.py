"""Typed payloads exchanged with the AI fix and commit-message service."""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

StepName = Literal["format", "typecheck", "tests"]


class WireModel(BaseModel):
    """Base model that rejects unknown keys and accepts field names or aliases."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class PatchMeta(WireModel):
    """Provenance attached to a proposed patch."""

    produced_by: str = Field(default="codex", alias="producedBy")
    step: Optional[StepName] = None
    note: Optional[str] = None


class AIPatch(WireModel):
    """Unified diff proposed by the AI service."""

    kind: Literal["unified-diff"] = "unified-diff"
    diff: str
    meta: Optional[PatchMeta] = None


class FixRequest(WireModel):
    """Context handed to the fix generator after a step fails."""

    file_path: str
    error_message: str
    code_snippet: Optional[str] = None
    step: StepName


class CommitMessageResponse(WireModel):
    """Commit message drafted from journal entries."""

    message: str


__all__ = [
    "AIPatch",
    "CommitMessageResponse",
    "FixRequest",
    "PatchMeta",
    "StepName",
    "WireModel",
]
