"""Base client for JSON-schema constrained calls to the AI service."""

from __future__ import annotations

import ast
import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Generic, Iterator, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

__all__ = [
    "LLMClient",
    "LLMClientError",
    "LLMRequest",
    "LLMResponseFormatError",
    "LLMRetryError",
    "LLMTransportError",
]

LOGGER = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

_METADATA_LIMIT = 512
_FENCE_RE = re.compile(r"```[a-zA-Z]*\n(?P<body>.*?)```", re.DOTALL)
_TRAILING_COMMA_RE = re.compile(r",(\s*[}\]])")
_TYPOGRAPHIC = str.maketrans({0x201C: '"', 0x201D: '"', 0x2018: "'", 0x2019: "'", 0x00A0: " ", 0xFEFF: ""})


class LLMClientError(RuntimeError):
    """Base error for every failure talking to the AI service."""


class LLMTransportError(LLMClientError):
    """The request never produced a response body."""


class LLMResponseFormatError(LLMClientError):
    """The response body held no usable JSON."""


class LLMRetryError(LLMClientError):
    """Every attempt failed; ``__cause__`` holds the last failure."""


def _strict_schema(node: Any) -> Any:
    """Mark every object schema closed with all of its properties required."""
    if isinstance(node, list):
        return [_strict_schema(item) for item in node]
    if not isinstance(node, dict):
        return node
    closed = {key: _strict_schema(value) for key, value in node.items()}
    properties = closed.get("properties")
    if closed.get("type") == "object" and isinstance(properties, dict):
        closed["additionalProperties"] = False
        closed["required"] = list(properties)
    return closed


@dataclass(slots=True)
class LLMRequest(Generic[ModelT]):
    """One structured request: the prompt plus the model the answer must fit."""

    prompt: str
    response_model: Type[ModelT]
    system_prompt: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    max_attempts: Optional[int] = None

    def to_payload(self, model: str) -> Dict[str, Any]:
        messages = []
        if self.system_prompt:
            messages.append({"role": "system", "content": [{"type": "input_text", "text": self.system_prompt}]})
        messages.append({"role": "user", "content": [{"type": "input_text", "text": self.prompt}]})

        payload: Dict[str, Any] = {
            "model": model,
            "input": messages,
            "text": {
                "format": {
                    "type": "json_schema",
                    "name": self.response_model.__name__,
                    "schema": _strict_schema(self.response_model.model_json_schema(by_alias=True)),
                    "strict": True,
                }
            },
        }
        if self.metadata:
            payload["metadata"] = {key: _metadata_value(value) for key, value in self.metadata.items()}
        return payload


def _metadata_value(value: Any) -> str:
    text = value if isinstance(value, str) else json.dumps(value, separators=(",", ":"), sort_keys=True)
    if len(text) > _METADATA_LIMIT:
        text = text[: _METADATA_LIMIT - 3] + "..."
    return text


class LLMClient:
    """Send structured requests and validate the answers, retrying bad ones."""

    def __init__(self, model: str, *, max_attempts: int = 3, retry_delay: float = 0.5) -> None:
        self._model = model
        self._max_attempts = max(1, max_attempts)
        self._retry_delay = retry_delay

    @property
    def model(self) -> str:
        return self._model

    def invoke(self, request: LLMRequest[ModelT]) -> ModelT:
        """Return the validated answer to ``request``.

        Transport failures, unparseable bodies and schema mismatches are all
        retried; once the attempts run out :class:`LLMRetryError` is raised.
        """

        attempts = request.max_attempts or self._max_attempts
        payload = request.to_payload(self._model)
        last_error: Optional[LLMClientError | ValidationError] = None

        for attempt in range(1, attempts + 1):
            try:
                data = self._parse_json(self._raw_invoke(payload))
                return request.response_model.model_validate(data)
            except (LLMClientError, ValidationError) as error:
                last_error = error
                LOGGER.debug("%s attempt %d/%d failed: %s", request.response_model.__name__, attempt, attempts, error)
            if attempt < attempts:
                time.sleep(self._retry_delay)

        raise LLMRetryError(
            f"No valid {request.response_model.__name__} from {self._model} after {attempts} attempt(s)"
        ) from last_error

    def _raw_invoke(self, payload: Dict[str, Any]) -> str:
        raise NotImplementedError("Subclasses must implement _raw_invoke().")

    @staticmethod
    def _parse_json(raw_response: str) -> Any:
        """Decode the first JSON value found in ``raw_response``.

        Models wrap answers in prose or code fences, use typographic quotes,
        leave trailing commas or answer with Python literals; each candidate
        is tried in turn.
        """

        text = (raw_response or "").translate(_TYPOGRAPHIC).strip()
        if not text:
            raise LLMResponseFormatError("Model returned an empty response.")

        for candidate in _json_candidates(text):
            try:
                return json.loads(candidate)
            except json.JSONDecodeError:
                pass
            try:
                return _jsonable(ast.literal_eval(candidate))
            except (SyntaxError, ValueError):
                continue

        raise LLMResponseFormatError(f"Model returned invalid JSON: {text[:200]}")


def _json_candidates(text: str) -> Iterator[str]:
    yield text
    fenced = _FENCE_RE.search(text)
    if fenced:
        text = fenced.group("body").strip()
        yield text
    balanced = _first_balanced(text)
    if balanced:
        yield balanced
        yield _TRAILING_COMMA_RE.sub(r"\1", balanced)


def _first_balanced(text: str) -> Optional[str]:
    """Return the first bracketed span, skipping brackets inside strings."""
    start: Optional[int] = None
    closers: list[str] = []
    in_string = escaped = False
    for index, char in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
        elif char == '"' and closers:
            in_string = True
        elif char in "{[":
            start = index if start is None else start
            closers.append("}" if char == "{" else "]")
        elif closers and char == closers[-1]:
            closers.pop()
            if not closers:
                return text[start : index + 1]
    return None


def _jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(key): _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_jsonable(item) for item in value]
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)
