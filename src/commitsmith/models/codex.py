"""Codex client that drafts fixes and commit messages over a JSON responses API."""

from __future__ import annotations

import json
import logging
import os
from typing import Any, Callable, Dict, Optional, Sequence

from ..prompts import COMMIT_SYSTEM_PROMPT, FIX_SYSTEM_PROMPT, render_commit_prompt, render_fix_prompt
from ..structured import AIPatch, CommitMessageResponse, FixRequest, PatchMeta
from .llm_client import LLMClient, LLMRequest, LLMResponseFormatError, LLMTransportError

__all__ = ["API_KEY_ENV_VARS", "CodexClient", "Transport"]

LOGGER = logging.getLogger(__name__)

API_KEY_ENV_VARS = ("COMMITSMITH_API_KEY", "OPENAI_API_KEY")

Transport = Callable[[Dict[str, Any]], str]


class CodexClient(LLMClient):
    """Adapter around the Codex responses endpoint configured for the project."""

    def __init__(
        self,
        *,
        endpoint: str = "http://localhost:9999",
        model: str = "gpt-5-codex",
        api_key: Optional[str] = None,
        transport: Optional[Transport] = None,
        timeout: float = 10.0,
        max_attempts: int = 2,
        retry_delay: float = 0.5,
    ) -> None:
        super().__init__(model=model, max_attempts=max_attempts, retry_delay=retry_delay)
        self._endpoint = endpoint
        self._api_key = api_key or next((os.environ[name] for name in API_KEY_ENV_VARS if os.getenv(name)), None)
        self._timeout = timeout
        self._transport = transport or self._http_transport

    @classmethod
    def from_settings(cls, settings: Any, *, transport: Optional[Transport] = None) -> "CodexClient":
        """Build a client from the ``codex`` section of project settings."""
        codex = settings.codex
        return cls(
            endpoint=codex.endpoint,
            model=codex.model,
            transport=transport,
            timeout=codex.timeout_ms / 1000.0,
        )

    @property
    def endpoint(self) -> str:
        return self._endpoint

    def generate_fix(self, request: FixRequest) -> AIPatch:
        """Ask the model for a unified diff that repairs the failing step."""
        patch = self.invoke(
            LLMRequest(
                prompt=render_fix_prompt(request),
                response_model=AIPatch,
                system_prompt=FIX_SYSTEM_PROMPT,
                metadata={"step": request.step, "file": request.file_path},
            )
        )
        if patch.meta is None:
            patch = patch.model_copy(update={"meta": PatchMeta(produced_by="codex", step=request.step)})
        return patch

    def generate_commit_message(self, entries: Sequence[str]) -> str:
        """Draft a commit message from journal entries."""
        response = self.invoke(
            LLMRequest(
                prompt=render_commit_prompt(entries),
                response_model=CommitMessageResponse,
                system_prompt=COMMIT_SYSTEM_PROMPT,
            )
        )
        message = response.message.strip()
        if not message:
            raise LLMResponseFormatError("Codex returned an empty commit message.")
        return message

    def _raw_invoke(self, payload: Dict[str, Any]) -> str:
        """Send the request over the configured transport."""
        try:
            raw_response = self._transport(payload)
        except LLMTransportError:
            raise
        except Exception as error:
            raise LLMTransportError(f"Transport rejected the request: {error}") from error

        normalised = self._extract_model_payload(raw_response)
        if normalised is None:
            raise LLMResponseFormatError("Codex response did not contain JSON output text.")
        return normalised

    def _http_transport(self, payload: Dict[str, Any]) -> str:
        """Default HTTP transport that POSTs the payload to the configured endpoint."""
        import urllib.error
        import urllib.request

        LOGGER.debug("Posting %s request to %s", payload.get("model"), self._endpoint)
        headers = {"Content-Type": "application/json", "X-OpenAI-Client": "commit-smith/0.1"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        request = urllib.request.Request(
            self._endpoint,
            data=json.dumps(payload).encode("utf-8"),
            headers=headers,
            method="POST",
        )

        try:
            with urllib.request.urlopen(request, timeout=self._timeout) as response:
                raw = response.read()
                status = getattr(response, "status", 200)
        except TimeoutError as error:  # pragma: no cover - network-dependent
            raise LLMTransportError("Codex response timed out.") from error
        except urllib.error.HTTPError as error:  # pragma: no cover - network-dependent
            message = error.read().decode("utf-8", errors="ignore")
            raise LLMTransportError(f"HTTP {error.code}: {message}") from error
        except urllib.error.URLError as error:  # pragma: no cover - network-dependent
            raise LLMTransportError(f"Failed to reach Codex endpoint: {error.reason}") from error

        if status >= 400:
            raise LLMTransportError(f"Unexpected HTTP status {status}")
        return raw.decode("utf-8")

    @staticmethod
    def _extract_model_payload(raw_response: str) -> Optional[str]:
        """Pull the answer text out of a responses-API or chat-completions envelope.

        Bodies that are not JSON, or JSON without a recognised envelope, are
        returned unchanged so the caller can parse them directly.
        """
        if not raw_response or not raw_response.strip():
            return None
        try:
            data = json.loads(raw_response)
        except json.JSONDecodeError:
            return raw_response
        if not isinstance(data, dict):
            return raw_response

        envelopes = [data]
        if isinstance(data.get("response"), dict):
            envelopes.append(data["response"])
        for envelope in envelopes:
            for key in ("output", "outputs", "content", "choices"):
                text = _first_text(envelope.get(key))
                if text:
                    return text
        return raw_response


def _first_text(items: Any) -> Optional[str]:
    """Return the first non-empty text (or structured JSON) part in ``items``."""
    if isinstance(items, dict):
        items = [items]
    if not isinstance(items, list):
        return None
    for item in items:
        if not isinstance(item, dict):
            continue
        parts = item.get("content")
        message = item.get("message")
        if isinstance(message, dict):
            parts = message.get("content", parts)
        candidates = parts if isinstance(parts, list) else [parts, item]
        for part in candidates:
            if isinstance(part, str) and part.strip():
                return part
            if not isinstance(part, dict):
                continue
            if isinstance(part.get("json"), (dict, list)):
                return json.dumps(part["json"])
            text = part.get("text")
            if isinstance(text, str) and text.strip():
                return text
    return None
