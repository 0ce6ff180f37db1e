from __future__ import annotations

import json
from typing import Any, Dict, List

import pytest

from commitsmith.config import CodexSettings, Settings
from commitsmith.models import CodexClient, LLMClientError, LLMResponseFormatError, LLMRetryError
from commitsmith.models.llm_client import LLMClient
from commitsmith.structured import FixRequest

FIX_DIFF = "--- a/app.py\n+++ b/app.py\n@@ -1 +1 @@\n-value = 0\n+value = 1\n"


class RecordingTransport:
    def __init__(self, *responses: str) -> None:
        self.responses = list(responses)
        self.payloads: List[Dict[str, Any]] = []

    def __call__(self, payload: Dict[str, Any]) -> str:
        self.payloads.append(payload)
        if len(self.responses) > 1:
            return self.responses.pop(0)
        return self.responses[0]


def _responses_api(body: Any) -> str:
    text = body if isinstance(body, str) else json.dumps(body)
    return json.dumps({"output": [{"type": "message", "content": [{"type": "output_text", "text": text}]}]})


def _client(transport: RecordingTransport) -> CodexClient:
    return CodexClient(transport=transport, retry_delay=0.0)


def _request() -> FixRequest:
    return FixRequest(
        file_path="app.py",
        error_message="app.py:1: error: Name 'valu' is not defined",
        code_snippet="value = 0",
        step="typecheck",
    )


def test_generate_fix_parses_responses_api_and_fills_meta() -> None:
    transport = RecordingTransport(_responses_api({"kind": "unified-diff", "diff": FIX_DIFF}))

    patch = _client(transport).generate_fix(_request())

    assert patch.diff == FIX_DIFF
    assert patch.meta is not None
    assert patch.meta.produced_by == "codex"
    assert patch.meta.step == "typecheck"

    payload = transport.payloads[0]
    assert payload["model"] == "gpt-5-codex"
    assert payload["text"]["format"]["name"] == "AIPatch"
    assert payload["metadata"] == {"step": "typecheck", "file": "app.py"}
    user_text = payload["input"][-1]["content"][0]["text"]
    assert "typecheck" in user_text and "value = 0" in user_text


def test_generate_fix_keeps_meta_from_the_model() -> None:
    body = {"kind": "unified-diff", "diff": FIX_DIFF, "meta": {"producedBy": "codex-mini", "note": "typo"}}
    transport = RecordingTransport(json.dumps(body))

    patch = _client(transport).generate_fix(_request())

    assert patch.meta is not None
    assert patch.meta.produced_by == "codex-mini"
    assert patch.meta.note == "typo"


def test_commit_message_is_stripped() -> None:
    transport = RecordingTransport(_responses_api({"message": "  Add retry budget\n"}))

    message = _client(transport).generate_commit_message(["Add retry budget"])

    assert message == "Add retry budget"
    assert "- Add retry budget" in transport.payloads[0]["input"][-1]["content"][0]["text"]


def test_blank_commit_message_is_a_format_error() -> None:
    transport = RecordingTransport(_responses_api({"message": "   "}))

    with pytest.raises(LLMResponseFormatError):
        _client(transport).generate_commit_message(["anything"])


def test_noisy_output_is_repaired() -> None:
    noisy = 'Sure! Here you go:\n```json\n{"message": "Fix {braces} in docs",}\n```'
    transport = RecordingTransport(_responses_api(noisy))

    assert _client(transport).generate_commit_message(["docs"]) == "Fix {braces} in docs"


def test_invalid_response_is_retried_then_succeeds() -> None:
    transport = RecordingTransport(
        _responses_api({"unexpected": True}),
        _responses_api({"message": "Second time lucky"}),
    )

    assert _client(transport).generate_commit_message(["retry"]) == "Second time lucky"
    assert len(transport.payloads) == 2


def test_transport_errors_surface_as_client_errors() -> None:
    def broken(_payload: Dict[str, Any]) -> str:
        raise ConnectionResetError("peer went away")

    client = CodexClient(transport=broken, retry_delay=0.0)

    with pytest.raises(LLMRetryError) as excinfo:
        client.generate_commit_message(["offline"])

    assert isinstance(excinfo.value, LLMClientError)


def test_from_settings_uses_codex_section() -> None:
    settings = Settings(codex=CodexSettings(model="tiny", endpoint="http://codex.local", timeout_ms=2500))
    transport = RecordingTransport(json.dumps({"message": "ok"}))

    client = CodexClient.from_settings(settings, transport=transport)
    client.generate_commit_message(["x"])

    assert client.model == "tiny"
    assert client.endpoint == "http://codex.local"
    assert transport.payloads[0]["model"] == "tiny"


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ('{"a": 1}', {"a": 1}),
        ("“quoted”: no", None),
        ("{'a': True}", {"a": True}),
        ('prefix {"a": [1, 2,]} suffix', {"a": [1, 2]}),
    ],
)
def test_parse_json_repairs_common_noise(raw: str, expected: Any) -> None:
    if expected is None:
        with pytest.raises(LLMResponseFormatError):
            LLMClient._parse_json(raw)
    else:
        assert LLMClient._parse_json(raw) == expected
