from __future__ import annotations

import json

from helpers import PROJECT_ROOT  # noqa: F401

from companion_core.services.llm_client import ChatCompletionClient


def _client(**overrides: object) -> ChatCompletionClient:
    params = {
        "api_key": "test-key",
        "model": "llama-3.3-70b-versatile",
        "timeout_seconds": 30,
        "temperature": 0.7,
        "max_output_tokens": 500,
    }
    params.update(overrides)
    return ChatCompletionClient(**params)  # type: ignore[arg-type]


def _chunk(content: object) -> str:
    return "data: " + json.dumps({"choices": [{"delta": {"content": content}}]})


def test_parse_stream_line_extracts_token() -> None:
    assert ChatCompletionClient.parse_stream_line(_chunk("Namaste")) == "Namaste"
    assert ChatCompletionClient.parse_stream_line(_chunk(" yaar") + "\n") == " yaar"


def test_parse_stream_line_handles_done_and_noise() -> None:
    assert ChatCompletionClient.parse_stream_line("data: [DONE]") is None
    assert ChatCompletionClient.parse_stream_line("") == ""
    assert ChatCompletionClient.parse_stream_line(": keep-alive") == ""
    assert ChatCompletionClient.parse_stream_line("data: {not json") == ""
    assert ChatCompletionClient.parse_stream_line('data: {"choices": []}') == ""
    assert ChatCompletionClient.parse_stream_line(_chunk(None)) == ""


def test_payload_sanitizes_roles_and_drops_empty_messages() -> None:
    client = _client()

    payload = client._payload(
        [
            {"role": "system", "content": "rules"},
            {"role": "tool", "content": "odd role"},
            {"role": "assistant", "content": "   "},
            {"role": "USER", "content": "hi"},
        ],
        stream=True,
        temperature=None,
        max_output_tokens=None,
    )

    assert payload["stream"] is True
    assert payload["temperature"] == 0.7
    assert payload["max_tokens"] == 500
    assert payload["messages"] == [
        {"role": "system", "content": "rules"},
        {"role": "user", "content": "odd role"},
        {"role": "user", "content": "hi"},
    ]


def test_zero_max_tokens_omits_cap_and_missing_key_is_unconfigured() -> None:
    client = _client(api_key="", max_output_tokens=0, base_url="https://example.test/v1/")

    payload = client._payload([{"role": "user", "content": "hi"}], stream=False, temperature=0.2, max_output_tokens=None)

    assert "max_tokens" not in payload
    assert payload["temperature"] == 0.2
    assert client.configured is False
    assert client._endpoint() == "https://example.test/v1/chat/completions"


def test_strip_json_fences() -> None:
    fenced = '```json\n{"summary_text": "ok"}\n```'

    assert json.loads(ChatCompletionClient._strip_json_fences(fenced)) == {"summary_text": "ok"}
