import pytest
import requests

import llm_http
from llm_http import (
    ProviderAuthError,
    ProviderError,
    RateLimitError,
    chat_completions_url,
    extract_message_content,
    http_chat_completion,
)

URL = "https://openrouter.ai/api/v1/chat/completions"


class FakeResponse:
    def __init__(self, status_code, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


def _ok(content):
    return FakeResponse(200, {"choices": [{"message": {"content": content}}]})


def _patch_post(monkeypatch, response=None, error=None):
    calls = []

    def fake_post(url, headers=None, json=None, timeout=None):
        calls.append({"url": url, "headers": headers, "json": json, "timeout": timeout})
        if error is not None:
            raise error
        return response

    monkeypatch.setattr(llm_http.requests, "post", fake_post)
    return calls


def _call(**kwargs):
    return http_chat_completion(url=URL, model="m", messages=[{"role": "user", "content": "hi"}], **kwargs)


@pytest.mark.parametrize(
    "base,expected",
    [
        ("https://openrouter.ai/api", URL),
        ("https://openrouter.ai/api/", URL),
        ("https://openrouter.ai/api/v1", URL),
        (URL, URL),
    ],
)
def test_chat_completions_url(base, expected):
    assert chat_completions_url(base) == expected


def test_extract_message_content_tolerates_odd_payloads():
    assert extract_message_content({"choices": [{"message": {"content": "x"}}]}) == "x"
    assert extract_message_content({"choices": []}) == ""
    assert extract_message_content(["nope"]) == ""


def test_successful_completion_sends_expected_request(monkeypatch):
    calls = _patch_post(monkeypatch, _ok('{"decision": "WAIT"}'))

    assert _call(api_key="secret", timeout=5) == '{"decision": "WAIT"}'

    request = calls[0]
    assert request["url"] == URL
    assert request["headers"]["Authorization"] == "Bearer secret"
    assert request["headers"]["X-Title"] == "NeuroLiquid AI Trader"
    assert request["json"]["response_format"] == {"type": "json_object"}
    assert request["timeout"] == 5


def test_no_auth_header_or_json_mode_when_disabled(monkeypatch):
    calls = _patch_post(monkeypatch, _ok("plain"))
    _call(json_mode=False)
    assert "Authorization" not in calls[0]["headers"]
    assert "response_format" not in calls[0]["json"]


@pytest.mark.parametrize(
    "status,error",
    [(429, RateLimitError), (401, ProviderAuthError), (403, ProviderAuthError), (500, ProviderError)],
)
def test_http_errors_map_to_provider_errors(monkeypatch, status, error):
    _patch_post(monkeypatch, FakeResponse(status, {"error": "x"}))
    with pytest.raises(error):
        _call()


def test_transport_error_becomes_provider_error(monkeypatch):
    _patch_post(monkeypatch, error=requests.ConnectionError("refused"))
    with pytest.raises(ProviderError):
        _call()


def test_empty_or_non_json_body_is_an_error(monkeypatch):
    _patch_post(monkeypatch, _ok(""))
    with pytest.raises(ProviderError, match="empty response"):
        _call()

    _patch_post(monkeypatch, FakeResponse(200, None, text="<html>"))
    with pytest.raises(ProviderError, match="non-JSON"):
        _call()


def test_rate_limit_is_a_provider_error():
    assert issubclass(RateLimitError, ProviderError)
    assert issubclass(ProviderAuthError, ProviderError)
