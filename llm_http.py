"""HTTP helper for OpenAI-compatible chat completion endpoints.

OpenRouter and a local Ollama daemon both expose ``/v1/chat/completions``;
this module hides the request/response plumbing and maps failures onto the
``ProviderError`` hierarchy.
"""

from __future__ import annotations

import os
from typing import Any, Dict, List, Mapping, Optional

import requests

from log_utils import setup_logger

logger = setup_logger(__name__)


def _env_timeout(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return default
    return max(1.0, min(120.0, value))


_HTTP_TIMEOUT = _env_timeout("LLM_HTTP_TIMEOUT", 30.0)

# OpenRouter uses these to attribute traffic; other servers ignore them.
_ATTRIBUTION_HEADERS = {
    "HTTP-Referer": "https://neuroliquid.app",
    "X-Title": "NeuroLiquid AI Trader",
}


class ProviderError(RuntimeError):
    """Raised when a decision provider cannot produce an answer."""


class RateLimitError(ProviderError):
    """The provider rejected the request with HTTP 429."""


class ProviderAuthError(ProviderError):
    """The provider rejected the credentials (or none were configured)."""


def chat_completions_url(base_url: str) -> str:
    """Return ``{base}/v1/chat/completions`` for an API base URL."""

    base = (base_url or "").rstrip("/")
    if base.endswith("/chat/completions"):
        return base
    if base.endswith("/v1"):
        return f"{base}/chat/completions"
    return f"{base}/v1/chat/completions"


def extract_message_content(payload: Any) -> str:
    if not isinstance(payload, Mapping):
        return ""
    choices = payload.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], Mapping):
        message = choices[0].get("message")
        if isinstance(message, Mapping) and isinstance(message.get("content"), str):
            return message["content"]
    return ""


def _error_text(response: Any) -> str:
    try:
        return str(response.json())
    except ValueError:
        return str(getattr(response, "text", ""))[:500]


def http_chat_completion(
    *,
    url: str,
    model: str,
    messages: List[Mapping[str, str]],
    api_key: str = "",
    temperature: float = 0.2,
    json_mode: bool = True,
    timeout: Optional[float] = None,
    session: Optional[requests.Session] = None,
) -> str:
    """POST a chat completion and return the first message's content."""

    payload: Dict[str, Any] = {
        "model": model,
        "messages": list(messages),
        "temperature": temperature,
    }
    if json_mode:
        payload["response_format"] = {"type": "json_object"}
    headers = {"Content-Type": "application/json", **_ATTRIBUTION_HEADERS}
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"

    poster = session.post if session is not None else requests.post
    try:
        response = poster(url, headers=headers, json=payload, timeout=timeout or _HTTP_TIMEOUT)
    except requests.RequestException as exc:
        raise ProviderError(f"request to {url} failed: {exc}") from exc

    status = response.status_code
    if status == 429:
        raise RateLimitError(f"rate limited by {url}")
    if status in (401, 403):
        raise ProviderAuthError(f"authentication rejected by {url}: {_error_text(response)}")
    if status >= 400:
        raise ProviderError(f"API error {status}: {_error_text(response)}")

    try:
        data = response.json()
    except ValueError as exc:
        raise ProviderError("provider returned a non-JSON body") from exc
    content = extract_message_content(data)
    if not content:
        raise ProviderError("empty response from model")
    return content


__all__ = [
    "ProviderAuthError",
    "ProviderError",
    "RateLimitError",
    "chat_completions_url",
    "extract_message_content",
    "http_chat_completion",
]
