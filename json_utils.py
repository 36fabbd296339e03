"""Helpers for parsing loosely formatted JSON returned by language models.

Models routinely wrap their answer in Markdown fences, prefix it with a
``json`` label or surround it with prose. ``parse_llm_json_response`` tries
the raw text, the fence-stripped text and finally the outermost ``{...}``
span before giving up.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Mapping, Optional, Tuple

_FENCE_RE = re.compile(r"```(?:json)?\s*|\s*```", flags=re.IGNORECASE)


def strip_markdown_json(text: str) -> str:
    """Remove Markdown code fences and a leading ``json`` label."""

    cleaned = _FENCE_RE.sub("", str(text or "")).strip()
    if cleaned[:4].lower() == "json":
        cleaned = cleaned[4:].lstrip(" :\n")
    return cleaned


def _as_dict(data: Any) -> Optional[dict]:
    if isinstance(data, Mapping):
        return dict(data)
    if isinstance(data, list):
        return next((dict(item) for item in data if isinstance(item, Mapping)), None)
    return None


def _try_load(candidate: str, logger: Optional[logging.Logger]) -> Optional[dict]:
    try:
        return _as_dict(json.loads(candidate))
    except json.JSONDecodeError as exc:
        if logger:
            logger.debug("JSON candidate rejected: %s", exc)
        return None


def parse_llm_json_response(
    raw_text: str,
    *,
    defaults: Optional[Mapping[str, Any]] = None,
    logger: Optional[logging.Logger] = None,
) -> Tuple[dict, bool]:
    """Parse ``raw_text`` into a dictionary.

    Returns ``(data, success)``. ``data`` always contains ``defaults`` with
    any parsed keys layered on top; ``success`` tells whether a JSON object
    was actually recovered.
    """

    result = dict(defaults or {})
    text = str(raw_text or "").strip()
    if not text:
        return result, False

    stripped = strip_markdown_json(text)
    parsed = _try_load(text, logger) or _try_load(stripped, logger)
    if parsed is None:
        first = stripped.find("{")
        last = stripped.rfind("}")
        if 0 <= first < last:
            parsed = _try_load(stripped[first : last + 1], logger)

    if parsed is None:
        return result, False
    result.update(parsed)
    return result, True


def coerce_number(value: Any, default: float) -> float:
    """Return ``value`` as a float, accepting strings such as ``"80%"``."""

    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        match = re.search(r"-?\d+(?:\.\d+)?", value)
        if match:
            return float(match.group(0))
    return default


__all__ = ["coerce_number", "parse_llm_json_response", "strip_markdown_json"]
