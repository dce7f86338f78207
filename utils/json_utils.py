# utils/json_utils.py
"""Pull structured blocks out of model replies.

Evaluator replies usually wrap the requested JSON in prose or Markdown code
fences. Nothing here raises on bad input; callers get ``None`` and fall back.
"""

from __future__ import annotations

import json
import re
from typing import Any

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)
_DECODER = json.JSONDecoder()


def _first_decodable(text: str) -> tuple[Any, str] | None:
    for index, char in enumerate(text):
        if char not in "{[":
            continue
        try:
            obj, end = _DECODER.raw_decode(text, index)
        except json.JSONDecodeError:
            continue
        return obj, text[index:end]
    return None


def extract_json_from_text(text: str) -> str | None:
    """Return the first JSON object or array embedded in ``text``.

    A fenced block is searched first; otherwise the whole reply is scanned.
    """
    if not isinstance(text, str) or not text.strip():
        return None
    for fenced in _FENCE_RE.findall(text):
        found = _first_decodable(fenced)
        if found is not None:
            return found[1]
    found = _first_decodable(text)
    return found[1] if found is not None else None


def safe_json_loads(text: str, *, expected: type | tuple[type, ...] | None = None) -> Any | None:
    """Decode the first embedded JSON value, or ``None`` if there is none of the ``expected`` type."""
    if not isinstance(text, str) or not text.strip():
        return None
    candidate = extract_json_from_text(text)
    if candidate is None:
        return None
    obj = json.loads(candidate)
    if expected is not None and not isinstance(obj, expected):
        return None
    return obj


def truncate_for_log(s: str, limit: int = 300) -> str:
    if not isinstance(s, str):
        return ""
    return s if len(s) <= limit else s[:limit] + "..."
