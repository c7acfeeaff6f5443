"""Shared utilities for parsing LLM responses."""

from __future__ import annotations

import json
import re
from typing import Optional

_TRAILING_COMMA = re.compile(r",\s*([}\]])")
_SMART_QUOTES = str.maketrans({"“": '"', "”": '"', "‘": "'", "’": "'"})


def strip_code_fences(raw: str) -> str:
    """Drop markdown fence lines (```json, ```) around a model response."""
    text = raw.strip()
    if not text.startswith("```"):
        return text
    lines = [l for l in text.split("\n") if not l.strip().startswith("```")]
    return "\n".join(lines).strip()


def _loads_object(text: str) -> Optional[dict]:
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


def repair_json(text: str) -> str:
    """One best-effort repair: smart quotes and trailing commas."""
    return _TRAILING_COMMA.sub(r"\1", text.translate(_SMART_QUOTES))


def parse_llm_json(raw: str) -> dict:
    """Parse a JSON object from an LLM response.

    Tries in order:
    1. Strip markdown code fences, then json.loads
    2. Extract substring between first '{' and last '}', then json.loads
    3. Repair that substring once (smart quotes, trailing commas)
    4. Return empty dict
    """
    if not raw:
        return {}

    text = strip_code_fences(raw)
    data = _loads_object(text)
    if data is not None:
        return data

    start = text.find("{")
    end = text.rfind("}") + 1
    if start < 0 or end <= start:
        return {}

    candidate = text[start:end]
    data = _loads_object(candidate)
    if data is None:
        data = _loads_object(repair_json(candidate))
    return data or {}
