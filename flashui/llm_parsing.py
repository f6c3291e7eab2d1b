from __future__ import annotations

import json
import re
from typing import Any, List, Optional

_ARRAY_RE = re.compile(r"\[[\s\S]*\]")


def json_array_from_text(text: Optional[str]) -> List[Any]:
    """Parse the bracketed span of a model reply as a JSON array; raise ValueError on failure.

    The span runs from the first ``[`` to the last ``]`` so prose around the
    array is ignored.
    """
    m = _ARRAY_RE.search(text or "")
    if not m:
        raise ValueError("No JSON array found")
    value = json.loads(m.group(0))
    if not isinstance(value, list):
        raise ValueError("not a list")
    return value


def string_items(values: List[Any]) -> List[str]:
    return [v.strip() for v in values if isinstance(v, str) and v.strip()]


def strip_code_fences(text: Optional[str]) -> str:
    """Drop a leading ```html / ``` fence and a trailing ``` fence from model output."""
    out = (text or "").strip()
    if out.startswith("```html"):
        out = out[len("```html"):].lstrip()
    if out.startswith("```"):
        out = out[3:].lstrip()
    if out.endswith("```"):
        out = out[:-3].rstrip()
    return out
