"""
Prompt builders and response parsers for the two extraction stages.

Models wrap JSON in markdown fences or prepend reasoning (<think> blocks) despite
instructions, so parsing strips both and falls back to the outermost bracket span.
"""

from __future__ import annotations

import json
import re
from typing import Any

from .errors import ModelParseError

_THINK_RE = re.compile(r"<think>.*?</think>", re.S | re.I)
_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*(.*?)```", re.S)
_KEY_RE = re.compile(r"[^0-9a-z]+")

DISCOVERY_TEMPLATE = """\
You are an expert job-board parser. The content below is a company's careers page
(HTML or JSON) fetched from {endpoint}.

List every distinct job posting URL it links to. Use absolute URLs.
Return a JSON array of strings and nothing else. If there are no postings, return [].

Content:
```
{content}
```

JSON:
"""

EXTRACTION_TEMPLATE = """\
You are an expert job parser. The content below is (part of) the job posting at {url}.

Extract every field you can infer, for example title, location, posted_date (YYYY-MM-DD),
summary, department, employment_type, salary. Use snake_case field names.
Omit any field you cannot find; do not guess.
Return a single JSON object and nothing else.

Content:
```
{content}
```

JSON:
"""


# Configured headroom for either template plus its interpolated URL. The engine
# measures the real template per request and uses whichever is larger.
TEMPLATE_RESERVE_TOKENS = 256


def build_discovery_prompt(content: str, *, endpoint: str) -> str:
    return DISCOVERY_TEMPLATE.format(endpoint=endpoint, content=content)


def build_extraction_prompt(content: str, *, url: str) -> str:
    return EXTRACTION_TEMPLATE.format(url=url, content=content)


def parse_url_array(text: str) -> list[str]:
    """
    Parse a stage-1 response into URL strings.
    Elements may be strings or objects carrying a "url" key; anything else is ignored.
    Raises ModelParseError when the response is not a JSON array.
    """
    data = _load_json(text, "[", "]")
    if not isinstance(data, list):
        raise ModelParseError(f"expected a JSON array, got {type(data).__name__}")
    out: list[str] = []
    for item in data:
        if isinstance(item, dict):
            item = item.get("url")
        if isinstance(item, str) and item.strip():
            out.append(item.strip())
    return out


def parse_fields_object(text: str) -> dict[str, Any]:
    """
    Parse a stage-2 response into a field mapping with snake_case keys.
    Null and blank values are dropped. Raises ModelParseError when the response
    is not a JSON object.
    """
    data = _load_json(text, "{", "}")
    if not isinstance(data, dict):
        raise ModelParseError(f"expected a JSON object, got {type(data).__name__}")
    out: dict[str, Any] = {}
    for k, v in data.items():
        key = _KEY_RE.sub("_", str(k).strip().lower()).strip("_")
        if not key or v is None:
            continue
        if isinstance(v, str):
            v = v.strip()
            if not v:
                continue
        out[key] = v
    return out


def _load_json(text: str, opener: str, closer: str) -> Any:
    cleaned = _THINK_RE.sub("", text or "").strip()
    fence = _FENCE_RE.search(cleaned)
    if fence:
        cleaned = fence.group(1).strip()
    if not cleaned:
        raise ModelParseError("empty model response")
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass
    start = cleaned.find(opener)
    end = cleaned.rfind(closer)
    if start == -1 or end <= start:
        raise ModelParseError(f"no JSON {opener}{closer} found in model response")
    try:
        return json.loads(cleaned[start : end + 1])
    except json.JSONDecodeError as e:
        raise ModelParseError(f"invalid JSON in model response: {e}") from e
