"""Turn raw model output into structured data.

Model text is untrusted: it may be empty, wrapped in prose, wrapped in a markdown
code fence, or not JSON at all. These functions accept all of that, but they
never invent structure. When nothing can be extracted they say so.

Title parsing returns a plain list (empty when nothing was found). Outline and
blog parsing return ``ParsedOk(value)`` or ``PARSED_NONE`` so callers have to
handle absence explicitly.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any

log = logging.getLogger("quillqueue.parser")

@dataclass(frozen=True)
class ParsedOk:
    value: dict[str, Any]

class ParsedNone:
    """No structured result could be extracted."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "PARSED_NONE"

PARSED_NONE = ParsedNone()

Parsed = ParsedOk | ParsedNone

_FENCE_RE = re.compile(r"^\s*```[\w-]*[ \t]*\n?(.*?)\n?[ \t]*```\s*$", re.DOTALL)
_LIST_MARKER_RE = re.compile(r"^\s*(?:\d+[.)]|[-*•])\s*")
# "[", "]", "],", "[]" ... a line made only of brackets/commas carries no title
_BRACKET_NOISE_RE = re.compile(r"^[\[\],\s]+$")

def find_balanced(text: str, opener: str, closer: str) -> str | None:
    """Return the substring from the first ``opener`` to its matching ``closer``.

    Depth counting skips characters inside JSON string literals (honouring
    backslash escapes), so ``{"a": "}"}`` is extracted whole. Returns None when
    there is no opener or it is never closed.
    """
    start = text.find(opener)
    if start == -1:
        return None

    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue

        if ch == '"':
            in_string = True
        elif ch == opener:
            depth += 1
        elif ch == closer:
            depth -= 1
            if depth == 0:
                return text[start : i + 1]
    return None

def strip_code_fence(text: str) -> str:
    m = _FENCE_RE.match(text)
    if m:
        return m.group(1).strip()
    return text.strip()

def _clean_titles(values: list[Any]) -> list[str]:
    titles = []
    for v in values:
        if isinstance(v, str):
            s = v.strip()
        elif isinstance(v, (int, float)) and not isinstance(v, bool):
            s = str(v).strip()
        else:
            continue
        if s:
            titles.append(s)
    return titles

def _titles_from_lines(text: str) -> list[str]:
    titles = []
    for line in text.splitlines():
        if not line.strip() or _BRACKET_NOISE_RE.match(line):
            continue
        s = _LIST_MARKER_RE.sub("", line, count=1).strip()
        if s:
            titles.append(s)
    return titles

def parse_titles(raw: str | None) -> list[str]:
    if not raw:
        return []

    candidate = find_balanced(raw, "[", "]")
    if candidate is not None:
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            data = None
        if isinstance(data, list):
            return _clean_titles(data)

    log.warning("title response is not a JSON array, falling back to line parsing", extra={"event": "parse_fallback"})
    return _titles_from_lines(raw)

def parse_json_object(raw: str | None, *, kind: str = "object") -> Parsed:
    if raw is None:
        return PARSED_NONE

    text = strip_code_fence(raw)
    candidate = find_balanced(text, "{", "}")
    for attempt in (candidate, text):
        if not attempt:
            continue
        try:
            data = json.loads(attempt)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return ParsedOk(data)

    log.warning(
        f"could not extract a JSON {kind} from model response",
        extra={"event": "parse_failed"},
    )
    log.debug("unparseable %s response: %r", kind, raw[:2000])
    return PARSED_NONE

def parse_outline(raw: str | None) -> Parsed:
    return parse_json_object(raw, kind="outline")

def parse_blog(raw: str | None) -> Parsed:
    return parse_json_object(raw, kind="blog")
