"""Per-stage behaviour: which AI call to make and how to turn its text into a result.

A result builder either returns the JSON-ready result for the job or raises
``UnusableResponse``; the worker treats that like any other failed attempt.
"""

import re
from dataclasses import dataclass
from typing import Any, Callable

import markdown
from pydantic import ValidationError

from .ai_client import AIClient
from .errors import UnusableResponse
from .models import JobType
from .parser import ParsedNone, parse_blog, parse_outline, parse_titles
from .schemas import BlogResult, OutlineResult

_WORD_RE = re.compile(r"[^\W_]+(?:['’-][^\W_]+)*")
_MD_LINK_TARGET_RE = re.compile(r"\]\([^)]*\)")

@dataclass(frozen=True)
class Stage:
    job_type: JobType
    label: str
    call_ai: Callable[[AIClient, dict[str, Any]], str | None]
    build_result: Callable[[str | None, dict[str, Any]], Any]
    next_type: JobType | None = None

def count_words(md: str) -> int:
    # link targets are not prose
    return len(_WORD_RE.findall(_MD_LINK_TARGET_RE.sub("]", md)))

def render_markdown(md: str) -> str:
    return markdown.markdown(md, extensions=["extra", "nl2br", "sane_lists"])

def _call_titles(client: AIClient, payload: dict[str, Any]) -> str | None:
    return client.generate_titles(
        payload["keywords"], payload.get("tone"), payload.get("target_audience"), payload["count"]
    )

def build_title_result(raw: str | None, payload: dict[str, Any]) -> list[str]:
    titles = parse_titles(raw)
    if not titles:
        raise UnusableResponse("model response contained no titles")
    # the model may return more than asked for
    return titles[: payload.get("count") or len(titles)]

def _call_outline(client: AIClient, payload: dict[str, Any]) -> str | None:
    return client.generate_outline(payload["title"], payload.get("keywords", []), payload.get("instructions"))

def build_outline_result(raw: str | None, payload: dict[str, Any]) -> dict[str, Any]:
    parsed = parse_outline(raw)
    if isinstance(parsed, ParsedNone):
        raise UnusableResponse("model response contained no outline object")

    data = dict(parsed.value)
    if not isinstance(data.get("title"), str) or not data["title"].strip():
        data["title"] = payload["title"]
    try:
        outline = OutlineResult.model_validate(data)
    except ValidationError as e:
        raise UnusableResponse(f"outline object has the wrong shape ({e.error_count()} errors)") from e
    if not outline.structure:
        raise UnusableResponse("outline object has no structure")
    return outline.model_dump(mode="json")

def _call_blog(client: AIClient, payload: dict[str, Any]) -> str | None:
    return client.generate_blog(payload["title"], payload["outline"], payload.get("instructions"))

def build_blog_result(raw: str | None, payload: dict[str, Any]) -> dict[str, Any]:
    parsed = parse_blog(raw)
    if isinstance(parsed, ParsedNone):
        raise UnusableResponse("model response contained no blog object")

    content = parsed.value.get("content")
    if not isinstance(content, str) or not content.strip():
        raise UnusableResponse("blog object has no content")
    title = parsed.value.get("title")
    if not isinstance(title, str) or not title.strip():
        title = payload["title"]

    blog = BlogResult(
        title=title.strip(),
        content=content,
        html_content=render_markdown(content),
        word_count=count_words(content),
    )
    return blog.model_dump(mode="json")

STAGES: dict[JobType, Stage] = {
    JobType.title_generation: Stage(
        job_type=JobType.title_generation,
        label="title generation",
        call_ai=_call_titles,
        build_result=build_title_result,
        next_type=JobType.outline_generation,
    ),
    JobType.outline_generation: Stage(
        job_type=JobType.outline_generation,
        label="outline generation",
        call_ai=_call_outline,
        build_result=build_outline_result,
        next_type=JobType.blog_generation,
    ),
    JobType.blog_generation: Stage(
        job_type=JobType.blog_generation,
        label="blog generation",
        call_ai=_call_blog,
        build_result=build_blog_result,
    ),
}
