"""Prompt builders for the three generation stages.

The stage result builders expect the model to answer with the JSON shapes
described here.
"""

import json
from typing import Any

DEFAULT_TONE = "warm, expert, and trustworthy"
DEFAULT_AUDIENCE = "a broad, curious audience"

def _join(values: list[str], empty: str = "None") -> str:
    return ", ".join(values) if values else empty

def title_prompt(keywords: list[str], tone: str | None, target_audience: str | None, count: int) -> str:
    return f"""
You are a senior content strategist and blog copywriter.

Generate {count} unique, SEO-aware blog post titles written in a {tone or DEFAULT_TONE} tone
for {target_audience or DEFAULT_AUDIENCE}.
Keywords to weave in naturally: {_join(keywords)}.

Rules:
- Every title is a distinct angle, not a small variation of another.
- No clickbait, no numbering or prefixes like "1." or "Title 1:".

Output: ONLY a JSON array of strings, e.g. ["Title 1", "Title 2"].
No explanation, no markdown fences.
""".strip()

def outline_prompt(title: str, keywords: list[str], instructions: str | None = None) -> str:
    hint = f"\nStructure hint (soft guide): {instructions}" if instructions else ""
    return f"""
You are a senior content strategist. Write a detailed, writer-ready outline for the blog post
"{title}".
Keywords: {_join(keywords)}.{hint}

Output ONLY one JSON object with this shape:
{{
  "title": string,
  "seoKeywords": string[],
  "metaDescription": string,
  "suggestedImages": string[],
  "structure": {{
    "introduction": {{"summary": string, "keyPoints": string[]}},
    "sections": [{{"heading": string, "subheadings": string[], "points": string[]}}],
    "conclusion": {{"summary": string, "cta": string}}
  }}
}}
""".strip()

def blog_prompt(title: str, outline: dict[str, Any], instructions: str | None = None) -> str:
    hint = f"\nAdditional instructions: {instructions}" if instructions else ""
    return f"""
You are a professional blog writer. Write the complete article "{title}" following this outline:
{json.dumps(outline, ensure_ascii=False, indent=2)}
{hint}

Write the body in GitHub-flavoured markdown, using the outline's headings as ## headings.

Output ONLY one JSON object: {{"title": string, "content": string}}
where "content" is the markdown body.
""".strip()
