"""AI client boundary.

The pipeline depends only on ``AIClient``: one call per stage, returning the
model's raw text (or None when it produced nothing) and raising on transport
errors. ``GeminiClient`` is the production implementation.
"""

import logging
from typing import Any, Protocol

from google import genai
from google.genai import types

from . import prompts
from .errors import AIClientError
from .settings import Settings

log = logging.getLogger("quillqueue.ai")

class AIClient(Protocol):
    def generate_titles(
        self, keywords: list[str], tone: str | None, target_audience: str | None, count: int
    ) -> str | None: ...

    def generate_outline(self, title: str, keywords: list[str], instructions: str | None = None) -> str | None: ...

    def generate_blog(self, title: str, outline: dict[str, Any], instructions: str | None = None) -> str | None: ...

class GeminiClient:
    def __init__(self, api_key: str, model: str = "gemini-2.5-flash", temperature: float = 0.7):
        if not api_key:
            raise ValueError("GEMINI_API_KEY is required")
        self.model = model
        self.temperature = temperature
        self._client = genai.Client(api_key=api_key)

    @classmethod
    def from_settings(cls, s: Settings) -> "GeminiClient":
        return cls(api_key=s.gemini_api_key, model=s.gemini_model, temperature=s.gemini_temperature)

    def complete(self, prompt: str) -> str | None:
        try:
            response = self._client.models.generate_content(
                model=self.model,
                contents=prompt,
                config=types.GenerateContentConfig(temperature=self.temperature),
            )
        except Exception as e:
            # overloaded / rate limited / transport: all retryable for the pipeline
            raise AIClientError(f"gemini request failed: {type(e).__name__}: {e}") from e

        text = response.text
        log.debug("gemini response: %s", text)
        return text or None

    def generate_titles(self, keywords, tone, target_audience, count):
        return self.complete(prompts.title_prompt(keywords, tone, target_audience, count))

    def generate_outline(self, title, keywords, instructions=None):
        return self.complete(prompts.outline_prompt(title, keywords, instructions))

    def generate_blog(self, title, outline, instructions=None):
        return self.complete(prompts.blog_prompt(title, outline, instructions))
