import json
import os
import threading
from collections import deque

import pytest

os.environ.setdefault("QUEUE_BACKEND", "memory")
os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")

from quillqueue.coordinator import PipelineCoordinator  # noqa: E402
from quillqueue.db import init_db, make_engine, make_session_factory  # noqa: E402
from quillqueue.models import JobType  # noqa: E402
from quillqueue.observers import RecordingObserver  # noqa: E402
from quillqueue.queues import InMemoryStageQueue  # noqa: E402
from quillqueue.retry import RetryPolicy  # noqa: E402
from quillqueue.store import JobStore  # noqa: E402

TITLES = [
    "10 Science-Backed Ways to Reduce Stress Naturally",
    "The Ultimate Guide to Mindful Morning Routines",
    "How to Build a Sustainable Meditation Practice",
]

OUTLINE = {
    "title": "10 Science-Backed Ways to Reduce Stress Naturally",
    "metaDescription": "Proven, natural methods to reduce stress.",
    "seoKeywords": ["stress reduction", "natural stress relief"],
    "suggestedImages": ["Person breathing outdoors"],
    "structure": {
        "introduction": {"summary": "Stress is common.", "keyPoints": ["Why it matters"]},
        "sections": [
            {
                "heading": "Understanding Stress",
                "subheadings": ["Acute vs chronic"],
                "points": ["Cortisol and the {stress} response"],
            }
        ],
        "conclusion": {"summary": "Start small.", "cta": "Try one technique today."},
    },
}

BLOG = {
    "title": "10 Science-Backed Ways to Reduce Stress Naturally",
    "content": "## Understanding Stress\n\nStress is the body's response to pressure.\n\nBreathe slowly.",
}

class FakeAIClient:
    """Deterministic AI client. Queue responses per stage; an Exception is raised, a callable is called."""

    def __init__(self):
        self.defaults = {
            "titles": json.dumps(TITLES),
            "outline": "Here is your outline:\n```json\n" + json.dumps(OUTLINE) + "\n```",
            "blog": json.dumps(BLOG),
        }
        self.responses = {k: deque() for k in self.defaults}
        self.calls: list[tuple[str, dict]] = []
        self._lock = threading.Lock()

    def queue(self, kind: str, *responses):
        self.responses[kind].extend(responses)

    def _next(self, kind: str, args: dict):
        with self._lock:
            self.calls.append((kind, args))
            r = self.responses[kind].popleft() if self.responses[kind] else self.defaults[kind]
        if isinstance(r, BaseException):
            raise r
        if callable(r):
            return r()
        return r

    def generate_titles(self, keywords, tone, target_audience, count):
        return self._next(
            "titles", {"keywords": keywords, "tone": tone, "target_audience": target_audience, "count": count}
        )

    def generate_outline(self, title, keywords, instructions=None):
        return self._next("outline", {"title": title, "keywords": keywords, "instructions": instructions})

    def generate_blog(self, title, outline, instructions=None):
        return self._next("blog", {"title": title, "outline": outline, "instructions": instructions})

    def count(self, kind: str) -> int:
        return sum(1 for k, _ in self.calls if k == kind)

@pytest.fixture
def session_factory(tmp_path):
    engine = make_engine(f"sqlite+pysqlite:///{tmp_path / 'jobs.db'}")
    init_db(engine)
    yield make_session_factory(engine)
    engine.dispose()

@pytest.fixture
def store(session_factory):
    return JobStore(session_factory)

@pytest.fixture
def queues():
    return {t: InMemoryStageQueue(t) for t in JobType}

@pytest.fixture
def ai():
    return FakeAIClient()

@pytest.fixture
def recorder():
    return RecordingObserver()

@pytest.fixture
def policy():
    return RetryPolicy(max_attempts=3, base_delay=0.0, multiplier=2.0)

@pytest.fixture
def pipeline(store, queues, ai, recorder, policy):
    coordinator = PipelineCoordinator(store, queues, {t: policy for t in JobType})
    coordinator.attach_workers(ai, ai_timeout=5.0, poll_seconds=0.05, observers=[recorder])
    return coordinator
