"""Stage queues.

One logical queue per stage. Delivery is at-least-once: a popped item sits in a
processing list until acked, and delayed retries may be promoted twice by
competing workers. The store's claim gate turns duplicates into no-ops.

Redis layout per stage (``<prefix>:<stage>:...``):
    queue       LIST  pending work items (LPUSH in, BRPOPLPUSH out)
    processing  LIST  items popped but not yet acked
    delayed     ZSET  retries, score = unix time when due
    dlq         LIST  items whose job ended FAILED
"""

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from typing import Iterable, Protocol

import redis

from .models import JobType
from .schemas import WorkItem
from .settings import Settings

log = logging.getLogger("quillqueue.queues")

class StageQueue(Protocol):
    job_type: JobType

    def push(self, item: WorkItem) -> None: ...

    def push_many(self, items: Iterable[WorkItem]) -> int: ...

    def push_delayed(self, item: WorkItem, delay: float) -> None: ...

    def pop(self, timeout: float = 5) -> WorkItem | None: ...

    def ack(self, item: WorkItem) -> None: ...

    def dead_letter(self, item: WorkItem) -> None: ...

    def promote_due(self, limit: int = 50) -> int: ...

    def depth(self) -> int: ...

class RedisStageQueue:
    def __init__(self, r: redis.Redis, job_type: JobType, prefix: str = "quill"):
        self.r = r
        self.job_type = job_type
        base = f"{prefix}:{job_type.value}"
        self.queue_key = f"{base}:queue"
        self.processing_key = f"{base}:processing"
        self.delayed_key = f"{base}:delayed"
        self.dlq_key = f"{base}:dlq"

    def push(self, item: WorkItem) -> None:
        self.r.lpush(self.queue_key, item.encode())

    def push_many(self, items: Iterable[WorkItem]) -> int:
        encoded = [i.encode() for i in items]
        if not encoded:
            return 0
        pipe = self.r.pipeline()
        for raw in encoded:
            pipe.lpush(self.queue_key, raw)
        pipe.execute()
        return len(encoded)

    def push_delayed(self, item: WorkItem, delay: float) -> None:
        self.r.zadd(self.delayed_key, {item.encode(): time.time() + max(0.0, delay)})

    def pop(self, timeout: float = 5) -> WorkItem | None:
        """BRPOPLPUSH: take from the tail, park in processing until acked."""
        raw = self.r.brpoplpush(self.queue_key, self.processing_key, timeout=max(1, int(timeout)))
        if raw is None:
            return None
        try:
            return WorkItem.decode(raw)
        except ValueError:
            log.error("dropping undecodable work item", extra={"event": "item_invalid", "stage": self.job_type.value})
            self.r.lrem(self.processing_key, 1, raw)
            self.r.lpush(self.dlq_key, raw)
            return None

    def ack(self, item: WorkItem) -> None:
        # remove ONE occurrence from processing
        self.r.lrem(self.processing_key, 1, item.raw)

    def dead_letter(self, item: WorkItem) -> None:
        self.r.lpush(self.dlq_key, item.raw)

    def promote_due(self, limit: int = 50) -> int:
        """Move due delayed items back onto the queue. Returns how many moved."""
        due = self.r.zrangebyscore(self.delayed_key, 0, time.time(), start=0, num=limit)
        if not due:
            return 0
        pipe = self.r.pipeline()
        for raw in due:
            pipe.zrem(self.delayed_key, raw)
        removed = pipe.execute()

        # only the worker whose ZREM succeeded pushes, so a race does not double-deliver
        won = [raw for raw, n in zip(due, removed) if n]
        if won:
            pipe = self.r.pipeline()
            for raw in won:
                pipe.lpush(self.queue_key, raw)
            pipe.execute()
        return len(won)

    def depth(self) -> int:
        return int(self.r.llen(self.queue_key))

class InMemoryStageQueue:
    """Thread-safe queue for a single process (tests, RUN_WORKERS dev mode)."""

    def __init__(self, job_type: JobType):
        self.job_type = job_type
        self._cond = threading.Condition()
        self._queue: deque[str] = deque()
        self._processing: list[str] = []
        self._delayed: list[tuple[float, int, str]] = []
        self._seq = itertools.count()
        self.dlq: list[WorkItem] = []

    def push(self, item: WorkItem) -> None:
        self.push_many([item])

    def push_many(self, items: Iterable[WorkItem]) -> int:
        encoded = [i.encode() for i in items]
        with self._cond:
            self._queue.extend(encoded)
            self._cond.notify(len(encoded))
        return len(encoded)

    def push_delayed(self, item: WorkItem, delay: float) -> None:
        with self._cond:
            heapq.heappush(self._delayed, (time.monotonic() + max(0.0, delay), next(self._seq), item.encode()))
            self._cond.notify()

    def pop(self, timeout: float = 5) -> WorkItem | None:
        deadline = time.monotonic() + timeout
        with self._cond:
            while True:
                self._promote_locked()
                if self._queue:
                    raw = self._queue.popleft()
                    self._processing.append(raw)
                    return WorkItem.decode(raw)
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                if self._delayed:
                    remaining = min(remaining, max(0.0, self._delayed[0][0] - time.monotonic()))
                self._cond.wait(remaining)

    def ack(self, item: WorkItem) -> None:
        with self._cond:
            try:
                self._processing.remove(item.raw)
            except ValueError:
                pass

    def dead_letter(self, item: WorkItem) -> None:
        with self._cond:
            self.dlq.append(item)

    def _promote_locked(self, limit: int = 50) -> int:
        now = time.monotonic()
        moved = 0
        while self._delayed and self._delayed[0][0] <= now and moved < limit:
            _, _, raw = heapq.heappop(self._delayed)
            self._queue.append(raw)
            moved += 1
        return moved

    def promote_due(self, limit: int = 50) -> int:
        with self._cond:
            moved = self._promote_locked(limit)
            if moved:
                self._cond.notify(moved)
            return moved

    def depth(self) -> int:
        with self._cond:
            return len(self._queue)

    def delayed_count(self) -> int:
        with self._cond:
            return len(self._delayed)

    def pending_items(self) -> list[WorkItem]:
        with self._cond:
            return [WorkItem.decode(raw) for raw in self._queue]

def build_queues(s: Settings, r: redis.Redis | None = None) -> dict[JobType, StageQueue]:
    if s.queue_backend == "memory":
        return {t: InMemoryStageQueue(t) for t in JobType}
    if s.queue_backend != "redis":
        raise ValueError(f"unknown queue backend: {s.queue_backend}")
    if r is None:
        from .redis_client import get_redis

        r = get_redis(s.redis_url)
    return {t: RedisStageQueue(r, t, prefix=s.queue_prefix) for t in JobType}
