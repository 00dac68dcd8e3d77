from __future__ import annotations

import asyncio
import json
import time
from typing import Any, Callable

from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from reply_pipeline.models import Base
from reply_pipeline.queues.dispatcher import place_on_lane
from reply_pipeline.schemas import InboundMessage, QueueRoute, TaskEnvelope
from reply_pipeline.services.session_lock import EXTEND_SCRIPT, RELEASE_SCRIPT


class FakeClock:
    """Manually advanced clock; `sleep` advances it instead of waiting."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = float(start)
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += float(seconds)

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(float(seconds))
        self.advance(seconds)
        await asyncio.sleep(0)


def make_session_factory() -> sessionmaker[Session]:
    """In-memory SQLite shared across threads, with every table created."""

    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    return sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        future=True,
        expire_on_commit=False,
    )


def make_message(
    message_id: str,
    session_id: str = "s1",
    *,
    at: float,
    payload: Any = None,
) -> InboundMessage:
    return InboundMessage(
        message_id=message_id,
        session_id=session_id,
        payload=payload if payload is not None else {"text": f"hello from {message_id}"},
        enqueued_at=at,
    )


class RecordingDispatcher:
    """Collects (envelope, route) pairs instead of publishing them."""

    def __init__(self) -> None:
        self.sent: list[tuple[TaskEnvelope, QueueRoute]] = []
        self.fail_with: BaseException | None = None

    async def enqueue(self, envelope: TaskEnvelope, route: QueueRoute) -> TaskEnvelope:
        if self.fail_with is not None:
            raise self.fail_with
        placed = place_on_lane(envelope, route)
        self.sent.append((placed, route))
        return placed

    @property
    def routes(self) -> list[QueueRoute]:
        return [route for _, route in self.sent]

    def last(self) -> tuple[TaskEnvelope, QueueRoute]:
        return self.sent[-1]


class ScriptedCompletion:
    """
    Completion service double.

    Each call pops the next scripted outcome: an exception instance is raised,
    anything else is returned. With an empty script it echoes the payload.
    `before_return` runs inside the call (e.g. to advance a fake clock).
    """

    def __init__(
        self,
        *outcomes: Any,
        before_return: Callable[[Any], None] | None = None,
    ) -> None:
        self.outcomes = list(outcomes)
        self.before_return = before_return
        self.calls: list[Any] = []

    async def generate(self, payload: Any) -> Any:
        self.calls.append(payload)
        await asyncio.sleep(0)
        if self.before_return is not None:
            self.before_return(payload)
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if isinstance(outcome, BaseException):
                raise outcome
            return outcome
        return {"reply": payload}


def _parse_bound(value: Any) -> tuple[float, bool]:
    """Score bound -> (value, exclusive)."""
    if isinstance(value, (int, float)):
        return float(value), False
    text = str(value)
    exclusive = text.startswith("(")
    if exclusive:
        text = text[1:]
    if text in ("-inf", "+inf", "inf"):
        return float(text), exclusive
    return float(text), exclusive


def _above(score: float, bound: tuple[float, bool]) -> bool:
    value, exclusive = bound
    return score > value if exclusive else score >= value


def _below(score: float, bound: tuple[float, bool]) -> bool:
    value, exclusive = bound
    return score < value if exclusive else score <= value


class InMemoryRedis:
    """
    Redis double for the commands used by the pipeline.

    Keys expire against `now_fn`, so a fake clock drives lease expiry. The
    two Lua scripts of the session lock are emulated; setting `fail = True`
    makes every command raise a connection error.
    """

    def __init__(self, now_fn: Callable[[], float] | None = None) -> None:
        self._now = now_fn or time.time
        self._data: dict[str, str] = {}
        self._hashes: dict[str, dict[str, str]] = {}
        self._zsets: dict[str, dict[str, float]] = {}
        self._lists: dict[str, list[str]] = {}
        self._expires: dict[str, float] = {}
        self.published: list[tuple[str, str]] = []
        self.fail = False

    # --- helpers ---

    def _check(self) -> None:
        if self.fail:
            raise RedisConnectionError("redis unavailable (simulated)")

    def _stores(self) -> tuple[dict, ...]:
        return (self._data, self._hashes, self._zsets, self._lists)

    def _purge(self, key: str) -> None:
        deadline = self._expires.get(key)
        if deadline is not None and deadline <= self._now():
            self._drop(key)

    def _drop(self, key: str) -> bool:
        removed = False
        for store in self._stores():
            if key in store:
                store.pop(key, None)
                removed = True
        self._expires.pop(key, None)
        return removed

    def _alive(self, key: str) -> bool:
        self._purge(key)
        return any(key in store for store in self._stores())

    def _zset(self, key: str) -> dict[str, float]:
        self._purge(key)
        return self._zsets.get(key, {})

    def events(self, event_type: str | None = None) -> list[dict]:
        decoded = [json.loads(message) for _, message in self.published]
        if event_type is None:
            return decoded
        return [event for event in decoded if event["event_type"] == event_type]

    # --- strings / keys ---

    async def ping(self) -> bool:
        self._check()
        return True

    async def get(self, key: str):
        self._check()
        self._purge(key)
        return self._data.get(key)

    async def set(
        self,
        key: str,
        value: Any,
        ex: int | None = None,
        px: int | None = None,
        nx: bool = False,
        get: bool = False,
    ):
        self._check()
        self._purge(key)
        previous = self._data.get(key)
        if nx and self._alive(key):
            return None
        self._data[key] = str(value)
        if ex is not None:
            self._expires[key] = self._now() + float(ex)
        elif px is not None:
            self._expires[key] = self._now() + float(px) / 1000.0
        else:
            self._expires.pop(key, None)
        return previous if get else True

    async def exists(self, *keys: str) -> int:
        self._check()
        return sum(1 for key in keys if self._alive(key))

    async def delete(self, *keys: str) -> int:
        self._check()
        removed = 0
        for key in keys:
            self._purge(key)
            if self._drop(key):
                removed += 1
        return removed

    async def expire(self, key: str, seconds: int) -> bool:
        self._check()
        if not self._alive(key):
            return False
        self._expires[key] = self._now() + float(seconds)
        return True

    async def pttl(self, key: str) -> int:
        self._check()
        if not self._alive(key):
            return -2
        deadline = self._expires.get(key)
        if deadline is None:
            return -1
        return int(round((deadline - self._now()) * 1000))

    # --- hashes ---

    async def hset(
        self,
        key: str,
        field: str | None = None,
        value: Any = None,
        mapping: dict[str, Any] | None = None,
    ) -> int:
        self._check()
        self._purge(key)
        h = self._hashes.setdefault(key, {})
        items = dict(mapping or {})
        if field is not None:
            items[field] = value
        added = 0
        for name, val in items.items():
            if name not in h:
                added += 1
            h[str(name)] = str(val)
        return added

    async def hget(self, key: str, field: str):
        self._check()
        self._purge(key)
        return self._hashes.get(key, {}).get(field)

    async def hgetall(self, key: str) -> dict[str, str]:
        self._check()
        self._purge(key)
        return dict(self._hashes.get(key, {}))

    async def hdel(self, key: str, *fields: str) -> int:
        self._check()
        self._purge(key)
        h = self._hashes.get(key, {})
        removed = 0
        for name in fields:
            if h.pop(name, None) is not None:
                removed += 1
        if key in self._hashes and not h:
            self._drop(key)
        return removed

    # --- sorted sets ---

    async def zadd(self, key: str, mapping: dict[str, float], nx: bool = False) -> int:
        self._check()
        self._purge(key)
        z = self._zsets.setdefault(key, {})
        added = 0
        for member, score in mapping.items():
            if member in z:
                if not nx:
                    z[member] = float(score)
                continue
            z[member] = float(score)
            added += 1
        return added

    async def zrem(self, key: str, *members: str) -> int:
        self._check()
        z = self._zset(key)
        removed = 0
        for member in members:
            if z.pop(member, None) is not None:
                removed += 1
        if key in self._zsets and not z:
            self._drop(key)
        return removed

    async def zscore(self, key: str, member: str):
        self._check()
        value = self._zset(key).get(member)
        return None if value is None else float(value)

    async def zcard(self, key: str) -> int:
        self._check()
        return len(self._zset(key))

    async def zcount(self, key: str, min: Any, max: Any) -> int:
        self._check()
        low, high = _parse_bound(min), _parse_bound(max)
        return sum(1 for score in self._zset(key).values() if _above(score, low) and _below(score, high))

    async def zremrangebyscore(self, key: str, min: Any, max: Any) -> int:
        self._check()
        low, high = _parse_bound(min), _parse_bound(max)
        z = self._zset(key)
        doomed = [m for m, score in z.items() if _above(score, low) and _below(score, high)]
        for member in doomed:
            z.pop(member, None)
        if key in self._zsets and not z:
            self._drop(key)
        return len(doomed)

    def _sorted(self, key: str) -> list[tuple[str, float]]:
        return sorted(self._zset(key).items(), key=lambda item: (item[1], item[0]))

    async def zrange(self, key: str, start: int, end: int, withscores: bool = False):
        self._check()
        rows = self._sorted(key)
        n = len(rows)
        s = start + n if start < 0 else start
        e = end + n if end < 0 else end
        picked = rows[max(0, s) : e + 1] if e >= 0 else []
        if withscores:
            return [(member, score) for member, score in picked]
        return [member for member, _ in picked]

    async def zrevrangebyscore(
        self,
        key: str,
        max: Any,
        min: Any,
        start: int | None = None,
        num: int | None = None,
        withscores: bool = False,
    ):
        self._check()
        high, low = _parse_bound(max), _parse_bound(min)
        rows = [
            (member, score)
            for member, score in reversed(self._sorted(key))
            if _above(score, low) and _below(score, high)
        ]
        if start is not None and num is not None:
            rows = rows[start : start + num]
        if withscores:
            return rows
        return [member for member, _ in rows]

    # --- lists ---

    async def rpush(self, key: str, *values: Any) -> int:
        self._check()
        lst = self._lists.setdefault(key, [])
        lst.extend(str(v) for v in values)
        return len(lst)

    async def llen(self, key: str) -> int:
        self._check()
        self._purge(key)
        return len(self._lists.get(key, []))

    # --- pub/sub, scripts, pipelines ---

    async def publish(self, channel: str, message: str) -> int:
        self._check()
        self.published.append((str(channel), str(message)))
        return 0

    async def eval(self, script: str, numkeys: int, *args: Any):
        self._check()
        keys = [str(a) for a in args[:numkeys]]
        argv = [str(a) for a in args[numkeys:]]
        if script not in (EXTEND_SCRIPT, RELEASE_SCRIPT):
            raise NotImplementedError("only the session lock scripts are emulated")

        key = keys[0]
        self._purge(key)
        raw = self._data.get(key)
        if raw is None:
            return 0
        try:
            owner = json.loads(raw).get("owner_id")
        except ValueError:
            return 0
        if owner != argv[0]:
            return 0

        if script == RELEASE_SCRIPT:
            return 1 if self._drop(key) else 0

        wanted = float(argv[1]) / 1000.0
        deadline = self._expires.get(key)
        if deadline is not None and deadline - self._now() < wanted:
            self._expires[key] = self._now() + wanted
        return 1

    def pipeline(self, transaction: bool = True) -> "_InMemoryPipeline":
        return _InMemoryPipeline(self)

    async def aclose(self) -> None:
        return None


class _InMemoryPipeline:
    def __init__(self, redis: InMemoryRedis) -> None:
        self._redis = redis
        self._commands: list[tuple[str, tuple, dict]] = []

    def __getattr__(self, name: str):
        target = getattr(self._redis, name)
        if not callable(target):
            raise AttributeError(name)

        def _queue(*args: Any, **kwargs: Any) -> "_InMemoryPipeline":
            self._commands.append((name, args, kwargs))
            return self

        return _queue

    async def execute(self) -> list[Any]:
        self._redis._check()
        commands, self._commands = self._commands, []
        results = []
        for name, args, kwargs in commands:
            results.append(await getattr(self._redis, name)(*args, **kwargs))
        return results


__all__ = [
    "FakeClock",
    "InMemoryRedis",
    "RecordingDispatcher",
    "ScriptedCompletion",
    "make_message",
    "make_session_factory",
]
