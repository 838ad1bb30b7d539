"""
Elapsed-time projection.

Durations are never stored. They are derived from the entry set and the
clock on every observation: completed entries contribute
``stopped_at - started_at``, running ones ``now - started_at``.
"""

import asyncio
from collections.abc import AsyncIterator, Callable, Iterable
from datetime import datetime

from .models import TimeEntry, utcnow


def entry_seconds(entry: TimeEntry, now: datetime) -> float:
    end = entry.stopped_at if entry.stopped_at is not None else now
    return max(0.0, (end - entry.started_at).total_seconds())


def _live(entries: Iterable[TimeEntry], task_id: str) -> list[TimeEntry]:
    return [e for e in entries if e.task_id == task_id and e.deleted_at is None]


def completed_seconds(entries: Iterable[TimeEntry], task_id: str) -> float:
    return sum(
        entry_seconds(e, e.stopped_at) for e in _live(entries, task_id) if e.stopped_at is not None
    )


def task_seconds(entries: Iterable[TimeEntry], task_id: str, now: datetime) -> float:
    return sum(entry_seconds(e, now) for e in _live(entries, task_id))


def format_duration(seconds: float) -> str:
    total = max(0, int(seconds))
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


async def watch_task_seconds(
    load_entries: Callable[[], Iterable[TimeEntry]],
    task_id: str,
    *,
    interval: float = 1.0,
    clock: Callable[[], datetime] = utcnow,
) -> AsyncIterator[float]:
    """Yield the task's projected duration every ``interval`` seconds."""
    while True:
        yield task_seconds(load_entries(), task_id, clock())
        await asyncio.sleep(interval)
