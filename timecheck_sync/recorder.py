import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session

from .errors import InvalidMutationError, TimerAlreadyRunningError, TombstonedRecordError
from .models import (
    OP_DELETE,
    OP_UPSERT,
    TASKS,
    TIME_ENTRIES,
    OutboxRecord,
    Task,
    TimeEntry,
    generate_id,
    normalize_owner,
    utcnow,
)
from .schemas import TaskPayload, TimeEntryPayload
from .store import LocalStore

logger = logging.getLogger(__name__)

_MODELS = {TASKS: Task, TIME_ENTRIES: TimeEntry}
_PAYLOADS = {TASKS: TaskPayload, TIME_ENTRIES: TimeEntryPayload}


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


class MutationRecorder:
    """
    The only write path for tasks and time entries of one owner.

    Each mutation writes the entity row and appends one outbox row carrying
    the same snapshot, inside a single store transaction. Tombstones are
    terminal: a deleted record cannot be edited or brought back.
    """

    def __init__(
        self,
        store: LocalStore,
        owner: str,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self.owner = normalize_owner(owner)
        self._clock = clock

    def record_mutation(
        self,
        session: Session,
        table: str,
        op: str,
        entity: TaskPayload | TimeEntryPayload | dict[str, Any],
        *,
        now: datetime | None = None,
    ) -> Task | TimeEntry:
        """
        Persist ``entity`` and append its outbox row within ``session``.

        ``updated_at`` and ``client_updated_at`` are stamped with ``now`` (or
        the recorder's clock); the outbox row records the stamped snapshot.
        """
        if table not in _MODELS:
            raise InvalidMutationError(f"unknown table {table!r}")
        if op not in (OP_UPSERT, OP_DELETE):
            raise InvalidMutationError(f"unknown op {op!r}")

        model = _MODELS[table]
        payload_cls = _PAYLOADS[table]
        stamp = now or self._clock()

        data = entity.model_dump() if isinstance(entity, payload_cls) else dict(entity)
        data.update(updated_at=stamp, client_updated_at=stamp)
        try:
            payload = payload_cls.model_validate(data)
        except ValidationError as exc:
            raise InvalidMutationError(f"invalid {table} record: {exc}") from exc

        if op == OP_DELETE and payload.deleted_at is None:
            raise InvalidMutationError("delete requires deleted_at to be set")
        if op == OP_UPSERT and payload.deleted_at is not None:
            raise InvalidMutationError("tombstones must be recorded with op=delete")

        existing = session.get(model, payload.id)
        if existing is not None:
            if existing.owner != self.owner:
                raise InvalidMutationError(f"{table} record {payload.id} belongs to another owner")
            if existing.deleted_at is not None:
                raise TombstonedRecordError(table, payload.id)

        row = session.merge(model(owner=self.owner, **payload.model_dump()))
        session.flush()
        session.add(
            OutboxRecord(
                table=table,
                record_id=payload.id,
                op=op,
                payload=payload.model_dump(mode="json"),
                owner=self.owner,
                client_updated_at=payload.client_updated_at,
            )
        )
        session.flush()
        logger.debug("Recorded %s %s id=%s owner=%s", op, table, payload.id, self.owner)
        return row

    # ---- tasks ----

    def create_task(self, title: str, description: str | None = None) -> Task:
        title = (title or "").strip()
        if not title:
            raise InvalidMutationError("title must not be empty")
        now = self._clock()
        payload = {
            "id": generate_id(),
            "title": title,
            "description": _clean(description),
            "created_at": now,
            "updated_at": now,
            "deleted_at": None,
            "client_updated_at": now,
        }
        with self._store.transaction() as session:
            task = self.record_mutation(session, TASKS, OP_UPSERT, payload, now=now)
        logger.info("Task created id=%s owner=%s", task.id, self.owner)
        return task

    def update_task(
        self,
        task_id: str,
        *,
        title: str | None = None,
        description: str | None = None,
    ) -> Task:
        """Change title and/or description; ``None`` leaves a field as is, ``""`` clears the description."""
        with self._store.transaction() as session:
            task = self._load(session, Task, task_id)
            data = TaskPayload.model_validate(task).model_dump()
            if title is not None:
                if not title.strip():
                    raise InvalidMutationError("title must not be empty")
                data["title"] = title.strip()
            if description is not None:
                data["description"] = _clean(description)
            return self.record_mutation(session, TASKS, OP_UPSERT, data)

    def delete_task(self, task_id: str) -> Task:
        with self._store.transaction() as session:
            task = self._load(session, Task, task_id, allow_deleted=True)
            if task.deleted_at is not None:
                return task
            now = self._clock()
            data = TaskPayload.model_validate(task).model_dump()
            data["deleted_at"] = now
            task = self.record_mutation(session, TASKS, OP_DELETE, data, now=now)
        logger.info("Task deleted id=%s owner=%s", task_id, self.owner)
        return task

    # ---- time entries ----

    def start_timer(self, task_id: str, comment: str | None = None) -> TimeEntry:
        with self._store.transaction() as session:
            self._load(session, Task, task_id)
            running = self._running(session, task_id)
            if running:
                raise TimerAlreadyRunningError(task_id, running[0].id)
            now = self._clock()
            payload = {
                "id": generate_id(),
                "task_id": task_id,
                "started_at": now,
                "stopped_at": None,
                "comment": _clean(comment),
                "created_at": now,
                "updated_at": now,
                "deleted_at": None,
                "client_updated_at": now,
            }
            entry = self.record_mutation(session, TIME_ENTRIES, OP_UPSERT, payload, now=now)
        logger.info("Timer started task=%s entry=%s", task_id, entry.id)
        return entry

    def stop_timer(self, task_id: str) -> TimeEntry | None:
        """
        Stop the task's running entry. Returns None when nothing is running.

        If more than one entry is running for the task they are all stopped
        at the same instant and the most recently started one is returned.
        """
        with self._store.transaction() as session:
            running = self._running(session, task_id)
            if not running:
                return None
            now = self._clock()
            stopped = [self._stop(session, entry, now) for entry in running]
        logger.info("Timer stopped task=%s entries=%d", task_id, len(stopped))
        return stopped[0]

    def update_entry_comment(self, entry_id: str, comment: str | None) -> TimeEntry:
        with self._store.transaction() as session:
            entry = self._load(session, TimeEntry, entry_id)
            data = TimeEntryPayload.model_validate(entry).model_dump()
            data["comment"] = _clean(comment)
            return self.record_mutation(session, TIME_ENTRIES, OP_UPSERT, data)

    def clear_task_time(self, task_id: str) -> list[TimeEntry]:
        """Tombstone every live entry of a task in one transaction."""
        with self._store.transaction() as session:
            entries = list(
                session.scalars(
                    select(TimeEntry)
                    .where(
                        TimeEntry.owner == self.owner,
                        TimeEntry.task_id == task_id,
                        TimeEntry.deleted_at.is_(None),
                    )
                    .order_by(TimeEntry.started_at)
                )
            )
            now = self._clock()
            cleared = []
            for entry in entries:
                data = TimeEntryPayload.model_validate(entry).model_dump()
                data["stopped_at"] = entry.stopped_at or now
                data["deleted_at"] = now
                cleared.append(self.record_mutation(session, TIME_ENTRIES, OP_DELETE, data, now=now))
        if cleared:
            logger.info("Cleared %d entries of task=%s", len(cleared), task_id)
        return cleared

    def stop_all_running(self) -> list[TimeEntry]:
        """Stop every running entry of the owner, e.g. before signing out."""
        with self._store.transaction() as session:
            running = list(
                session.scalars(
                    select(TimeEntry).where(
                        TimeEntry.owner == self.owner,
                        TimeEntry.stopped_at.is_(None),
                        TimeEntry.deleted_at.is_(None),
                    )
                )
            )
            now = self._clock()
            stopped = [self._stop(session, entry, now) for entry in running]
        if stopped:
            logger.info("Stopped %d running entries owner=%s", len(stopped), self.owner)
        return stopped

    # ---- helpers ----

    def _load(self, session: Session, model, record_id: str, *, allow_deleted: bool = False):
        row = session.get(model, record_id)
        if row is None or row.owner != self.owner:
            raise InvalidMutationError(f"{model.__tablename__} record {record_id} not found")
        if row.deleted_at is not None and not allow_deleted:
            raise TombstonedRecordError(model.__tablename__, record_id)
        return row

    def _running(self, session: Session, task_id: str) -> list[TimeEntry]:
        query = (
            select(TimeEntry)
            .where(
                TimeEntry.owner == self.owner,
                TimeEntry.task_id == task_id,
                TimeEntry.stopped_at.is_(None),
                TimeEntry.deleted_at.is_(None),
            )
            .order_by(TimeEntry.started_at.desc())
        )
        return list(session.scalars(query))

    def _stop(self, session: Session, entry: TimeEntry, now: datetime) -> TimeEntry:
        data = TimeEntryPayload.model_validate(entry).model_dump()
        data["stopped_at"] = now
        return self.record_mutation(session, TIME_ENTRIES, OP_UPSERT, data, now=now)
