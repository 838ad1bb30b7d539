import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from sqlalchemy import delete, func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .config import Settings
from .db import Base, create_session_factory, create_store_engine
from .errors import LocalStoreError
from .models import Meta, OutboxRecord, Task, TimeEntry, cursor_key
from .schemas import TaskPayload, TimeEntryPayload

logger = logging.getLogger(__name__)


class LocalStore:
    """
    Durable local tables for tasks, time entries, the outbox and sync meta.

    Every write that spans more than one row goes through ``transaction()``,
    which commits on success and rolls back on any exception. Storage errors
    surface as LocalStoreError; nothing is half-applied.
    """

    def __init__(self, database_url: str) -> None:
        self.database_url = database_url
        self._engine = create_store_engine(database_url)
        self._session_factory = create_session_factory(self._engine)
        try:
            Base.metadata.create_all(bind=self._engine)
        except SQLAlchemyError as exc:
            raise LocalStoreError(f"cannot initialise local store: {exc}") from exc
        logger.info("LocalStore ready url=%s", self._engine.url.render_as_string(hide_password=True))

    @classmethod
    def from_settings(cls, settings: Settings) -> "LocalStore":
        if settings.database_url.startswith("sqlite:///"):
            Path(settings.data_dir).mkdir(parents=True, exist_ok=True)
        return cls(settings.database_url)

    def close(self) -> None:
        self._engine.dispose()

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        try:
            with self._session_factory() as session, session.begin():
                yield session
        except SQLAlchemyError as exc:
            logger.error("Local store transaction rolled back: %s", exc)
            raise LocalStoreError(str(exc)) from exc

    @contextmanager
    def _reader(self) -> Iterator[Session]:
        try:
            with self._session_factory() as session:
                yield session
        except SQLAlchemyError as exc:
            raise LocalStoreError(str(exc)) from exc

    # ---- reads ----

    def get_task(self, task_id: str) -> Task | None:
        with self._reader() as session:
            return session.get(Task, task_id)

    def get_entry(self, entry_id: str) -> TimeEntry | None:
        with self._reader() as session:
            return session.get(TimeEntry, entry_id)

    def list_tasks(self, owner: str, *, include_deleted: bool = False) -> list[Task]:
        query = select(Task).where(Task.owner == owner)
        if not include_deleted:
            query = query.where(Task.deleted_at.is_(None))
        query = query.order_by(Task.created_at, Task.id)
        with self._reader() as session:
            return list(session.scalars(query))

    def list_entries(
        self,
        owner: str,
        task_id: str | None = None,
        *,
        include_deleted: bool = False,
    ) -> list[TimeEntry]:
        query = select(TimeEntry).where(TimeEntry.owner == owner)
        if task_id is not None:
            query = query.where(TimeEntry.task_id == task_id)
        if not include_deleted:
            query = query.where(TimeEntry.deleted_at.is_(None))
        query = query.order_by(TimeEntry.started_at.desc(), TimeEntry.id)
        with self._reader() as session:
            return list(session.scalars(query))

    def running_entries(self, owner: str, task_id: str | None = None) -> list[TimeEntry]:
        return [entry for entry in self.list_entries(owner, task_id) if entry.is_running]

    def pending_outbox(self, owner: str) -> list[OutboxRecord]:
        query = select(OutboxRecord).where(OutboxRecord.owner == owner).order_by(OutboxRecord.id)
        with self._reader() as session:
            return list(session.scalars(query))

    def outbox_count(self, owner: str) -> int:
        query = select(func.count()).select_from(OutboxRecord).where(OutboxRecord.owner == owner)
        with self._reader() as session:
            return int(session.scalar(query) or 0)

    def get_cursor(self, owner: str) -> str | None:
        with self._reader() as session:
            row = session.get(Meta, cursor_key(owner))
            return row.value if row is not None else None

    # ---- writes composed into a caller's transaction ----

    @staticmethod
    def set_cursor(session: Session, owner: str, value: str | None) -> None:
        session.merge(Meta(key=cursor_key(owner), value=value))

    @staticmethod
    def put_task(session: Session, owner: str, payload: TaskPayload) -> Task:
        return session.merge(Task(owner=owner, **payload.model_dump()))

    @staticmethod
    def put_entry(session: Session, owner: str, payload: TimeEntryPayload) -> TimeEntry:
        return session.merge(TimeEntry(owner=owner, **payload.model_dump()))

    @staticmethod
    def unsent_record_keys(session: Session, owner: str, sent_ids: list[int]) -> set[tuple[str, str]]:
        """(table, record_id) of the owner's outbox rows not among ``sent_ids``."""
        query = select(OutboxRecord.table, OutboxRecord.record_id).where(OutboxRecord.owner == owner)
        if sent_ids:
            query = query.where(OutboxRecord.id.not_in(sent_ids))
        return {(table, record_id) for table, record_id in session.execute(query)}

    @staticmethod
    def delete_outbox(session: Session, ids: list[int]) -> int:
        if not ids:
            return 0
        result = session.execute(delete(OutboxRecord).where(OutboxRecord.id.in_(ids)))
        return int(result.rowcount or 0)

    # ---- maintenance ----

    def purge_orphans(self) -> dict[str, int]:
        """Drop rows that belong to no owner (written before owners were tracked)."""
        counts: dict[str, int] = {}
        with self.transaction() as session:
            for model in (Task, TimeEntry, OutboxRecord):
                result = session.execute(
                    delete(model).where(or_(model.owner.is_(None), model.owner == ""))
                )
                counts[model.__tablename__] = int(result.rowcount or 0)
        if any(counts.values()):
            logger.info("Purged orphan rows %s", counts)
        return counts
