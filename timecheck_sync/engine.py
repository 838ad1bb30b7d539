import logging
from dataclasses import dataclass

from .credentials import CredentialProvider
from .errors import AuthorizationError
from .models import TASKS, TIME_ENTRIES, OutboxRecord, normalize_owner
from .remote import RemoteAuthority
from .schemas import SyncChanges, SyncRequest, TaskChange, TimeEntryChange
from .store import LocalStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncResult:
    owner: str
    cursor: str
    pushed: int
    pulled_tasks: int
    pulled_time_entries: int


def build_changes(outbox: list[OutboxRecord]) -> SyncChanges:
    """Split outbox rows into per-table batches, keeping log order and every row."""
    tasks = []
    time_entries = []
    for item in outbox:
        change = {"op": item.op, "data": item.payload}
        if item.table == TASKS:
            tasks.append(TaskChange.model_validate(change))
        elif item.table == TIME_ENTRIES:
            time_entries.append(TimeEntryChange.model_validate(change))
        else:
            logger.warning("Skipping outbox row %s with unknown table %r", item.id, item.table)
    return SyncChanges(tasks=tasks, time_entries=time_entries)


class SyncEngine:
    """
    Pull-push synchronisation for one owner at a time.

    The outbox and cursor are read, sent to the remote authority, and the
    authoritative answer is applied in one transaction: returned records
    overwrite local ones by id, the outbox rows that were sent are removed,
    and the cursor moves to the server time. Rows queued while the request
    was in flight are kept for the next cycle, and the records they touch
    are not overwritten. Any failure before the apply step leaves the store
    untouched.
    """

    def __init__(
        self,
        store: LocalStore,
        remote: RemoteAuthority,
        credentials: CredentialProvider,
    ) -> None:
        self.store = store
        self.remote = remote
        self.credentials = credentials

    def preview(self, owner: str) -> SyncRequest:
        owner = normalize_owner(owner)
        outbox = self.store.pending_outbox(owner)
        return SyncRequest(cursor=self.store.get_cursor(owner), changes=build_changes(outbox))

    async def sync(self, owner: str) -> str:
        result = await self.sync_with_result(owner)
        return result.cursor

    async def sync_with_result(self, owner: str) -> SyncResult:
        owner = normalize_owner(owner)
        token = self.credentials.get_token()
        if not token:
            raise AuthorizationError("Sign in to synchronise")

        cursor = self.store.get_cursor(owner)
        outbox = self.store.pending_outbox(owner)
        sent_ids = [item.id for item in outbox]
        request = SyncRequest(cursor=cursor, changes=build_changes(outbox))

        logger.info(
            "Sync start owner=%s cursor=%s tasks=%d time_entries=%d",
            owner,
            cursor,
            len(request.changes.tasks),
            len(request.changes.time_entries),
        )
        response = await self.remote.push_pull(request, token)

        with self.store.transaction() as session:
            # Records edited while the request was in flight keep their newer
            # local version; it goes out with the next cycle.
            unsent = self.store.unsent_record_keys(session, owner, sent_ids)
            for task in response.tasks:
                if (TASKS, task.id) not in unsent:
                    self.store.put_task(session, owner, task)
            for entry in response.time_entries:
                if (TIME_ENTRIES, entry.id) not in unsent:
                    self.store.put_entry(session, owner, entry)
            cleared = self.store.delete_outbox(session, sent_ids)
            self.store.set_cursor(session, owner, response.server_time)

        logger.info(
            "Sync done owner=%s cursor=%s pulled_tasks=%d pulled_time_entries=%d cleared=%d",
            owner,
            response.server_time,
            len(response.tasks),
            len(response.time_entries),
            cleared,
        )
        return SyncResult(
            owner=owner,
            cursor=response.server_time,
            pushed=len(sent_ids),
            pulled_tasks=len(response.tasks),
            pulled_time_entries=len(response.time_entries),
        )
