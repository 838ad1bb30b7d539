class TimeCheckError(Exception):
    """Base class for every error raised by timecheck_sync."""


class LocalStoreError(TimeCheckError):
    """The local store rejected a read or write; the transaction was rolled back."""


class InvalidMutationError(TimeCheckError, ValueError):
    """A mutation was refused before anything was written."""


class TombstonedRecordError(InvalidMutationError):
    def __init__(self, table: str, record_id: str) -> None:
        super().__init__(f"{table} record {record_id} is deleted")
        self.table = table
        self.record_id = record_id


class TimerAlreadyRunningError(InvalidMutationError):
    def __init__(self, task_id: str, entry_id: str) -> None:
        super().__init__(f"task {task_id} already has a running entry {entry_id}")
        self.task_id = task_id
        self.entry_id = entry_id


class SyncError(TimeCheckError):
    """A sync attempt failed. Local state was left untouched."""


class ConnectivityError(SyncError):
    pass


class AuthorizationError(SyncError):
    pass


class ProtocolError(SyncError):
    def __init__(self, detail: str, status_code: int | None = None) -> None:
        message = detail if status_code is None else f"{status_code}: {detail}"
        super().__init__(message)
        self.detail = detail
        self.status_code = status_code
