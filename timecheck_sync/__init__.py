from .engine import SyncEngine, SyncResult
from .recorder import MutationRecorder
from .remote import RemoteAuthority
from .store import LocalStore
from .trigger import SyncStatus, SyncTrigger

__all__ = [
    "LocalStore",
    "MutationRecorder",
    "RemoteAuthority",
    "SyncEngine",
    "SyncResult",
    "SyncStatus",
    "SyncTrigger",
]
