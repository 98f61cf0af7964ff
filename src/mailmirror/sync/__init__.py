"""Background synchronization between the cache and Gmail."""

from mailmirror.sync.reconciler import Reconciler, SyncReport
from mailmirror.sync.status import SyncPhase, SyncSnapshot, SyncStatus

__all__ = ["Reconciler", "SyncPhase", "SyncReport", "SyncSnapshot", "SyncStatus"]
