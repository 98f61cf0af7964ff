"""Process-level wiring of cache, gateway, reconciler, journal and view."""

from __future__ import annotations

import asyncio

import structlog

from mailmirror.config import Settings
from mailmirror.dispatch import RemoteDispatcher
from mailmirror.gateway import MailGateway
from mailmirror.models import INBOX_LABEL
from mailmirror.store import CacheStore
from mailmirror.sync import Reconciler, SyncStatus
from mailmirror.undo import ActionJournal
from mailmirror.view import ViewState

logger = structlog.get_logger()


class MailSession:
    """Everything an interactive client needs, built from settings.

    Use as an async context manager: entering initializes the cache, loads
    the INBOX view and starts background sync; leaving stops sync and waits
    for in-flight remote calls.
    """

    def __init__(
        self,
        settings: Settings,
        gateway: MailGateway,
        *,
        store: CacheStore | None = None,
        background_sync: bool = True,
    ) -> None:
        self.settings = settings
        self.gateway = gateway
        self.store = store or CacheStore(settings.db_path, busy_timeout=settings.db_busy_timeout_seconds)
        self.status = SyncStatus()
        self.dispatcher = RemoteDispatcher()
        self.journal = ActionJournal(self.store, gateway, self.dispatcher)
        self.reconciler = Reconciler(
            gateway,
            self.store,
            self.status,
            interval_seconds=settings.sync_interval_seconds,
            page_size=settings.sync_page_size,
            label_ids=settings.sync_label_ids,
            storage_retries=settings.sync_storage_retries,
            on_change=self._on_sync_change,
        )
        self.view = ViewState(
            self.store,
            gateway,
            self.journal,
            self.dispatcher,
            sync_status=self.status,
            page_size=settings.view_page_size,
            collapse_threads=settings.view_collapse_threads,
            signature=settings.signature,
            on_label_selected=self.reconciler.prioritize,
        )
        self._background_sync = background_sync

    async def open(self) -> None:
        """Initialize the cache and show INBOX.

        Raises:
            StorageError: If the cache schema cannot be created or verified.
        """

        await asyncio.to_thread(self.store.initialize)
        self.view.load_labels()
        self.view.select_label(INBOX_LABEL)
        if self._background_sync:
            self.reconciler.start()
        logger.info("session_opened", db_path=str(self.store.db_path), background_sync=self._background_sync)

    async def close(self) -> None:
        await self.reconciler.stop()
        await self.dispatcher.drain()
        logger.info("session_closed", undo_entries=len(self.journal))

    async def __aenter__(self) -> MailSession:
        await self.open()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def _on_sync_change(self, label_id: str) -> None:
        current = self.view.current_label_id
        if current is None or current == label_id:
            self.view.refresh()
