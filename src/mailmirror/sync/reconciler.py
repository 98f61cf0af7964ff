"""Background reconciliation of the cache against the remote mailbox."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

import structlog

from mailmirror.exceptions import AuthenticationError, MailMirrorError, StorageError
from mailmirror.gateway import MailGateway
from mailmirror.models import UNREAD_LABEL, Label, MessageRef, RemoteListing
from mailmirror.store import CacheStore
from mailmirror.sync.status import SyncStatus
from mailmirror.utils import retry_on_failure

logger = structlog.get_logger()


@dataclass
class SyncReport:
    """Counters for one reconciliation pass."""

    labels: int = 0
    fetched: int = 0
    linked: int = 0
    unlinked: int = 0
    read_updates: int = 0
    failures: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


class Reconciler:
    """Pulls remote state and folds it into the cache.

    A pass replaces the label table, then diffs each label's remote listing
    against the cache. Items are handled independently: one failed fetch or
    write is recorded and the rest of the diff still runs.
    """

    def __init__(
        self,
        gateway: MailGateway,
        store: CacheStore,
        status: SyncStatus,
        *,
        interval_seconds: float = 30.0,
        page_size: int = 100,
        label_ids: Sequence[str] | None = None,
        storage_retries: int = 2,
        retry_delay: float = 0.5,
        on_change: Callable[[str], None] | None = None,
    ) -> None:
        """Create a reconciler.

        Args:
            gateway: Remote mailbox.
            store: Cache to reconcile.
            status: Shared status object updated as passes run.
            interval_seconds: Pause between passes in :meth:`run_forever`.
            page_size: Max refs requested per label.
            label_ids: Labels to reconcile; None means every remote label.
            storage_retries: Retries for a failed cache write.
            retry_delay: Initial backoff between cache write retries.
            on_change: Called with a label id after that label's cached data
                changed.
        """

        self._gateway = gateway
        self._store = store
        self._status = status
        self._interval = interval_seconds
        self._page_size = page_size
        self._label_ids = list(label_ids) if label_ids else None
        self._storage_retries = storage_retries
        self._retry_delay = retry_delay
        self._on_change = on_change

        self._priority_label: str | None = None
        self._wakeup = asyncio.Event()
        self._stopping = False
        self._task: asyncio.Task[None] | None = None

    @property
    def status(self) -> SyncStatus:
        return self._status

    def request_sync(self) -> None:
        """Start a pass now instead of waiting for the interval."""

        self._wakeup.set()

    def prioritize(self, label_id: str) -> None:
        """Sync ``label_id`` first on the next pass, and start that pass now."""

        self._priority_label = label_id
        self.request_sync()

    def start(self) -> asyncio.Task[None]:
        """Run :meth:`run_forever` as a task on the running loop."""

        if self._task is None or self._task.done():
            self._stopping = False
            self._task = asyncio.get_running_loop().create_task(self.run_forever(), name="reconciler")
        return self._task

    async def stop(self) -> None:
        """Stop the loop after the current pass finishes."""

        self._stopping = True
        self._wakeup.set()
        if self._task is None:
            return
        task, self._task = self._task, None
        try:
            await task
        except AuthenticationError:
            # Recorded in the sync status when it happened.
            pass

    async def run_forever(self) -> None:
        """Run passes until stopped.

        Raises:
            AuthenticationError: Credentials were rejected; the loop stops.
        """

        logger.info("reconciler_started", interval_seconds=self._interval)
        while not self._stopping:
            self._wakeup.clear()
            try:
                await self.run_pass()
            except AuthenticationError as exc:
                logger.error("reconciler_stopped", reason="authentication", error=str(exc))
                raise

            if self._stopping:
                break
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self._interval)
            except TimeoutError:
                pass
        logger.info("reconciler_stopped", reason="requested")

    async def run_pass(self) -> SyncReport:
        """Run one reconciliation pass.

        Returns:
            SyncReport: What the pass changed and which items failed.

        Raises:
            AuthenticationError: Credentials were rejected. The status is set
                to error before raising.
        """

        report = SyncReport()
        self._status.begin_pass()
        logger.info("sync_pass_started")

        try:
            labels = await self._gateway.list_labels()
            await self._store_call(self._store.replace_labels, labels)

            for label_id in self._labels_to_sync(labels):
                self._status.begin_label(label_id)
                changed = await self._sync_label(label_id, report)
                self._status.finish_label(label_id)
                report.labels += 1
                if changed and self._on_change is not None:
                    self._on_change(label_id)
        except AuthenticationError as exc:
            self._status.fail(str(exc))
            raise
        except MailMirrorError as exc:
            logger.warning("sync_pass_failed", error=str(exc))
            report.failures.append(str(exc))
            self._status.fail(str(exc))
            return report

        if report.failures:
            self._status.fail(f"{len(report.failures)} item(s) failed: {report.failures[0]}")
        else:
            self._status.succeed()

        logger.info(
            "sync_pass_completed",
            labels=report.labels,
            fetched=report.fetched,
            linked=report.linked,
            unlinked=report.unlinked,
            read_updates=report.read_updates,
            failures=len(report.failures),
        )
        return report

    def _labels_to_sync(self, labels: Sequence[Label]) -> list[str]:
        ordered = list(self._label_ids) if self._label_ids else [label.id for label in labels]

        priority, self._priority_label = self._priority_label, None
        if priority is not None:
            ordered = [priority] + [label_id for label_id in ordered if label_id != priority]
        return ordered

    async def _sync_label(self, label_id: str, report: SyncReport) -> bool:
        try:
            listing = await self._gateway.list_message_refs(label_id, self._page_size)
            associated = await self._store_call(self._store.label_refs, label_id)
            cached = await self._store_call(self._store.message_refs, [ref.id for ref in listing.refs])
        except AuthenticationError:
            raise
        except MailMirrorError as exc:
            logger.warning("sync_label_failed", label_id=label_id, error=str(exc))
            report.failures.append(f"{label_id}: {exc}")
            return False

        changed = False
        for ref in listing.refs:
            try:
                changed |= await self._apply_ref(label_id, ref, cached.get(ref.id), associated, report)
            except AuthenticationError:
                raise
            except MailMirrorError as exc:
                logger.warning("sync_item_failed", label_id=label_id, message_id=ref.id, error=str(exc))
                report.failures.append(f"{ref.id}: {exc}")

        for message_id in self._stale_associations(listing, associated):
            try:
                if await self._unlink(message_id, label_id):
                    report.unlinked += 1
                    changed = True
            except MailMirrorError as exc:
                logger.warning("sync_item_failed", label_id=label_id, message_id=message_id, error=str(exc))
                report.failures.append(f"{message_id}: {exc}")

        logger.debug("sync_label_completed", label_id=label_id, refs=len(listing.refs), changed=changed)
        return changed

    async def _apply_ref(
        self,
        label_id: str,
        ref: MessageRef,
        cached: MessageRef | None,
        associated: dict[str, MessageRef],
        report: SyncReport,
    ) -> bool:
        if cached is None or cached.internal_date < ref.internal_date:
            message = await self._gateway.get_message(ref.id)
            await self._store_call(self._store.upsert_messages, [message], label_id)
            report.fetched += 1
            return True

        changed = False
        if ref.id not in associated:
            if await self._store_call(self._store.add_label, ref.id, label_id):
                report.linked += 1
                changed = True
        if ref.is_read is not None and ref.is_read != cached.is_read:
            await self._store_call(self._store.set_read, ref.id, ref.is_read)
            report.read_updates += 1
            changed = True
        return changed

    def _stale_associations(self, listing: RemoteListing, associated: dict[str, MessageRef]) -> list[str]:
        """Locally associated ids the remote listing shows are gone.

        Only a complete listing can prove an absence. Messages sharing a
        timestamp are listed in no particular order, so a truncated listing
        says nothing about the ones that fell on the next page.
        """

        if not listing.complete:
            return []
        remote_ids = {ref.id for ref in listing.refs}
        return [message_id for message_id in associated if message_id not in remote_ids]

    async def _unlink(self, message_id: str, label_id: str) -> bool:
        if label_id == UNREAD_LABEL:
            # Leaving UNREAD remotely means the message was read.
            return await self._store_call(self._store.set_read, message_id, True)
        return await self._store_call(self._store.remove_label, message_id, label_id)

    async def _store_call(self, func: Callable[..., Any], *args: Any) -> Any:
        retrying = retry_on_failure(
            max_retries=self._storage_retries,
            delay=self._retry_delay,
            exceptions=(StorageError,),
        )(func)
        return await asyncio.to_thread(retrying, *args)
