"""In-memory projection read and driven by the presentation layer.

Every command runs on the event loop. Commands that change mail apply the
change to the visible list and the cache right away, and hand the remote call
to the dispatcher without waiting for it.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

import structlog

from mailmirror.dispatch import RemoteDispatcher
from mailmirror.exceptions import StorageError
from mailmirror.gateway import MailGateway
from mailmirror.models import INBOX_LABEL, UNREAD_LABEL, Draft, Label, Message
from mailmirror.store import CacheStore
from mailmirror.sync.status import SyncStatus
from mailmirror.undo import ActionJournal, ArchiveAction, DeleteAction

logger = structlog.get_logger()

# Selecting within this many rows of the end loads the next page.
_LOAD_MORE_THRESHOLD = 5


@dataclass(frozen=True)
class CommandResult:
    ok: bool
    description: str = ""


class ViewState:
    """Labels, visible list, selection, thread detail and status text.

    ``current_label_id`` is None while search results are shown.
    """

    def __init__(
        self,
        store: CacheStore,
        gateway: MailGateway,
        journal: ActionJournal,
        dispatcher: RemoteDispatcher,
        *,
        sync_status: SyncStatus | None = None,
        page_size: int = 50,
        collapse_threads: bool = False,
        signature: str | None = None,
        on_label_selected: Callable[[str], None] | None = None,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._journal = journal
        self._dispatcher = dispatcher
        self._sync_status = sync_status
        self._page_size = page_size
        self._collapse_threads = collapse_threads
        self._signature = signature
        self._on_label_selected = on_label_selected

        self.labels: list[Label] = []
        self.current_label_id: str | None = None
        self.search_term: str | None = None
        self.messages: list[Message] = []
        self.selected_index = 0
        self.thread: list[Message] = []
        self.status_text = ""
        self._exhausted = True

    # Queries ----------------------------------------------------------------

    @property
    def journal(self) -> ActionJournal:
        return self._journal

    @property
    def selected_message(self) -> Message | None:
        if 0 <= self.selected_index < len(self.messages):
            return self.messages[self.selected_index]
        return None

    @property
    def can_undo(self) -> bool:
        return self._journal.can_undo

    @property
    def sync_status_text(self) -> str:
        if self._sync_status is None:
            return ""
        return self._sync_status.describe()

    # Commands ---------------------------------------------------------------

    def load_labels(self) -> CommandResult:
        self.status_text = ""
        try:
            self.labels = self._store.list_labels()
        except StorageError as exc:
            return self._storage_failure("load_labels", exc)
        return CommandResult(ok=True, description=f"{len(self.labels)} labels")

    def select_label(self, label_id: str) -> CommandResult:
        self.status_text = ""
        try:
            page = self._query_page(label_id, offset=0)
        except StorageError as exc:
            return self._storage_failure("select_label", exc)

        self.current_label_id = label_id
        self.search_term = None
        self.messages = page
        self.selected_index = 0
        self._exhausted = len(page) < self._page_size
        self.refresh_thread()

        if self._on_label_selected is not None:
            self._on_label_selected(label_id)

        logger.debug("label_selected", label_id=label_id, loaded=len(page))
        return CommandResult(ok=True, description=self._label_name(label_id))

    def select_message(self, index: int) -> CommandResult:
        self.status_text = ""
        if not 0 <= index < len(self.messages):
            return CommandResult(ok=False, description="No such message")

        self.selected_index = index
        self.refresh_thread()
        if index >= len(self.messages) - _LOAD_MORE_THRESHOLD:
            try:
                self._load_next_page()
            except StorageError as exc:
                logger.warning("load_more_failed", error=str(exc))
        return CommandResult(ok=True)

    def mark_read(self, message_id: str | None = None) -> CommandResult:
        """Toggle the read flag of a message."""

        self.status_text = ""
        _, message = self._locate(message_id)
        if message is None:
            return CommandResult(ok=False, description="No message selected")

        is_read = not message.is_read
        previous_labels = list(message.label_ids)
        message.is_read = is_read
        message.label_ids = [lid for lid in previous_labels if lid != UNREAD_LABEL]
        if not is_read:
            message.label_ids.append(UNREAD_LABEL)
        try:
            self._store.set_read(message.id, is_read)
        except StorageError as exc:
            message.is_read = not is_read
            message.label_ids = previous_labels
            return self._storage_failure("mark_read", exc)

        message_id = message.id
        if is_read:
            self._dispatcher.spawn(f"mark_read {message_id}", lambda: self._gateway.mark_read(message_id))
        else:
            self._dispatcher.spawn(f"mark_unread {message_id}", lambda: self._gateway.mark_unread(message_id))
        return CommandResult(ok=True, description="Marked read" if is_read else "Marked unread")

    def delete(self, message_id: str | None = None) -> CommandResult:
        """Move a message to trash, optimistically."""

        self.status_text = ""
        index, message = self._locate(message_id)
        if message is None:
            return CommandResult(ok=False, description="No message selected")

        entry = self._journal.record(DeleteAction(message=message, label_id=self.current_label_id))
        if index is not None:
            del self.messages[index]
            self._clamp_selection()

        try:
            self._store.remove_message(message.id)
        except StorageError as exc:
            if index is not None:
                self.messages.insert(index, message)
            self._journal.withdraw(entry)
            return self._storage_failure("delete", exc)

        message_id = message.id
        self._dispatcher.spawn(f"trash {message_id}", lambda: self._gateway.trash(message_id))
        self.refresh_thread()
        logger.info("message_deleted", message_id=message_id, label_id=self.current_label_id)
        return CommandResult(ok=True, description="Deleted")

    def archive(self, message_id: str | None = None) -> CommandResult:
        """Remove INBOX from a message, optimistically.

        The message leaves the visible list only when INBOX is the current
        view; other views keep showing it.
        """

        self.status_text = ""
        index, message = self._locate(message_id)
        if message is None:
            return CommandResult(ok=False, description="No message selected")
        if not message.has_label(INBOX_LABEL):
            return CommandResult(ok=False, description="Not in Inbox")

        entry = self._journal.record(ArchiveAction(message=message))
        in_inbox_view = self.current_label_id == INBOX_LABEL
        if index is not None:
            if in_inbox_view:
                del self.messages[index]
                self._clamp_selection()
            else:
                self.messages[index] = message.model_copy(
                    update={"label_ids": [lid for lid in message.label_ids if lid != INBOX_LABEL]},
                    deep=True,
                )

        try:
            self._store.remove_label(message.id, INBOX_LABEL)
        except StorageError as exc:
            if index is not None:
                if in_inbox_view:
                    self.messages.insert(index, message)
                else:
                    self.messages[index] = message
            self._journal.withdraw(entry)
            return self._storage_failure("archive", exc)

        message_id = message.id
        self._dispatcher.spawn(f"archive {message_id}", lambda: self._gateway.archive(message_id))
        self.refresh_thread()
        logger.info("message_archived", message_id=message_id, label_id=self.current_label_id)
        return CommandResult(ok=True, description="Archived")

    def undo(self) -> CommandResult:
        outcome = self._journal.undo_last(self)
        self.status_text = outcome.description
        return CommandResult(ok=outcome.ok, description=outcome.description)

    def compose(self) -> Draft:
        """Start a new message, ending with the configured signature."""

        body = f"\n\n-- \n{self._signature}" if self._signature else ""
        return Draft(body=body)

    def reply(self, message_id: str | None = None) -> Draft | None:
        """Start a reply that quotes the message and stays in its thread.

        Returns:
            The draft, or None when there is no such message.
        """

        _, message = self._locate(message_id)
        if message is None:
            return None

        subject = message.subject or ""
        if not subject.lower().startswith("re:"):
            subject = f"Re: {subject}"

        sent = message.received_at.strftime("%a, %b %d, %Y at %H:%M")
        quoted = "".join(f"> {line}\n" for line in (message.body_plain or message.snippet or "").splitlines())
        signature = f"-- \n{self._signature}\n\n" if self._signature else ""
        body = f"\n\n{signature}On {sent}, {message.from_address or 'Unknown'} wrote:\n{quoted}"

        return Draft(
            to=message.from_address or "",
            subject=subject,
            body=body,
            thread_id=message.thread_id,
        )

    def send(self, draft: Draft) -> CommandResult:
        """Hand a draft to the remote mailbox without waiting for delivery.

        The sent copy reaches the cache through the next sync.
        """

        self.status_text = ""
        if not draft.recipients:
            return CommandResult(ok=False, description="No recipient")

        outgoing = draft.model_copy(deep=True)
        self._dispatcher.spawn(f"send to {outgoing.to}", lambda: self._gateway.send_message(outgoing))
        logger.info("message_send_dispatched", recipients=len(outgoing.recipients), thread_id=outgoing.thread_id)
        return CommandResult(ok=True, description="Sending")

    def search(self, term: str) -> CommandResult:
        """Replace the visible list with full-text matches for ``term``."""

        self.status_text = ""
        if not term.strip():
            return CommandResult(ok=False, description="Empty search")
        try:
            results = self._store.search(term, limit=self._page_size)
        except StorageError as exc:
            return self._storage_failure("search", exc)

        self.current_label_id = None
        self.search_term = term
        self.messages = results
        self.selected_index = 0
        self._exhausted = True
        self.refresh_thread()
        return CommandResult(ok=True, description=f"{len(results)} result(s) for '{term}'")

    def refresh(self) -> CommandResult:
        """Reload the visible list from the cache, keeping the selection.

        Runs on sync change notifications, so the status text is left alone.
        """

        selected = self.selected_message
        previous_index = self.selected_index
        try:
            if self.current_label_id is not None:
                limit = max(len(self.messages), self._page_size)
                messages = self._store.query_by_label(
                    self.current_label_id,
                    limit=limit,
                    collapse_threads=self._collapse_threads,
                )
                self._exhausted = len(messages) < limit
            elif self.search_term is not None:
                messages = self._store.search(self.search_term, limit=self._page_size)
            else:
                return CommandResult(ok=True)
            self.labels = self._store.list_labels()
        except StorageError as exc:
            logger.warning("view_refresh_failed", error=str(exc))
            return CommandResult(ok=False, description=f"Cache error: {exc}")

        self.messages = messages
        self.selected_index = previous_index
        if selected is not None:
            for index, message in enumerate(messages):
                if message.id == selected.id:
                    self.selected_index = index
                    break
        self._clamp_selection()
        self.refresh_thread()
        return CommandResult(ok=True)

    def load_more(self) -> CommandResult:
        self.status_text = ""
        try:
            added = self._load_next_page()
        except StorageError as exc:
            return self._storage_failure("load_more", exc)
        if not added:
            return CommandResult(ok=True, description="No more messages")
        return CommandResult(ok=True, description=f"Loaded {added} more")

    # Undo target ------------------------------------------------------------

    def restore_message(self, message: Message, position: int = 0) -> None:
        self.messages = [m for m in self.messages if m.id != message.id]
        position = max(0, min(position, len(self.messages)))
        self.messages.insert(position, message)
        self.selected_index = position

    def discard_restored(self, message_id: str) -> None:
        self.messages = [m for m in self.messages if m.id != message_id]
        self._clamp_selection()

    def replace_visible(self, message: Message) -> Message | None:
        for index, current in enumerate(self.messages):
            if current.id == message.id:
                self.messages[index] = message
                return current
        return None

    def refresh_thread(self) -> None:
        selected = self.selected_message
        if selected is None:
            self.thread = []
            return
        try:
            self.thread = self._store.query_thread(selected.thread_id)
        except StorageError as exc:
            logger.warning("thread_refresh_failed", thread_id=selected.thread_id, error=str(exc))

    # Internals --------------------------------------------------------------

    def _query_page(self, label_id: str, offset: int) -> list[Message]:
        return self._store.query_by_label(
            label_id,
            limit=self._page_size,
            offset=offset,
            collapse_threads=self._collapse_threads,
        )

    def _load_next_page(self) -> int:
        if self._exhausted or self.current_label_id is None:
            return 0

        page = self._query_page(self.current_label_id, offset=len(self.messages))
        self._exhausted = len(page) < self._page_size
        visible = {m.id for m in self.messages}
        fresh = [m for m in page if m.id not in visible]
        self.messages.extend(fresh)
        return len(fresh)

    def _locate(self, message_id: str | None) -> tuple[int | None, Message | None]:
        if message_id is None:
            selected = self.selected_message
            return (self.selected_index, selected) if selected is not None else (None, None)

        for index, message in enumerate(self.messages):
            if message.id == message_id:
                return index, message
        try:
            return None, self._store.get_message(message_id)
        except StorageError as exc:
            logger.warning("message_lookup_failed", message_id=message_id, error=str(exc))
            return None, None

    def _clamp_selection(self) -> None:
        if not self.messages:
            self.selected_index = 0
        elif self.selected_index >= len(self.messages):
            self.selected_index = len(self.messages) - 1

    def _label_name(self, label_id: str) -> str:
        for label in self.labels:
            if label.id == label_id:
                return label.display_name
        return label_id

    def _storage_failure(self, command: str, exc: StorageError) -> CommandResult:
        logger.warning("view_command_failed", command=command, error=str(exc))
        self.status_text = f"Cache error: {exc}"
        return CommandResult(ok=False, description=self.status_text)
