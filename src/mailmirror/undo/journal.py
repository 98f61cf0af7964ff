"""Session-scoped undo of delete and archive.

Reversal touches three places in a fixed order: the visible list, the cache,
then the remote mailbox. The first two succeed or fail together; the remote
call is dispatched without awaiting and its failure is only logged.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

import structlog

from mailmirror.dispatch import RemoteDispatcher
from mailmirror.exceptions import StorageError
from mailmirror.gateway import MailGateway
from mailmirror.models import INBOX_LABEL, Message
from mailmirror.store import CacheStore
from mailmirror.undo.actions import ArchiveAction, DeleteAction, UndoableAction

logger = structlog.get_logger()

NOTHING_TO_UNDO = "Nothing to undo"


class EntryState(str, Enum):
    PENDING = "pending"
    REVERSED = "reversed"


@dataclass
class JournalEntry:
    action: UndoableAction
    state: EntryState = EntryState.PENDING


@dataclass(frozen=True)
class UndoOutcome:
    ok: bool
    description: str


class UndoTarget(Protocol):
    """The parts of the view an undo writes to."""

    @property
    def current_label_id(self) -> str | None: ...

    def restore_message(self, message: Message, position: int = 0) -> None: ...

    def discard_restored(self, message_id: str) -> None: ...

    def replace_visible(self, message: Message) -> Message | None: ...

    def refresh_thread(self) -> None: ...


class ActionJournal:
    """LIFO record of reversible actions, kept in memory for the session."""

    def __init__(self, store: CacheStore, gateway: MailGateway, dispatcher: RemoteDispatcher) -> None:
        self._store = store
        self._gateway = gateway
        self._dispatcher = dispatcher
        self._entries: list[JournalEntry] = []

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def can_undo(self) -> bool:
        return bool(self._entries)

    def record(self, action: UndoableAction) -> JournalEntry:
        """Push an action before its cache and remote effects are applied.

        The message is deep-copied so later edits to the live message never
        reach the snapshot.
        """

        snapshot = dataclasses.replace(action, message=action.message.model_copy(deep=True))
        entry = JournalEntry(action=snapshot)
        self._entries.append(entry)
        logger.debug("action_recorded", action=_action_name(snapshot), message_id=snapshot.message.id)
        return entry

    def withdraw(self, entry: JournalEntry) -> bool:
        """Drop a pending entry whose forward action did not take effect."""

        for index in range(len(self._entries) - 1, -1, -1):
            if self._entries[index] is entry:
                del self._entries[index]
                logger.debug("action_withdrawn", action=_action_name(entry.action))
                return True
        return False

    def undo_last(self, target: UndoTarget) -> UndoOutcome:
        """Pop the most recent action and reverse it.

        The popped entry is consumed even when the reversal fails locally;
        it is never pushed back. Undo on an empty journal is a successful
        no-op.
        """

        if not self._entries:
            return UndoOutcome(ok=True, description=NOTHING_TO_UNDO)

        entry = self._entries.pop()
        entry.state = EntryState.REVERSED

        action = entry.action
        if isinstance(action, DeleteAction):
            outcome = self._reverse_delete(action, target)
        elif isinstance(action, ArchiveAction):
            outcome = self._reverse_archive(action, target)
        else:
            raise TypeError(f"Unknown action type: {type(action).__name__}")

        if outcome.ok:
            target.refresh_thread()
        logger.info(
            "undo_applied",
            action=_action_name(action),
            message_id=action.message.id,
            ok=outcome.ok,
        )
        return outcome

    def _reverse_delete(self, action: DeleteAction, target: UndoTarget) -> UndoOutcome:
        message = action.message.model_copy(deep=True)
        target.restore_message(message, 0)

        try:
            self._store.upsert_messages([message], action.label_id)
        except StorageError as exc:
            target.discard_restored(message.id)
            logger.warning("undo_failed", action="delete", message_id=message.id, error=str(exc))
            return UndoOutcome(ok=False, description=f"Undo failed: {exc}")

        self._dispatcher.spawn(f"untrash {message.id}", lambda: self._gateway.untrash(message.id))
        return UndoOutcome(ok=True, description="Undone: delete")

    def _reverse_archive(self, action: ArchiveAction, target: UndoTarget) -> UndoOutcome:
        message = action.message.model_copy(deep=True)
        reinserted = target.current_label_id == INBOX_LABEL
        previous: Message | None = None
        if reinserted:
            target.restore_message(message, 0)
        else:
            previous = target.replace_visible(message)

        try:
            if self._store.get_message(message.id) is None:
                # Gone from the cache since the archive; put the snapshot back.
                self._store.upsert_messages([message], INBOX_LABEL)
            else:
                self._store.add_label(message.id, INBOX_LABEL)
        except StorageError as exc:
            if reinserted:
                target.discard_restored(message.id)
            elif previous is not None:
                target.replace_visible(previous)
            logger.warning("undo_failed", action="archive", message_id=message.id, error=str(exc))
            return UndoOutcome(ok=False, description=f"Undo failed: {exc}")

        self._dispatcher.spawn(f"unarchive {message.id}", lambda: self._gateway.unarchive(message.id))
        return UndoOutcome(ok=True, description="Undone: archive")


def _action_name(action: UndoableAction) -> str:
    return "delete" if isinstance(action, DeleteAction) else "archive"
