"""Undo of user actions across the view, the cache and Gmail."""

from mailmirror.undo.actions import ArchiveAction, DeleteAction, UndoableAction
from mailmirror.undo.journal import (
    NOTHING_TO_UNDO,
    ActionJournal,
    EntryState,
    JournalEntry,
    UndoOutcome,
    UndoTarget,
)

__all__ = [
    "NOTHING_TO_UNDO",
    "ActionJournal",
    "ArchiveAction",
    "DeleteAction",
    "EntryState",
    "JournalEntry",
    "UndoOutcome",
    "UndoTarget",
    "UndoableAction",
]
