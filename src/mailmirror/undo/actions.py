"""Reversible user actions."""

from __future__ import annotations

from dataclasses import dataclass

from mailmirror.models import Message


@dataclass(frozen=True)
class DeleteAction:
    """A message moved to trash.

    ``label_id`` is the view the delete was issued from; None when issued from
    search results.
    """

    message: Message
    label_id: str | None


@dataclass(frozen=True)
class ArchiveAction:
    """A message whose INBOX label was removed. ``message`` predates the change."""

    message: Message


UndoableAction = DeleteAction | ArchiveAction
