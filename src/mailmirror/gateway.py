"""Operations the remote mailbox service must offer.

Every label or trash mutation is idempotent: trashing a trashed message or
unarchiving a message already in INBOX succeeds without effect. Sending is
not, so nothing retries it.
"""

from __future__ import annotations

from typing import Protocol

from mailmirror.models import Draft, Label, Message, RemoteListing


class MailGateway(Protocol):
    async def list_labels(self) -> list[Label]: ...

    async def list_message_refs(self, label_id: str, max_results: int) -> RemoteListing: ...

    async def get_message(self, message_id: str) -> Message: ...

    async def trash(self, message_id: str) -> None: ...

    async def untrash(self, message_id: str) -> None: ...

    async def archive(self, message_id: str) -> None: ...

    async def unarchive(self, message_id: str) -> None: ...

    async def mark_read(self, message_id: str) -> None: ...

    async def mark_unread(self, message_id: str) -> None: ...

    async def send_message(self, draft: Draft) -> None: ...
