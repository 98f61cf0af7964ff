"""Data models for mailmirror.

This module contains Pydantic models for the cached mailbox: messages,
labels, and the lightweight refs returned by remote listings.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field

INBOX_LABEL = "INBOX"
UNREAD_LABEL = "UNREAD"


class LabelType(str, Enum):
    """Label category enumeration."""

    SYSTEM = "system"
    USER = "user"


class Label(BaseModel):
    """A Gmail label definition."""

    id: str = Field(description="Gmail label ID")
    name: str = Field(description="Label name as stored remotely")
    label_type: LabelType = Field(default=LabelType.USER, description="System or user label")
    color_foreground: str | None = Field(default=None, description="Text color, if set")
    color_background: str | None = Field(default=None, description="Background color, if set")

    @property
    def display_name(self) -> str:
        """Title-cased name for display (``CATEGORY_SOCIAL`` -> ``Category Social``)."""
        words = [w for w in re.split(r"[\s_]+", self.name) if w]
        return " ".join(w[:1].upper() + w[1:].lower() for w in words)


class Message(BaseModel):
    """A cached email message.

    ``internal_date`` is Gmail's internal timestamp in milliseconds and is the
    only sort key used by the cache.
    """

    id: str = Field(description="Gmail message ID")
    thread_id: str = Field(description="Gmail thread ID")
    from_address: str | None = Field(default=None, description="Raw From header")
    to_address: str | None = Field(default=None, description="Raw To header")
    subject: str | None = Field(default=None, description="Subject header")
    snippet: str | None = Field(default=None, description="Short preview text")
    body_plain: str | None = Field(default=None, description="text/plain body")
    body_html: str | None = Field(default=None, description="text/html body")
    internal_date: int = Field(default=0, description="Milliseconds since epoch")
    is_read: bool = Field(default=False, description="Whether message has been read")
    label_ids: list[str] = Field(default_factory=list, description="Gmail label IDs")

    @property
    def received_at(self) -> datetime:
        """``internal_date`` as an aware UTC datetime."""
        return datetime.fromtimestamp(self.internal_date / 1000.0, tz=timezone.utc)

    def has_label(self, label_id: str) -> bool:
        """Return True when the message carries ``label_id``."""
        return label_id in self.label_ids


class MessageRef(BaseModel):
    """Identity, timestamp and read flag of a message: enough to detect changes."""

    id: str
    internal_date: int
    is_read: bool | None = None


class RemoteListing(BaseModel):
    """Remote refs for one label.

    ``complete`` is False when the listing was cut off by the page size, in
    which case it cannot be trusted for removals.
    """

    label_id: str
    refs: list[MessageRef] = Field(default_factory=list)
    complete: bool = True


class Draft(BaseModel):
    """An outgoing message. Address fields hold comma-separated addresses."""

    to: str = Field(default="", description="To recipients")
    cc: str = Field(default="", description="Cc recipients")
    bcc: str = Field(default="", description="Bcc recipients")
    subject: str = Field(default="", description="Subject line")
    body: str = Field(default="", description="Plain text body")
    thread_id: str | None = Field(default=None, description="Thread a reply belongs to")

    @property
    def recipients(self) -> list[str]:
        fields = (self.to, self.cc, self.bcc)
        return [addr.strip() for value in fields for addr in value.split(",") if addr.strip()]


__all__ = [
    "INBOX_LABEL",
    "UNREAD_LABEL",
    "Draft",
    "Label",
    "LabelType",
    "Message",
    "RemoteListing",
    "MessageRef",
]
