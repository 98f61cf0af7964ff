"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import base64
from collections.abc import Callable

import pytest

from mailmirror.config import Settings
from mailmirror.dispatch import RemoteDispatcher
from mailmirror.exceptions import AuthenticationError, RemoteError
from mailmirror.models import (
    INBOX_LABEL,
    UNREAD_LABEL,
    Draft,
    Label,
    LabelType,
    Message,
    MessageRef,
    RemoteListing,
)
from mailmirror.store import CacheStore
from mailmirror.sync import SyncStatus
from mailmirror.undo import ActionJournal
from mailmirror.view import ViewState

BASE_DATE = 1_700_000_000_000


def _b64(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode("utf-8")).decode("ascii").rstrip("=")


def build_message(
    message_id: str,
    *,
    thread_id: str | None = None,
    internal_date: int | None = None,
    label_ids: list[str] | None = None,
    subject: str | None = None,
    from_address: str = "Alice <alice@example.com>",
    body_plain: str | None = None,
    is_read: bool = False,
) -> Message:
    index = int("".join(ch for ch in message_id if ch.isdigit()) or "0")
    return Message(
        id=message_id,
        thread_id=thread_id or f"t-{message_id}",
        from_address=from_address,
        to_address="me@example.com",
        subject=subject if subject is not None else f"Subject {message_id}",
        snippet=f"Snippet for {message_id}",
        body_plain=body_plain if body_plain is not None else f"Body of {message_id}",
        body_html=f"<p>Body of {message_id}</p>",
        internal_date=internal_date if internal_date is not None else BASE_DATE + index * 1000,
        is_read=is_read,
        label_ids=list(label_ids) if label_ids is not None else [INBOX_LABEL],
    )


class FakeGateway:
    """In-memory remote mailbox with a call log and failure injection."""

    def __init__(self, labels: list[Label] | None = None) -> None:
        self.labels = labels or [
            Label(id=INBOX_LABEL, name="INBOX", label_type=LabelType.SYSTEM),
            Label(id="WORK", name="Work", label_type=LabelType.USER),
        ]
        self.messages: dict[str, Message] = {}
        self.calls: list[tuple[str, str]] = []
        self.failing_operations: set[str] = set()
        self.failing_message_ids: set[str] = set()
        self.auth_failure = False
        self._trashed_labels: dict[str, list[str]] = {}
        self.sent: list[Draft] = []

    def add(self, message: Message) -> Message:
        self.messages[message.id] = message.model_copy(deep=True)
        return message

    def labels_of(self, message_id: str) -> list[str]:
        return sorted(self.messages[message_id].label_ids)

    async def list_labels(self) -> list[Label]:
        self._check("list_labels", "*")
        return [label.model_copy() for label in self.labels]

    async def list_message_refs(self, label_id: str, max_results: int) -> RemoteListing:
        self._check("list_message_refs", label_id)
        matching = sorted(
            (m for m in self.messages.values() if label_id in m.label_ids),
            key=lambda m: (-m.internal_date, m.id),
        )
        refs = [
            MessageRef(id=m.id, internal_date=m.internal_date, is_read=UNREAD_LABEL not in m.label_ids)
            for m in matching[:max_results]
        ]
        return RemoteListing(label_id=label_id, refs=refs, complete=len(matching) <= max_results)

    async def get_message(self, message_id: str) -> Message:
        self._check("get_message", message_id)
        if message_id not in self.messages:
            raise RemoteError(f"not found: {message_id}")
        message = self.messages[message_id].model_copy(deep=True)
        message.is_read = UNREAD_LABEL not in message.label_ids
        return message

    async def trash(self, message_id: str) -> None:
        self._check("trash", message_id)
        message = self.messages[message_id]
        if "TRASH" not in message.label_ids:
            self._trashed_labels[message_id] = list(message.label_ids)
            message.label_ids = ["TRASH"]

    async def untrash(self, message_id: str) -> None:
        self._check("untrash", message_id)
        message = self.messages[message_id]
        if "TRASH" in message.label_ids:
            message.label_ids = self._trashed_labels.pop(message_id, [])

    async def archive(self, message_id: str) -> None:
        self._check("archive", message_id)
        message = self.messages[message_id]
        message.label_ids = [lid for lid in message.label_ids if lid != INBOX_LABEL]

    async def unarchive(self, message_id: str) -> None:
        self._check("unarchive", message_id)
        message = self.messages[message_id]
        if INBOX_LABEL not in message.label_ids:
            message.label_ids.append(INBOX_LABEL)

    async def mark_read(self, message_id: str) -> None:
        self._check("mark_read", message_id)
        message = self.messages[message_id]
        message.label_ids = [lid for lid in message.label_ids if lid != UNREAD_LABEL]

    async def mark_unread(self, message_id: str) -> None:
        self._check("mark_unread", message_id)
        message = self.messages[message_id]
        if UNREAD_LABEL not in message.label_ids:
            message.label_ids.append(UNREAD_LABEL)

    async def send_message(self, draft: Draft) -> None:
        self._check("send_message", draft.to)
        self.sent.append(draft.model_copy(deep=True))

    def _check(self, operation: str, message_id: str) -> None:
        self.calls.append((operation, message_id))
        if self.auth_failure:
            raise AuthenticationError("token revoked")
        if operation in self.failing_operations or message_id in self.failing_message_ids:
            raise RemoteError(f"{operation} failed for {message_id}")


@pytest.fixture
def mock_settings(tmp_path) -> Settings:
    """Provide settings pointing at a temporary cache."""
    return Settings(
        db_path=tmp_path / "cache.sqlite3",
        gmail_credentials_path=tmp_path / "credentials.json",
        gmail_token_path=tmp_path / "token.json",
        sync_interval_seconds=0.05,
        view_page_size=50,
        log_level="DEBUG",
        debug=True,
    )


@pytest.fixture
def make_message() -> Callable[..., Message]:
    return build_message


@pytest.fixture
def store(tmp_path) -> CacheStore:
    """Provide an initialized cache with INBOX and WORK labels."""
    cache = CacheStore(tmp_path / "cache.sqlite3")
    cache.initialize()
    cache.replace_labels(
        [
            Label(id=INBOX_LABEL, name="INBOX", label_type=LabelType.SYSTEM),
            Label(id="WORK", name="Work", label_type=LabelType.USER),
        ]
    )
    return cache


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def dispatcher() -> RemoteDispatcher:
    return RemoteDispatcher()


@pytest.fixture
def journal(store, fake_gateway, dispatcher) -> ActionJournal:
    return ActionJournal(store, fake_gateway, dispatcher)


@pytest.fixture
def view(store, fake_gateway, journal, dispatcher) -> ViewState:
    state = ViewState(store, fake_gateway, journal, dispatcher, sync_status=SyncStatus(), page_size=10)
    state.load_labels()
    return state


@pytest.fixture
def sample_gmail_message() -> dict:
    """Provide a Gmail API message in format=full."""
    return {
        "id": "msg123456",
        "threadId": "thread789",
        "labelIds": ["INBOX", "UNREAD"],
        "snippet": "Weekly Newsletter - Python Tips",
        "internalDate": "1700000000000",
        "payload": {
            "mimeType": "multipart/alternative",
            "headers": [
                {"name": "Subject", "value": "Weekly Newsletter - Python Tips"},
                {"name": "From", "value": "Python <newsletter@python.org>"},
                {"name": "To", "value": "user@example.com"},
            ],
            "body": {"size": 0},
            "parts": [
                {
                    "mimeType": "text/plain",
                    "body": {"data": _b64("Welcome to this week's Python tips!")},
                },
                {
                    "mimeType": "text/html",
                    "body": {"data": _b64("<p>Welcome to this week's Python tips!</p>")},
                },
            ],
        },
    }
