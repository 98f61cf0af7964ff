"""Gmail API gateway implementation.

Notes:
    The Google API client is synchronous. Calls are wrapped with
    `asyncio.to_thread` so the reconciler and the view never block the event
    loop on network I/O.
"""

from __future__ import annotations

import asyncio
import base64
from email.message import EmailMessage
from pathlib import Path
from typing import Any

import structlog

from mailmirror.config import Settings
from mailmirror.exceptions import AuthenticationError, ConfigurationError, RemoteError
from mailmirror.gmail.parsing import label_from_gmail, message_from_gmail, ref_from_gmail
from mailmirror.models import INBOX_LABEL, UNREAD_LABEL, Draft, Label, Message, MessageRef, RemoteListing

logger = structlog.get_logger()

_AUTH_STATUSES = {401, 403}

# Gmail rate-limits batches larger than 50 calls.
_BATCH_SIZE = 50


class GmailGateway:
    """Remote gateway backed by the Gmail REST API.

    All mutations are idempotent on Gmail's side, so a retried or duplicated
    call is harmless.
    """

    def __init__(self, settings: Settings | None = None, *, user_id: str = "me") -> None:
        """Initialize the gateway.

        Args:
            settings: Application settings. If None, uses default settings.
            user_id: Gmail user id; "me" is the authenticated account.
        """
        from mailmirror.config import get_settings

        self.settings = settings or get_settings()
        self._user_id = user_id
        self._service: Any | None = None
        logger.info("gmail_gateway_initialized")

    async def authenticate(self) -> None:
        """Authenticate with Gmail API using OAuth2.

        Raises:
            ConfigurationError: If the client secrets file is missing.
            AuthenticationError: If authentication fails.
        """

        if self._service is not None:
            return

        credentials_path = Path(self.settings.gmail_credentials_path)
        token_path = Path(self.settings.gmail_token_path)
        scope = self.settings.gmail_scope

        if not credentials_path.exists():
            raise ConfigurationError(f"Gmail credentials file not found: {credentials_path}")

        logger.info(
            "gmail_authentication_started",
            credentials_path=str(credentials_path),
            token_path=str(token_path),
            scope=scope,
        )

        try:
            self._service = await asyncio.to_thread(
                self._build_service,
                credentials_path,
                token_path,
                scope,
            )
        except Exception as exc:  # noqa: BLE001
            logger.exception("gmail_authentication_failed", error=str(exc))
            raise AuthenticationError(str(exc)) from exc

        logger.info("gmail_authentication_completed")

    async def list_labels(self) -> list[Label]:
        """List every label definition of the account."""

        raw = await self._call("list_labels", self._list_labels_sync)
        return [label_from_gmail(item) for item in raw if item.get("id")]

    async def list_message_refs(self, label_id: str, max_results: int) -> RemoteListing:
        """List the newest refs under a label.

        Args:
            label_id: Label to list.
            max_results: Upper bound on refs returned.

        Returns:
            RemoteListing whose ``complete`` flag is False when Gmail had more
            messages than ``max_results``.
        """

        logger.debug("listing_message_refs", label_id=label_id, max_results=max_results)
        return await self._call(
            "list_message_refs",
            self._list_message_refs_sync,
            label_id,
            max_results,
            message_id=None,
        )

    async def get_message(self, message_id: str) -> Message:
        """Fetch a message with its full content."""

        raw = await self._call("get_message", self._get_message_sync, message_id, "full", message_id=message_id)
        return message_from_gmail(raw)

    async def trash(self, message_id: str) -> None:
        await self._call("trash", self._trash_sync, message_id, message_id=message_id)

    async def untrash(self, message_id: str) -> None:
        await self._call("untrash", self._untrash_sync, message_id, message_id=message_id)

    async def archive(self, message_id: str) -> None:
        await self._call(
            "archive", self._modify_sync, message_id, None, [INBOX_LABEL], message_id=message_id
        )

    async def unarchive(self, message_id: str) -> None:
        await self._call(
            "unarchive", self._modify_sync, message_id, [INBOX_LABEL], None, message_id=message_id
        )

    async def mark_read(self, message_id: str) -> None:
        await self._call(
            "mark_read", self._modify_sync, message_id, None, [UNREAD_LABEL], message_id=message_id
        )

    async def mark_unread(self, message_id: str) -> None:
        await self._call(
            "mark_unread", self._modify_sync, message_id, [UNREAD_LABEL], None, message_id=message_id
        )

    async def send_message(self, draft: Draft) -> None:
        """Send a plain text message, threaded when the draft is a reply."""

        await self._call("send_message", self._send_sync, draft, message_id=draft.thread_id)

    async def _call(self, operation: str, func: Any, *args: Any, message_id: str | None = None) -> Any:
        await self._ensure_authenticated()

        try:
            result = await asyncio.to_thread(func, *args)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "gmail_call_failed",
                operation=operation,
                message_id=message_id,
                error=str(exc),
            )
            raise _translate_error(exc) from exc

        if operation not in {"list_labels", "list_message_refs", "get_message"}:
            logger.info("gmail_mutation_applied", operation=operation, message_id=message_id)
        return result

    async def _ensure_authenticated(self) -> None:
        if self._service is None:
            raise AuthenticationError(
                "Gmail gateway is not authenticated. Call await GmailGateway.authenticate() first."
            )

    def _build_service(self, credentials_path: Path, token_path: Path, scope: str) -> Any:
        # Imported lazily to keep import-time cost low and tests fast.
        from google.auth.transport.requests import Request
        from google.oauth2.credentials import Credentials
        from google_auth_oauthlib.flow import InstalledAppFlow
        from googleapiclient.discovery import build

        creds: Credentials | None = None
        if token_path.exists():
            creds = Credentials.from_authorized_user_file(str(token_path), scopes=[scope])

        if creds is not None and creds.expired and creds.refresh_token:
            creds.refresh(Request())

        if creds is None or not creds.valid:
            flow = InstalledAppFlow.from_client_secrets_file(str(credentials_path), scopes=[scope])
            creds = flow.run_local_server(port=0)
            token_path.parent.mkdir(parents=True, exist_ok=True)
            token_path.write_text(creds.to_json(), encoding="utf-8")

        # cache_discovery=False prevents writing discovery docs to disk.
        return build("gmail", "v1", credentials=creds, cache_discovery=False)

    def _messages(self) -> Any:
        assert self._service is not None
        return self._service.users().messages()

    def _list_labels_sync(self) -> list[dict[str, Any]]:
        assert self._service is not None
        response = self._service.users().labels().list(userId=self._user_id).execute()
        return response.get("labels", []) or []

    def _list_message_refs_sync(self, label_id: str, max_results: int) -> RemoteListing:
        ids: list[str] = []
        page_token: str | None = None
        complete = True

        while len(ids) < max_results:
            per_page = min(500, max_results - len(ids))
            response = (
                self._messages()
                .list(
                    userId=self._user_id,
                    labelIds=[label_id],
                    maxResults=per_page,
                    pageToken=page_token,
                )
                .execute()
            )
            ids.extend(m["id"] for m in response.get("messages", []) or [] if m.get("id"))
            page_token = response.get("nextPageToken")
            if page_token is None:
                break
        else:
            complete = page_token is None

        # messages.list only returns ids; minimal gets add the timestamp and label set.
        refs = self._minimal_refs_sync(ids[:max_results])
        return RemoteListing(label_id=label_id, refs=refs, complete=complete)

    def _minimal_refs_sync(self, message_ids: list[str]) -> list[MessageRef]:
        """Fetch minimal refs with one batch request per ``_BATCH_SIZE`` ids."""

        assert self._service is not None
        ids = list(dict.fromkeys(message_ids))
        responses: dict[str, dict[str, Any]] = {}
        errors: list[Exception] = []

        def collect(request_id: str, response: dict[str, Any] | None, exception: Exception | None) -> None:
            if exception is not None:
                errors.append(exception)
            elif response is not None:
                responses[request_id] = response

        for start in range(0, len(ids), _BATCH_SIZE):
            batch = self._service.new_batch_http_request(callback=collect)
            for message_id in ids[start : start + _BATCH_SIZE]:
                request = self._messages().get(userId=self._user_id, id=message_id, format="minimal")
                batch.add(request, request_id=message_id)
            batch.execute()
            if errors:
                raise errors[0]

        return [ref_from_gmail(responses[message_id]) for message_id in ids if message_id in responses]

    def _get_message_sync(self, message_id: str, format: str) -> dict[str, Any]:
        return self._messages().get(userId=self._user_id, id=message_id, format=format).execute()

    def _trash_sync(self, message_id: str) -> None:
        self._messages().trash(userId=self._user_id, id=message_id).execute()

    def _untrash_sync(self, message_id: str) -> None:
        self._messages().untrash(userId=self._user_id, id=message_id).execute()

    def _modify_sync(
        self,
        message_id: str,
        add_label_ids: list[str] | None,
        remove_label_ids: list[str] | None,
    ) -> None:
        body: dict[str, list[str]] = {}
        if add_label_ids:
            body["addLabelIds"] = add_label_ids
        if remove_label_ids:
            body["removeLabelIds"] = remove_label_ids
        self._messages().modify(userId=self._user_id, id=message_id, body=body).execute()

    def _send_sync(self, draft: Draft) -> None:
        mime = EmailMessage()
        mime["To"] = draft.to
        if draft.cc:
            mime["Cc"] = draft.cc
        if draft.bcc:
            mime["Bcc"] = draft.bcc
        mime["Subject"] = draft.subject
        mime.set_content(draft.body)

        body: dict[str, str] = {"raw": base64.urlsafe_b64encode(mime.as_bytes()).decode("ascii")}
        if draft.thread_id:
            body["threadId"] = draft.thread_id
        self._messages().send(userId=self._user_id, body=body).execute()


def _translate_error(exc: Exception) -> Exception:
    """Map Google client errors onto the mailmirror hierarchy."""

    from google.auth.exceptions import RefreshError
    from googleapiclient.errors import HttpError

    if isinstance(exc, RefreshError):
        return AuthenticationError(str(exc))
    if isinstance(exc, HttpError):
        status = getattr(getattr(exc, "resp", None), "status", None)
        if status in _AUTH_STATUSES:
            return AuthenticationError(f"Gmail rejected credentials (HTTP {status})")
        return RemoteError(f"Gmail API error (HTTP {status}): {exc}")
    return RemoteError(str(exc))
