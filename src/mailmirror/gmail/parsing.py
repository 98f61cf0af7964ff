"""Helpers for parsing Gmail API payloads into internal models."""

from __future__ import annotations

import base64
import binascii
from typing import Any

from mailmirror.models import UNREAD_LABEL, Label, LabelType, Message, MessageRef


def _header_map(message: dict[str, Any]) -> dict[str, str]:
    payload = message.get("payload") or {}
    headers = payload.get("headers") or []
    result: dict[str, str] = {}
    for h in headers:
        name = h.get("name")
        value = h.get("value")
        if isinstance(name, str) and isinstance(value, str):
            # Gmail can include duplicates; keep the first.
            result.setdefault(name.lower(), value)
    return result


def _decode_b64(data: str) -> str | None:
    padded = data + "=" * (-len(data) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded.encode("utf-8"))
    except (binascii.Error, ValueError):
        return None
    return raw.decode("utf-8", errors="replace")


def _find_body(part: dict[str, Any], mime_type: str) -> str | None:
    """Depth-first search for the first part of ``mime_type`` carrying data."""

    mime = (part.get("mimeType") or "").lower()
    data = (part.get("body") or {}).get("data")
    if data and mime.startswith(mime_type):
        return _decode_b64(data)

    for child in part.get("parts") or []:
        found = _find_body(child, mime_type)
        if found is not None:
            return found
    return None


def _internal_date(message: dict[str, Any]) -> int:
    try:
        return int(message.get("internalDate") or 0)
    except (TypeError, ValueError):
        return 0


def _label_ids(message: dict[str, Any]) -> list[str]:
    label_ids = message.get("labelIds") or []
    if not isinstance(label_ids, list):
        return []
    return [str(x) for x in label_ids if isinstance(x, str)]


def message_from_gmail(message: dict[str, Any]) -> Message:
    """Convert a Gmail API message (format=full) to a Message.

    Args:
        message: Gmail API message dict.

    Returns:
        Message: Parsed message with decoded plain and HTML bodies.
    """

    hm = _header_map(message)
    label_ids = _label_ids(message)
    payload = message.get("payload") or {}

    return Message(
        id=str(message.get("id") or ""),
        thread_id=str(message.get("threadId") or message.get("id") or ""),
        from_address=hm.get("from"),
        to_address=hm.get("to"),
        subject=hm.get("subject"),
        snippet=message.get("snippet"),
        body_plain=_find_body(payload, "text/plain"),
        body_html=_find_body(payload, "text/html"),
        internal_date=_internal_date(message),
        is_read=UNREAD_LABEL not in label_ids,
        label_ids=label_ids,
    )


def ref_from_gmail(message: dict[str, Any]) -> MessageRef:
    """Convert a Gmail API message (format=minimal) to a MessageRef."""

    return MessageRef(
        id=str(message.get("id") or ""),
        internal_date=_internal_date(message),
        is_read=UNREAD_LABEL not in _label_ids(message),
    )


def label_from_gmail(label: dict[str, Any]) -> Label:
    """Convert a Gmail API label resource to a Label."""

    color = label.get("color") or {}
    label_type = LabelType.SYSTEM if label.get("type") == "system" else LabelType.USER

    return Label(
        id=str(label.get("id") or ""),
        name=str(label.get("name") or label.get("id") or ""),
        label_type=label_type,
        color_foreground=color.get("textColor"),
        color_background=color.get("backgroundColor"),
    )
