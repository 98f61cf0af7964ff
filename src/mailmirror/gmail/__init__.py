"""Gmail implementation of the remote gateway."""

from mailmirror.gmail.client import GmailGateway

__all__ = ["GmailGateway"]
