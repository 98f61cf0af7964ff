"""mailmirror - a local-first Gmail cache with background reconciliation.

This package keeps a searchable SQLite copy of a Gmail mailbox, reconciles it
against the remote mailbox on an interval, and lets an interactive client
delete or archive messages optimistically with a session-scoped undo.
"""

__version__ = "0.1.0"
__author__ = "Trickl"

from mailmirror.config import Settings, get_settings

__all__ = ["Settings", "get_settings", "__version__", "__author__"]
