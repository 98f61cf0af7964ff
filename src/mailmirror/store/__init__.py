"""Local SQLite cache of the mailbox."""

from mailmirror.store.repository import CacheStats, CacheStore

__all__ = ["CacheStats", "CacheStore"]
