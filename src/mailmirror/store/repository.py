"""SQLite-backed cache of messages, labels and their full-text index.

Every write that touches a message row runs in its own transaction. The FTS5
shadow table is maintained by triggers that fire inside that transaction, so
a reader can never see a message whose index entry is stale or missing.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Iterable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

import structlog

from mailmirror.exceptions import StorageError
from mailmirror.models import UNREAD_LABEL, Label, LabelType, Message, MessageRef

logger = structlog.get_logger()


_SCHEMA_VERSION = 1

# Label ids are joined with the ASCII unit separator when read back.
_LABEL_SEPARATOR = "\x1f"

# Keeps IN (...) lists under SQLite's bound-parameter limit.
_PARAM_CHUNK_SIZE = 500

_MESSAGE_COLUMNS = """
    m.id,
    m.thread_id,
    m.from_address,
    m.to_address,
    m.subject,
    m.snippet,
    m.body_plain,
    m.body_html,
    m.internal_date,
    m.is_read,
    (
        SELECT group_concat(ml.label_id, char(31))
        FROM message_labels ml
        WHERE ml.message_id = m.id
    ) AS label_ids
"""


@dataclass(frozen=True)
class CacheStats:
    """High-level summary stats for the cache."""

    total_messages: int
    unread_messages: int
    label_count: int
    oldest: datetime | None
    newest: datetime | None


class CacheStore:
    """Durable store for the mailbox mirror."""

    def __init__(self, db_path: Path, *, busy_timeout: float = 5.0) -> None:
        """Create a store.

        Args:
            db_path: Path to the SQLite database file.
            busy_timeout: Seconds a writer waits on a locked database.
        """

        self._db_path = Path(db_path)
        self._busy_timeout = busy_timeout

    @property
    def db_path(self) -> Path:
        return self._db_path

    def initialize(self) -> None:
        """Create or verify the cache schema.

        Raises:
            StorageError: If the file cannot be opened or carries an unknown
                schema version. Callers treat this as fatal.
        """

        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL;")

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS _schema_meta (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                );
                """
            )

            current_version = self._get_schema_version(conn)
            if current_version is None:
                self._create_schema_v1(conn)
                self._set_schema_version(conn, _SCHEMA_VERSION)
                conn.commit()
                logger.info("cache_schema_created", version=_SCHEMA_VERSION, path=str(self._db_path))
                return

            if current_version != _SCHEMA_VERSION:
                raise StorageError(
                    f"Unsupported schema version {current_version}; expected {_SCHEMA_VERSION}"
                )

    # Labels -----------------------------------------------------------------

    def replace_labels(self, labels: Sequence[Label]) -> None:
        """Replace the label table wholesale.

        Labels missing from ``labels`` are deleted, which cascades to their
        message associations.
        """

        keep = {label.id for label in labels}
        with self._connect() as conn, conn:
            conn.executemany(
                """
                INSERT INTO labels (id, name, type, color_foreground, color_background)
                VALUES (:id, :name, :type, :color_foreground, :color_background)
                ON CONFLICT(id) DO UPDATE SET
                    name=excluded.name,
                    type=excluded.type,
                    color_foreground=excluded.color_foreground,
                    color_background=excluded.color_background
                """,
                [
                    {
                        "id": label.id,
                        "name": label.name,
                        "type": label.label_type.value,
                        "color_foreground": label.color_foreground,
                        "color_background": label.color_background,
                    }
                    for label in labels
                ],
            )
            stale = [row[0] for row in conn.execute("SELECT id FROM labels") if row[0] not in keep]
            conn.executemany("DELETE FROM labels WHERE id = ?", [(label_id,) for label_id in stale])

        logger.debug("labels_replaced", count=len(keep), removed=len(stale))

    def list_labels(self) -> list[Label]:
        """Return labels with INBOX first, then by name."""

        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT id, name, type, color_foreground, color_background
                FROM labels
                ORDER BY CASE WHEN id = 'INBOX' THEN 0 ELSE 1 END, name ASC;
                """
            ).fetchall()

        return [
            Label(
                id=row["id"],
                name=row["name"],
                label_type=LabelType(row["type"]),
                color_foreground=row["color_foreground"],
                color_background=row["color_background"],
            )
            for row in rows
        ]

    # Messages ---------------------------------------------------------------

    def upsert_messages(self, messages: Iterable[Message], context_label_id: str | None = None) -> None:
        """Insert or update messages and associate them with their labels.

        Each message is written in its own transaction together with its
        associations: ``context_label_id`` plus the labels embedded in the
        message. Re-applying the same snapshot leaves the cache unchanged
        apart from ``updated_at_iso``.
        """

        now_iso = datetime.now(timezone.utc).isoformat()

        with self._connect() as conn:
            for message in messages:
                label_ids = set(message.label_ids)
                if context_label_id:
                    label_ids.add(context_label_id)

                with conn:
                    conn.execute(
                        """
                        INSERT INTO messages (
                            id,
                            thread_id,
                            from_address,
                            to_address,
                            subject,
                            snippet,
                            body_plain,
                            body_html,
                            internal_date,
                            is_read,
                            updated_at_iso
                        )
                        VALUES (
                            :id,
                            :thread_id,
                            :from_address,
                            :to_address,
                            :subject,
                            :snippet,
                            :body_plain,
                            :body_html,
                            :internal_date,
                            :is_read,
                            :updated_at_iso
                        )
                        ON CONFLICT(id) DO UPDATE SET
                            thread_id=excluded.thread_id,
                            from_address=excluded.from_address,
                            to_address=excluded.to_address,
                            subject=excluded.subject,
                            snippet=excluded.snippet,
                            body_plain=excluded.body_plain,
                            body_html=excluded.body_html,
                            internal_date=excluded.internal_date,
                            is_read=excluded.is_read,
                            updated_at_iso=excluded.updated_at_iso
                        """,
                        {
                            "id": message.id,
                            "thread_id": message.thread_id,
                            "from_address": message.from_address,
                            "to_address": message.to_address,
                            "subject": message.subject,
                            "snippet": message.snippet,
                            "body_plain": message.body_plain,
                            "body_html": message.body_html,
                            "internal_date": message.internal_date,
                            "is_read": 1 if message.is_read else 0,
                            "updated_at_iso": now_iso,
                        },
                    )
                    for label_id in sorted(label_ids):
                        self._ensure_label(conn, label_id)
                        conn.execute(
                            "INSERT OR IGNORE INTO message_labels (message_id, label_id) VALUES (?, ?)",
                            (message.id, label_id),
                        )

    def remove_message(self, message_id: str) -> bool:
        """Delete a message with its associations and index entry.

        Returns:
            True if a row was deleted; removing an absent id is not an error.
        """

        with self._connect() as conn, conn:
            conn.execute("DELETE FROM message_labels WHERE message_id = ?", (message_id,))
            cursor = conn.execute("DELETE FROM messages WHERE id = ?", (message_id,))
            return cursor.rowcount > 0

    def add_label(self, message_id: str, label_id: str) -> bool:
        """Associate a cached message with a label.

        Returns:
            True if the association was created; False if it already existed
            or the message is not cached.
        """

        with self._connect() as conn, conn:
            exists = conn.execute("SELECT 1 FROM messages WHERE id = ?", (message_id,)).fetchone()
            if exists is None:
                return False
            self._ensure_label(conn, label_id)
            cursor = conn.execute(
                "INSERT OR IGNORE INTO message_labels (message_id, label_id) VALUES (?, ?)",
                (message_id, label_id),
            )
            return cursor.rowcount > 0

    def remove_label(self, message_id: str, label_id: str) -> bool:
        """Drop a message/label association. Returns True if one was removed."""

        with self._connect() as conn, conn:
            cursor = conn.execute(
                "DELETE FROM message_labels WHERE message_id = ? AND label_id = ?",
                (message_id, label_id),
            )
            return cursor.rowcount > 0

    def set_read(self, message_id: str, is_read: bool) -> bool:
        """Update the read flag and the UNREAD association together.

        Returns:
            True if the message is cached.
        """

        with self._connect() as conn, conn:
            cursor = conn.execute(
                "UPDATE messages SET is_read = ?, updated_at_iso = ? WHERE id = ?",
                (1 if is_read else 0, datetime.now(timezone.utc).isoformat(), message_id),
            )
            if cursor.rowcount == 0:
                return False

            if is_read:
                conn.execute(
                    "DELETE FROM message_labels WHERE message_id = ? AND label_id = ?",
                    (message_id, UNREAD_LABEL),
                )
            else:
                self._ensure_label(conn, UNREAD_LABEL)
                conn.execute(
                    "INSERT OR IGNORE INTO message_labels (message_id, label_id) VALUES (?, ?)",
                    (message_id, UNREAD_LABEL),
                )
            return True

    # Queries ----------------------------------------------------------------

    def get_message(self, message_id: str) -> Message | None:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_MESSAGE_COLUMNS} FROM messages m WHERE m.id = ?",
                (message_id,),
            ).fetchone()
        return self._row_to_message(row) if row is not None else None

    def message_refs(self, message_ids: Iterable[str]) -> dict[str, MessageRef]:
        """Return refs for whichever of ``message_ids`` are cached, under any label."""

        ids = list(dict.fromkeys(message_ids))
        refs: dict[str, MessageRef] = {}
        with self._connect() as conn:
            for start in range(0, len(ids), _PARAM_CHUNK_SIZE):
                chunk = ids[start : start + _PARAM_CHUNK_SIZE]
                placeholders = ",".join("?" for _ in chunk)
                rows = conn.execute(
                    f"SELECT id, internal_date, is_read FROM messages WHERE id IN ({placeholders})",
                    chunk,
                ).fetchall()
                for row in rows:
                    refs[row["id"]] = MessageRef(
                        id=row["id"],
                        internal_date=row["internal_date"],
                        is_read=bool(row["is_read"]),
                    )
        return refs

    def label_refs(self, label_id: str) -> dict[str, MessageRef]:
        """Return refs of every cached message associated with ``label_id``."""

        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT m.id, m.internal_date, m.is_read
                FROM messages m
                JOIN message_labels ml ON ml.message_id = m.id
                WHERE ml.label_id = ?;
                """,
                (label_id,),
            ).fetchall()

        return {
            row["id"]: MessageRef(
                id=row["id"],
                internal_date=row["internal_date"],
                is_read=bool(row["is_read"]),
            )
            for row in rows
        }

    def query_by_label(
        self,
        label_id: str,
        *,
        limit: int | None = None,
        offset: int = 0,
        collapse_threads: bool = False,
    ) -> list[Message]:
        """Return messages carrying ``label_id``, newest first.

        Args:
            label_id: Label whose view to produce.
            limit: Max rows (None for all).
            offset: Rows to skip, for paging.
            collapse_threads: Return only the newest message of each thread.
        """

        sql_limit = -1 if limit is None else limit
        with self._connect() as conn:
            if collapse_threads:
                rows = conn.execute(
                    f"""
                    SELECT * FROM (
                        SELECT
                            {_MESSAGE_COLUMNS},
                            ROW_NUMBER() OVER (
                                PARTITION BY m.thread_id
                                ORDER BY m.internal_date DESC, m.id
                            ) AS thread_rank
                        FROM messages m
                        JOIN message_labels l ON l.message_id = m.id
                        WHERE l.label_id = ?
                    )
                    WHERE thread_rank = 1
                    ORDER BY internal_date DESC, id
                    LIMIT ? OFFSET ?;
                    """,
                    (label_id, sql_limit, offset),
                ).fetchall()
            else:
                rows = conn.execute(
                    f"""
                    SELECT {_MESSAGE_COLUMNS}
                    FROM messages m
                    JOIN message_labels l ON l.message_id = m.id
                    WHERE l.label_id = ?
                    ORDER BY m.internal_date DESC, m.id
                    LIMIT ? OFFSET ?;
                    """,
                    (label_id, sql_limit, offset),
                ).fetchall()

        return [self._row_to_message(row) for row in rows]

    def query_thread(self, thread_id: str) -> list[Message]:
        """Return every message of a thread, newest first."""

        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {_MESSAGE_COLUMNS}
                FROM messages m
                WHERE m.thread_id = ?
                ORDER BY m.internal_date DESC, m.id;
                """,
                (thread_id,),
            ).fetchall()

        return [self._row_to_message(row) for row in rows]

    def search(self, term: str, limit: int = 50) -> list[Message]:
        """Full-text search across subject, sender, snippet and plain body.

        Each whitespace-separated token of ``term`` is quoted, so the search
        matches messages containing all tokens and punctuation is never
        interpreted as FTS5 syntax.

        Returns:
            Matches ordered by FTS5 relevance (bm25).
        """

        query = _fts_query(term)
        if not query:
            return []

        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {_MESSAGE_COLUMNS}
                FROM messages_fts
                JOIN messages m ON m.rowid = messages_fts.rowid
                WHERE messages_fts MATCH ?
                ORDER BY bm25(messages_fts)
                LIMIT ?;
                """,
                (query, limit),
            ).fetchall()

        return [self._row_to_message(row) for row in rows]

    def find_messages(self, text: str, limit: int = 1) -> list[Message]:
        """Substring match on sender or subject, newest first."""

        pattern = f"%{text}%"
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {_MESSAGE_COLUMNS}
                FROM messages m
                WHERE m.from_address LIKE ? OR m.subject LIKE ?
                ORDER BY m.internal_date DESC
                LIMIT ?;
                """,
                (pattern, pattern, limit),
            ).fetchall()

        return [self._row_to_message(row) for row in rows]

    def stats(self) -> CacheStats:
        """Compute high-level cache stats."""

        with self._connect() as conn:
            total, unread, oldest_ms, newest_ms = conn.execute(
                """
                SELECT COUNT(*), SUM(1 - is_read), MIN(internal_date), MAX(internal_date)
                FROM messages;
                """
            ).fetchone()
            (label_count,) = conn.execute("SELECT COUNT(*) FROM labels;").fetchone()

        def to_dt(value: int | None) -> datetime | None:
            if value is None:
                return None
            return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)

        return CacheStats(
            total_messages=int(total or 0),
            unread_messages=int(unread or 0),
            label_count=int(label_count or 0),
            oldest=to_dt(oldest_ms),
            newest=to_dt(newest_ms),
        )

    # Internals --------------------------------------------------------------

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self._db_path, timeout=self._busy_timeout)
        except sqlite3.Error as exc:
            raise StorageError(f"Cannot open cache {self._db_path}: {exc}") from exc
        try:
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys=ON;")
            yield conn
        except sqlite3.Error as exc:
            logger.warning("cache_operation_failed", path=str(self._db_path), error=str(exc))
            raise StorageError(str(exc)) from exc
        finally:
            conn.close()

    def _ensure_label(self, conn: sqlite3.Connection, label_id: str) -> None:
        # Placeholder row so the association satisfies its foreign key; the
        # next label sync overwrites or removes it.
        label_type = LabelType.USER if label_id.startswith("Label_") else LabelType.SYSTEM
        conn.execute(
            "INSERT OR IGNORE INTO labels (id, name, type) VALUES (?, ?, ?)",
            (label_id, label_id, label_type.value),
        )

    def _get_schema_version(self, conn: sqlite3.Connection) -> int | None:
        row = conn.execute(
            "SELECT value FROM _schema_meta WHERE key = 'schema_version'"
        ).fetchone()
        if row is None:
            return None
        return int(row[0])

    def _set_schema_version(self, conn: sqlite3.Connection, version: int) -> None:
        conn.execute(
            "INSERT OR REPLACE INTO _schema_meta(key, value) VALUES('schema_version', ?) ",
            (str(version),),
        )

    def _create_schema_v1(self, conn: sqlite3.Connection) -> None:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS labels (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                type TEXT NOT NULL,
                color_foreground TEXT,
                color_background TEXT
            );

            CREATE TABLE IF NOT EXISTS messages (
                rowid INTEGER PRIMARY KEY,
                id TEXT NOT NULL UNIQUE,
                thread_id TEXT NOT NULL,
                from_address TEXT,
                to_address TEXT,
                subject TEXT,
                snippet TEXT,
                body_plain TEXT,
                body_html TEXT,
                internal_date INTEGER NOT NULL,
                is_read INTEGER NOT NULL DEFAULT 0,
                updated_at_iso TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS message_labels (
                message_id TEXT NOT NULL,
                label_id TEXT NOT NULL,
                PRIMARY KEY (message_id, label_id),
                FOREIGN KEY (message_id) REFERENCES messages(id) ON DELETE CASCADE,
                FOREIGN KEY (label_id) REFERENCES labels(id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_messages_internal_date
                ON messages(internal_date DESC);

            CREATE INDEX IF NOT EXISTS idx_messages_thread_id
                ON messages(thread_id);

            CREATE INDEX IF NOT EXISTS idx_message_labels_label_id
                ON message_labels(label_id);

            CREATE VIRTUAL TABLE IF NOT EXISTS messages_fts USING fts5(
                subject,
                from_address,
                snippet,
                body_plain,
                content='messages',
                content_rowid='rowid'
            );

            CREATE TRIGGER IF NOT EXISTS messages_ai
            AFTER INSERT ON messages
            BEGIN
                INSERT INTO messages_fts(rowid, subject, from_address, snippet, body_plain)
                VALUES (new.rowid, new.subject, new.from_address, new.snippet, new.body_plain);
            END;

            CREATE TRIGGER IF NOT EXISTS messages_ad
            AFTER DELETE ON messages
            BEGIN
                INSERT INTO messages_fts(messages_fts, rowid, subject, from_address, snippet, body_plain)
                VALUES('delete', old.rowid, old.subject, old.from_address, old.snippet, old.body_plain);
            END;

            CREATE TRIGGER IF NOT EXISTS messages_au
            AFTER UPDATE ON messages
            BEGIN
                INSERT INTO messages_fts(messages_fts, rowid, subject, from_address, snippet, body_plain)
                VALUES('delete', old.rowid, old.subject, old.from_address, old.snippet, old.body_plain);

                INSERT INTO messages_fts(rowid, subject, from_address, snippet, body_plain)
                VALUES (new.rowid, new.subject, new.from_address, new.snippet, new.body_plain);
            END;
            """
        )

    def _row_to_message(self, row: sqlite3.Row) -> Message:
        raw_labels = row["label_ids"]
        label_ids = sorted(raw_labels.split(_LABEL_SEPARATOR)) if raw_labels else []

        return Message(
            id=row["id"],
            thread_id=row["thread_id"],
            from_address=row["from_address"],
            to_address=row["to_address"],
            subject=row["subject"],
            snippet=row["snippet"],
            body_plain=row["body_plain"],
            body_html=row["body_html"],
            internal_date=row["internal_date"],
            is_read=bool(row["is_read"]),
            label_ids=label_ids,
        )


def _fts_query(term: str) -> str:
    tokens = term.split()
    return " ".join('"' + token.replace('"', '""') + '"' for token in tokens)
