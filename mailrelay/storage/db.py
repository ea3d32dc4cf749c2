"""SQLite storage — tracked messages, the action log, and per-chat credentials."""

import json
import logging
import sqlite3
import threading
from collections.abc import Iterable
from datetime import datetime, timezone
from pathlib import Path

from mailrelay.gmail.types import EmailMessage
from mailrelay.storage.models import (
    ALL_TABLES,
    ActionRecord,
    StoredCredentials,
    TrackedMessage,
)

logger = logging.getLogger(__name__)

_DEFAULT_DB_PATH = Path("data/mailrelay.db")

# SQLite caps bound parameters per statement; stay well under the default.
_MAX_IN_PARAMS = 500


def _to_utc_text(value: datetime) -> str:
    """Serialise a datetime as sortable UTC text. Naive values are taken as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _from_utc_text(text: str) -> datetime:
    return datetime.strptime(text, "%Y-%m-%dT%H:%M:%S.%fZ").replace(tzinfo=timezone.utc)


class RelayDatabase:
    """Wraps SQLite for the relay: the message ledger plus stored OAuth tokens.

    Every per-user polling task shares one instance.  Rows are partitioned by
    ``chat_id`` so tasks never touch each other's keys; the single connection
    is serialised with a lock so concurrent calls from worker threads are safe.

    Usage::

        db = RelayDatabase()
        db.upsert(chat_id, message)
        known = db.known(chat_id, ["id1", "id2"])
    """

    def __init__(self, db_path: str | Path = _DEFAULT_DB_PATH) -> None:
        self._path = Path(db_path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(str(self._path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._create_tables()

    @property
    def path(self) -> Path:
        return self._path

    def close(self) -> None:
        """Close the underlying database connection."""
        with self._lock:
            self._conn.close()

    # ── Ledger: write API ──────────────────────────────────────────────────────

    def upsert(self, chat_id: int, message: EmailMessage) -> None:
        """Track a message for a chat.

        Re-upserting refreshes the descriptive columns but never clears an
        existing notification handle.
        """
        with self._lock, self._conn:
            self._conn.execute(
                """
                INSERT INTO messages
                    (chat_id, message_id, subject, sender, received_at,
                     labels, is_read, direct_link)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(chat_id, message_id) DO UPDATE SET
                    subject     = excluded.subject,
                    sender      = excluded.sender,
                    labels      = excluded.labels,
                    is_read     = excluded.is_read,
                    direct_link = excluded.direct_link
                """,
                (
                    chat_id,
                    message.message_id,
                    message.subject,
                    message.sender,
                    _to_utc_text(message.received_at),
                    json.dumps(message.labels),
                    int(message.is_read),
                    message.link,
                ),
            )

    def attach_handle(self, chat_id: int, message_id: str, handle: str) -> bool:
        """Record the notification handle for a tracked message.

        Returns False when the message is not tracked for this chat.
        """
        with self._lock, self._conn:
            cur = self._conn.execute(
                "UPDATE messages SET notification_handle = ? "
                "WHERE chat_id = ? AND message_id = ?",
                (handle, chat_id, message_id),
            )
            return cur.rowcount > 0

    def delete(self, chat_id: int, message_id: str) -> bool:
        """Stop tracking a message. Returns True only if a row was removed."""
        with self._lock, self._conn:
            cur = self._conn.execute(
                "DELETE FROM messages WHERE chat_id = ? AND message_id = ?",
                (chat_id, message_id),
            )
            return cur.rowcount > 0

    def record_action(
        self,
        chat_id: int,
        message_id: str,
        action_type: str,
        user_id: str = "system",
        details: Iterable[str] = (),
    ) -> None:
        """Append an entry to the action log."""
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT INTO actions (chat_id, message_id, action_type, user_id, details) "
                "VALUES (?, ?, ?, ?, ?)",
                (chat_id, message_id, action_type, user_id, json.dumps(list(details))),
            )

    # ── Ledger: read API ───────────────────────────────────────────────────────

    def known(self, chat_id: int, message_ids: Iterable[str]) -> set[str]:
        """Return the subset of message_ids already tracked for this chat."""
        ids = list(dict.fromkeys(message_ids))
        found: set[str] = set()
        with self._lock:
            for start in range(0, len(ids), _MAX_IN_PARAMS):
                chunk = ids[start:start + _MAX_IN_PARAMS]
                placeholders = ",".join("?" * len(chunk))
                rows = self._conn.execute(
                    f"SELECT message_id FROM messages "
                    f"WHERE chat_id = ? AND message_id IN ({placeholders})",
                    (chat_id, *chunk),
                ).fetchall()
                found.update(row["message_id"] for row in rows)
        return found

    def get(self, chat_id: int, message_id: str) -> TrackedMessage | None:
        """Return the tracked row for message_id, or None if not tracked."""
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM messages WHERE chat_id = ? AND message_id = ?",
                (chat_id, message_id),
            ).fetchone()
        return self._row_to_tracked(row) if row else None

    def recent_for_user(self, chat_id: int, limit: int) -> list[TrackedMessage]:
        """Return the most recently received tracked messages, newest first."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM messages WHERE chat_id = ? "
                "ORDER BY received_at DESC LIMIT ?",
                (chat_id, limit),
            ).fetchall()
        return [self._row_to_tracked(r) for r in rows]

    def count_for_user(self, chat_id: int) -> int:
        with self._lock:
            row = self._conn.execute(
                "SELECT COUNT(*) AS n FROM messages WHERE chat_id = ?", (chat_id,)
            ).fetchone()
        return int(row["n"])

    def get_actions(self, chat_id: int, message_id: str) -> list[ActionRecord]:
        """Return the action log for one message, newest first."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT id, chat_id, message_id, action_type, user_id, details, created_at "
                "FROM actions WHERE chat_id = ? AND message_id = ? "
                "ORDER BY id DESC",
                (chat_id, message_id),
            ).fetchall()
        result = []
        for row in rows:
            d = dict(row)
            d["details"] = json.loads(d["details"])
            result.append(ActionRecord(**d))
        return result

    # ── Credentials ────────────────────────────────────────────────────────────

    def save_credentials(self, credentials: StoredCredentials) -> None:
        """Store (or replace) the OAuth tokens for a chat."""
        with self._lock, self._conn:
            self._conn.execute(
                """
                INSERT INTO user_credentials
                    (chat_id, access_token, refresh_token, expires_at, email_address)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(chat_id) DO UPDATE SET
                    access_token  = excluded.access_token,
                    refresh_token = excluded.refresh_token,
                    expires_at    = excluded.expires_at,
                    email_address = excluded.email_address,
                    updated_at    = datetime('now')
                """,
                (
                    credentials.chat_id,
                    credentials.access_token,
                    credentials.refresh_token,
                    credentials.expires_at,
                    credentials.email_address,
                ),
            )
        logger.info("Stored Gmail credentials for chat %s", credentials.chat_id)

    def get_credentials(self, chat_id: int) -> StoredCredentials | None:
        """Return stored tokens for a chat, or None if it never authorized."""
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM user_credentials WHERE chat_id = ?", (chat_id,)
            ).fetchone()
        return StoredCredentials(**dict(row)) if row else None

    def invalidate(self, chat_id: int) -> None:
        """Drop the stored tokens for a chat after they were rejected."""
        with self._lock, self._conn:
            self._conn.execute("DELETE FROM user_credentials WHERE chat_id = ?", (chat_id,))
        logger.info("Cleared stored Gmail credentials for chat %s", chat_id)

    def all_credentials(self) -> list[StoredCredentials]:
        """Return credentials for every authorized chat."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM user_credentials ORDER BY chat_id"
            ).fetchall()
        return [StoredCredentials(**dict(r)) for r in rows]

    # ── Private ────────────────────────────────────────────────────────────────

    def _create_tables(self) -> None:
        with self._lock, self._conn:
            for ddl in ALL_TABLES:
                self._conn.execute(ddl)

    @staticmethod
    def _row_to_tracked(row: sqlite3.Row) -> TrackedMessage:
        return TrackedMessage(
            chat_id=row["chat_id"],
            message_id=row["message_id"],
            subject=row["subject"],
            sender=row["sender"],
            received_at=_from_utc_text(row["received_at"]),
            notification_handle=row["notification_handle"],
            labels=json.loads(row["labels"]),
            is_read=bool(row["is_read"]),
            direct_link=row["direct_link"],
        )
