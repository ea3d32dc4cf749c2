"""SQLite table schemas and typed row types for the storage layer."""

from dataclasses import dataclass, field
from datetime import datetime


# ── DDL ────────────────────────────────────────────────────────────────────────

_CREATE_MESSAGES = """
CREATE TABLE IF NOT EXISTS messages (
    chat_id             INTEGER NOT NULL,
    message_id          TEXT NOT NULL,
    subject             TEXT NOT NULL DEFAULT '',
    sender              TEXT NOT NULL DEFAULT '',
    received_at         TEXT NOT NULL,
    labels              TEXT NOT NULL DEFAULT '[]',
    is_read             INTEGER NOT NULL DEFAULT 0,
    direct_link         TEXT NOT NULL DEFAULT '',
    notification_handle TEXT,
    tracked_at          TEXT NOT NULL DEFAULT (datetime('now')),
    PRIMARY KEY (chat_id, message_id)
)
"""

_CREATE_MESSAGES_RECENT_INDEX = """
CREATE INDEX IF NOT EXISTS idx_messages_recent
    ON messages (chat_id, received_at DESC)
"""

_CREATE_ACTIONS = """
CREATE TABLE IF NOT EXISTS actions (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    chat_id     INTEGER NOT NULL,
    message_id  TEXT NOT NULL,
    action_type TEXT NOT NULL,
    user_id     TEXT NOT NULL,
    details     TEXT NOT NULL DEFAULT '[]',
    created_at  TEXT NOT NULL DEFAULT (datetime('now'))
)
"""

_CREATE_CREDENTIALS = """
CREATE TABLE IF NOT EXISTS user_credentials (
    chat_id       INTEGER PRIMARY KEY,
    access_token  TEXT NOT NULL,
    refresh_token TEXT NOT NULL,
    expires_at    TEXT,
    email_address TEXT NOT NULL DEFAULT '',
    created_at    TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at    TEXT NOT NULL DEFAULT (datetime('now'))
)
"""

#: All DDL statements in creation order.
ALL_TABLES: list[str] = [
    _CREATE_MESSAGES,
    _CREATE_MESSAGES_RECENT_INDEX,
    _CREATE_ACTIONS,
    _CREATE_CREDENTIALS,
]


# ── Row types ──────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class TrackedMessage:
    """A message the relay has seen and (possibly) notified about.

    ``notification_handle`` is None until delivery has been confirmed.
    """

    chat_id: int
    message_id: str
    subject: str
    sender: str
    received_at: datetime
    notification_handle: str | None = None
    labels: list[str] = field(default_factory=list)
    is_read: bool = False
    direct_link: str = ""


@dataclass(frozen=True)
class ActionRecord:
    """A row from the actions table."""

    id: int
    chat_id: int
    message_id: str
    action_type: str
    user_id: str
    details: list[str]
    created_at: str


@dataclass(frozen=True)
class StoredCredentials:
    """OAuth tokens stored for one chat."""

    chat_id: int
    access_token: str
    refresh_token: str
    expires_at: str | None = None
    email_address: str = ""
    created_at: str = ""
    updated_at: str = ""
