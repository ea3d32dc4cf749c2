"""Shared pytest fixtures."""

from collections.abc import Callable, Iterator
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from mailrelay.gmail.types import EmailAttachment, EmailMessage
from mailrelay.storage.db import RelayDatabase

BASE_TIME = datetime(2026, 2, 27, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def make_email() -> Callable[..., EmailMessage]:
    """Factory for EmailMessage objects; later `minutes` means more recent."""

    def _make(
        message_id: str = "msg_001",
        subject: str = "Q2 budget review — action required",
        minutes: int = 0,
        **kwargs: object,
    ) -> EmailMessage:
        fields: dict[str, object] = {
            "sender": "Alice Example <alice@example.com>",
            "body": "<p>Hi, please review the attached budget figures.</p><p>Thanks</p>",
            "labels": ["Work"],
            "attachments": [EmailAttachment("budget.xlsx", size=2048)],
        }
        fields.update(kwargs)
        return EmailMessage(
            message_id=message_id,
            subject=subject,
            received_at=BASE_TIME + timedelta(minutes=minutes),
            **fields,  # type: ignore[arg-type]
        )

    return _make


@pytest.fixture
def db(tmp_path: Path) -> Iterator[RelayDatabase]:
    """A RelayDatabase backed by a throwaway SQLite file."""
    database = RelayDatabase(db_path=tmp_path / "relay.db")
    yield database
    database.close()
