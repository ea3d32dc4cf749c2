"""Tests for SyncEngine — reconciliation of the ledger against the inbox."""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from mailrelay.agent.errors import Cancelled
from mailrelay.agent.session import UserSession
from mailrelay.agent.sync import SyncEngine
from mailrelay.storage.models import TrackedMessage

CHAT = 7
T0 = datetime(2026, 3, 1, tzinfo=timezone.utc)


# ── Helpers ────────────────────────────────────────────────────────────────────


def tracked(message_id: str, handle: str | None = "500", minutes: int = 0) -> TrackedMessage:
    return TrackedMessage(
        chat_id=CHAT,
        message_id=message_id,
        subject=f"Subject {message_id}",
        sender="bob@example.com",
        received_at=T0 + timedelta(minutes=minutes),
        notification_handle=handle,
    )


def make_ledger(*rows: TrackedMessage) -> MagicMock:
    ledger = MagicMock()
    ledger.recent_for_user.return_value = list(rows)
    ledger.delete.return_value = True
    return ledger


def make_store(absent: set[str] = frozenset(), read: set[str] = frozenset()) -> MagicMock:
    store = MagicMock()
    store.still_present = AsyncMock(side_effect=lambda mid: mid not in absent)
    store.still_unread = AsyncMock(side_effect=lambda mid: mid not in read)
    return store


def make_notifier() -> MagicMock:
    notifier = MagicMock()
    notifier.retract = AsyncMock(return_value=True)
    notifier.notify_text = AsyncMock()
    return notifier


def make_engine(ledger: MagicMock, notifier: MagicMock | None = None, **kwargs: object) -> SyncEngine:
    return SyncEngine(ledger, notifier or make_notifier(), asyncio.Event(), **kwargs)  # type: ignore[arg-type]


@pytest.fixture(autouse=True)
def no_sleep():
    with patch("mailrelay.agent.sync.pause", new_callable=AsyncMock) as mock_pause:
        yield mock_pause


# ── Retraction ─────────────────────────────────────────────────────────────────


class TestRetraction:
    async def test_absent_message_is_retracted_and_untracked(self) -> None:
        ledger = make_ledger(tracked("x", handle="900"))
        notifier = make_notifier()
        engine = make_engine(ledger, notifier)

        count = await engine.reconcile(UserSession(CHAT), make_store(absent={"x"}))

        assert count == 1
        notifier.retract.assert_awaited_once_with(CHAT, "900")
        ledger.delete.assert_called_once_with(CHAT, "x")

    async def test_present_messages_are_left_alone(self) -> None:
        ledger = make_ledger(tracked("x"), tracked("y"))
        notifier = make_notifier()

        count = await make_engine(ledger, notifier).reconcile(UserSession(CHAT), make_store())

        assert count == 0
        notifier.retract.assert_not_awaited()
        ledger.delete.assert_not_called()

    async def test_ledger_row_deleted_even_if_retract_fails(self) -> None:
        ledger = make_ledger(tracked("x"))
        notifier = make_notifier()
        notifier.retract.return_value = False

        count = await make_engine(ledger, notifier).reconcile(
            UserSession(CHAT), make_store(absent={"x"})
        )

        ledger.delete.assert_called_once_with(CHAT, "x")
        assert count == 1

    async def test_retract_exception_does_not_stop_cleanup(self) -> None:
        ledger = make_ledger(tracked("x"))
        notifier = make_notifier()
        notifier.retract.side_effect = RuntimeError("network")

        count = await make_engine(ledger, notifier).reconcile(
            UserSession(CHAT), make_store(absent={"x"})
        )

        ledger.delete.assert_called_once_with(CHAT, "x")
        assert count == 1

    async def test_failed_delete_is_not_counted(self) -> None:
        ledger = make_ledger(tracked("x"))
        ledger.delete.return_value = False

        count = await make_engine(ledger).reconcile(UserSession(CHAT), make_store(absent={"x"}))

        assert count == 0

    async def test_row_without_handle_skips_retract(self) -> None:
        ledger = make_ledger(tracked("x", handle=None))
        notifier = make_notifier()

        count = await make_engine(ledger, notifier).reconcile(
            UserSession(CHAT), make_store(absent={"x"})
        )

        notifier.retract.assert_not_awaited()
        assert count == 1

    async def test_per_candidate_error_does_not_abort_pass(self) -> None:
        ledger = make_ledger(tracked("x"), tracked("y"))
        store = MagicMock()
        store.still_present = AsyncMock(side_effect=[RuntimeError("boom"), False])

        count = await make_engine(ledger).reconcile(UserSession(CHAT), store)

        assert count == 1
        ledger.delete.assert_called_once_with(CHAT, "y")

    async def test_pauses_after_each_retraction(self, no_sleep: AsyncMock) -> None:
        ledger = make_ledger(tracked("x"), tracked("y"), tracked("z"))

        await make_engine(ledger).reconcile(UserSession(CHAT), make_store(absent={"x", "z"}))

        assert [c.args[1] for c in no_sleep.await_args_list] == [0.2, 0.2]


# ── Window ─────────────────────────────────────────────────────────────────────


class TestWindow:
    async def test_default_window_is_twenty(self) -> None:
        ledger = make_ledger()

        await make_engine(ledger).reconcile(UserSession(CHAT), make_store())

        ledger.recent_for_user.assert_called_once_with(CHAT, 20)

    async def test_explicit_window_overrides_default(self) -> None:
        ledger = make_ledger()

        await make_engine(ledger).reconcile(UserSession(CHAT), make_store(), window=5)

        ledger.recent_for_user.assert_called_once_with(CHAT, 5)


# ── Read predicate ─────────────────────────────────────────────────────────────


class TestRetractOnRead:
    async def test_read_messages_kept_by_default(self) -> None:
        ledger = make_ledger(tracked("x"))

        count = await make_engine(ledger).reconcile(UserSession(CHAT), make_store(read={"x"}))

        assert count == 0

    async def test_read_messages_retracted_when_enabled(self) -> None:
        ledger = make_ledger(tracked("x"))

        count = await make_engine(ledger, retract_on_read=True).reconcile(
            UserSession(CHAT), make_store(read={"x"})
        )

        assert count == 1

    async def test_unknown_read_state_keeps_message(self) -> None:
        ledger = make_ledger(tracked("x"))
        store = make_store()
        store.still_unread = AsyncMock(return_value=None)

        count = await make_engine(ledger, retract_on_read=True).reconcile(UserSession(CHAT), store)

        assert count == 0


# ── Summary notification ───────────────────────────────────────────────────────


class TestSummary:
    async def test_summary_sent_when_enabled(self) -> None:
        ledger = make_ledger(tracked("x"), tracked("y"))
        notifier = make_notifier()

        await make_engine(ledger, notifier).reconcile(
            UserSession(CHAT, sync_notifications=True), make_store(absent={"x", "y"})
        )

        notifier.notify_text.assert_awaited_once_with(
            CHAT, "✅ Synced: 2 deleted emails removed from chat"
        )

    async def test_no_summary_when_disabled(self) -> None:
        ledger = make_ledger(tracked("x"))
        notifier = make_notifier()

        await make_engine(ledger, notifier).reconcile(UserSession(CHAT), make_store(absent={"x"}))

        notifier.notify_text.assert_not_awaited()

    async def test_no_summary_when_nothing_retracted(self) -> None:
        notifier = make_notifier()

        await make_engine(make_ledger(tracked("x")), notifier).reconcile(
            UserSession(CHAT, sync_notifications=True), make_store()
        )

        notifier.notify_text.assert_not_awaited()

    async def test_summary_failure_is_swallowed(self) -> None:
        notifier = make_notifier()
        notifier.notify_text.side_effect = RuntimeError("telegram down")

        count = await make_engine(make_ledger(tracked("x")), notifier).reconcile(
            UserSession(CHAT, sync_notifications=True), make_store(absent={"x"})
        )

        assert count == 1


# ── Failure isolation ──────────────────────────────────────────────────────────


class TestFailureIsolation:
    async def test_total_failure_returns_zero(self) -> None:
        ledger = MagicMock()
        ledger.recent_for_user.side_effect = RuntimeError("database locked")

        count = await make_engine(ledger).reconcile(UserSession(CHAT), make_store())

        assert count == 0

    async def test_cancelled_propagates(self) -> None:
        ledger = make_ledger(tracked("x"))
        store = MagicMock()
        store.still_present = AsyncMock(side_effect=Cancelled("stop"))

        with pytest.raises(Cancelled):
            await make_engine(ledger).reconcile(UserSession(CHAT), store)

    async def test_stop_signal_raises_cancelled(self) -> None:
        engine = make_engine(make_ledger(tracked("x")))
        engine._stop.set()

        with pytest.raises(Cancelled):
            await engine.reconcile(UserSession(CHAT), make_store())
