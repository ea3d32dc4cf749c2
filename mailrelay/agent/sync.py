"""Deletion sync — retracts notifications for messages that left the inbox."""

import asyncio
import logging

from mailrelay.agent.errors import Cancelled
from mailrelay.agent.interfaces import Ledger, MailStore, Notifier
from mailrelay.agent.pacing import check_cancelled, pause
from mailrelay.agent.session import UserSession
from mailrelay.storage.models import TrackedMessage

logger = logging.getLogger(__name__)

#: Only the most recently received tracked messages are re-verified each pass.
#: Older notifications are considered settled and are never retracted.
DEFAULT_SYNC_WINDOW = 20

_RETRACT_DELAY_SECONDS = 0.2


class SyncEngine:
    """Reconciles one chat's ledger against its Gmail inbox.

    A tracked message is retracted when any enabled predicate holds:

    - it is no longer in the inbox (trashed, archived, deleted), always on;
    - it has been marked read, only when ``retract_on_read`` is enabled.

    Retraction removes the Telegram notification (best effort) and then the
    ledger row.  Only a successful ledger delete counts as retracted.
    """

    def __init__(
        self,
        ledger: Ledger,
        notifier: Notifier,
        stop: asyncio.Event,
        window: int = DEFAULT_SYNC_WINDOW,
        retract_on_read: bool = False,
    ) -> None:
        self._ledger = ledger
        self._notifier = notifier
        self._stop = stop
        self._window = window
        self._retract_on_read = retract_on_read

    async def reconcile(
        self,
        session: UserSession,
        store: MailStore,
        window: int | None = None,
    ) -> int:
        """Run one sync pass and return the number of retracted messages.

        Never raises except for Cancelled: a failed pass is logged and
        reported as zero retractions so the caller can go on fetching.
        """
        try:
            return await self._reconcile(session, store, window or self._window)
        except Cancelled:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "Sync pass failed for chat %s: %s", session.chat_id, exc, exc_info=True
            )
            return 0

    # ── Internal ───────────────────────────────────────────────────────────────

    async def _reconcile(self, session: UserSession, store: MailStore, window: int) -> int:
        chat_id = session.chat_id
        candidates = self._ledger.recent_for_user(chat_id, window)
        logger.debug("Sync: checking %d tracked message(s) for chat %s", len(candidates), chat_id)

        retracted = 0
        for tracked in candidates:
            check_cancelled(self._stop)
            try:
                reason = await self._retraction_reason(store, tracked)
                if reason is None:
                    continue
                logger.info(
                    "Message %s for chat %s was %s; retracting", tracked.message_id, chat_id, reason
                )
                if await self._retract(tracked):
                    retracted += 1
                    await pause(self._stop, _RETRACT_DELAY_SECONDS)
            except Cancelled:
                raise
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    "Sync failed on message %s for chat %s: %s",
                    tracked.message_id,
                    chat_id,
                    exc,
                    exc_info=True,
                )

        if retracted:
            logger.info("Sync: removed %d notification(s) for chat %s", retracted, chat_id)
            if session.sync_notifications:
                await self._send_summary(chat_id, retracted)
        return retracted

    async def _retraction_reason(self, store: MailStore, tracked: TrackedMessage) -> str | None:
        """Return why the message should be retracted, or None to keep it."""
        if not await store.still_present(tracked.message_id):
            return "removed from the inbox"
        if self._retract_on_read and await store.still_unread(tracked.message_id) is False:
            return "marked as read"
        return None

    async def _retract(self, tracked: TrackedMessage) -> bool:
        """Remove the notification, then the ledger row. True if the row was deleted."""
        chat_id = tracked.chat_id
        handle = tracked.notification_handle
        if handle:
            try:
                removed = await self._notifier.retract(chat_id, handle)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Retracting notification %s raised: %s", handle, exc)
                removed = False
            if not removed:
                # Usually the user already deleted it from the chat.
                logger.warning(
                    "Notification %s for message %s could not be removed",
                    handle,
                    tracked.message_id,
                )

        try:
            deleted = self._ledger.delete(chat_id, tracked.message_id)
        except Exception as exc:  # noqa: BLE001
            logger.error("Ledger delete failed for message %s: %s", tracked.message_id, exc)
            return False
        if not deleted:
            logger.warning("Message %s was already gone from the ledger", tracked.message_id)
        return deleted

    async def _send_summary(self, chat_id: int, retracted: int) -> None:
        noun = "email" if retracted == 1 else "emails"
        try:
            await self._notifier.notify_text(
                chat_id, f"✅ Synced: {retracted} deleted {noun} removed from chat"
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("Sync summary for chat %s not sent: %s", chat_id, exc)
