"""One polling pass for one chat: authenticate, sync deletions, deliver new mail."""

import asyncio
import logging

from mailrelay.agent.errors import (
    AuthenticationFailed,
    Cancelled,
    DeliveryFailed,
    TransientFetchError,
)
from mailrelay.agent.interfaces import (
    CredentialProvider,
    Ledger,
    MailStore,
    MailStoreFactory,
    Notifier,
)
from mailrelay.agent.pacing import check_cancelled, pause
from mailrelay.agent.session import CycleOutcome, UserSession
from mailrelay.agent.sync import SyncEngine
from mailrelay.gmail.types import EmailMessage

logger = logging.getLogger(__name__)

#: Number of most recent inbox messages inspected per cycle.
FETCH_WINDOW = 10

# Backoff: 2^attempt seconds before each retry (2s, 4s, 8s), then give up.
_MAX_FETCH_RETRIES = 3

# Pause between consecutive sendMessage calls to stay under Telegram's limits.
_DELIVERY_DELAY_SECONDS = 0.5

REAUTH_MESSAGE = (
    "🔐 Gmail access for this chat has expired or was revoked. "
    "Polling is paused until you re-authorize with `mailrelay authorize`."
)


class PollCycle:
    """Fetches the newest inbox messages for one chat and delivers unseen ones.

    Every call takes the UserSession explicitly; the instance itself keeps no
    per-user state, so one PollCycle can serve every supervisor task.

    Each new message is written to the ledger *before* delivery so a crash
    mid-cycle never delivers the same message twice.
    """

    def __init__(
        self,
        credentials: CredentialProvider,
        store_factory: MailStoreFactory,
        ledger: Ledger,
        notifier: Notifier,
        sync: SyncEngine,
        stop: asyncio.Event,
        fetch_window: int = FETCH_WINDOW,
        unread_only: bool = False,
    ) -> None:
        self._credentials = credentials
        self._store_factory = store_factory
        self._ledger = ledger
        self._notifier = notifier
        self._sync = sync
        self._stop = stop
        self._fetch_window = fetch_window
        self._unread_only = unread_only

    async def execute(self, session: UserSession) -> CycleOutcome:
        """Run one cycle.

        Raises:
            TransientFetchError: if the inbox fetch still fails after all retries.
            Cancelled: if the stop signal was raised mid-cycle.
        """
        outcome = CycleOutcome()
        if session.auth_failed:
            return outcome

        store = await self._authenticate(session)
        if store is None:
            return outcome

        # Reconcile before diffing so a stale ledger row can't mask a new message.
        outcome.retracted = await self._sync.reconcile(session, store)
        check_cancelled(self._stop)

        try:
            messages = await self._fetch_with_retry(session, store)
        except AuthenticationFailed as exc:
            await self._mark_auth_failed(session, str(exc))
            return outcome

        new = self._new_messages(session.chat_id, messages)
        if not new:
            logger.debug(
                "Poll: 0 new message(s) for chat %s (%d fetched)", session.chat_id, len(messages)
            )
            return outcome

        logger.info("Poll: %d new message(s) for chat %s", len(new), session.chat_id)
        for index, message in enumerate(new):
            check_cancelled(self._stop)
            if index:
                await pause(self._stop, _DELIVERY_DELAY_SECONDS)
            outcome.attempted += 1
            if await self._deliver_one(session.chat_id, message):
                outcome.delivered += 1
            else:
                outcome.failed += 1
        return outcome

    # ── Internal ───────────────────────────────────────────────────────────────

    async def _authenticate(self, session: UserSession) -> MailStore | None:
        """Return an authenticated MailStore, or None after flagging the session."""
        chat_id = session.chat_id
        credentials = self._credentials.get_credentials(chat_id)
        if credentials is None:
            # Never connected: nothing to tell the user that /start hasn't already.
            logger.info("No stored credentials for chat %s; pausing its polling", chat_id)
            session.auth_failed = True
            return None

        store = self._store_factory(chat_id)
        try:
            ok = await store.authenticate(credentials.access_token, credentials.refresh_token)
        except AuthenticationFailed:
            ok = False
        if not ok:
            await self._mark_auth_failed(session, "credentials rejected")
            return None

        if session.auth_failed:
            logger.info("Chat %s authenticated again", chat_id)
        session.auth_failed = False
        return store

    async def _mark_auth_failed(self, session: UserSession, reason: str) -> None:
        chat_id = session.chat_id
        logger.warning("Gmail authentication failed for chat %s: %s", chat_id, reason)
        try:
            self._credentials.invalidate(chat_id)
        except Exception as exc:  # noqa: BLE001
            logger.error("Could not clear credentials for chat %s: %s", chat_id, exc)
        session.auth_failed = True
        try:
            await self._notifier.notify_text(chat_id, REAUTH_MESSAGE)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Re-authorization notice for chat %s not sent: %s", chat_id, exc)

    async def _fetch_with_retry(self, session: UserSession, store: MailStore) -> list[EmailMessage]:
        attempt = 0
        while True:
            check_cancelled(self._stop)
            try:
                return await store.fetch_recent(self._fetch_window, unread_only=self._unread_only)
            except TransientFetchError as exc:
                attempt += 1
                if attempt > _MAX_FETCH_RETRIES:
                    logger.error(
                        "Fetch for chat %s failed after %d retries: %s",
                        session.chat_id,
                        _MAX_FETCH_RETRIES,
                        exc,
                    )
                    raise
                delay = 2**attempt
                logger.warning(
                    "Fetch for chat %s failed (retry %d/%d): %s — retrying in %ds",
                    session.chat_id,
                    attempt,
                    _MAX_FETCH_RETRIES,
                    exc,
                    delay,
                )
                await pause(self._stop, delay)

    def _new_messages(self, chat_id: int, messages: list[EmailMessage]) -> list[EmailMessage]:
        """Fetched messages not yet in the ledger, in fetch order, without duplicates."""
        known = self._ledger.known(chat_id, [m.message_id for m in messages])
        new: list[EmailMessage] = []
        for message in messages:
            if message.message_id in known:
                continue
            known.add(message.message_id)
            new.append(message)
        return new

    async def _deliver_one(self, chat_id: int, message: EmailMessage) -> bool:
        """Track, deliver and verify one message. Never raises except Cancelled."""
        message_id = message.message_id
        try:
            self._ledger.upsert(chat_id, message)
        except Exception as exc:  # noqa: BLE001
            logger.error("Could not track message %s: %s", message_id, exc, exc_info=True)
            self._record_error(chat_id, message_id, f"ledger write failed: {exc}")
            return False

        try:
            handle = await self._notifier.deliver(chat_id, message)
        except Cancelled:
            raise
        except DeliveryFailed as exc:
            logger.error("Delivery of message %s rejected: %s", message_id, exc)
            self._record_error(chat_id, message_id, str(exc))
            if exc.retryable:
                # Nothing reached the chat: untrack so the next cycle tries again.
                self._forget(chat_id, message_id)
            return False
        except Exception as exc:  # noqa: BLE001
            logger.error("Delivery of message %s failed: %s", message_id, exc, exc_info=True)
            self._record_error(chat_id, message_id, str(exc))
            return False

        try:
            self._ledger.attach_handle(chat_id, message_id, handle)
        except Exception as exc:  # noqa: BLE001
            logger.error("Could not store handle for message %s: %s", message_id, exc)

        try:
            stored = self._ledger.get(chat_id, message_id)
        except Exception as exc:  # noqa: BLE001
            logger.error("Could not read back message %s: %s", message_id, exc)
            stored = None
        if stored is None or not stored.notification_handle:
            logger.error("Message %s was delivered but the ledger has no handle for it", message_id)
            self._record_error(chat_id, message_id, "notification handle missing after delivery")
            return False

        logger.debug("Delivered message %s to chat %s as %s", message_id, chat_id, handle)
        return True

    def _record_error(self, chat_id: int, message_id: str, detail: str) -> None:
        try:
            self._ledger.record_action(chat_id, message_id, "error", details=[detail])
        except Exception as exc:  # noqa: BLE001
            logger.error("Could not record error action for message %s: %s", message_id, exc)

    def _forget(self, chat_id: int, message_id: str) -> None:
        try:
            self._ledger.delete(chat_id, message_id)
        except Exception as exc:  # noqa: BLE001
            logger.error("Could not untrack message %s: %s", message_id, exc)
