"""Inbound Telegram handling — /start and the inline action buttons."""

import asyncio
import logging
from typing import Any

import httpx

from mailrelay.agent.errors import AuthenticationFailed, Cancelled, TransientFetchError
from mailrelay.agent.interfaces import CredentialProvider, Ledger, MailStore, MailStoreFactory
from mailrelay.agent.pacing import pause
from mailrelay.telegram.formatter import parse_callback_data
from mailrelay.telegram.notifier import TelegramError, TelegramNotifier

logger = logging.getLogger(__name__)

# Back-off after a failed getUpdates call, doubling up to the cap.
_INITIAL_BACKOFF_SECONDS = 1.0
_MAX_BACKOFF_SECONDS = 60.0

ACTION_FAILED = "Action failed. Please try again."
ACTION_ERROR = "An error occurred. Please try again later."
REAUTHORIZE_HINT = "Gmail access expired. Run `mailrelay authorize --chat-id {chat_id}`."

_SUCCESS_TEXT = {
    "delete": "Email deleted successfully",
    "archive": "Email archived successfully",
    "star": "Email starred successfully",
}

WELCOME_TEXT = (
    "👋 Welcome to mailrelay!\n\n"
    "New Gmail messages will be forwarded to this chat.\n"
    "Your chat id is {chat_id}.\n\n"
    "To connect Gmail, run on the relay host:\n"
    "mailrelay authorize --chat-id {chat_id}"
)


class TelegramBot:
    """Long-polls getUpdates and dispatches commands and button presses.

    Button callbacks carry ``action|message_id``.  The action runs against
    the chat's Gmail account; a successful delete also removes the Telegram
    notification and its ledger row.
    """

    def __init__(
        self,
        api: TelegramNotifier,
        ledger: Ledger,
        credentials: CredentialProvider,
        store_factory: MailStoreFactory,
        stop: asyncio.Event,
        poll_timeout: int = 30,
    ) -> None:
        self._api = api
        self._ledger = ledger
        self._credentials = credentials
        self._store_factory = store_factory
        self._stop = stop
        self._poll_timeout = poll_timeout
        self._offset: int | None = None

    async def run(self) -> None:
        """Process updates until the stop signal is raised."""
        logger.info("Telegram bot listening for updates")
        backoff = _INITIAL_BACKOFF_SECONDS
        while not self._stop.is_set():
            try:
                updates = await self._next_updates()
            except (TelegramError, httpx.HTTPError) as exc:
                logger.warning("getUpdates failed: %s — retrying in %.0fs", exc, backoff)
                try:
                    await pause(self._stop, backoff)
                except Cancelled:
                    break
                backoff = min(backoff * 2, _MAX_BACKOFF_SECONDS)
                continue
            backoff = _INITIAL_BACKOFF_SECONDS
            for update in updates:
                self._offset = int(update["update_id"]) + 1
                try:
                    await self.handle_update(update)
                except Exception as exc:  # noqa: BLE001
                    logger.error(
                        "Update %s failed: %s", update.get("update_id"), exc, exc_info=True
                    )
        logger.info("Telegram bot stopped")

    async def _next_updates(self) -> list[dict[str, Any]]:
        poll = asyncio.create_task(self._api.get_updates(self._offset, self._poll_timeout))
        stopped = asyncio.create_task(self._stop.wait())
        try:
            await asyncio.wait({poll, stopped}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stopped.cancel()
        if not poll.done():
            poll.cancel()
            return []
        return poll.result()

    async def handle_update(self, update: dict[str, Any]) -> None:
        if "callback_query" in update:
            await self.handle_callback(update["callback_query"])
            return
        message = update.get("message") or {}
        text = str(message.get("text") or "").strip()
        chat_id = (message.get("chat") or {}).get("id")
        if chat_id is None:
            return
        if text.split("@")[0] == "/start" or text.startswith("/start "):
            await self._api.notify_text(chat_id, WELCOME_TEXT.format(chat_id=chat_id))

    async def handle_callback(self, query: dict[str, Any]) -> None:
        callback_id = str(query.get("id", ""))
        parsed = parse_callback_data(str(query.get("data") or ""))
        message = query.get("message") or {}
        chat_id = (message.get("chat") or {}).get("id")
        if parsed is None or chat_id is None or parsed[0] not in _SUCCESS_TEXT:
            logger.warning("Ignoring malformed callback %r", query.get("data"))
            await self._api.answer_callback(callback_id, ACTION_FAILED)
            return
        action, message_id = parsed
        user_id = str((query.get("from") or {}).get("id", "unknown"))

        try:
            store = await self._open_store(chat_id)
            if store is None:
                await self._api.answer_callback(
                    callback_id, REAUTHORIZE_HINT.format(chat_id=chat_id)
                )
                return
            ok = await getattr(store, action)(message_id)
        except TransientFetchError as exc:
            logger.warning("%s of %s for chat %s failed: %s", action, message_id, chat_id, exc)
            await self._api.answer_callback(callback_id, ACTION_ERROR)
            return
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "%s of %s for chat %s failed: %s", action, message_id, chat_id, exc, exc_info=True
            )
            await self._api.answer_callback(callback_id, ACTION_ERROR)
            return

        if not ok:
            await self._api.answer_callback(callback_id, ACTION_FAILED)
            return

        self._ledger.record_action(chat_id, message_id, action, user_id=user_id)
        await self._api.answer_callback(callback_id, _SUCCESS_TEXT[action])
        logger.info("Chat %s: %s %s", chat_id, action, message_id)

        if action == "delete":
            handle = message.get("message_id")
            if handle is not None:
                await self._api.retract(chat_id, str(handle))
            self._ledger.delete(chat_id, message_id)

    async def _open_store(self, chat_id: int) -> MailStore | None:
        """Authenticated store for the chat, or None when it must re-authorize."""
        creds = self._credentials.get_credentials(chat_id)
        if creds is None:
            return None
        store = self._store_factory(chat_id)
        try:
            authenticated = await store.authenticate(creds.access_token, creds.refresh_token)
        except AuthenticationFailed:
            authenticated = False
        return store if authenticated else None
