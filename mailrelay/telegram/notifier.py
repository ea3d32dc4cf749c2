"""Telegram Bot API client — the relay's outbound notification channel."""

import logging
from typing import Any

import httpx

from mailrelay.agent.errors import DeliveryFailed, RelayError
from mailrelay.gmail.types import EmailMessage
from mailrelay.telegram.formatter import (
    TELEGRAM_MAX_LENGTH,
    build_keyboard,
    build_message,
    build_minimal_message,
    build_short_message,
)

logger = logging.getLogger(__name__)

_API_BASE = "https://api.telegram.org"

# Rejections that a smaller or simpler rendering can get past.
_RETRYABLE_FORMAT_ERRORS = ("too long", "can't parse entities")


class TelegramError(RelayError):
    """The Bot API answered ``ok: false``."""

    def __init__(self, method: str, error_code: int, description: str) -> None:
        super().__init__(f"{method} failed ({error_code}): {description}")
        self.method = method
        self.error_code = error_code
        self.description = description

    @property
    def format_problem(self) -> bool:
        """True when the message text itself was the problem."""
        text = self.description.lower()
        return self.error_code == 400 and any(s in text for s in _RETRYABLE_FORMAT_ERRORS)

    @property
    def retryable(self) -> bool:
        """True for rate limiting and server-side failures."""
        return self.error_code == 429 or self.error_code >= 500


class TelegramNotifier:
    """Thin async wrapper over the Bot API methods the relay uses.

    Implements the Notifier interface (deliver / retract / notify_text) and
    exposes the update-polling calls TelegramBot needs.

    Usage::

        notifier = TelegramNotifier(token)
        handle = await notifier.deliver(chat_id, message)
        await notifier.retract(chat_id, handle)
        await notifier.close()
    """

    def __init__(
        self,
        token: str,
        client: httpx.AsyncClient | None = None,
        timeout: float = 40.0,
    ) -> None:
        self._base_url = f"{_API_BASE}/bot{token}"
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def close(self) -> None:
        await self._client.aclose()

    async def call(self, method: str, payload: dict[str, Any] | None = None) -> Any:
        """POST a Bot API method and return its ``result``.

        Raises:
            TelegramError: if Telegram answered ``ok: false`` or not with JSON.
            httpx.HTTPError: on transport failures.
        """
        response = await self._client.post(f"{self._base_url}/{method}", json=payload or {})
        try:
            data = response.json()
        except ValueError as exc:
            response.raise_for_status()
            raise TelegramError(method, response.status_code, "response was not JSON") from exc
        if not data.get("ok"):
            raise TelegramError(
                method,
                int(data.get("error_code") or response.status_code),
                str(data.get("description", "")),
            )
        return data.get("result")

    # ── Notifier interface ─────────────────────────────────────────────────────

    async def deliver(self, chat_id: int, message: EmailMessage) -> str:
        """Send the richest rendering Telegram accepts; return its message id.

        Tries the full, short and minimal formats in turn, moving on only when
        Telegram objects to the text itself.

        Raises:
            DeliveryFailed: if Telegram rejected every rendering.
            httpx.HTTPError: if the outcome is unknown (timeout, network).
        """
        keyboard = build_keyboard(message.message_id)
        last_error: TelegramError | None = None
        for render in (build_message, build_short_message, build_minimal_message):
            text = render(message)
            if len(text) > TELEGRAM_MAX_LENGTH:
                logger.debug(
                    "%s too long for %s (%d chars)", render.__name__, message.message_id, len(text)
                )
                continue
            try:
                result = await self.call(
                    "sendMessage",
                    {
                        "chat_id": chat_id,
                        "text": text,
                        "parse_mode": "HTML",
                        "disable_web_page_preview": True,
                        "reply_markup": keyboard,
                    },
                )
            except TelegramError as exc:
                if not exc.format_problem:
                    raise DeliveryFailed(str(exc), retryable=exc.retryable) from exc
                logger.warning(
                    "%s rejected for %s: %s", render.__name__, message.message_id, exc.description
                )
                last_error = exc
                continue
            return str(result["message_id"])
        raise DeliveryFailed(
            f"No rendering of {message.message_id} accepted"
            + (f": {last_error.description}" if last_error else "")
        )

    async def retract(self, chat_id: int, handle: str) -> bool:
        """Delete a previously sent notification. False if Telegram refused."""
        try:
            await self.call("deleteMessage", {"chat_id": chat_id, "message_id": int(handle)})
        except (TelegramError, httpx.HTTPError, ValueError) as exc:
            logger.warning(
                "Could not delete Telegram message %s in chat %s: %s", handle, chat_id, exc
            )
            return False
        return True

    async def notify_text(self, chat_id: int, text: str) -> None:
        try:
            await self.call("sendMessage", {"chat_id": chat_id, "text": text})
        except Exception as exc:  # noqa: BLE001
            logger.warning("Could not send text to chat %s: %s", chat_id, exc)

    # ── Update polling ─────────────────────────────────────────────────────────

    async def get_updates(
        self, offset: int | None = None, timeout: int = 30
    ) -> list[dict[str, Any]]:
        payload: dict[str, Any] = {
            "timeout": timeout,
            "allowed_updates": ["message", "callback_query"],
        }
        if offset is not None:
            payload["offset"] = offset
        return list(await self.call("getUpdates", payload) or [])

    async def answer_callback(self, callback_id: str, text: str) -> None:
        try:
            await self.call("answerCallbackQuery", {"callback_query_id": callback_id, "text": text})
        except (TelegramError, httpx.HTTPError) as exc:
            logger.warning("Could not answer callback %s: %s", callback_id, exc)
