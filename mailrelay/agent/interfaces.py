"""Collaborator interfaces consumed by the polling and reconciliation loop.

Concrete implementations live in ``mailrelay.storage``, ``mailrelay.gmail``
and ``mailrelay.telegram``; tests substitute mocks.
"""

from collections.abc import Callable, Iterable
from typing import Protocol, runtime_checkable

from mailrelay.gmail.types import EmailMessage
from mailrelay.storage.models import StoredCredentials, TrackedMessage


@runtime_checkable
class CredentialProvider(Protocol):
    """Source of stored OAuth tokens, keyed by chat id."""

    def get_credentials(self, chat_id: int) -> StoredCredentials | None: ...

    def invalidate(self, chat_id: int) -> None:
        """Forget locally cached tokens after Gmail rejected them."""
        ...


@runtime_checkable
class MailStore(Protocol):
    """Read/mutate access to one user's Gmail mailbox."""

    async def authenticate(self, access_token: str, refresh_token: str) -> bool: ...

    async def fetch_recent(self, limit: int, unread_only: bool = False) -> list[EmailMessage]:
        """Return up to ``limit`` inbox messages, newest first.

        Raises:
            TransientFetchError: on network or remote API errors.
        """
        ...

    async def still_present(self, message_id: str) -> bool:
        """True while the message is in the inbox. Fails open on ambiguous errors."""
        ...

    async def still_unread(self, message_id: str) -> bool | None:
        """True/False for the UNREAD label, None when it cannot be determined."""
        ...

    async def trash(self, message_id: str) -> bool: ...

    async def archive(self, message_id: str) -> bool: ...

    async def star(self, message_id: str) -> bool: ...

    async def mark_read(self, message_id: str) -> bool: ...


#: Builds an unauthenticated MailStore bound to one chat's mailbox.
MailStoreFactory = Callable[[int], MailStore]


@runtime_checkable
class Notifier(Protocol):
    """Outbound notification channel for one bot, addressed by chat id."""

    async def deliver(self, chat_id: int, message: EmailMessage) -> str:
        """Send a formatted notification and return its handle.

        Raises:
            DeliveryFailed: if the channel rejected the message.
        """
        ...

    async def retract(self, chat_id: int, handle: str) -> bool: ...

    async def notify_text(self, chat_id: int, text: str) -> None:
        """Best-effort plain text message. Must never raise."""
        ...


@runtime_checkable
class Ledger(Protocol):
    """Durable record of tracked messages, partitioned by chat id."""

    def known(self, chat_id: int, message_ids: Iterable[str]) -> set[str]: ...

    def upsert(self, chat_id: int, message: EmailMessage) -> None: ...

    def attach_handle(self, chat_id: int, message_id: str, handle: str) -> bool: ...

    def get(self, chat_id: int, message_id: str) -> TrackedMessage | None: ...

    def delete(self, chat_id: int, message_id: str) -> bool: ...

    def recent_for_user(self, chat_id: int, limit: int) -> list[TrackedMessage]: ...

    def record_action(
        self,
        chat_id: int,
        message_id: str,
        action_type: str,
        user_id: str = "system",
        details: Iterable[str] = (),
    ) -> None: ...
