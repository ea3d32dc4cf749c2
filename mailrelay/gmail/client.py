"""Gmail API client — one user's inbox behind a typed async API."""

import asyncio
import base64
import binascii
import json
import logging
from datetime import datetime, timezone
from typing import Any

from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from mailrelay.agent.errors import AuthenticationFailed, TransientFetchError
from mailrelay.config import DEFAULT_SCOPES
from mailrelay.gmail.types import DIRECT_LINK_TEMPLATE, EmailAttachment, EmailMessage

logger = logging.getLogger(__name__)

_TOKEN_URI = "https://oauth2.googleapis.com/token"

# Gmail system label IDs
_INBOX = "INBOX"
_UNREAD = "UNREAD"
_STARRED = "STARRED"

_ATTACHMENT_URL = (
    "https://mail.google.com/mail/u/0/?ui=2&ik=&view=att&th={message_id}&attid={attachment_id}"
)

# 403 reasons that mean "slow down", not "your tokens are no good".
_RATE_LIMIT_REASONS = {
    "rateLimitExceeded",
    "userRateLimitExceeded",
    "dailyLimitExceeded",
    "quotaExceeded",
    "RATE_LIMIT_EXCEEDED",
    "RESOURCE_EXHAUSTED",
}


def _http_status(exc: HttpError) -> int:
    return int(getattr(exc.resp, "status", 0) or 0)


def _error_reasons(exc: HttpError) -> set[str]:
    """Reason codes from a Google API error body (`errors[]` and `details[]`)."""
    try:
        error = json.loads(exc.content or b"{}").get("error") or {}
    except (TypeError, ValueError, AttributeError):
        return set()
    if not isinstance(error, dict):
        return set()
    reasons = {str(error["status"])} if error.get("status") else set()
    for key in ("errors", "details"):
        for item in error.get(key) or []:
            if isinstance(item, dict) and item.get("reason"):
                reasons.add(str(item["reason"]))
    return reasons


def _is_auth_error(exc: HttpError) -> bool:
    """True when Google rejected the tokens themselves.

    Gmail also answers 403 for rate and quota limits; those are transient.
    """
    status = _http_status(exc)
    if status == 401:
        return True
    return status == 403 and not _error_reasons(exc) & _RATE_LIMIT_REASONS


class GmailMailStore:
    """Async wrapper around the blocking Gmail REST client for one mailbox.

    Every API call runs in a worker thread via ``asyncio.to_thread`` so the
    event loop keeps serving other chats.  Build one instance per chat and
    call ``authenticate()`` before anything else.

    Usage::

        store = GmailMailStore(client_id, client_secret)
        if await store.authenticate(access_token, refresh_token):
            messages = await store.fetch_recent(10)
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        scopes: list[str] | None = None,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._scopes = scopes or list(DEFAULT_SCOPES)
        self._service: Any = None

    # ── Public API ─────────────────────────────────────────────────────────────

    async def authenticate(self, access_token: str, refresh_token: str) -> bool:
        """Build the Gmail service and prove the tokens work.

        Returns False when Google rejects the tokens.

        Raises:
            TransientFetchError: if Google could not be reached.
        """
        try:
            self._service = await asyncio.to_thread(
                self._build_service, access_token, refresh_token
            )
        except RefreshError as exc:
            logger.warning("Gmail token refresh rejected: %s", exc)
            return False
        except HttpError as exc:
            if _is_auth_error(exc):
                logger.warning("Gmail rejected credentials: %s", exc)
                return False
            raise TransientFetchError(f"Gmail profile check failed: {exc}") from exc
        except (TransportError, OSError) as exc:
            raise TransientFetchError(f"Could not reach Google: {exc}") from exc
        return True

    async def fetch_recent(self, limit: int, unread_only: bool = False) -> list[EmailMessage]:
        """Return up to `limit` inbox messages with full content, newest first.

        Raises:
            AuthenticationFailed: if the tokens stopped working mid-session.
            TransientFetchError: on any other API or network error.
        """
        service = self._require_service()
        try:
            return await asyncio.to_thread(self._fetch_recent_sync, service, limit, unread_only)
        except RefreshError as exc:
            raise AuthenticationFailed(str(exc)) from exc
        except HttpError as exc:
            if _is_auth_error(exc):
                raise AuthenticationFailed(str(exc)) from exc
            raise TransientFetchError(f"Gmail list failed: {exc}") from exc
        except (TransportError, OSError) as exc:
            raise TransientFetchError(f"Could not reach Gmail: {exc}") from exc

    async def still_present(self, message_id: str) -> bool:
        """True while the message carries the INBOX label.

        A 404 means the message is gone for good.  Any other error answers
        True so a flaky network never retracts a live notification.
        """
        labels = await self._get_labels(message_id)
        if labels is None:
            return True
        if not labels:
            return False
        return _INBOX in labels

    async def still_unread(self, message_id: str) -> bool | None:
        """True/False for the UNREAD label, None if the message can't be read."""
        labels = await self._get_labels(message_id)
        if not labels:
            return None
        return _UNREAD in labels

    async def trash(self, message_id: str) -> bool:
        """Move a message to the Gmail trash."""
        return await self._mutate(
            "trash",
            message_id,
            lambda s: s.users().messages().trash(userId="me", id=message_id),
        )

    async def archive(self, message_id: str) -> bool:
        """Archive a message (remove the INBOX label)."""
        return await self._modify(message_id, remove=[_INBOX])

    async def star(self, message_id: str) -> bool:
        """Star a message (apply the STARRED system label)."""
        return await self._modify(message_id, add=[_STARRED])

    async def mark_read(self, message_id: str) -> bool:
        """Mark a message as read (remove the UNREAD label)."""
        return await self._modify(message_id, remove=[_UNREAD])

    # ── Internal helpers ───────────────────────────────────────────────────────

    def _build_service(self, access_token: str, refresh_token: str) -> Any:
        creds = Credentials(
            token=access_token or None,
            refresh_token=refresh_token,
            token_uri=_TOKEN_URI,
            client_id=self._client_id,
            client_secret=self._client_secret,
            scopes=self._scopes,
        )
        if not creds.valid:
            creds.refresh(Request())
        service = build("gmail", "v1", credentials=creds, cache_discovery=False)
        profile = service.users().getProfile(userId="me").execute()
        logger.debug("Gmail authenticated as %s", profile.get("emailAddress", "?"))
        return service

    def _require_service(self) -> Any:
        if self._service is None:
            raise RuntimeError("GmailMailStore.authenticate() must succeed first")
        return self._service

    @staticmethod
    def _fetch_recent_sync(service: Any, limit: int, unread_only: bool) -> list[EmailMessage]:
        label_ids = [_INBOX, _UNREAD] if unread_only else [_INBOX]
        response = (
            service.users()
            .messages()
            .list(userId="me", labelIds=label_ids, maxResults=limit)
            .execute()
        )
        messages: list[EmailMessage] = []
        for item in response.get("messages", []):
            try:
                raw = (
                    service.users()
                    .messages()
                    .get(userId="me", id=item["id"], format="full")
                    .execute()
                )
            except HttpError as exc:
                if _http_status(exc) != 404:
                    raise
                # Deleted between list and get; it will not be delivered.
                logger.warning("Skipping message %s: %s", item["id"], exc)
                continue
            messages.append(parse_message(raw))
        messages.sort(key=lambda m: m.received_at, reverse=True)
        return messages

    async def _get_labels(self, message_id: str) -> list[str] | None:
        """Label IDs of a message; [] if it no longer exists, None if unknown."""
        if self._service is None:
            logger.warning("Label check for %s before authentication", message_id)
            return None
        service = self._service
        try:
            raw = await asyncio.to_thread(
                lambda: service.users()
                .messages()
                .get(userId="me", id=message_id, format="minimal")
                .execute()
            )
        except HttpError as exc:
            if _http_status(exc) == 404:
                return []
            logger.warning("Label check for %s failed: %s", message_id, exc)
            return None
        except Exception as exc:  # noqa: BLE001
            logger.warning("Label check for %s failed: %s", message_id, exc)
            return None
        return list(raw.get("labelIds") or [])

    async def _modify(
        self,
        message_id: str,
        add: list[str] | None = None,
        remove: list[str] | None = None,
    ) -> bool:
        body = {"addLabelIds": add or [], "removeLabelIds": remove or []}
        return await self._mutate(
            "modify",
            message_id,
            lambda s: s.users().messages().modify(userId="me", id=message_id, body=body),
        )

    async def _mutate(self, name: str, message_id: str, make_request: Any) -> bool:
        if self._service is None:
            return False
        service = self._service
        try:
            await asyncio.to_thread(lambda: make_request(service).execute())
        except Exception as exc:  # noqa: BLE001
            logger.error("Gmail %s failed for message %s: %s", name, message_id, exc)
            return False
        logger.debug("Gmail %s succeeded for message %s", name, message_id)
        return True


# ── Message parsing ────────────────────────────────────────────────────────────


def parse_message(raw: dict[str, Any]) -> EmailMessage:
    """Map a Gmail API ``format=full`` message resource to an EmailMessage."""
    message_id = str(raw.get("id", ""))
    label_ids = list(raw.get("labelIds") or [])
    payload = raw.get("payload") or {}

    subject = ""
    sender = ""
    for header in payload.get("headers") or []:
        name = str(header.get("name", "")).lower()
        if name == "subject":
            subject = str(header.get("value", ""))
        elif name == "from":
            sender = str(header.get("value", ""))

    internal_ms = int(raw.get("internalDate") or 0)
    received_at = datetime.fromtimestamp(internal_ms / 1000, tz=timezone.utc)

    return EmailMessage(
        message_id=message_id,
        subject=subject,
        sender=sender,
        received_at=received_at,
        body=_extract_body(payload),
        attachments=_extract_attachments(payload, message_id),
        labels=[
            label
            for label in label_ids
            if not label.startswith("CATEGORY_") and label not in (_INBOX, _UNREAD)
        ],
        is_read=_UNREAD not in label_ids,
        direct_link=DIRECT_LINK_TEMPLATE.format(message_id=message_id),
    )


def _decode_base64url(data: str) -> str:
    try:
        padded = data + "=" * (-len(data) % 4)
        return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")
    except (binascii.Error, ValueError):
        return ""


def _extract_body(part: dict[str, Any]) -> str:
    """HTML body if there is one, else plain text, searching nested parts."""
    for mime_type in ("text/html", "text/plain"):
        found = _find_part_data(part, mime_type)
        if found:
            return _decode_base64url(found)
    return ""


def _find_part_data(part: dict[str, Any], mime_type: str) -> str | None:
    data = (part.get("body") or {}).get("data")
    if part.get("mimeType") == mime_type and data and not part.get("filename"):
        return str(data)
    for child in part.get("parts") or []:
        found = _find_part_data(child, mime_type)
        if found:
            return found
    return None


def _extract_attachments(part: dict[str, Any], message_id: str) -> list[EmailAttachment]:
    attachments: list[EmailAttachment] = []
    for child in part.get("parts") or []:
        body = child.get("body") or {}
        attachment_id = body.get("attachmentId")
        if child.get("filename") and attachment_id:
            attachments.append(
                EmailAttachment(
                    filename=str(child["filename"]),
                    mime_type=str(child.get("mimeType") or "application/octet-stream"),
                    size=int(body.get("size") or 0),
                    url=_ATTACHMENT_URL.format(
                        message_id=message_id, attachment_id=attachment_id
                    ),
                )
            )
        attachments.extend(_extract_attachments(child, message_id))
    return attachments
