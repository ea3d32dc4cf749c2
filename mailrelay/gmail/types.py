"""Data types shared between the Gmail client and its consumers."""

from dataclasses import dataclass, field
from datetime import datetime

#: Gmail web UI link for a single inbox message.
DIRECT_LINK_TEMPLATE = "https://mail.google.com/mail/u/0/#inbox/{message_id}"


@dataclass(frozen=True)
class EmailAttachment:
    """A file attached to an email; only metadata, never the payload."""

    filename: str
    mime_type: str = "application/octet-stream"
    size: int = 0
    url: str | None = None


@dataclass(frozen=True)
class EmailMessage:
    """An inbox message as fetched from the Gmail API.

    ``labels`` holds user-visible labels only: INBOX, UNREAD and the
    CATEGORY_* system labels are stripped by the client.
    """

    message_id: str
    subject: str
    sender: str
    received_at: datetime
    body: str = ""
    attachments: list[EmailAttachment] = field(default_factory=list)
    labels: list[str] = field(default_factory=list)
    is_read: bool = False
    direct_link: str = ""

    @property
    def link(self) -> str:
        return self.direct_link or DIRECT_LINK_TEMPLATE.format(message_id=self.message_id)
