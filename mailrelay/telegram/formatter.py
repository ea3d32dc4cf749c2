"""Telegram HTML rendering for email notifications."""

import html
import re
from html.parser import HTMLParser

from mailrelay.gmail.types import EmailAttachment, EmailMessage

#: Telegram rejects sendMessage text longer than this.
TELEGRAM_MAX_LENGTH = 4096

BODY_CHAR_LIMIT = 1800
_MAX_PARAGRAPHS = 3
_LABELS_PER_LINE = 3


def escape(text: str) -> str:
    return html.escape(text or "", quote=True)


def format_file_size(size: int) -> str:
    """Human-readable size, e.g. 1536 -> '1.5 KB'."""
    units = ["B", "KB", "MB", "GB"]
    value = float(size)
    order = 0
    while value >= 1024 and order < len(units) - 1:
        order += 1
        value /= 1024
    text = f"{value:.2f}".rstrip("0").rstrip(".")
    return f"{text} {units[order]}"


def sender_name(sender: str) -> str:
    """Display name from 'Name <addr>', falling back to the raw value."""
    if not sender:
        return "Unknown"
    match = re.match(r"^(.+?)\s*<", sender)
    name = match.group(1) if match else sender.split("<")[0]
    return name.strip().strip('"') or sender


class _TextExtractor(HTMLParser):
    """Collects visible text, keeping paragraph breaks, bullets and link targets."""

    _SKIP = {"script", "style", "head"}
    _BLOCKS = {"p", "div", "h1", "h2", "h3", "h4", "h5", "h6", "li", "tr"}

    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self._parts: list[str] = []
        self._skip_depth = 0
        self._link: tuple[str, int] | None = None

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        if tag in self._SKIP:
            self._skip_depth += 1
        elif tag == "br":
            self._parts.append("\n")
        elif tag in self._BLOCKS:
            self._parts.append("\n\n• " if tag == "li" else "\n\n")
        elif tag == "a":
            href = dict(attrs).get("href") or ""
            if href:
                self._link = (href, len(self._parts))

    def handle_endtag(self, tag: str) -> None:
        if tag in self._SKIP:
            self._skip_depth = max(0, self._skip_depth - 1)
        elif tag in self._BLOCKS:
            self._parts.append("\n\n")
        elif tag in ("td", "th"):
            self._parts.append(" ")
        elif tag == "a" and self._link is not None:
            url, start = self._link
            self._link = None
            text = "".join(self._parts[start:]).strip()
            del self._parts[start:]
            self._parts.append(_link_text(url, text))

    def handle_data(self, data: str) -> None:
        if not self._skip_depth:
            self._parts.append(data)

    def get_text(self) -> str:
        return "".join(self._parts)


def _link_text(url: str, text: str) -> str:
    bare = url.replace("https://", "").replace("http://", "")
    if not text or text == url or bare in text:
        return url
    return f"{text}: {url}"


def clean_html(content: str) -> str:
    """Convert an HTML email body to plain text that keeps its structure."""
    if not content:
        return ""
    extractor = _TextExtractor()
    extractor.feed(content)
    extractor.close()
    text = re.sub(r"[ \t\xa0]+", " ", extractor.get_text())
    text = "\n".join(line.strip() for line in text.split("\n"))
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def prepare_body(content: str, limit: int = BODY_CHAR_LIMIT) -> str:
    text = clean_html(content)
    if len(text) > limit:
        text = text[:limit] + "..."
    return text


class MessageBuilder:
    """Accumulates blank-line separated HTML sections."""

    def __init__(self) -> None:
        self._sections: list[str] = []

    def header(self, title: str, content: str = "") -> "MessageBuilder":
        lines = [f"<blockquote><b>{escape(title)}</b>"]
        if content:
            lines.append(escape(content))
        self._sections.append("\n".join(lines) + "</blockquote>")
        return self

    def info(self, label: str, value: str, code: bool = False) -> "MessageBuilder":
        shown = f"<code>{escape(value)}</code>" if code else escape(value)
        self._sections.append(f"<b>{escape(label)}:</b> {shown}")
        return self

    def labels(self, labels: list[str]) -> "MessageBuilder":
        if not labels:
            return self
        tags = [f"<code>#{escape(label.replace(' ', '_'))}</code>" for label in labels]
        rows = [
            "  " + " ".join(tags[i:i + _LABELS_PER_LINE])
            for i in range(0, len(tags), _LABELS_PER_LINE)
        ]
        self._sections.append("\n".join(["<b>🏷️ Labels:</b>", *rows]))
        return self

    def content(self, text: str) -> "MessageBuilder":
        paragraphs = [p.strip() for p in text.split("\n\n") if p.strip()]
        if not paragraphs:
            return self
        lines = ["<b>📄 Content:</b>", "", f"<blockquote>{escape(paragraphs[0])}</blockquote>"]
        for paragraph in paragraphs[1:_MAX_PARAGRAPHS]:
            lines.extend(["", escape(paragraph)])
        self._sections.append("\n".join(lines))
        return self

    def attachments(self, attachments: list[EmailAttachment]) -> "MessageBuilder":
        if not attachments:
            return self
        lines = ["<b>📎 Attachments:</b>"]
        for attachment in attachments:
            lines.append(
                f"  <code>📁 {escape(attachment.filename)}</code> "
                f"<i>({format_file_size(attachment.size)})</i>"
            )
        self._sections.append("\n".join(lines))
        return self

    def warning(self, title: str, text: str) -> "MessageBuilder":
        self._sections.append(
            f"<blockquote><b>{escape(title)}</b></blockquote>\n<i>{escape(text)}</i>"
        )
        return self

    def footer(self, link: str, text: str = "Open in Gmail") -> "MessageBuilder":
        self._sections.append(f'<b>📬 <a href="{escape(link)}">{escape(text)}</a></b>')
        return self

    def build(self) -> str:
        return "\n\n".join(self._sections)


def _received(message: EmailMessage) -> str:
    return message.received_at.strftime("%Y-%m-%d %H:%M:%S") + " UTC"


def _status(message: EmailMessage) -> str:
    return "✅ Read" if message.is_read else "🔵 Unread"


def build_message(message: EmailMessage) -> str:
    """Full notification: headers, labels, first paragraphs, attachments, link."""
    return (
        MessageBuilder()
        .header("📧 Email", message.subject)
        .info("👤 From", message.sender, code=True)
        .info("📅 Date", _received(message), code=True)
        .info("📖 Status", _status(message))
        .labels(message.labels)
        .content(prepare_body(message.body))
        .attachments(message.attachments)
        .footer(message.link)
        .build()
    )


def build_short_message(message: EmailMessage) -> str:
    """Fallback when the full notification exceeds Telegram's length limit."""
    return (
        MessageBuilder()
        .header("📧 Email", message.subject)
        .info("👤 From", message.sender, code=True)
        .info("📅 Date", _received(message), code=True)
        .info("📖 Status", _status(message))
        .labels(message.labels)
        .warning(
            "⚠️ Message Too Long",
            "This email is too large to display in Telegram. "
            "Please use the link below to read the full content.",
        )
        .footer(message.link, "Open in Gmail to read full message")
        .build()
    )


def build_minimal_message(message: EmailMessage) -> str:
    """Last-resort notification when Telegram can't parse the richer forms."""
    return (
        MessageBuilder()
        .header("📧 New Email")
        .info("Subject", message.subject, code=True)
        .info("From", sender_name(message.sender), code=True)
        .warning("⚠️ Display Error", "Unable to display full content")
        .footer(message.link)
        .build()
    )


def build_keyboard(message_id: str) -> dict[str, list[list[dict[str, str]]]]:
    """Inline keyboard with the delete / archive / star actions."""
    return {
        "inline_keyboard": [
            [
                {"text": "🗑️ Delete", "callback_data": f"delete|{message_id}"},
                {"text": "📦 Archive", "callback_data": f"archive|{message_id}"},
                {"text": "⭐ Star", "callback_data": f"star|{message_id}"},
            ]
        ]
    }


def parse_callback_data(data: str) -> tuple[str, str] | None:
    """Split 'action|message_id' callback data; None if malformed."""
    action, sep, message_id = (data or "").partition("|")
    if not sep or not action or not message_id:
        return None
    return action, message_id
