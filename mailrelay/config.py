"""Runtime settings, read from environment variables (and .env via python-dotenv)."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_SCOPES: list[str] = ["https://www.googleapis.com/auth/gmail.modify"]


def _env_flag(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).strip().lower() == "true"


@dataclass
class RelayConfig:
    """Everything the relay needs to start polling."""

    telegram_bot_token: str = ""
    google_client_id: str = ""
    google_client_secret: str = ""
    poll_interval: int = 60
    database_path: Path = field(default_factory=lambda: Path("data/mailrelay.db"))
    sync_notifications: bool = False
    retract_on_read: bool = False
    unread_only: bool = False
    discovery_interval: int = 30
    gmail_scopes: list[str] = field(default_factory=lambda: list(DEFAULT_SCOPES))

    @classmethod
    def from_env(cls) -> RelayConfig:
        """Build RelayConfig from environment variables."""
        scopes = os.environ.get("GMAIL_SCOPES", "")
        return cls(
            telegram_bot_token=os.environ.get("TELEGRAM_BOT_TOKEN", ""),
            google_client_id=os.environ.get("GOOGLE_OAUTH_CLIENT_ID", ""),
            google_client_secret=os.environ.get("GOOGLE_OAUTH_CLIENT_SECRET", ""),
            poll_interval=int(os.environ.get("POLL_INTERVAL_SECONDS", "60")),
            database_path=Path(os.environ.get("DATABASE_PATH", "data/mailrelay.db")),
            sync_notifications=_env_flag("SYNC_NOTIFICATIONS"),
            retract_on_read=_env_flag("RETRACT_ON_READ"),
            unread_only=_env_flag("UNREAD_ONLY"),
            discovery_interval=int(os.environ.get("SESSION_DISCOVERY_SECONDS", "30")),
            gmail_scopes=scopes.split() if scopes.strip() else list(DEFAULT_SCOPES),
        )

    def validate(self, *, need_telegram: bool = True) -> list[str]:
        """Return human-readable configuration problems; empty when usable."""
        problems: list[str] = []
        if need_telegram and not self.telegram_bot_token:
            problems.append("TELEGRAM_BOT_TOKEN is not set")
        if not self.google_client_id or not self.google_client_secret:
            problems.append(
                "GOOGLE_OAUTH_CLIENT_ID and GOOGLE_OAUTH_CLIENT_SECRET must both be set"
            )
        if self.poll_interval <= 0:
            problems.append("POLL_INTERVAL_SECONDS must be positive")
        return problems
