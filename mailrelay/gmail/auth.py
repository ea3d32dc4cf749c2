"""Interactive OAuth2 authorization for one chat's Gmail account."""

import logging

from google_auth_oauthlib.flow import InstalledAppFlow
from googleapiclient.discovery import build

from mailrelay.storage.models import StoredCredentials

logger = logging.getLogger(__name__)


def client_config(client_id: str, client_secret: str) -> dict[str, dict[str, object]]:
    """OAuth client config in the shape InstalledAppFlow expects."""
    return {
        "installed": {
            "client_id": client_id,
            "client_secret": client_secret,
            "auth_uri": "https://accounts.google.com/o/oauth2/auth",
            "token_uri": "https://oauth2.googleapis.com/token",
            "redirect_uris": ["http://localhost"],
        }
    }


def authorize_chat(
    chat_id: int,
    client_id: str,
    client_secret: str,
    scopes: list[str],
    port: int = 0,
    open_browser: bool = True,
) -> StoredCredentials:
    """Run the local-server consent flow and return tokens for `chat_id`.

    Blocks until the user finishes consent in the browser.  Offline access
    with a forced consent prompt guarantees a refresh token is issued.
    """
    flow = InstalledAppFlow.from_client_config(client_config(client_id, client_secret), scopes)
    creds = flow.run_local_server(
        port=port,
        open_browser=open_browser,
        access_type="offline",
        prompt="consent",
    )
    if not creds.refresh_token:
        raise RuntimeError("Google did not return a refresh token; revoke access and retry")

    service = build("gmail", "v1", credentials=creds, cache_discovery=False)
    profile = service.users().getProfile(userId="me").execute()
    email_address = str(profile.get("emailAddress", ""))
    logger.info("Authorized %s for chat %s", email_address, chat_id)

    return StoredCredentials(
        chat_id=chat_id,
        access_token=creds.token or "",
        refresh_token=creds.refresh_token,
        expires_at=creds.expiry.isoformat() if creds.expiry else None,
        email_address=email_address,
    )
