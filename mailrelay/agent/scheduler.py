"""Session discovery — starts polling for newly authorized chats on a schedule."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from mailrelay.agent.session import UserSession

if TYPE_CHECKING:
    from mailrelay.agent.supervisor import PollSupervisor
    from mailrelay.storage.models import StoredCredentials

logger = logging.getLogger(__name__)


class CredentialDirectory(Protocol):
    def all_credentials(self) -> list[StoredCredentials]: ...


class SessionDiscovery:
    """Keeps the supervisor in step with the stored credentials.

    - A chat with credentials but no session gets a new polling loop.
    - A session paused by an auth failure is resumed once its credentials
      row changes, i.e. after the user re-authorized.
    """

    def __init__(
        self,
        supervisor: PollSupervisor,
        directory: CredentialDirectory,
        sync_notifications: bool = False,
    ) -> None:
        self._supervisor = supervisor
        self._directory = directory
        self._sync_notifications = sync_notifications
        self._seen: dict[int, str] = {}

    async def refresh(self) -> int:
        """Reconcile sessions with stored credentials. Returns loops started."""
        started = 0
        for creds in self._directory.all_credentials():
            previous = self._seen.get(creds.chat_id)
            self._seen[creds.chat_id] = creds.updated_at

            session = self._supervisor.session(creds.chat_id)
            if session is None:
                self._supervisor.start(
                    UserSession(creds.chat_id, sync_notifications=self._sync_notifications)
                )
                started += 1
            elif session.auth_failed and previous != creds.updated_at:
                self._supervisor.clear_auth_failure(session)
        if started:
            logger.info("Discovery: started polling for %d new chat(s)", started)
        return started


def create_discovery_scheduler(
    discovery: SessionDiscovery,
    interval_seconds: int = 30,
) -> AsyncIOScheduler:
    """Return an AsyncIOScheduler that runs discovery.refresh() every interval.

    The caller is responsible for calling scheduler.start() and scheduler.shutdown().
    """
    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        discovery.refresh,
        "interval",
        seconds=interval_seconds,
        max_instances=1,
        coalesce=True,
    )
    logger.info("Session discovery scheduled every %ds", interval_seconds)
    return scheduler
