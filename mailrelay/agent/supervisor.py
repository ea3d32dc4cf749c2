"""Per-user supervision — one never-ending poll loop per authorized chat."""

import asyncio
import logging
import os
import signal

from dotenv import load_dotenv

from mailrelay.agent.errors import Cancelled
from mailrelay.agent.interfaces import Notifier
from mailrelay.agent.pacing import pause
from mailrelay.agent.poll_cycle import PollCycle
from mailrelay.agent.session import UserSession

logger = logging.getLogger(__name__)

# Fixed delay before the next cycle after an unexpected cycle error.
_ERROR_RETRY_SECONDS = 30

RETRY_WARNING = "⚠️ Failed to fetch emails. Will retry..."


class PollSupervisor:
    """Runs one supervised polling loop per UserSession.

    Each loop runs PollCycle, then sleeps ``poll_interval``.  An unexpected
    error from a cycle is logged, reported to the chat as a generic warning
    and followed by a fixed 30s back-off; the loop itself only ends when the
    shared stop event is set.  Sessions flagged ``auth_failed`` make no remote
    calls until ``clear_auth_failure()`` is called.

    Usage::

        supervisor = PollSupervisor(cycle, notifier)
        supervisor.start(UserSession(chat_id=42))
        ...
        supervisor.stop()
        await supervisor.wait()
    """

    def __init__(
        self,
        cycle: PollCycle,
        notifier: Notifier,
        poll_interval: int | None = None,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        self._cycle = cycle
        self._notifier = notifier
        self._poll_interval = poll_interval or int(
            os.environ.get("POLL_INTERVAL_SECONDS", "60")
        )
        self._stop_event = stop_event or asyncio.Event()
        self._sessions: dict[int, UserSession] = {}
        self._tasks: dict[int, asyncio.Task[None]] = {}

    @property
    def stop_event(self) -> asyncio.Event:
        return self._stop_event

    def stop(self) -> None:
        """Signal every loop to stop at its next suspension point."""
        logger.info("Shutdown requested — stopping all polling loops")
        self._stop_event.set()

    def session(self, chat_id: int) -> UserSession | None:
        return self._sessions.get(chat_id)

    @property
    def sessions(self) -> list[UserSession]:
        return list(self._sessions.values())

    def start(self, session: UserSession) -> asyncio.Task[None]:
        """Start the loop for a session; a no-op if that chat is already running."""
        running = self._tasks.get(session.chat_id)
        if running is not None and not running.done():
            return running
        self._sessions[session.chat_id] = session
        task = asyncio.create_task(self.run(session), name=f"poll-{session.chat_id}")
        self._tasks[session.chat_id] = task
        return task

    async def wait(self) -> None:
        """Wait for every started loop to finish."""
        if self._tasks:
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)

    def clear_auth_failure(self, session: UserSession) -> None:
        """Resume polling for a session after re-authorization. Idempotent."""
        if session.auth_failed:
            logger.info("Resuming polling for chat %s", session.chat_id)
        session.auth_failed = False

    async def run(self, session: UserSession) -> None:
        """Poll for one session until stop() is called."""
        logger.info(
            "Polling started for chat %s (every %ds)", session.chat_id, self._poll_interval
        )
        while not self._stop_event.is_set():
            delay = self._poll_interval
            if session.auth_failed:
                logger.debug("Chat %s needs re-authorization; skipping cycle", session.chat_id)
            else:
                try:
                    outcome = await self._cycle.execute(session)
                    if outcome.attempted or outcome.retracted:
                        logger.info("Cycle for chat %s: %s", session.chat_id, outcome)
                except Cancelled:
                    break
                except Exception as exc:  # noqa: BLE001
                    logger.error(
                        "Poll cycle for chat %s failed: %s — retrying in %ds",
                        session.chat_id,
                        exc,
                        _ERROR_RETRY_SECONDS,
                        exc_info=True,
                    )
                    await self._warn(session.chat_id)
                    delay = _ERROR_RETRY_SECONDS
            try:
                await pause(self._stop_event, delay)
            except Cancelled:
                break
        logger.info("Polling stopped for chat %s", session.chat_id)

    async def _warn(self, chat_id: int) -> None:
        try:
            await self._notifier.notify_text(chat_id, RETRY_WARNING)
        except Exception as exc:  # noqa: BLE001
            logger.debug("Retry warning for chat %s not sent: %s", chat_id, exc)


# ── Entry point ────────────────────────────────────────────────────────────────


def main(verbose: bool = False) -> None:
    """Start the relay.  Called by `mailrelay run` and `python -m mailrelay.agent.supervisor`."""
    load_dotenv()

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True,
    )
    # httpx logs every request at INFO, including the bot token in the URL.
    logging.getLogger("httpx").setLevel(logging.WARNING)

    try:
        asyncio.run(_amain())
    except KeyboardInterrupt:
        # Ctrl+C on Windows (no add_signal_handler) arrives here
        logger.info("Interrupted — goodbye")


async def _amain() -> None:
    """Async entry point: wire collaborators, signal handlers, and run until stopped."""
    from mailrelay.agent.scheduler import SessionDiscovery, create_discovery_scheduler
    from mailrelay.agent.sync import SyncEngine
    from mailrelay.config import RelayConfig
    from mailrelay.gmail.client import GmailMailStore
    from mailrelay.storage.db import RelayDatabase
    from mailrelay.telegram.bot import TelegramBot
    from mailrelay.telegram.notifier import TelegramNotifier

    config = RelayConfig.from_env()
    problems = config.validate()
    if problems:
        for problem in problems:
            logger.error("Configuration error: %s", problem)
        return

    db = RelayDatabase(db_path=config.database_path)
    notifier = TelegramNotifier(config.telegram_bot_token)
    stop_event = asyncio.Event()

    def store_factory(chat_id: int) -> GmailMailStore:
        return GmailMailStore(
            config.google_client_id,
            config.google_client_secret,
            scopes=config.gmail_scopes,
        )

    sync = SyncEngine(db, notifier, stop_event, retract_on_read=config.retract_on_read)
    cycle = PollCycle(
        credentials=db,
        store_factory=store_factory,
        ledger=db,
        notifier=notifier,
        sync=sync,
        stop=stop_event,
        unread_only=config.unread_only,
    )
    supervisor = PollSupervisor(
        cycle, notifier, poll_interval=config.poll_interval, stop_event=stop_event
    )
    bot = TelegramBot(notifier, db, db, store_factory, stop_event)

    discovery = SessionDiscovery(supervisor, db, sync_notifications=config.sync_notifications)
    await discovery.refresh()
    scheduler = create_discovery_scheduler(discovery, config.discovery_interval)
    scheduler.start()

    loop = asyncio.get_running_loop()
    try:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, supervisor.stop)
    except (NotImplementedError, AttributeError):
        pass

    try:
        await asyncio.gather(bot.run(), supervisor.stop_event.wait())
        await supervisor.wait()
    finally:
        scheduler.shutdown(wait=False)
        await notifier.close()
        db.close()


if __name__ == "__main__":
    main()
