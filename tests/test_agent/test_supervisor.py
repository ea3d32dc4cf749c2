"""Tests for PollSupervisor — PollCycle and Notifier are mocked."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

from mailrelay.agent.errors import Cancelled, TransientFetchError
from mailrelay.agent.session import CycleOutcome, UserSession
from mailrelay.agent.supervisor import RETRY_WARNING, PollSupervisor

CHAT = 99


# ── Helpers ────────────────────────────────────────────────────────────────────


def make_notifier() -> MagicMock:
    notifier = MagicMock()
    notifier.notify_text = AsyncMock()
    return notifier


def make_supervisor(*cycle_results: object, poll_interval: int = 60) -> tuple[PollSupervisor, MagicMock, MagicMock]:
    """Supervisor whose cycle yields `cycle_results`, then requests shutdown."""
    cycle = MagicMock()
    notifier = make_notifier()
    supervisor = PollSupervisor(cycle, notifier, poll_interval=poll_interval)
    results = list(cycle_results)

    async def _execute(session: UserSession) -> CycleOutcome:
        if not results:
            supervisor.stop()
            raise Cancelled("stop requested")
        result = results.pop(0)
        if isinstance(result, BaseException):
            raise result
        return result  # type: ignore[return-value]

    cycle.execute = AsyncMock(side_effect=_execute)
    return supervisor, cycle, notifier


# ── Loop behaviour ─────────────────────────────────────────────────────────────


class TestRun:
    async def test_sleeps_poll_interval_between_cycles(self) -> None:
        supervisor, cycle, _ = make_supervisor(CycleOutcome(), CycleOutcome(), poll_interval=45)

        with patch("mailrelay.agent.supervisor.pause", new_callable=AsyncMock) as mock_pause:
            await supervisor.run(UserSession(CHAT))

        assert cycle.execute.await_count == 3
        assert [c.args[1] for c in mock_pause.await_args_list] == [45, 45]

    async def test_cycle_error_warns_and_backs_off(self) -> None:
        supervisor, cycle, notifier = make_supervisor(TransientFetchError("503"), CycleOutcome())

        with patch("mailrelay.agent.supervisor.pause", new_callable=AsyncMock) as mock_pause:
            await supervisor.run(UserSession(CHAT))

        notifier.notify_text.assert_awaited_once_with(CHAT, RETRY_WARNING)
        assert [c.args[1] for c in mock_pause.await_args_list] == [30, 60]

    async def test_warning_failure_does_not_kill_loop(self) -> None:
        supervisor, cycle, notifier = make_supervisor(RuntimeError("boom"), CycleOutcome())
        notifier.notify_text.side_effect = RuntimeError("telegram down")

        with patch("mailrelay.agent.supervisor.pause", new_callable=AsyncMock):
            await supervisor.run(UserSession(CHAT))

        assert cycle.execute.await_count == 3

    async def test_auth_failed_session_skips_cycles(self) -> None:
        supervisor, cycle, _ = make_supervisor()
        pauses = 0

        async def _pause(stop: asyncio.Event, seconds: float) -> None:
            nonlocal pauses
            pauses += 1
            if pauses == 2:
                raise Cancelled("stop requested")

        with patch("mailrelay.agent.supervisor.pause", side_effect=_pause):
            await supervisor.run(UserSession(CHAT, auth_failed=True))

        cycle.execute.assert_not_awaited()

    async def test_stop_before_start_runs_nothing(self) -> None:
        supervisor, cycle, _ = make_supervisor(CycleOutcome())
        supervisor.stop()

        await supervisor.run(UserSession(CHAT))

        cycle.execute.assert_not_awaited()

    async def test_stop_interrupts_sleep_promptly(self) -> None:
        supervisor, cycle, _ = make_supervisor(CycleOutcome(), CycleOutcome(), poll_interval=3600)

        task = asyncio.create_task(supervisor.run(UserSession(CHAT)))
        await asyncio.sleep(0.05)
        supervisor.stop()
        await asyncio.wait_for(task, timeout=1)

        assert cycle.execute.await_count == 1


# ── Session management ─────────────────────────────────────────────────────────


class TestSessions:
    async def test_start_is_idempotent_per_chat(self) -> None:
        supervisor, cycle, _ = make_supervisor(poll_interval=3600)
        cycle.execute = AsyncMock(return_value=CycleOutcome())

        first = supervisor.start(UserSession(CHAT))
        second = supervisor.start(UserSession(CHAT))

        assert first is second
        assert len(supervisor.sessions) == 1
        supervisor.stop()
        await supervisor.wait()

    async def test_each_chat_gets_its_own_loop(self) -> None:
        supervisor, cycle, _ = make_supervisor(poll_interval=3600)
        cycle.execute = AsyncMock(return_value=CycleOutcome())

        supervisor.start(UserSession(1))
        supervisor.start(UserSession(2))
        await asyncio.sleep(0.05)
        supervisor.stop()
        await supervisor.wait()

        chats = sorted(c.args[0].chat_id for c in cycle.execute.await_args_list)
        assert chats == [1, 2]

    def test_clear_auth_failure(self) -> None:
        supervisor, _, _ = make_supervisor()
        session = UserSession(CHAT, auth_failed=True)

        supervisor.clear_auth_failure(session)
        supervisor.clear_auth_failure(session)

        assert session.auth_failed is False

    def test_session_lookup(self) -> None:
        supervisor, _, _ = make_supervisor()

        assert supervisor.session(CHAT) is None

    def test_poll_interval_defaults_from_env(self, monkeypatch) -> None:
        monkeypatch.setenv("POLL_INTERVAL_SECONDS", "15")

        supervisor = PollSupervisor(MagicMock(), make_notifier())

        assert supervisor._poll_interval == 15
