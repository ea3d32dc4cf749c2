"""Per-user polling state and per-cycle outcome counters."""

from dataclasses import dataclass


@dataclass
class UserSession:
    """One polling target: a chat and the Gmail mailbox authorized for it.

    ``auth_failed`` is mutated only by PollCycle and PollSupervisor.  While it
    is set, the supervisor skips remote calls for this chat until a
    re-authorization clears it.
    """

    chat_id: int
    auth_failed: bool = False
    sync_notifications: bool = False


@dataclass
class CycleOutcome:
    """Counters from one poll cycle; only used for logging."""

    attempted: int = 0
    delivered: int = 0
    failed: int = 0
    retracted: int = 0

    def __str__(self) -> str:
        return (
            f"attempted={self.attempted} delivered={self.delivered} "
            f"failed={self.failed} retracted={self.retracted}"
        )
