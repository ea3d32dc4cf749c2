"""Exception taxonomy for the polling and reconciliation loop."""


class RelayError(Exception):
    """Base class for every error raised by the relay core."""


class AuthenticationFailed(RelayError):
    """Stored Gmail credentials were rejected; sticky until re-authorization."""


class TransientFetchError(RelayError):
    """Network or remote error while listing the inbox; safe to retry."""


class DeliveryFailed(RelayError):
    """The notification channel definitively rejected a message.

    ``retryable`` is set when the rejection was temporary (rate limiting or a
    server-side error), so sending the same message later may succeed.
    """

    def __init__(self, message: str, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable


class Cancelled(RelayError):
    """The process-wide stop signal was raised; unwind without retrying."""
