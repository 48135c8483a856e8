"""Error taxonomy for the relay bot."""


class RelayBotError(Exception):
    """Base class for all relay bot errors."""


class ConfigError(RelayBotError):
    """Mandatory configuration is missing or invalid."""


class BackendError(RelayBotError):
    """The completion backend failed before or during streaming."""


class EmptyAnswerError(BackendError):
    """The completion feed ended without producing any text."""

    def __init__(self, message: str = "the assistant returned an empty answer") -> None:
        super().__init__(message)


class TransportError(RelayBotError):
    """A Telegram Bot API call failed."""

    def __init__(
        self,
        message: str,
        error_code: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.retry_after = retry_after


class RenewalError(RelayBotError):
    """A continuation token was rejected by the backend."""


class TurnInProgressError(RelayBotError):
    """A reply is already being streamed into this conversation."""
