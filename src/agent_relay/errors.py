"""Exception types raised by the relay."""

from claude_agent_sdk import ProcessError


class RelayError(Exception):
    """Base class for relay failures."""


class InvalidInputError(RelayError, ValueError):
    """Raised when a prompt is empty or becomes empty after sanitization."""


class PromptTooLongError(InvalidInputError):
    """Raised when a prompt is too large to pass as a single argument."""


class AgentProcessError(ProcessError):
    """Raised when the agent process exits non-zero.

    Keeps the raw exit code, terminating signal name and captured stderr so
    the escalation controller can classify the failure.
    """

    def __init__(
        self,
        message: str,
        *,
        exit_code: int | None = None,
        signal: str | None = None,
        stderr: str | None = None,
    ) -> None:
        super().__init__(message, exit_code=exit_code, stderr=stderr)
        self.signal = signal


class EscalationExhaustedError(RelayError):
    """Raised when every permission pattern has been tried and failed."""

    def __init__(self, user_message: str, *, attempts: int) -> None:
        super().__init__(user_message)
        self.user_message = user_message
        self.attempts = attempts


class HttpFetchError(RelayError):
    """Raised when the HTTP proxy cannot fetch a URL."""

    def __init__(self, url: str, reason: str) -> None:
        super().__init__(reason)
        self.url = url
        self.reason = reason
