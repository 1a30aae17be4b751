from __future__ import annotations


class RelayError(Exception):
    """Base class for persona relay failures."""


class TransportError(RelayError):
    """The chat gateway connection of one persona failed."""


class StorageError(RelayError):
    """A conversation store operation failed."""


class AgentError(RelayError):
    """The external agent workflow did not produce a usable answer."""


class AgentTimeoutError(AgentError):
    def __init__(self, timeout_seconds: float) -> None:
        super().__init__(f"Agent response timeout ({timeout_seconds:g}s)")
        self.timeout_seconds = timeout_seconds


class AgentMalformedResponseError(AgentError):
    pass


class AgentNetworkError(AgentError):
    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class AuthError(RelayError):
    pass


class NotFoundError(RelayError):
    pass
