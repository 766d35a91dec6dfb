"""Exception types raised by the Plug chat engine."""
from __future__ import annotations

from typing import Optional


class PlugChatError(Exception):
    """Base class for all engine errors."""


class ConfigError(PlugChatError):
    """Configuration file could not be parsed or has the wrong shape."""


class StoreUnavailableError(PlugChatError):
    """The message store could not be read or written."""


class AuthenticationError(PlugChatError):
    """No usable credential at send time, or the backend rejected it."""

    def __init__(self, message: str = "No active session - please log in") -> None:
        super().__init__(message)


class ProducerError(PlugChatError):
    """The assistant backend answered with a non-success status.

    ``str(exc)`` is the backend's ``error`` field verbatim when the body was
    parseable, otherwise a generic failure text.
    """

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransportError(PlugChatError):
    """The request or the response stream failed at the network layer."""


class TurnInProgressError(PlugChatError):
    """A turn is already streaming for this conversation."""
