"""Streaming session engine for the Plug recruiting assistant.

Typical usage
-------------
from plug_chat import ChatSettings, Conversation, load_config

settings = ChatSettings.from_config(load_config())
chat = Conversation.from_settings(settings, identity=user_id, token_provider=get_token)
chat.sessions.load_latest()
result = await chat.send("Any interviews this week?")
"""

from __future__ import annotations

from .config import ChatSettings, RelaySettings, load_config
from .context import ContextAssembler, ContextSource, recruiting_sources
from .conversation import Conversation
from .decoder import EventStreamDecoder
from .errors import (
    AuthenticationError,
    ConfigError,
    PlugChatError,
    ProducerError,
    StoreUnavailableError,
    TransportError,
    TurnInProgressError,
)
from .models import Message, MessageStatus, Role, Session, SessionSummary, TurnResult, TurnStatus
from .sessions import SessionManager
from .store import MessageStore
from .stream import AssistantClient, CancellationToken, StreamPhase, StreamState

__all__ = [
    "AssistantClient",
    "AuthenticationError",
    "CancellationToken",
    "ChatSettings",
    "ConfigError",
    "ContextAssembler",
    "ContextSource",
    "Conversation",
    "EventStreamDecoder",
    "Message",
    "MessageStatus",
    "MessageStore",
    "PlugChatError",
    "ProducerError",
    "RelaySettings",
    "Role",
    "Session",
    "SessionManager",
    "SessionSummary",
    "StoreUnavailableError",
    "StreamPhase",
    "StreamState",
    "TransportError",
    "TurnInProgressError",
    "TurnResult",
    "TurnStatus",
    "__version__",
    "get_version",
    "load_config",
    "recruiting_sources",
]

__version__ = "0.1.0"


def get_version() -> str:
    """Return the package version."""
    return __version__
