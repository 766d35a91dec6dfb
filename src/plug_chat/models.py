"""Session and message data model."""
from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, Iterator, List, Optional
from uuid import uuid4


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class MessageStatus(str, Enum):
    DRAFT = "draft"    # assistant text still streaming in
    FINAL = "final"


class TurnStatus(str, Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


def new_id() -> str:
    return uuid4().hex


@dataclass
class Session:
    """One conversation thread. Only ``title`` changes after creation."""

    session_id: str = field(default_factory=new_id)
    title: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    last_activity_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class Message:
    """A single entry in a session log.

    Messages are frozen; a streaming assistant reply is represented by
    successive ``DRAFT`` values sharing one ``id`` and ends as a ``FINAL``.
    ``local`` marks notices that are shown but never persisted.
    """

    session_id: str
    role: Role
    content: str
    id: str = field(default_factory=new_id)
    created_at: float = field(default_factory=time.time)
    status: MessageStatus = MessageStatus.FINAL
    local: bool = False

    @property
    def is_draft(self) -> bool:
        return self.status is MessageStatus.DRAFT

    def as_history(self) -> Dict[str, str]:
        """Wire shape used in the outbound ``messages`` list."""
        return {"role": self.role.value, "content": self.content}


@dataclass(frozen=True)
class SessionSummary:
    session_id: str
    title: str
    last_message: str
    last_message_at: float
    message_count: int


@dataclass
class TurnResult:
    """Terminal outcome of one user turn."""

    status: TurnStatus
    content: str = ""
    error: Optional[Exception] = None
    message: Optional[Message] = None  # persisted assistant message, if any

    @property
    def ok(self) -> bool:
        return self.status is TurnStatus.COMPLETED


# -----------------------------
# Message log
# -----------------------------
class MessageLog:
    """Append-only, creation-ordered log for one session.

    The only permitted change to an existing entry is replacing the last
    message while it is an assistant ``DRAFT``.
    """

    def __init__(self, session_id: str, messages: Optional[List[Message]] = None) -> None:
        self.session_id = session_id
        self._items: List[Message] = list(messages or [])

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[Message]:
        return iter(list(self._items))

    def __getitem__(self, idx: int) -> Message:
        return self._items[idx]

    @property
    def last(self) -> Optional[Message]:
        return self._items[-1] if self._items else None

    def append(self, message: Message) -> Message:
        if message.session_id != self.session_id:
            raise ValueError(
                f"message belongs to session {message.session_id!r}, not {self.session_id!r}"
            )
        last = self.last
        if last is not None and last.is_draft:
            raise ValueError("cannot append while the last assistant message is still a draft")
        self._items.append(message)
        return message

    def update_draft(self, message_id: str, content: str) -> Message:
        """Replace the trailing draft's content (same id, still DRAFT)."""
        last = self._require_draft(message_id)
        updated = replace(last, content=content)
        self._items[-1] = updated
        return updated

    def finalize(self, message_id: str, final: Message) -> Message:
        """Swap the trailing draft for its FINAL form."""
        self._require_draft(message_id)
        if final.id != message_id or final.is_draft:
            raise ValueError("final message must share the draft's id and be FINAL")
        self._items[-1] = final
        return final

    def discard_draft(self, message_id: str) -> None:
        """Freeze a draft as-is without persisting it (cancelled turn)."""
        last = self._require_draft(message_id)
        self._items[-1] = replace(last, status=MessageStatus.FINAL, local=True)

    def drop_draft(self, message_id: str) -> None:
        """Remove a draft that never received content."""
        self._require_draft(message_id)
        self._items.pop()

    def persisted(self) -> List[Message]:
        """Entries that reflect store rows (no notices, no drafts)."""
        return [m for m in self._items if not m.local and not m.is_draft]

    def _require_draft(self, message_id: str) -> Message:
        last = self.last
        if last is None or last.id != message_id or not last.is_draft:
            raise ValueError(f"message {message_id!r} is not the trailing draft")
        return last
