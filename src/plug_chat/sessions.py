"""Current-conversation identity and lifecycle."""
from __future__ import annotations

import logging
from typing import Dict, Iterator, List, Optional

from .errors import StoreUnavailableError
from .models import MessageLog, Role, Session, SessionSummary
from .store import MessageStore, derive_title
from .stream import StreamState

logger = logging.getLogger(__name__)

NEW_CHAT_TITLE = "New Chat"


class SessionListing:
    """Restartable view over session summaries, most recent first.

    Nothing is read until iteration starts, and every new iteration
    re-reads the store so it reflects messages appended in between.
    """

    def __init__(
        self,
        store: MessageStore,
        query: str = "",
        *,
        preview_chars: int = 80,
        title_max_chars: int = 60,
    ) -> None:
        self.store = store
        self.query = query.strip().lower()
        self.preview_chars = preview_chars
        self.title_max_chars = title_max_chars

    def __iter__(self) -> Iterator[SessionSummary]:
        try:
            summaries = self._summaries()
        except StoreUnavailableError as e:
            logger.warning("session listing unavailable: %s", e)
            return
        for summary in summaries:
            if self._matches(summary):
                yield summary

    def _matches(self, summary: SessionSummary) -> bool:
        if not self.query:
            return True
        return self.query in summary.title.lower() or self.query in summary.last_message.lower()

    def _summaries(self) -> List[SessionSummary]:
        groups: Dict[str, dict] = {}
        for row in self.store.iter_rows_desc():
            sid = row["session_id"]
            g = groups.get(sid)
            if g is None:
                g = groups[sid] = {
                    "title": "",
                    "last_message": row.get("message", ""),
                    "last_at": float(row.get("created_at", 0.0)),
                    "count": 0,
                    "first_user": "",
                }
            g["count"] += 1
            if row.get("session_title"):
                g["title"] = row["session_title"]
            if row.get("sender") == Role.USER.value:
                # rows arrive newest first; keep overwriting to end on the oldest
                g["first_user"] = row.get("message", "")

        out: List[SessionSummary] = []
        for sid, g in groups.items():
            title = g["title"] or (
                derive_title(g["first_user"], self.title_max_chars) if g["first_user"] else NEW_CHAT_TITLE
            )
            out.append(SessionSummary(
                session_id=sid,
                title=title,
                last_message=g["last_message"][: self.preview_chars],
                last_message_at=g["last_at"],
                message_count=g["count"],
            ))
        out.sort(key=lambda s: s.last_message_at, reverse=True)
        return out


class SessionManager:
    """Owns the current Session, its MessageLog and its in-flight stream."""

    def __init__(
        self,
        store: MessageStore,
        *,
        load_limit: int = 50,
        preview_chars: int = 80,
    ) -> None:
        self.store = store
        self.load_limit = load_limit
        self.preview_chars = preview_chars
        self.current = Session()
        self.log = MessageLog(self.current.session_id)
        self._active: Optional[StreamState] = None

    # --------- lifecycle ----------
    def create_session(self) -> Session:
        """Start a new, empty conversation and make it current.

        No I/O happens until the first message is sent.
        """
        self.cancel_active()
        session = Session()
        self._set_current(session, MessageLog(session.session_id))
        return session

    def load_latest(self) -> Session:
        """Resume the most recently active session, or start a new one."""
        try:
            session_id = self.store.latest_session_id()
        except StoreUnavailableError as e:
            logger.warning("could not look up latest session: %s", e)
            session_id = None
        if session_id is None:
            return self.create_session()
        return self.switch_to(session_id)

    def switch_to(self, session_id: str) -> Session:
        """Make ``session_id`` current, cancelling any stream in flight first."""
        self.cancel_active()
        try:
            messages = self.store.load_by_session(session_id, self.load_limit)
            title = self.store.session_title(session_id)
        except StoreUnavailableError as e:
            logger.warning("could not load session %s: %s", session_id, e)
            messages, title = [], None

        session = Session(session_id=session_id, title=title)
        if messages:
            session.created_at = messages[0].created_at
            session.last_activity_at = messages[-1].created_at
        self._set_current(session, MessageLog(session_id, messages))
        logger.info("switched to session %s (%d messages)", session_id, len(messages))
        return session

    def list_sessions(self, query: str = "") -> SessionListing:
        return SessionListing(
            self.store,
            query,
            preview_chars=self.preview_chars,
            title_max_chars=self.store.title_max_chars,
        )

    def is_current(self, session_id: str) -> bool:
        return self.current.session_id == session_id

    # --------- in-flight stream ----------
    @property
    def active_stream(self) -> Optional[StreamState]:
        return self._active

    def begin_stream(self, state: StreamState) -> None:
        if state.session_id != self.current.session_id:
            raise ValueError("stream does not belong to the current session")
        if self._active is not None and not self._active.phase.terminal:
            raise ValueError("a stream is already active for this session")
        self._active = state

    def end_stream(self, state: StreamState) -> None:
        if self._active is state:
            self._active = None

    def cancel_active(self) -> bool:
        """Signal the in-flight stream (if any) to stop. Returns True if one was."""
        state, self._active = self._active, None
        if state is None or state.phase.terminal:
            return False
        state.cancel()
        logger.info("cancelling stream for session %s", state.session_id)
        return True

    def _set_current(self, session: Session, log: MessageLog) -> None:
        self.current = session
        self.log = log
