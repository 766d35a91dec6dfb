"""One user turn, end to end: persist, enrich, stream, reconcile."""
from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable, Iterable, Optional

import httpx

from .config import ChatSettings
from .context import ContextAssembler, ContextSource
from .errors import AuthenticationError, PlugChatError, ProducerError, TurnInProgressError
from .models import Message, MessageLog, MessageStatus, Role, TurnResult, TurnStatus, new_id
from .sessions import SessionManager
from .store import MessageStore, derive_title
from .stream import AssistantClient, StreamPhase, StreamState, TokenProvider

logger = logging.getLogger(__name__)

AUTH_NOTICE = "Oh no, someone unplugged me! Working on reconnecting..."
GENERIC_NOTICE = "Sorry, I encountered an error. Please try again."

UpdateListener = Callable[[Message], Any]


def failure_notice(error: Exception) -> str:
    """Text of the local assistant notice shown after a failed turn."""
    if isinstance(error, AuthenticationError):
        return AUTH_NOTICE
    if isinstance(error, ProducerError):
        return str(error) or GENERIC_NOTICE
    return GENERIC_NOTICE


class Conversation:
    """Drives turns for whichever session the SessionManager has current.

    ``on_update`` (sync or async) receives every visible change to the log:
    the user message, each growing DRAFT, the FINAL reply and notices.
    """

    def __init__(
        self,
        sessions: SessionManager,
        assembler: ContextAssembler,
        client: AssistantClient,
        *,
        on_update: Optional[UpdateListener] = None,
    ) -> None:
        self.sessions = sessions
        self.assembler = assembler
        self.client = client
        self.on_update = on_update

    @classmethod
    def from_settings(
        cls,
        settings: ChatSettings,
        identity: str,
        *,
        token_provider: Optional[TokenProvider] = None,
        sources: Iterable[ContextSource] = (),
        http: Optional[httpx.AsyncClient] = None,
        on_update: Optional[UpdateListener] = None,
    ) -> "Conversation":
        store = MessageStore(settings.data_dir, identity, title_max_chars=settings.title_max_chars)
        sessions = SessionManager(store, load_limit=settings.load_limit, preview_chars=settings.preview_chars)
        assembler = ContextAssembler(
            sources,
            max_items=settings.max_context_items,
            history_window=settings.history_window,
            source_timeout=settings.source_timeout,
        )
        client = AssistantClient(settings, token_provider, http=http)
        return cls(sessions, assembler, client, on_update=on_update)

    @property
    def store(self) -> MessageStore:
        return self.sessions.store

    @property
    def busy(self) -> bool:
        active = self.sessions.active_stream
        return active is not None and not active.phase.terminal

    def pin_attachment(self, summary: Any) -> None:
        self.assembler.pin(summary)

    async def close(self) -> None:
        """Host teardown: stop any stream and release the HTTP client."""
        self.sessions.cancel_active()
        await self.client.aclose()

    # --------- turn ----------
    async def send(self, text: str) -> TurnResult:
        text = (text or "").strip()
        if not text:
            raise ValueError("message cannot be empty")
        if self.busy:
            raise TurnInProgressError("a reply is still streaming for this session")

        session = self.sessions.current
        log = self.sessions.log
        history = list(log)
        is_first = not log.persisted()

        state = self.client.new_state(session.session_id)
        self.sessions.begin_stream(state)
        draft_id = new_id()
        try:
            user_msg = self.store.append(session.session_id, Role.USER, text, is_first)
            if is_first:
                session.title = derive_title(text, self.store.title_max_chars)
            session.last_activity_at = user_msg.created_at
            log.append(user_msg)
            await self._notify(user_msg)

            snapshot = await self.assembler.assemble()
            body = self.assembler.build_request(history, text, snapshot)
            if state.token.cancelled:
                state.phase = StreamPhase.CANCELLED
                return TurnResult(TurnStatus.CANCELLED)

            async def on_fragment(_fragment: str, content: str) -> None:
                if not self._owns(log):
                    return
                last = log.last
                if last is not None and last.id == draft_id:
                    msg = log.update_draft(draft_id, content)
                else:
                    msg = log.append(Message(
                        session_id=session.session_id,
                        role=Role.ASSISTANT,
                        content=content,
                        id=draft_id,
                        status=MessageStatus.DRAFT,
                    ))
                await self._notify(msg)

            content = await self.client.stream(state, body, on_fragment)
            if state.phase is StreamPhase.CANCELLED or state.token.cancelled:
                state.phase = StreamPhase.CANCELLED
                self._freeze_draft(log, draft_id)
                return TurnResult(TurnStatus.CANCELLED, content=content)
            return await self._complete(state, log, draft_id, content)

        except asyncio.CancelledError:
            state.cancel()
            self._freeze_draft(log, draft_id)
            raise
        except PlugChatError as e:
            logger.warning("turn failed for session %s: %s", session.session_id, e)
            return await self._fail(state, log, draft_id, e)
        finally:
            self.sessions.end_stream(state)

    # --------- internals ----------
    async def _complete(self, state: StreamState, log: MessageLog, draft_id: str, content: str) -> TurnResult:
        try:
            stored = self.store.append(state.session_id, Role.ASSISTANT, content, message_id=draft_id)
        except PlugChatError as e:
            logger.warning("could not persist reply for session %s: %s", state.session_id, e)
            self._freeze_draft(log, draft_id)
            return TurnResult(TurnStatus.FAILED, content=content, error=e)

        if self._owns(log):
            last = log.last
            if last is not None and last.id == draft_id:
                log.finalize(draft_id, stored)
            else:
                log.append(stored)
            self.sessions.current.last_activity_at = stored.created_at
            await self._notify(stored)
        logger.info("turn completed for session %s (%d chars)", state.session_id, len(content))
        return TurnResult(TurnStatus.COMPLETED, content=content, message=stored)

    async def _fail(self, state: StreamState, log: MessageLog, draft_id: str, error: Exception) -> TurnResult:
        state.phase = StreamPhase.FAILED
        last = log.last
        if last is not None and last.id == draft_id and last.is_draft:
            log.drop_draft(draft_id)
        if self._owns(log) and not state.token.cancelled:
            notice = log.append(Message(
                session_id=state.session_id,
                role=Role.ASSISTANT,
                content=failure_notice(error),
                local=True,
            ))
            await self._notify(notice)
        return TurnResult(TurnStatus.FAILED, content="", error=error)

    @staticmethod
    def _freeze_draft(log: MessageLog, draft_id: str) -> None:
        last = log.last
        if last is not None and last.id == draft_id and last.is_draft:
            log.discard_draft(draft_id)

    def _owns(self, log: MessageLog) -> bool:
        return log is self.sessions.log

    async def _notify(self, message: Message) -> None:
        if self.on_update is None:
            return
        result = self.on_update(message)
        if inspect.isawaitable(result):
            await result
