"""Streaming client for the assistant backend."""
from __future__ import annotations

import asyncio
import inspect
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import httpx

from .config import ChatSettings
from .decoder import EventStreamDecoder
from .errors import AuthenticationError, ProducerError, TransportError

logger = logging.getLogger(__name__)

UA = "PlugChatClient/1.0"
GENERIC_FAILURE = "Failed to get AI response"

TokenProvider = Callable[[], Union[Optional[str], Awaitable[Optional[str]]]]
FragmentCallback = Callable[[str, str], Any]   # (fragment, accumulated)


class StreamPhase(str, Enum):
    SENDING = "sending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (StreamPhase.COMPLETED, StreamPhase.CANCELLED, StreamPhase.FAILED)


class CancellationToken:
    """Cooperative stop signal checked by the read loop."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class StreamState:
    """Everything owned by one in-flight request."""

    session_id: str
    token: CancellationToken = field(default_factory=CancellationToken)
    phase: StreamPhase = StreamPhase.SENDING
    parts: List[str] = field(default_factory=list)
    decoder: EventStreamDecoder = field(default_factory=EventStreamDecoder)
    error: Optional[Exception] = None

    @property
    def content(self) -> str:
        return "".join(self.parts)

    def cancel(self) -> None:
        self.token.cancel()


def _error_message(body: bytes) -> str:
    try:
        data = json.loads(body.decode("utf-8", errors="replace"))
    except (json.JSONDecodeError, ValueError):
        return GENERIC_FAILURE
    if isinstance(data, dict) and data.get("error"):
        return str(data["error"])
    return GENERIC_FAILURE


async def _resolve_token(provider: Optional[TokenProvider]) -> Optional[str]:
    if provider is None:
        return None
    token = provider()
    if inspect.isawaitable(token):
        token = await token
    return token or None


async def _maybe_await(result: Any) -> None:
    if inspect.isawaitable(result):
        await result


class AssistantClient:
    """Sends one turn and streams the reply back through a decoder.

    Parameters
    ----------
    settings : ChatSettings
        Endpoint, timeouts and decoder limits.
    token_provider : callable
        Returns the caller's bearer token (sync or async). ``None`` or an
        empty string means there is no active login.
    http : httpx.AsyncClient | None
        Shared client; one is created (and owned) when omitted.
    """

    def __init__(
        self,
        settings: ChatSettings,
        token_provider: Optional[TokenProvider] = None,
        *,
        http: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.settings = settings
        self.token_provider = token_provider
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(
            timeout=httpx.Timeout(
                connect=settings.connect_timeout,
                read=settings.read_timeout,
                write=10.0,
                pool=5.0,
            ),
            headers={"User-Agent": UA},
        )

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    def new_state(self, session_id: str) -> StreamState:
        return StreamState(
            session_id=session_id,
            decoder=EventStreamDecoder(max_residual_chars=self.settings.max_residual_chars),
        )

    async def stream(
        self,
        state: StreamState,
        body: Dict[str, Any],
        on_fragment: Optional[FragmentCallback] = None,
    ) -> str:
        """Run ``state`` to a terminal phase and return the accumulated text.

        Raises :class:`AuthenticationError`, :class:`ProducerError` or
        :class:`TransportError` on failure (``state.phase`` is then FAILED).
        Cancellation is not an error: the method returns what had been
        accumulated with ``state.phase`` set to CANCELLED.
        """
        try:
            await self._run(state, body, on_fragment)
        except (AuthenticationError, ProducerError, TransportError) as e:
            state.phase = StreamPhase.FAILED
            state.error = e
            raise
        except httpx.HTTPError as e:
            err = TransportError(str(e) or e.__class__.__name__)
            state.phase = StreamPhase.FAILED
            state.error = err
            raise err from e
        return state.content

    async def _run(
        self,
        state: StreamState,
        body: Dict[str, Any],
        on_fragment: Optional[FragmentCallback],
    ) -> None:
        state.phase = StreamPhase.SENDING
        access_token = await _resolve_token(self.token_provider)
        if not access_token:
            raise AuthenticationError()

        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {access_token}",
            "Accept": "text/event-stream",
        }
        async with self._http.stream("POST", self.settings.endpoint, json=body, headers=headers) as response:
            if response.status_code >= 400:
                payload = await response.aread()
                message = _error_message(payload)
                if response.status_code in (401, 403):
                    raise AuthenticationError(message if message != GENERIC_FAILURE else "Unauthorized")
                raise ProducerError(message, status_code=response.status_code)

            if state.token.cancelled:
                self._cancel(state)
                return

            state.phase = StreamPhase.STREAMING
            logger.debug("streaming reply for session %s", state.session_id)
            async for chunk in response.aiter_bytes():
                if state.token.cancelled:
                    self._cancel(state)
                    return
                if not await self._apply(state, state.decoder.feed(chunk), on_fragment):
                    return

            if state.token.cancelled:
                self._cancel(state)
                return
            if not await self._apply(state, state.decoder.finish(), on_fragment):
                return
            if state.token.cancelled:
                self._cancel(state)
                return

        state.phase = StreamPhase.COMPLETED
        if state.decoder.dropped:
            logger.warning(
                "session %s: %d stream payload(s) dropped while decoding",
                state.session_id,
                state.decoder.dropped,
            )

    async def _apply(
        self,
        state: StreamState,
        fragments: List[str],
        on_fragment: Optional[FragmentCallback],
    ) -> bool:
        for fragment in fragments:
            if state.token.cancelled:
                self._cancel(state)
                return False
            state.parts.append(fragment)
            if on_fragment is not None:
                await _maybe_await(on_fragment(fragment, state.content))
        return True

    @staticmethod
    def _cancel(state: StreamState) -> None:
        state.decoder.reset()
        state.phase = StreamPhase.CANCELLED
        logger.info("stream for session %s cancelled", state.session_id)
