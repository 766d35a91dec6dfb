"""Incremental decoder for ``data:``-framed event streams.

The decoder is a pure state machine: feed it raw byte chunks exactly as the
network delivered them and it returns the text fragments that became
decodable. It never performs I/O, which keeps it easy to fuzz.

Framing handled per line::

    : keep-alive comment          -> ignored
    <blank>                       -> ignored
    event: ping                   -> ignored (no data marker)
    data: {"choices": [...]}      -> parsed, delta text extracted
    data: [DONE]                  -> end of content

A ``data:`` line whose JSON does not parse is pushed back to the front of
the residual buffer and processing of the current read stops. The line is
retried once, on the next read (or at :meth:`EventStreamDecoder.finish`);
if it still does not parse it is dropped and logged.
"""
from __future__ import annotations

import codecs
import json
import logging
from typing import Any, List, Optional

logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"
COMMENT_PREFIX = ":"
SENTINEL = "[DONE]"
DEFAULT_MAX_RESIDUAL_CHARS = 1_048_576


class _Incomplete(Exception):
    """Payload is not (yet) valid JSON."""


def extract_delta(payload: str) -> Optional[str]:
    """Return ``choices[0].delta.content`` from one JSON payload.

    Raises :class:`_Incomplete` if the payload is not valid JSON. Valid JSON
    without a text delta (role headers, finish markers) returns ``None``.
    """
    try:
        parsed: Any = json.loads(payload)
    except json.JSONDecodeError as e:
        raise _Incomplete(str(e)) from e
    if not isinstance(parsed, dict):
        return None
    choices = parsed.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return None
    delta = choices[0].get("delta")
    if not isinstance(delta, dict):
        return None
    content = delta.get("content")
    return content if isinstance(content, str) and content else None


class EventStreamDecoder:
    """Turn arbitrarily chunked bytes into ordered text fragments."""

    def __init__(self, *, max_residual_chars: int = DEFAULT_MAX_RESIDUAL_CHARS) -> None:
        self.max_residual_chars = max_residual_chars
        self.residual = ""
        self.done = False               # sentinel seen
        self.dropped = 0                # payloads discarded as undecodable
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pushed_back: Optional[str] = None

    # --------- public API ----------
    def feed(self, chunk: bytes) -> List[str]:
        """Consume one read; return the fragments it completed, in order."""
        if chunk:
            self.residual += self._utf8.decode(chunk)
        fragments = self._drain(allow_pushback=True)
        self._guard_residual()
        return fragments

    def finish(self) -> List[str]:
        """End of input: retry any pushed-back line and flush the tail.

        A final line without a trailing newline is processed as complete.
        """
        self.residual += self._utf8.decode(b"", final=True)
        if self.residual and not self.residual.endswith("\n"):
            self.residual += "\n"
        fragments = self._drain(allow_pushback=False)
        self.residual = ""
        return fragments

    def reset(self) -> None:
        """Discard buffered state (cancellation)."""
        self.residual = ""
        self._pushed_back = None
        self._utf8.reset()

    # --------- internals ----------
    def _drain(self, *, allow_pushback: bool) -> List[str]:
        out: List[str] = []
        while not self.done:
            idx = self.residual.find("\n")
            if idx == -1:
                break
            line = self.residual[:idx]
            self.residual = self.residual[idx + 1:]
            if line.endswith("\r"):
                line = line[:-1]

            payload = self._payload(line)
            if payload is None:
                continue
            if payload == SENTINEL:
                self.done = True
                break

            try:
                fragment = extract_delta(payload)
            except _Incomplete as e:
                if allow_pushback and self._pushed_back != line:
                    self._pushed_back = line
                    self.residual = line + "\n" + self.residual
                    break
                self._pushed_back = None
                self.dropped += 1
                logger.warning("dropping undecodable stream payload (%s): %.120r", e, payload)
                continue

            self._pushed_back = None
            if fragment:
                out.append(fragment)
        return out

    @staticmethod
    def _payload(line: str) -> Optional[str]:
        if not line.strip() or line.startswith(COMMENT_PREFIX):
            return None
        if not line.startswith(DATA_PREFIX):
            return None
        return line[len(DATA_PREFIX):].strip()

    def _guard_residual(self) -> None:
        # only the unterminated tail counts; complete lines wait behind a push-back
        keep = self.residual.rfind("\n") + 1
        tail = len(self.residual) - keep
        if tail <= self.max_residual_chars:
            return
        logger.warning(
            "discarding %d buffered characters without a line break (limit %d)",
            tail,
            self.max_residual_chars,
        )
        self.residual = self.residual[:keep]
        if not keep:
            self._pushed_back = None
        self.dropped += 1


def decode_all(chunks, **kwargs: Any) -> str:
    """Decode an iterable of byte chunks to the final concatenated text."""
    decoder = EventStreamDecoder(**kwargs)
    parts: List[str] = []
    for chunk in chunks:
        parts.extend(decoder.feed(chunk))
    parts.extend(decoder.finish())
    return "".join(parts)
