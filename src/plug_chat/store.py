"""Durable, append-only chat history keyed by identity (thread-safe)."""
from __future__ import annotations

import json
import logging
import re
import threading
import time
from pathlib import Path
from typing import Any, Iterator, List, Optional, TypedDict

from .errors import StoreUnavailableError
from .models import Message, Role, new_id

logger = logging.getLogger(__name__)

TITLE_MAX_CHARS = 60
_SENDERS = frozenset(r.value for r in Role)


class Row(TypedDict, total=False):
    """One persisted chat_history line."""

    id: str
    session_id: str
    sender: str           # "user" | "assistant"
    message: str
    created_at: float
    session_title: str    # first user message of a session only


# -----------------------------
# Helpers
# -----------------------------
def _safe_identity(name: str) -> str:
    s = re.sub(r"[^\w.\-@]+", "_", name.strip() or "default")
    return s[:128]


def derive_title(content: str, max_chars: int = TITLE_MAX_CHARS) -> str:
    """Session title from the first user message: a fixed-length prefix."""
    return content.strip()[:max_chars]


def row_to_message(row: Row) -> Message:
    return Message(
        session_id=row["session_id"],
        role=Role(row.get("sender", "user")),
        content=row.get("message", ""),
        id=row.get("id") or new_id(),
        created_at=float(row.get("created_at", 0.0)),
    )


# -----------------------------
# MessageStore
# -----------------------------
class MessageStore:
    """JSONL-backed message log, one file per identity.

    Layout:
        data_dir/
          <identity>.jsonl    # one Row per line, in append order

    Append order is creation order; rows are never rewritten or removed.
    """

    def __init__(self, data_dir: str, identity: str, *, title_max_chars: int = TITLE_MAX_CHARS) -> None:
        self.root = Path(data_dir)
        self.identity = identity
        self.title_max_chars = title_max_chars
        self._lock = threading.RLock()
        self._last_ts = 0.0

    @property
    def path(self) -> Path:
        return self.root / f"{_safe_identity(self.identity)}.jsonl"

    # --------- core API ----------
    def append(
        self,
        session_id: str,
        role: Role,
        content: str,
        is_first_in_session: bool = False,
        *,
        message_id: Optional[str] = None,
    ) -> Message:
        """Persist one message and return it as stored."""
        role = Role(role)
        if not session_id:
            raise ValueError("session_id is required")

        with self._lock:
            row: Row = {
                "id": message_id or new_id(),
                "session_id": session_id,
                "sender": role.value,
                "message": content,
                "created_at": self._next_timestamp(),
            }
            if is_first_in_session and role is Role.USER:
                row["session_title"] = derive_title(content, self.title_max_chars)
            self._write_row(row)

        logger.debug("stored %s message %s for session %s", role.value, row["id"], session_id)
        return row_to_message(row)

    def load_by_session(self, session_id: str, limit: int) -> List[Message]:
        """Most recent ``limit`` messages of a session, oldest first."""
        if limit <= 0:
            return []
        rows = [r for r in self._read_rows() if r.get("session_id") == session_id]
        return [row_to_message(r) for r in rows[-limit:]]

    def session_title(self, session_id: str) -> Optional[str]:
        for row in self._read_rows():
            if row.get("session_id") == session_id and row.get("session_title"):
                return row["session_title"]
        return None

    # --------- discovery ----------
    def iter_rows_desc(self) -> Iterator[Row]:
        """All rows, most recent first."""
        return reversed(self._read_rows())

    def latest_session_id(self) -> Optional[str]:
        for row in self.iter_rows_desc():
            sid = row.get("session_id")
            if sid:
                return sid
        return None

    # --------- internals ----------
    def _next_timestamp(self) -> float:
        # strictly increasing so created_at ordering matches append order
        now = time.time()
        if now <= self._last_ts:
            now = self._last_ts + 1e-6
        self._last_ts = now
        return now

    def _write_row(self, row: Row) -> None:
        try:
            line = json.dumps(row, ensure_ascii=False)
        except (TypeError, ValueError) as e:
            raise ValueError(f"Failed to serialize row to JSON: {e}") from e
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as f:
                f.write(line + "\n")
        except OSError as e:
            raise StoreUnavailableError(f"Failed to write to {self.path}: {e}") from e

    def _read_rows(self) -> List[Row]:
        path = self.path
        if not path.exists():
            return []
        rows: List[Row] = []
        with self._lock:
            try:
                with path.open("r", encoding="utf-8") as f:
                    for line_no, line in enumerate(f, 1):
                        line = line.strip()
                        if not line:
                            continue
                        try:
                            data: Any = json.loads(line)
                        except json.JSONDecodeError as e:
                            logger.warning("skipping corrupt line %d in %s: %s", line_no, path, e)
                            continue
                        if not isinstance(data, dict) or not data.get("session_id"):
                            continue
                        if data.get("sender", "user") not in _SENDERS:
                            logger.warning(
                                "skipping line %d in %s: unknown sender %r", line_no, path, data.get("sender")
                            )
                            continue
                        rows.append(data)  # type: ignore[arg-type]
            except OSError as e:
                raise StoreUnavailableError(f"Failed to read {path}: {e}") from e
        return rows

