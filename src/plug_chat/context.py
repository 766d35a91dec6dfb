"""Per-turn context assembly from independent, optional data sources."""
from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from .models import Message, Role

logger = logging.getLogger(__name__)

# Snapshot keys understood by the relay prompt builder.
RESUME_SUMMARY = "resumeSummary"
APPLICATIONS = "applications"
UPCOMING_INTERVIEWS = "upcomingInterviews"
VOUCHES = "vouches"
UPLOADED_ATTACHMENT = "uploadedAttachment"

Fetcher = Callable[[], Any]          # sync or async, returns raw data or None
Shaper = Callable[[Any], Any]


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (Mapping, list, tuple, set)):
        return len(value) == 0
    return False


@dataclass
class ContextSource:
    """One named provider feeding a single snapshot key."""

    key: str
    fetch: Fetcher
    shape: Optional[Shaper] = None
    timeout: Optional[float] = None


# -----------------------------
# Recruiting record shapers
# -----------------------------
def _nested(record: Mapping[str, Any], *path: str) -> Any:
    cur: Any = record
    for p in path:
        if not isinstance(cur, Mapping):
            return None
        cur = cur.get(p)
    return cur


def shape_resume(doc: Any) -> Optional[Dict[str, Any]]:
    """Keep only a structured ``ai_summary`` object."""
    if not isinstance(doc, Mapping):
        return None
    summary = doc.get("ai_summary")
    return dict(summary) if isinstance(summary, Mapping) and summary else None


def shape_applications(rows: Iterable[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    out: List[Dict[str, Any]] = []
    for app in rows or []:
        job = app.get("jobs") or {}
        out.append({
            "jobTitle": _nested(job, "title") or "Unknown",
            "company": _nested(job, "company", "name") or "Unknown",
            "location": _nested(job, "location"),
            "jobType": _nested(job, "job_type"),
            "status": app.get("status"),
            "stage": app.get("current_stage"),
            "matchScore": app.get("match_score"),
            "appliedAt": app.get("created_at"),
            "notes": app.get("notes"),
        })
    return out


def shape_interviews(rows: Iterable[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    return [
        {
            "date": i.get("interview_date"),
            "type": i.get("interview_type"),
            "location": i.get("location"),
            "notes": i.get("notes"),
        }
        for i in rows or []
    ]


def shape_vouches(rows: Sequence[Mapping[str, Any]]) -> Optional[Dict[str, Any]]:
    """Aggregate endorsements: count, per-type counts and unique skills."""
    rows = list(rows or [])
    if not rows:
        return None
    types: Dict[str, int] = {}
    skills: List[str] = []
    for v in rows:
        kind = str(v.get("vouch_type") or "other")
        types[kind] = types.get(kind, 0) + 1
        for s in v.get("skills") or []:
            if s not in skills:
                skills.append(s)
    return {"total": len(rows), "types": types, "skills": skills}


# -----------------------------
# Assembler
# -----------------------------
class ContextAssembler:
    """Best-effort fan-out/fan-in over the registered sources.

    Every source is fetched concurrently and individually bounded by a
    timeout; failures and empty results only remove their own key.
    """

    def __init__(
        self,
        sources: Optional[Iterable[ContextSource]] = None,
        *,
        max_items: int = 10,
        history_window: int = 10,
        source_timeout: float = 5.0,
    ) -> None:
        self.max_items = max_items
        self.history_window = history_window
        self.source_timeout = source_timeout
        self._sources: Dict[str, ContextSource] = {}
        self._pinned: Optional[Any] = None
        for src in sources or []:
            self.register(src)

    def register(self, source: ContextSource) -> None:
        if source.key == UPLOADED_ATTACHMENT:
            raise ValueError(f"{UPLOADED_ATTACHMENT!r} is reserved for pinned attachments")
        self._sources[source.key] = source

    def pin(self, summary: Any) -> None:
        """Merge ``summary`` into the next snapshot only."""
        self._pinned = summary

    @property
    def pinned(self) -> Optional[Any]:
        return self._pinned

    async def assemble(self) -> Dict[str, Any]:
        sources = list(self._sources.values())
        results = await asyncio.gather(
            *(self._fetch(src) for src in sources), return_exceptions=True
        )

        snapshot: Dict[str, Any] = {}
        for src, result in zip(sources, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.TimeoutError):
                    logger.warning("context source %s timed out", src.key)
                else:
                    logger.warning("context source %s failed: %s", src.key, result)
                continue
            value = self._cap(result)
            if _is_empty(value):
                continue
            snapshot[src.key] = value

        pinned, self._pinned = self._pinned, None
        if not _is_empty(pinned):
            snapshot[UPLOADED_ATTACHMENT] = pinned
        return snapshot

    def build_request(
        self,
        history: Iterable[Message],
        user_text: str,
        snapshot: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Outbound body: last K history messages + the new user message."""
        usable = [m for m in history if not m.local and not m.is_draft]
        window = usable[-self.history_window:] if self.history_window > 0 else []
        messages = [m.as_history() for m in window]
        messages.append({"role": Role.USER.value, "content": user_text})
        body: Dict[str, Any] = {"messages": messages}
        if snapshot:
            body["context"] = dict(snapshot)
        return body

    # --------- internals ----------
    async def _fetch(self, src: ContextSource) -> Any:
        timeout = src.timeout if src.timeout is not None else self.source_timeout
        raw = await asyncio.wait_for(self._call(src.fetch), timeout=timeout)
        if raw is None:
            return None
        return src.shape(raw) if src.shape is not None else raw

    @staticmethod
    async def _call(fetch: Fetcher) -> Any:
        result = fetch()
        if inspect.isawaitable(result):
            result = await result
        return result

    def _cap(self, value: Any) -> Any:
        if isinstance(value, (list, tuple)):
            return list(value)[: self.max_items]
        return value


def recruiting_sources(
    *,
    resume: Optional[Fetcher] = None,
    applications: Optional[Fetcher] = None,
    interviews: Optional[Fetcher] = None,
    vouches: Optional[Fetcher] = None,
) -> List[ContextSource]:
    """Standard source set for the job-seeker assistant."""
    out: List[ContextSource] = []
    if resume is not None:
        out.append(ContextSource(RESUME_SUMMARY, resume, shape_resume))
    if applications is not None:
        out.append(ContextSource(APPLICATIONS, applications, shape_applications))
    if interviews is not None:
        out.append(ContextSource(UPCOMING_INTERVIEWS, interviews, shape_interviews))
    if vouches is not None:
        out.append(ContextSource(VOUCHES, vouches, shape_vouches))
    return out
