from __future__ import annotations

import asyncio

from plug_chat.context import (
    APPLICATIONS,
    RESUME_SUMMARY,
    UPCOMING_INTERVIEWS,
    UPLOADED_ATTACHMENT,
    VOUCHES,
    ContextAssembler,
    ContextSource,
    recruiting_sources,
    shape_applications,
    shape_vouches,
)
from plug_chat.models import Message, MessageStatus, Role

APPLICATION_ROWS = [
    {
        "status": "active",
        "current_stage": "interview",
        "match_score": 87,
        "created_at": "2026-10-01T09:00:00Z",
        "notes": None,
        "jobs": {"title": "Backend Engineer", "location": "Tel Aviv", "job_type": "full_time",
                 "company": {"name": "Acme"}},
    }
]

VOUCH_ROWS = [
    {"vouch_type": "colleague", "skills": ["python", "sql"]},
    {"vouch_type": "manager", "skills": ["python", "leadership"]},
    {"vouch_type": "colleague", "skills": None},
]


def _assemble(assembler: ContextAssembler):
    return asyncio.run(assembler.assemble())


def test_all_sources_present():
    async def interviews():
        return [{"interview_date": "2026-10-20T10:00:00Z", "interview_type": "video",
                 "location": "Zoom", "notes": "bring portfolio"}]

    assembler = ContextAssembler(recruiting_sources(
        resume=lambda: {"ai_summary": {"skills": ["python"]}},
        applications=lambda: APPLICATION_ROWS,
        interviews=interviews,
        vouches=lambda: VOUCH_ROWS,
    ))
    snap = _assemble(assembler)
    assert snap[RESUME_SUMMARY] == {"skills": ["python"]}
    assert snap[APPLICATIONS][0]["jobTitle"] == "Backend Engineer"
    assert snap[APPLICATIONS][0]["company"] == "Acme"
    assert snap[UPCOMING_INTERVIEWS] == [
        {"date": "2026-10-20T10:00:00Z", "type": "video", "location": "Zoom", "notes": "bring portfolio"}
    ]
    assert snap[VOUCHES] == {
        "total": 3,
        "types": {"colleague": 2, "manager": 1},
        "skills": ["python", "sql", "leadership"],
    }


def test_missing_interview_source_omits_key():
    assembler = ContextAssembler(recruiting_sources(applications=lambda: APPLICATION_ROWS))
    snap = _assemble(assembler)
    assert UPCOMING_INTERVIEWS not in snap
    assert APPLICATIONS in snap


def test_empty_results_are_omitted_not_null_padded():
    assembler = ContextAssembler(recruiting_sources(
        resume=lambda: {"ai_summary": "plain text, not structured"},
        applications=lambda: [],
        interviews=lambda: None,
        vouches=lambda: [],
    ))
    assert _assemble(assembler) == {}


def test_failing_source_does_not_block_others():
    def boom():
        raise RuntimeError("db down")

    async def slow():
        await asyncio.sleep(5)
        return ["never"]

    assembler = ContextAssembler(
        [
            ContextSource(UPCOMING_INTERVIEWS, boom),
            ContextSource("slow", slow, timeout=0.01),
            ContextSource(APPLICATIONS, lambda: APPLICATION_ROWS, shape_applications),
        ]
    )
    snap = _assemble(assembler)
    assert list(snap) == [APPLICATIONS]


def test_sources_are_fetched_concurrently():
    started = []

    def make(name):
        async def fetch():
            started.append(name)
            await asyncio.sleep(0.05)
            return [name]
        return fetch

    assembler = ContextAssembler([ContextSource(f"k{i}", make(i)) for i in range(5)], source_timeout=0.2)
    snap = _assemble(assembler)
    assert len(snap) == 5
    assert sorted(started) == list(range(5))


def test_lists_are_capped():
    assembler = ContextAssembler(
        [ContextSource(APPLICATIONS, lambda: APPLICATION_ROWS * 25, shape_applications)],
        max_items=10,
    )
    assert len(_assemble(assembler)[APPLICATIONS]) == 10


def test_pinned_attachment_lasts_exactly_one_turn():
    assembler = ContextAssembler()
    assembler.pin({"fileName": "cv.pdf", "analysis": {"skills": ["go"]}})
    assert assembler.pinned is not None
    first = _assemble(assembler)
    second = _assemble(assembler)
    assert first == {UPLOADED_ATTACHMENT: {"fileName": "cv.pdf", "analysis": {"skills": ["go"]}}}
    assert second == {}
    assert assembler.pinned is None


def test_build_request_uses_history_window_and_omits_empty_context():
    assembler = ContextAssembler(history_window=3)
    history = [Message(session_id="s", role=Role.USER if i % 2 == 0 else Role.ASSISTANT, content=f"m{i}")
               for i in range(6)]
    history.append(Message(session_id="s", role=Role.ASSISTANT, content="oops", local=True))
    body = assembler.build_request(history, "new question", {})
    assert "context" not in body
    assert body["messages"] == [
        {"role": "assistant", "content": "m3"},
        {"role": "user", "content": "m4"},
        {"role": "assistant", "content": "m5"},
        {"role": "user", "content": "new question"},
    ]


def test_build_request_skips_drafts_and_includes_context():
    assembler = ContextAssembler()
    history = [
        Message(session_id="s", role=Role.USER, content="hi"),
        Message(session_id="s", role=Role.ASSISTANT, content="partial", status=MessageStatus.DRAFT),
    ]
    body = assembler.build_request(history, "next", {VOUCHES: {"total": 1}})
    assert body["context"] == {VOUCHES: {"total": 1}}
    assert [m["content"] for m in body["messages"]] == ["hi", "next"]


def test_shape_vouches_empty():
    assert shape_vouches([]) is None
