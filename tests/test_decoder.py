from __future__ import annotations

import json
import random

from conftest import sse_body, sse_delta
from plug_chat.decoder import EventStreamDecoder, decode_all, extract_delta


def _split(data: bytes, points):
    cuts = [0] + sorted(points) + [len(data)]
    return [data[a:b] for a, b in zip(cuts, cuts[1:])]


def test_fragments_concatenate_in_decode_order():
    body = sse_body(["Hello", ", ", "world", "!"])
    assert decode_all([body]) == "Hello, world!"


def test_chunk_boundary_invariance_fuzzed():
    """Any set of split points yields the same content as a single read."""
    fragments = ["Tel ", "Aviv ", "backend ", "roles ", "שלום ", "😀 ", "{\"x\": 1}", "\n", "end"]
    body = sse_body(fragments)
    expected = decode_all([body])
    assert expected == "".join(fragments)

    rng = random.Random(1234)
    for _ in range(300):
        n = rng.randint(1, 25)
        points = rng.sample(range(1, len(body)), k=min(n, len(body) - 1))
        assert decode_all(_split(body, points)) == expected


def test_every_single_byte_split():
    body = sse_body(["a", "bc", "déf"])
    assert decode_all([bytes([b]) for b in body]) == "abcdéf"


def test_multibyte_character_split_across_reads():
    line = sse_delta("שלום").encode("utf-8")
    # cut inside the first Hebrew character (2-byte sequence)
    idx = line.index("ש".encode("utf-8")) + 1
    dec = EventStreamDecoder()
    assert dec.feed(line[:idx]) == []
    assert dec.feed(line[idx:]) == ["שלום"]


def test_payload_split_mid_object_is_completed_on_next_read():
    line = sse_delta("fragment").encode("utf-8")
    dec = EventStreamDecoder()
    assert dec.feed(line[:20]) == []
    assert dec.residual  # partial frame waits for more bytes
    assert dec.feed(line[20:]) == ["fragment"]
    assert dec.dropped == 0


def test_comments_blank_and_foreign_lines_ignored():
    raw = (
        ": keep-alive\n"
        "\n"
        "event: ping\n"
        "id: 7\n"
        + sse_delta("ok")
    ).encode()
    assert decode_all([raw]) == "ok"


def test_crlf_line_endings():
    raw = sse_delta("one").replace("\n", "\r\n") + sse_delta("two").replace("\n", "\r\n")
    body = raw.encode()
    # split between \r and \n
    cut = body.index(b"\r\n") + 1
    assert decode_all([body[:cut], body[cut:]]) == "onetwo"


def test_sentinel_stops_accumulation_for_good():
    body = sse_body(["a", "b"]) + sse_delta("late").encode() + b"data: [DONE]\n"
    dec = EventStreamDecoder()
    out = dec.feed(body)
    assert out == ["a", "b"]
    assert dec.done
    assert dec.feed(sse_delta("more").encode()) == []
    assert dec.finish() == []


def test_unparseable_line_is_pushed_back_then_dropped():
    bad = b"data: {\"choices\": [\n"
    good = sse_delta("after").encode()
    dec = EventStreamDecoder()

    assert dec.feed(bad + good) == []          # processing stops at the bad line
    assert dec.residual.startswith("data: {")  # line restored to the front
    assert dec.feed(b"") == ["after"]           # single retry, then dropped
    assert dec.dropped == 1


def test_unparseable_line_is_dropped_at_finish():
    dec = EventStreamDecoder()
    assert dec.feed(b"data: {nope\n" + sse_delta("x").encode()) == []
    assert dec.finish() == ["x"]
    assert dec.dropped == 1


def test_final_line_without_newline_is_flushed():
    line = sse_delta("tail").rstrip("\n").encode()
    dec = EventStreamDecoder()
    assert dec.feed(line) == []
    assert dec.finish() == ["tail"]


def test_residual_is_bounded():
    dec = EventStreamDecoder(max_residual_chars=64)
    assert dec.feed(b"data: " + b"x" * 200) == []
    assert dec.residual == ""
    assert dec.dropped == 1
    assert dec.feed(sse_delta("recovered").encode()) == ["recovered"]


def test_extract_delta_ignores_non_text_events():
    assert extract_delta(json.dumps({"choices": [{"delta": {"role": "assistant"}}]})) is None
    assert extract_delta(json.dumps({"choices": []})) is None
    assert extract_delta(json.dumps([1, 2])) is None
    assert extract_delta(json.dumps({"choices": [{"delta": {"content": "hi"}}]})) == "hi"


def test_reset_discards_buffered_state():
    dec = EventStreamDecoder()
    dec.feed(sse_delta("partial").encode()[:15])
    dec.reset()
    assert dec.residual == ""


def test_chunk_boundary_invariance_with_unparseable_line_and_small_limit():
    """Complete lines queued behind a retried line are not mistaken for an overlong tail."""
    body = b"data: {bad\n" + sse_body(["x"] * 40)
    expected = decode_all([body], max_residual_chars=500)
    assert expected == "x" * 40

    rng = random.Random(99)
    for _ in range(200):
        n = rng.randint(1, 15)
        points = rng.sample(range(1, len(body)), k=n)
        assert decode_all(_split(body, points), max_residual_chars=500) == expected


def test_overlong_tail_is_cut_but_complete_lines_survive():
    dec = EventStreamDecoder(max_residual_chars=64)
    out = dec.feed(b"data: {bad\n" + sse_delta("kept").encode() + b"data: " + b"y" * 200)
    assert out == []
    assert dec.dropped == 1
    assert dec.residual.endswith("\n")
    assert dec.feed(b"") == ["kept"]
