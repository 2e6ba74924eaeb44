import json

from targetgraph.services.framer import SseFramer, encode_sse, parse_sse_block


def test_encode_then_frame_single_event():
    framer = SseFramer()
    frames = framer.feed(encode_sse("status", {"phase": "P1", "pct": 18}).encode("utf-8"))

    assert len(frames) == 1
    assert frames[0].event == "status"
    assert frames[0].json() == {"phase": "P1", "pct": 18}


def test_delimiter_split_across_reads():
    framer = SseFramer()
    raw = encode_sse("done", {"elapsedMs": 5}).encode("utf-8")
    head, tail = raw[:-1], raw[-1:]

    assert framer.feed(head) == []
    frames = framer.feed(tail)
    assert [f.event for f in frames] == ["done"]


def test_multibyte_character_split_across_reads():
    framer = SseFramer()
    raw = encode_sse("status", {"message": "disease → target"}).encode("utf-8")
    arrow = raw.index("→".encode("utf-8"))

    assert framer.feed(raw[: arrow + 1]) == []
    frames = framer.feed(raw[arrow + 1 :])
    assert frames[0].json()["message"] == "disease → target"


def test_multiple_data_lines_are_joined_with_newline():
    frame = parse_sse_block('event: note\ndata: {"a":\ndata: 1}')
    assert frame is not None
    assert frame.data == '{"a":\n1}'
    assert json.loads(frame.data) == {"a": 1}


def test_block_without_data_is_dropped_and_default_event_is_message():
    assert parse_sse_block("event: ping") is None
    frame = parse_sse_block("data: {}")
    assert frame is not None and frame.event == "message"


def test_flush_returns_trailing_block_without_delimiter():
    framer = SseFramer()
    assert framer.feed(b"event: done\ndata: {}") == []
    frames = framer.flush()
    assert [f.event for f in frames] == ["done"]
    assert framer.flush() == []


def test_crlf_delimiter_split_across_reads():
    framer = SseFramer()

    assert framer.feed(b'event: a\r\ndata: {"x": 1}\r\n\r') == []
    frames = framer.feed(b'\nevent: b\r\ndata: {"y": 2}\r\n\r\n')

    assert [f.event for f in frames] == ["a", "b"]
    assert [f.json() for f in frames] == [{"x": 1}, {"y": 2}]
    assert framer.flush() == []
