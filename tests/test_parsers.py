import json

import pytest

from delayed_api.models import CompletionEvent, HeartbeatEvent, ProgressEvent
from delayed_api.parsers import NDJSONParser, SSEParser

NDJSON_STREAM = (
    b'{"type":"start","message":"Starting delayed operation..."}\n'
    b'{"type":"progress","progress":20,"elapsed":1000,"duration":5000}\n'
    b'{"status":"progress","progress":40,"elapsed":2000}\n'
    b'{"type":"complete","mode":"stream","message":"Completed after 5000ms using streaming",'
    b'"timestamp":"2024-01-01T00:00:05.000Z","duration":5000}\n'
)

SSE_STREAM = (
    b'data: {"type":"start","message":"Starting with heartbeat monitoring..."}\n\n'
    b'data: {"type":"heartbeat","timestamp":"2024-01-01T00:00:01.000Z"}\n\n'
    b'data: {"type":"progress","progress":50}\n\n'
    b'data: {"type":"complete","mode":"heartbeat","message":"Caf\xc3\xa9 done","duration":2000}\n\n'
)


def feed_in_chunks(parser, data, size):
    events = []
    for i in range(0, len(data), size):
        events.extend(parser.feed(data[i:i + size]))
    events.extend(parser.close())
    return events


def feed_split_at(parser, data, index):
    return parser.feed(data[:index]) + parser.feed(data[index:]) + parser.close()


def test_ndjson_recognizes_progress_and_completion():
    events = NDJSONParser().feed(NDJSON_STREAM)

    assert events[:2] == [
        ProgressEvent(percent_complete=20, elapsed_ms=1000, total_ms=5000),
        ProgressEvent(percent_complete=40, elapsed_ms=2000, total_ms=None),
    ]
    assert isinstance(events[2], CompletionEvent)
    assert events[2].mode == "stream"
    assert events[2].duration_ms == 5000
    assert events[2].payload["message"] == "Completed after 5000ms using streaming"
    assert len(events) == 3


@pytest.mark.parametrize("index", range(1, len(NDJSON_STREAM)))
def test_ndjson_split_anywhere_gives_same_events(index):
    expected = NDJSONParser().feed(NDJSON_STREAM)
    assert feed_split_at(NDJSONParser(), NDJSON_STREAM, index) == expected


@pytest.mark.parametrize("size", [1, 2, 7, 64])
def test_ndjson_chunk_size_does_not_matter(size):
    expected = NDJSONParser().feed(NDJSON_STREAM)
    assert feed_in_chunks(NDJSONParser(), NDJSON_STREAM, size) == expected


def test_ndjson_skips_malformed_line_between_progress_units():
    data = (
        b'{"type":"progress","progress":10}\n'
        b'{"type":"progr\n'
        b"[1, 2]\n"
        b"\n"
        b'{"type":"progress","progress":30}\n'
    )
    events = NDJSONParser().feed(data)
    assert [e.percent_complete for e in events] == [10, 30]


def test_ndjson_keeps_partial_line_until_newline():
    parser = NDJSONParser()
    assert parser.feed(b'{"type":"progress",') == []
    assert parser.feed(b'"progress":55}') == []
    assert parser.feed(b"\n") == [ProgressEvent(percent_complete=55)]


def test_ndjson_close_flushes_unterminated_line():
    parser = NDJSONParser()
    assert parser.feed(b'{"status":"complete","mode":"chunked"}') == []
    [event] = parser.close()
    assert event.mode == "chunked"


def test_ndjson_crlf_split_between_reads():
    parser = NDJSONParser()
    events = parser.feed(b'{"type":"progress","progress":1}\r')
    events += parser.feed(b'\n{"type":"progress","progress":2}\r\n')
    assert [e.percent_complete for e in events] == [1, 2]


def test_progress_is_clamped():
    events = NDJSONParser().feed(
        b'{"type":"progress","progress":150}\n{"type":"progress","progress":-3}\n'
        b'{"type":"progress","progress":"x"}\n'
    )
    assert [e.percent_complete for e in events] == [100, 0, 0]


def test_ndjson_ignores_other_shapes():
    data = b'{"type":"heartbeat"}\n{"status":"starting"}\n{"foo":1}\n"complete"\n'
    assert NDJSONParser().feed(data) == []


def test_sse_dispatches_by_type():
    events = SSEParser().feed(SSE_STREAM)

    assert events[0] == HeartbeatEvent(timestamp="2024-01-01T00:00:01.000Z")
    assert events[1] == ProgressEvent(percent_complete=50)
    assert isinstance(events[2], CompletionEvent)
    assert events[2].message == "Café done"


@pytest.mark.parametrize("index", range(1, len(SSE_STREAM)))
def test_sse_split_anywhere_gives_same_events(index):
    expected = SSEParser().feed(SSE_STREAM)
    assert feed_split_at(SSEParser(), SSE_STREAM, index) == expected


def test_sse_ignores_non_data_lines_and_bad_json():
    data = (
        b": ping - 2024-01-01\n\n"
        b"event: message\n"
        b"data: not json\n\n"
        b'data:{"type":"heartbeat"}\n\n'
        b'id: 3\ndata: {"type":"start"}\n\n'
    )
    assert SSEParser().feed(data) == [HeartbeatEvent()]


def test_closed_parser_refuses_input():
    parser = SSEParser()
    parser.close()
    assert parser.closed
    with pytest.raises(RuntimeError):
        parser.feed(b"data: {}\n")


async def _chunks(parts, log):
    try:
        for part in parts:
            log.append(part)
            yield part
    finally:
        log.append("closed")


@pytest.mark.anyio
async def test_iter_events_yields_lazily_and_closes_reader():
    log = []
    parts = [NDJSON_STREAM[:50], NDJSON_STREAM[50:]]

    events = [e async for e in NDJSONParser().iter_events(_chunks(parts, log), lambda: True)]

    assert events == NDJSONParser().feed(NDJSON_STREAM)
    assert log[-1] == "closed"


@pytest.mark.anyio
async def test_iter_events_stops_reading_once_not_live():
    log = []
    live = {"value": True}
    lines = [
        json.dumps({"type": "progress", "progress": p}).encode() + b"\n" for p in (10, 20, 30)
    ]

    seen = []
    parser = NDJSONParser()
    async for event in parser.iter_events(_chunks(lines, log), lambda: live["value"]):
        seen.append(event.percent_complete)
        live["value"] = False

    assert seen == [10]
    # second chunk was pulled but not parsed, third never read
    assert log == [lines[0], lines[1], "closed"]
    assert parser.closed


@pytest.mark.parametrize("number", [b"Infinity", b"-Infinity", b"NaN", b"1e999"])
def test_ndjson_skips_non_finite_progress(number):
    data = (
        b'{"type":"progress","progress":10}\n'
        b'{"type":"progress","progress":' + number + b"}\n"
        b'{"type":"progress","progress":30}\n'
    )
    events = NDJSONParser().feed(data)
    assert [e.percent_complete for e in events] == [10, 30]


@pytest.mark.parametrize("number", [b"Infinity", b"-Infinity", b"NaN", b"1e999"])
def test_sse_skips_non_finite_progress(number):
    data = (
        b'data: {"type":"progress","progress":10}\n\n'
        b'data: {"type":"progress","progress":' + number + b"}\n\n"
        b'data: {"type":"complete","mode":"heartbeat","duration":' + number + b"}\n\n"
        b'data: {"type":"progress","progress":30}\n\n'
    )
    events = SSEParser().feed(data)
    assert events == [ProgressEvent(percent_complete=10), ProgressEvent(percent_complete=30)]


def test_large_finite_numbers_are_clamped():
    events = NDJSONParser().feed(b'{"type":"progress","progress":1e300,"elapsed":2.5e3}\n')
    assert events == [ProgressEvent(percent_complete=100, elapsed_ms=2500.0)]
