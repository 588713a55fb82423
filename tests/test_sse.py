"""Tests for SSE framing and the line-oriented event reader."""

import pytest

from relay.schemas import CompleteEvent, ErrorEvent, StepEvent, event_payload, stream_event_adapter
from relay.sse import aiter_events, encode_event, iter_events, parse_event_line


def lines_of(*frames: str) -> list[str]:
    return "".join(frames).splitlines()


class TestEncode:
    def test_frame_format(self):
        frame = encode_event({"type": "complete", "progress": 100})
        assert frame == 'data: {"type": "complete", "progress": 100}\n\n'

    def test_step_payload_uses_wire_names(self):
        payload = event_payload(StepEvent(step_id="parse", status="active", progress=10, model="m"))
        assert payload == {"type": "step", "stepId": "parse", "status": "active", "progress": 10, "model": "m"}

    def test_payload_validates_back_into_event(self):
        payload = event_payload(ErrorEvent(code="API_TIMEOUT", message="slow"))
        assert isinstance(stream_event_adapter.validate_python(payload), ErrorEvent)


class TestReader:
    def test_events_in_order_until_complete(self):
        lines = lines_of(
            encode_event({"type": "step", "stepId": "parse", "status": "active", "progress": 10}),
            encode_event({"type": "step", "stepId": "parse", "status": "completed", "progress": 25}),
            encode_event({"type": "complete", "content": {}, "progress": 100}),
            encode_event({"type": "step", "stepId": "after", "status": "active", "progress": 1}),
        )
        events = list(iter_events(lines))
        assert [e["type"] for e in events] == ["step", "step", "complete"]
        assert [e.get("progress") for e in events] == [10, 25, 100]

    def test_stops_on_error(self):
        lines = lines_of(
            encode_event({"type": "error", "code": "X", "message": "m"}),
            encode_event({"type": "complete", "content": {}}),
        )
        assert [e["type"] for e in iter_events(lines)] == ["error"]

    def test_reader_stops_consuming_at_terminal_event(self):
        consumed = []

        def source():
            for line in lines_of(
                encode_event({"type": "complete", "content": {}}),
                encode_event({"type": "step", "stepId": "x", "status": "active", "progress": 1}),
            ):
                consumed.append(line)
                yield line

        list(iter_events(source()))
        assert len(consumed) == 1

    @pytest.mark.parametrize("line", ["", ": keep-alive", "event: ping", "data: not-json", 'data: {"no": "type"}'])
    def test_junk_lines_are_skipped(self, line):
        assert parse_event_line(line) is None

    def test_data_without_space(self):
        assert parse_event_line('data:{"type": "complete"}') == {"type": "complete"}

    @pytest.mark.asyncio
    async def test_async_reader(self):
        async def source():
            for line in lines_of(
                encode_event(event_payload(StepEvent(step_id="parse", status="active", progress=10))),
                encode_event(event_payload(CompleteEvent(content={"ok": True}))),
            ):
                yield line

        events = [e async for e in aiter_events(source())]
        assert [e["type"] for e in events] == ["step", "complete"]
