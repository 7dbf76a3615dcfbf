"""Tests for the stream-json line dispatcher."""

from __future__ import annotations

import json

import pytest

from ccbridge.engine.errors import HandlerError, SchemaMismatchError
from ccbridge.engine.handlers import EventHandlers
from ccbridge.engine.models import (
    AssistantTextEvent,
    CompletionEvent,
    CompletionStatus,
    InitEvent,
    ToolInvocationEvent,
    ToolOutcomeEvent,
)
from ccbridge.engine.stream_dispatcher import StreamDispatcher


def _recording_handlers():
    events = []
    errors = []
    handlers = EventHandlers(
        on_init=events.append,
        on_tool_invocation=events.append,
        on_assistant_text=events.append,
        on_tool_outcome=events.append,
        on_completion=events.append,
        on_error=errors.append,
    )
    return handlers, events, errors


def _line(obj) -> str:
    return json.dumps(obj) + "\n"


INIT = {
    "type": "system",
    "subtype": "init",
    "session_id": "sess-1",
    "tools": ["Bash", "Read"],
    "mcp_servers": [{"name": "files", "status": "connected"}],
    "model": "claude-opus",
    "cwd": "/work",
    "apiKeySource": "none",
}

MIXED_ASSISTANT = {
    "type": "assistant",
    "message": {
        "role": "assistant",
        "content": [
            {"type": "tool_use", "id": "t1", "name": "Read", "input": {"file_path": "a.py"}},
            {"type": "tool_use", "id": "t2", "name": "Bash", "input": {"command": "ls"}},
            {"type": "text", "text": "Looking at the files"},
        ],
    },
    "session_id": "sess-1",
}

RESULT = {
    "type": "result",
    "subtype": "success",
    "is_error": False,
    "result": "All done",
    "total_cost_usd": 0.0123,
    "duration_ms": 4200,
    "duration_api_ms": 3900,
    "num_turns": 3,
    "session_id": "sess-1",
}


class TestLineBuffering:
    @pytest.mark.asyncio
    async def test_line_split_at_every_offset_matches_unsplit(self):
        text = _line(INIT) + _line(MIXED_ASSISTANT) + _line(RESULT)

        handlers, expected, _ = _recording_handlers()
        whole = StreamDispatcher(handlers)
        await whole.feed(text)
        await whole.flush()

        for offset in range(1, len(text), 7):
            handlers, events, _ = _recording_handlers()
            d = StreamDispatcher(handlers)
            await d.feed(text[:offset])
            await d.feed(text[offset:])
            await d.flush()
            assert events == expected, f"split at {offset}"

    @pytest.mark.asyncio
    async def test_partial_line_waits_for_newline(self):
        handlers, events, _ = _recording_handlers()
        d = StreamDispatcher(handlers)
        raw = json.dumps(INIT)
        await d.feed(raw[:10])
        await d.feed(raw[10:])
        assert events == []
        assert d.pending == raw
        await d.feed("\n")
        assert len(events) == 1
        assert d.pending == ""

    @pytest.mark.asyncio
    async def test_flush_processes_unterminated_last_line(self):
        handlers, events, _ = _recording_handlers()
        d = StreamDispatcher(handlers)
        await d.feed(json.dumps(RESULT))
        assert events == []
        await d.flush()
        assert len(events) == 1
        assert isinstance(events[0], CompletionEvent)

    @pytest.mark.asyncio
    async def test_flush_twice_raises(self):
        d = StreamDispatcher()
        await d.flush()
        with pytest.raises(RuntimeError):
            await d.flush()

    @pytest.mark.asyncio
    async def test_feed_after_flush_raises(self):
        d = StreamDispatcher()
        await d.flush()
        with pytest.raises(RuntimeError):
            await d.feed("{}\n")


class TestSkipAndContinue:
    @pytest.mark.asyncio
    async def test_invalid_json_is_skipped_without_error(self):
        handlers, events, errors = _recording_handlers()
        d = StreamDispatcher(handlers)
        await d.feed("Loading configuration...\n{not json\n" + _line(INIT))
        await d.flush()
        assert errors == []
        assert len(events) == 1
        assert isinstance(events[0], InitEvent)
        assert d.lines_skipped == 2
        assert d.lines_processed == 1

    @pytest.mark.asyncio
    async def test_blank_lines_are_ignored(self):
        handlers, events, errors = _recording_handlers()
        d = StreamDispatcher(handlers)
        await d.feed("\n   \n\t\n")
        await d.flush()
        assert events == [] and errors == []
        assert d.lines_skipped == 0
        assert d.lines_processed == 0

    @pytest.mark.asyncio
    async def test_unknown_type_reports_schema_mismatch_and_continues(self):
        handlers, events, errors = _recording_handlers()
        d = StreamDispatcher(handlers)
        await d.feed(_line({"type": "telemetry", "value": 1}) + _line(RESULT))
        await d.flush()
        assert len(errors) == 1
        assert isinstance(errors[0], SchemaMismatchError)
        assert "telemetry" in errors[0].line
        assert len(events) == 1

    @pytest.mark.asyncio
    async def test_non_object_json_is_a_schema_mismatch(self):
        handlers, events, errors = _recording_handlers()
        d = StreamDispatcher(handlers)
        await d.feed("[1, 2, 3]\n")
        await d.flush()
        assert len(errors) == 1
        assert isinstance(errors[0], SchemaMismatchError)

    @pytest.mark.asyncio
    async def test_wrong_field_type_is_a_schema_mismatch(self):
        handlers, events, errors = _recording_handlers()
        d = StreamDispatcher(handlers)
        await d.feed(_line({"type": "result", "subtype": "success", "num_turns": "many"}))
        await d.flush()
        assert events == []
        assert len(errors) == 1
        assert "num_turns" in errors[0].detail

    @pytest.mark.asyncio
    async def test_raising_handler_is_reported_and_stream_continues(self):
        seen = []
        errors = []

        def broken(event):
            raise KeyError("boom")

        handlers = EventHandlers(
            on_init=broken,
            on_completion=seen.append,
            on_error=errors.append,
        )
        d = StreamDispatcher(handlers)
        await d.feed(_line(INIT) + _line(RESULT))
        await d.flush()
        assert len(seen) == 1
        assert len(errors) == 1
        assert isinstance(errors[0], HandlerError)
        assert errors[0].event_kind == "init"

    @pytest.mark.asyncio
    async def test_raising_error_handler_does_not_abort(self):
        def bad_error_handler(err):
            raise RuntimeError("worse")

        seen = []
        handlers = EventHandlers(on_completion=seen.append, on_error=bad_error_handler)
        d = StreamDispatcher(handlers)
        await d.feed(_line({"type": "bogus"}) + _line(RESULT))
        await d.flush()
        assert len(seen) == 1


class TestDispatchRules:
    @pytest.mark.asyncio
    async def test_init_event_fields(self):
        handlers, events, _ = _recording_handlers()
        d = StreamDispatcher(handlers)
        await d.feed(_line(INIT))
        init = events[0]
        assert isinstance(init, InitEvent)
        assert init.agent_session_id == "sess-1"
        assert init.tool_names == ["Bash", "Read"]
        assert init.server_info[0]["name"] == "files"
        assert init.model == "claude-opus"

    @pytest.mark.asyncio
    async def test_non_init_system_messages_emit_nothing(self):
        handlers, events, errors = _recording_handlers()
        d = StreamDispatcher(handlers)
        await d.feed(_line({"type": "system", "subtype": "compact_boundary"}))
        assert events == [] and errors == []

    @pytest.mark.asyncio
    async def test_tool_uses_precede_single_text_event(self):
        handlers, events, _ = _recording_handlers()
        d = StreamDispatcher(handlers)
        await d.feed(_line(MIXED_ASSISTANT))
        assert [type(e) for e in events] == [
            ToolInvocationEvent, ToolInvocationEvent, AssistantTextEvent,
        ]
        assert [e.name for e in events[:2]] == ["Read", "Bash"]
        assert events[0].invocation_id == "t1"
        assert events[1].input == {"command": "ls"}
        assert events[2].text == "Looking at the files"

    @pytest.mark.asyncio
    async def test_text_items_are_joined_with_newlines(self):
        handlers, events, _ = _recording_handlers()
        d = StreamDispatcher(handlers)
        await d.feed(_line({
            "type": "assistant",
            "message": {"content": [
                {"type": "text", "text": "first"},
                {"type": "thinking", "thinking": "hmm"},
                {"type": "text", "text": "second"},
            ]},
        }))
        assert len(events) == 1
        assert events[0].text == "first\nsecond"

    @pytest.mark.asyncio
    async def test_whitespace_only_assistant_message_emits_nothing(self):
        handlers, events, errors = _recording_handlers()
        d = StreamDispatcher(handlers)
        await d.feed(_line({
            "type": "assistant",
            "message": {"content": [
                {"type": "text", "text": "   "},
                {"type": "text", "text": "\n"},
            ]},
        }))
        assert events == [] and errors == []

    @pytest.mark.asyncio
    async def test_user_message_emits_tool_outcomes(self):
        handlers, events, _ = _recording_handlers()
        d = StreamDispatcher(handlers)
        await d.feed(_line({
            "type": "user",
            "message": {"role": "user", "content": [
                {"type": "tool_result", "tool_use_id": "t1", "content": "file body"},
                {
                    "type": "tool_result",
                    "tool_use_id": "t2",
                    "content": [{"type": "text", "text": "line a"}, {"type": "text", "text": "line b"}],
                    "is_error": True,
                },
            ]},
        }))
        assert [type(e) for e in events] == [ToolOutcomeEvent, ToolOutcomeEvent]
        assert events[0].invocation_id == "t1"
        assert events[0].output == "file body"
        assert events[0].is_error is False
        assert events[1].output == "line a\nline b"
        assert events[1].is_error is True

    @pytest.mark.asyncio
    async def test_result_maps_to_completion(self):
        handlers, events, _ = _recording_handlers()
        d = StreamDispatcher(handlers)
        await d.feed(_line(RESULT))
        completion = events[0]
        assert completion.status is CompletionStatus.SUCCESS
        assert completion.cost_usd == pytest.approx(0.0123)
        assert completion.duration_ms == 4200
        assert completion.num_turns == 3
        assert completion.result_text == "All done"
        assert completion.agent_session_id == "sess-1"

    @pytest.mark.asyncio
    async def test_legacy_cost_field_and_unknown_subtype(self):
        handlers, events, _ = _recording_handlers()
        d = StreamDispatcher(handlers)
        await d.feed(_line({
            "type": "result",
            "subtype": "error_during_execution",
            "is_error": True,
            "cost_usd": 0.5,
        }))
        assert events[0].status is CompletionStatus.ERROR
        assert events[0].cost_usd == 0.5

    @pytest.mark.asyncio
    async def test_result_without_subtype_is_not_success(self):
        handlers, events, errors = _recording_handlers()
        d = StreamDispatcher(handlers)
        await d.feed(_line({"type": "result", "is_error": True, "result": "boom"}))
        assert errors == []
        assert events[0].status is CompletionStatus.ERROR
        assert events[0].result_text == "boom"

    @pytest.mark.asyncio
    async def test_fractional_metrics_still_complete(self):
        handlers, events, errors = _recording_handlers()
        d = StreamDispatcher(handlers)
        await d.feed(_line({
            "type": "result",
            "subtype": "success",
            "duration_ms": 1234.5,
            "duration_api_ms": 999.4,
            "num_turns": 2.0,
        }))
        assert errors == []
        completion = events[0]
        assert completion.status is CompletionStatus.SUCCESS
        assert completion.duration_ms == 1234
        assert completion.duration_api_ms == 999
        assert completion.num_turns == 2

    @pytest.mark.asyncio
    async def test_max_turns_status(self):
        handlers, events, _ = _recording_handlers()
        d = StreamDispatcher(handlers)
        await d.feed(_line({"type": "result", "subtype": "error_max_turns", "is_error": True}))
        assert events[0].status is CompletionStatus.ERROR_MAX_TURNS

    @pytest.mark.asyncio
    async def test_legacy_flat_tool_messages(self):
        handlers, events, _ = _recording_handlers()
        d = StreamDispatcher(handlers)
        await d.feed(
            _line({"type": "tool_use", "tool_name": "Grep", "tool_input": {"pattern": "x"}, "id": "L1"})
            + _line({"type": "tool_result", "tool_name": "Grep", "tool_result": "3 matches", "tool_use_id": "L1"})
        )
        assert isinstance(events[0], ToolInvocationEvent)
        assert events[0].name == "Grep"
        assert events[0].input == {"pattern": "x"}
        assert isinstance(events[1], ToolOutcomeEvent)
        assert events[1].output == "3 matches"
        assert events[1].tool_name == "Grep"

    @pytest.mark.asyncio
    async def test_async_handlers_are_awaited(self):
        seen = []

        async def on_completion(event):
            seen.append(event.status)

        d = StreamDispatcher(EventHandlers(on_completion=on_completion))
        await d.feed(_line(RESULT))
        assert seen == [CompletionStatus.SUCCESS]

    @pytest.mark.asyncio
    async def test_unregistered_kinds_are_not_invoked(self):
        seen = []
        d = StreamDispatcher(EventHandlers(on_completion=seen.append))
        await d.feed(_line(INIT) + _line(MIXED_ASSISTANT) + _line(RESULT))
        assert len(seen) == 1
