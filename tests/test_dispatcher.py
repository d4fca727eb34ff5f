"""
Event Dispatcher tests

  Classification: wire dicts → tagged variants (parse_event)
  Routing:        speaker flag, transcript, tool breadcrumbs, handoffs, guardrail
  Robustness:     malformed and unknown events never raise out of handle()
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from voice_session.dispatcher import MAX_TOOL_CALLS, EventDispatcher
from voice_session.errors import MalformedEventError
from voice_session.events import (
    AgentHandoff,
    ItemCreated,
    ResponseCreated,
    SpeechStarted,
    ToolCallEnd,
    ToolCallStart,
    TranscriptCompleted,
    TranscriptDelta,
    Unknown,
    parse_event,
)
from voice_session.guardrail import GuardrailPipeline
from voice_session.models import GuardrailCategory, Lifecycle, Role
from voice_session.transcript import TranscriptSynchronizer


def _build(classifier=None, **callbacks):
    sync = TranscriptSynchronizer()
    guardrail = GuardrailPipeline(sync, classifier, timeout_ms=500)
    dispatcher = EventDispatcher(sync, guardrail, **callbacks)
    return dispatcher, sync, guardrail


class TestParseEvent:

    def test_item_created_message(self):
        event = parse_event({
            "type": "conversation.item.created",
            "item": {"id": "m1", "type": "message", "role": "user"},
        })
        assert event == ItemCreated("m1", Role.USER)

    def test_item_created_carries_typed_text(self):
        event = parse_event({
            "type": "conversation.item.created",
            "item": {
                "id": "t1",
                "type": "message",
                "role": "user",
                "content": [{"type": "input_text", "text": "what is "}, {"type": "input_text", "text": "my balance"}],
            },
        })
        assert event == ItemCreated("t1", Role.USER, "what is my balance")

    def test_audio_item_has_no_text(self):
        event = parse_event({
            "type": "conversation.item.created",
            "item": {"id": "m1", "type": "message", "role": "user", "content": [{"type": "input_audio", "transcript": None}]},
        })
        assert event.text is None

    def test_function_call_item_is_unknown(self):
        event = parse_event({
            "type": "conversation.item.created",
            "item": {"id": "f1", "type": "function_call", "name": "lookup"},
        })
        assert isinstance(event, Unknown)

    def test_assistant_and_user_transcripts(self):
        assert parse_event({"type": "response.audio_transcript.delta", "item_id": "a1", "delta": "Hi"}) == \
            TranscriptDelta("a1", "Hi", Role.ASSISTANT)
        assert parse_event({
            "type": "conversation.item.input_audio_transcription.completed",
            "item_id": "u1",
            "transcript": "",
        }) == TranscriptCompleted("u1", "", Role.USER)

    def test_transfer_call_becomes_handoff(self):
        event = parse_event({
            "type": "response.function_call_arguments.done",
            "name": "transfer_to_billing",
            "arguments": "{}",
        })
        assert event == AgentHandoff("billing")

    def test_function_call_arguments_decoded(self):
        event = parse_event({
            "type": "response.function_call_arguments.done",
            "name": "lookup_order",
            "arguments": '{"order_id": "42"}',
            "call_id": "c1",
        })
        assert event == ToolCallStart("lookup_order", {"order_id": "42"}, "c1")

    def test_agent_handoff_reads_last_history_item(self):
        event = parse_event({
            "type": "agent_handoff",
            "context": {"history": [{"name": "lookup"}, {"name": "transfer_to_returns"}]},
        })
        assert event == AgentHandoff("returns")

    def test_response_created(self):
        assert parse_event({"type": "response.created", "response": {"id": "r1"}}) == ResponseCreated("r1")

    def test_missing_item_id_is_malformed(self):
        with pytest.raises(MalformedEventError):
            parse_event({"type": "response.audio_transcript.delta", "delta": "Hi"})

    def test_missing_type_is_malformed(self):
        with pytest.raises(MalformedEventError):
            parse_event({"item_id": "x"})

    def test_unrecognised_type_is_unknown(self):
        event = parse_event({"type": "rate_limits.updated"})
        assert isinstance(event, Unknown)
        assert event.type == "rate_limits.updated"


class TestRouting:

    def test_wire_events_build_transcript(self):
        dispatcher, sync, _ = _build()
        dispatcher.handle({"type": "conversation.item.created", "item": {"id": "m1", "type": "message", "role": "user"}})
        dispatcher.handle({"type": "conversation.item.input_audio_transcription.delta", "item_id": "m1", "delta": "Hel"})
        dispatcher.handle({"type": "conversation.item.input_audio_transcription.delta", "item_id": "m1", "delta": "lo"})
        dispatcher.handle({"type": "conversation.item.input_audio_transcription.completed", "item_id": "m1", "transcript": "Hello"})

        entry = sync.get("m1")
        assert entry.text == "Hello"
        assert entry.lifecycle is Lifecycle.DONE

    def test_speaker_flag(self):
        signals = []
        dispatcher, _, _ = _build(on_speaker=lambda role, started: signals.append((role, started)))

        dispatcher.handle(SpeechStarted(Role.USER))
        assert dispatcher.speaker is Role.USER
        dispatcher.handle({"type": "input_audio_buffer.speech_stopped"})
        assert dispatcher.speaker is None
        dispatcher.handle({"type": "response.created"})
        assert dispatcher.speaker is Role.ASSISTANT
        dispatcher.handle({"type": "response.done"})
        assert dispatcher.speaker is None

        assert signals == [
            (Role.USER, True), (Role.USER, False),
            (Role.ASSISTANT, True), (Role.ASSISTANT, False),
        ]

    def test_tool_calls_are_breadcrumbs_not_transcript(self):
        crumbs = []
        dispatcher, sync, _ = _build(on_breadcrumb=lambda title, data: crumbs.append((title, data)))

        dispatcher.handle(ToolCallStart("lookup", {"q": "a"}))
        dispatcher.handle(ToolCallStart("lookup", {"q": "b"}))
        dispatcher.handle(ToolCallEnd("lookup", {"found": True}))

        assert len(sync) == 0
        assert crumbs[-1] == ("function call result: lookup", {"found": True})
        first, second = dispatcher.tool_calls
        assert second.finished and second.result == {"found": True}
        assert not first.finished

    def test_tool_end_matches_call_id(self):
        dispatcher, _, _ = _build()
        dispatcher.handle(ToolCallStart("lookup", {}, call_id="c1"))
        dispatcher.handle(ToolCallStart("lookup", {}, call_id="c2"))
        dispatcher.handle(ToolCallEnd("lookup", "ok", call_id="c1"))
        assert [c.finished for c in dispatcher.tool_calls] == [True, False]

    def test_tool_call_records_bounded(self):
        dispatcher, _, _ = _build()
        for n in range(MAX_TOOL_CALLS + 5):
            dispatcher.handle(ToolCallStart("lookup", {"n": n}))
        assert len(dispatcher.tool_calls) == MAX_TOOL_CALLS
        assert dispatcher.tool_calls[0].args == {"n": 5}

    def test_typed_item_completes_on_creation(self):
        dispatcher, sync, _ = _build()
        dispatcher.handle({"type": "conversation.item.created", "item": {
            "id": "t1", "type": "message", "role": "user",
            "content": [{"type": "input_text", "text": "hello there"}],
        }})
        entry = sync.get("t1")
        assert (entry.text, entry.lifecycle) == ("hello there", Lifecycle.DONE)

        dispatcher.handle({"type": "conversation.item.input_audio_transcription.delta", "item_id": "t1", "delta": "x"})
        assert sync.get("t1").text == "hello there"

    def test_handoff_notifies_without_touching_transcript(self):
        targets = []
        dispatcher, sync, _ = _build(on_handoff=targets.append)
        dispatcher.handle({"type": "response.function_call_arguments.done", "name": "transfer_to_support"})
        assert targets == ["support"]
        assert len(sync) == 0

    def test_guardrail_tripped_attaches_to_latest_assistant(self):
        dispatcher, sync, _ = _build()
        sync.register("a", Role.USER)
        sync.register("b", Role.ASSISTANT)
        sync.register("c", Role.ASSISTANT)
        dispatcher.handle({
            "type": "guardrail_tripped",
            "verdict": {"tripwireTriggered": True, "category": "OFF_BRAND", "rationale": "mentions a rival"},
        })
        assert sync.get("c").guardrail.category is GuardrailCategory.OFF_BRAND
        assert sync.get("b").guardrail is None


class TestRobustness:

    def test_malformed_event_dropped(self):
        dispatcher, sync, _ = _build()
        dispatcher.handle({"type": "response.audio_transcript.delta", "delta": "orphan"})
        dispatcher.handle("not even a dict")
        assert dispatcher.dropped == 2
        assert len(sync) == 0

    def test_unknown_and_error_events_do_not_raise(self):
        dispatcher, _, _ = _build()
        dispatcher.handle({"type": "session.updated", "session": {}})
        dispatcher.handle({"type": "error", "error": {"code": "bad", "message": "nope"}})
        assert dispatcher.dropped == 0

    def test_failing_callback_is_contained(self):
        def explode(role, started):
            raise RuntimeError("ui gone")

        dispatcher, sync, _ = _build(on_speaker=explode)
        dispatcher.handle({"type": "input_audio_buffer.speech_started"})
        dispatcher.handle({"type": "conversation.item.created", "item": {"id": "m1", "type": "message", "role": "user"}})
        assert "m1" in sync
        assert dispatcher.dropped == 1


class TestGuardrailReview:

    @pytest.mark.asyncio
    async def test_completed_assistant_message_reviewed(self):
        classifier = AsyncMock()
        classifier.classify.return_value = {
            "tripwireTriggered": True, "category": "OFFENSIVE", "rationale": "insult",
        }
        dispatcher, sync, guardrail = _build(classifier)
        dispatcher.handle(ItemCreated("a1", Role.ASSISTANT))
        dispatcher.handle(TranscriptCompleted("a1", "you fool", Role.ASSISTANT))
        await asyncio.sleep(0.05)

        classifier.classify.assert_awaited_once_with("you fool")
        result = sync.get("a1").guardrail
        assert result.tripwire_triggered
        assert result.category is GuardrailCategory.OFFENSIVE
        assert result.evidence_text == "you fool"
        assert sync.get("a1").text == "you fool"
        await guardrail.aclose()

    @pytest.mark.asyncio
    async def test_user_messages_and_repeats_not_reviewed(self):
        classifier = AsyncMock()
        classifier.classify.return_value = {"tripwireTriggered": False, "category": "NONE", "rationale": "fine"}
        dispatcher, _, guardrail = _build(classifier)
        dispatcher.handle(TranscriptCompleted("u1", "hello", Role.USER))
        dispatcher.handle(TranscriptCompleted("a1", "hi there", Role.ASSISTANT))
        dispatcher.handle(TranscriptCompleted("a1", "hi there", Role.ASSISTANT))
        await asyncio.sleep(0.05)

        assert classifier.classify.await_count == 1
        await guardrail.aclose()
