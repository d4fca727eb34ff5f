"""
events.py — transport event tagged union
=========================================
Every realtime wire event is classified into exactly one of the variants
below by `parse_event`.  Variants are frozen dataclasses; the dispatcher
matches on their class.  Unrecognised `type` strings become `Unknown` so
newer server event types never break the session.

Wire mapping
------------
  input_audio_buffer.speech_started / .speech_stopped   → SpeechStarted / SpeechStopped (user)
  conversation.item.created  (item.type == "message")   → ItemCreated (typed text carried when present)
  response.audio_transcript.delta                       → TranscriptDelta (assistant)
  conversation.item.input_audio_transcription.delta     → TranscriptDelta (user)
  response.audio_transcript.done                        → TranscriptCompleted (assistant)
  conversation.item.input_audio_transcription.completed → TranscriptCompleted (user)
  response.function_call_arguments.done                 → ToolCallStart, or AgentHandoff for transfer_to_*
  agent_tool_start / agent_tool_end / agent_handoff     → client runtime events
  guardrail_tripped                                     → GuardrailTripped
  response.created / response.done                      → ResponseCreated / ResponseDone
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from voice_session.errors import MalformedEventError
from voice_session.models import Role

HANDOFF_PREFIX = "transfer_to_"


@dataclass(frozen=True)
class SpeechStarted:
    role: Role


@dataclass(frozen=True)
class SpeechStopped:
    role: Role


@dataclass(frozen=True)
class ItemCreated:
    item_id: str
    role: Role
    # Typed content (input_text / text parts); None for audio-only items
    text: Optional[str] = None


@dataclass(frozen=True)
class TranscriptDelta:
    item_id: str
    text: str
    role: Optional[Role] = None


@dataclass(frozen=True)
class TranscriptCompleted:
    item_id: str
    text: str
    role: Optional[Role] = None


@dataclass(frozen=True)
class ToolCallStart:
    name: str
    args: Any = None
    call_id: Optional[str] = None


@dataclass(frozen=True)
class ToolCallEnd:
    name: str
    result: Any = None
    call_id: Optional[str] = None


@dataclass(frozen=True)
class AgentHandoff:
    target_name: str


@dataclass(frozen=True)
class GuardrailTripped:
    verdict: dict


@dataclass(frozen=True)
class ResponseCreated:
    response_id: Optional[str] = None


@dataclass(frozen=True)
class ResponseDone:
    response_id: Optional[str] = None


@dataclass(frozen=True)
class Unknown:
    raw: dict = field(default_factory=dict)

    @property
    def type(self) -> str:
        return str(self.raw.get("type", "<missing>"))


TransportEvent = Union[
    SpeechStarted, SpeechStopped, ItemCreated, TranscriptDelta, TranscriptCompleted,
    ToolCallStart, ToolCallEnd, AgentHandoff, GuardrailTripped,
    ResponseCreated, ResponseDone, Unknown,
]


# ---------------------------------------------------------------------------
# Field helpers
# ---------------------------------------------------------------------------

def _require_str(raw: dict, key: str, event_type: str, *, allow_empty: bool = False) -> str:
    value = raw.get(key)
    if not isinstance(value, str):
        raise MalformedEventError(event_type, f"missing string field '{key}'")
    if not allow_empty and not value:
        raise MalformedEventError(event_type, f"empty field '{key}'")
    return value


def _optional_str(raw: dict, key: str) -> Optional[str]:
    value = raw.get(key)
    return value if isinstance(value, str) and value else None


def _item_text(item: dict) -> Optional[str]:
    """Joined text of input_text / text content parts, or None when there are none."""
    content = item.get("content")
    if not isinstance(content, list):
        return None
    parts = [
        part["text"] for part in content
        if isinstance(part, dict)
        and part.get("type") in ("input_text", "text")
        and isinstance(part.get("text"), str)
    ]
    return "".join(parts) if parts else None


def _response_id(raw: dict) -> Optional[str]:
    response = raw.get("response")
    if isinstance(response, dict):
        return _optional_str(response, "id")
    return _optional_str(raw, "response_id")


def parse_handoff_target(name: str) -> Optional[str]:
    """'transfer_to_billing' → 'billing'; None when the name is not a handoff."""
    if not name.startswith(HANDOFF_PREFIX):
        return None
    target = name[len(HANDOFF_PREFIX):]
    return target or None


def _handoff_from_history(raw: dict, event_type: str) -> AgentHandoff:
    """agent_handoff carries the triggering message: the last history entry's name."""
    target = _optional_str(raw, "target_name") or _optional_str(raw, "agent_name")
    if target:
        return AgentHandoff(target_name=target)
    context = raw.get("context")
    history = context.get("history") if isinstance(context, dict) else raw.get("history")
    if not isinstance(history, list) or not history:
        raise MalformedEventError(event_type, "no history to read the handoff target from")
    last = history[-1]
    name = last.get("name") if isinstance(last, dict) else None
    target = parse_handoff_target(name) if isinstance(name, str) else None
    if not target:
        raise MalformedEventError(event_type, f"last history item is not a transfer call: {name!r}")
    return AgentHandoff(target_name=target)


def _decode_arguments(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return value
    return value


# ---------------------------------------------------------------------------
# Classifier
# ---------------------------------------------------------------------------

def parse_event(raw: Any) -> TransportEvent:
    """Classify one raw wire event.

    Raises MalformedEventError when a recognised event type is missing a
    required field.  Unrecognised types are returned as Unknown.
    """
    if not isinstance(raw, dict):
        raise MalformedEventError("<none>", f"event must be an object, got {type(raw).__name__}")
    event_type = raw.get("type")
    if not isinstance(event_type, str) or not event_type:
        raise MalformedEventError("<none>", "missing 'type' discriminator")

    if event_type == "input_audio_buffer.speech_started":
        return SpeechStarted(role=Role.USER)
    if event_type == "input_audio_buffer.speech_stopped":
        return SpeechStopped(role=Role.USER)

    if event_type == "conversation.item.created":
        item = raw.get("item")
        if not isinstance(item, dict):
            raise MalformedEventError(event_type, "missing 'item'")
        if item.get("type", "message") != "message":
            # function_call / function_call_output items are not transcript messages
            return Unknown(raw=raw)
        item_id = _require_str(item, "id", event_type)
        try:
            role = Role.parse(item.get("role"))
        except ValueError:
            # system items are not part of the visible transcript
            return Unknown(raw=raw)
        return ItemCreated(item_id=item_id, role=role, text=_item_text(item))

    if event_type in ("response.audio_transcript.delta", "response.output_audio_transcript.delta"):
        return TranscriptDelta(
            item_id=_require_str(raw, "item_id", event_type),
            text=_require_str(raw, "delta", event_type, allow_empty=True),
            role=Role.ASSISTANT,
        )
    if event_type == "conversation.item.input_audio_transcription.delta":
        return TranscriptDelta(
            item_id=_require_str(raw, "item_id", event_type),
            text=_require_str(raw, "delta", event_type, allow_empty=True),
            role=Role.USER,
        )
    if event_type in ("response.audio_transcript.done", "response.output_audio_transcript.done"):
        return TranscriptCompleted(
            item_id=_require_str(raw, "item_id", event_type),
            text=_require_str(raw, "transcript", event_type, allow_empty=True),
            role=Role.ASSISTANT,
        )
    if event_type == "conversation.item.input_audio_transcription.completed":
        return TranscriptCompleted(
            item_id=_require_str(raw, "item_id", event_type),
            text=_require_str(raw, "transcript", event_type, allow_empty=True),
            role=Role.USER,
        )

    if event_type == "response.function_call_arguments.done":
        name = _require_str(raw, "name", event_type)
        target = parse_handoff_target(name)
        if target:
            return AgentHandoff(target_name=target)
        return ToolCallStart(
            name=name,
            args=_decode_arguments(raw.get("arguments")),
            call_id=_optional_str(raw, "call_id"),
        )
    if event_type == "agent_tool_start":
        return ToolCallStart(
            name=_require_str(raw, "name", event_type),
            args=_decode_arguments(raw.get("args", raw.get("arguments"))),
            call_id=_optional_str(raw, "call_id"),
        )
    if event_type == "agent_tool_end":
        return ToolCallEnd(
            name=_require_str(raw, "name", event_type),
            result=raw.get("result"),
            call_id=_optional_str(raw, "call_id"),
        )
    if event_type == "agent_handoff":
        return _handoff_from_history(raw, event_type)

    if event_type == "guardrail_tripped":
        verdict = raw.get("verdict")
        if not isinstance(verdict, dict):
            raise MalformedEventError(event_type, "missing 'verdict' object")
        return GuardrailTripped(verdict=verdict)

    if event_type == "response.created":
        return ResponseCreated(response_id=_response_id(raw))
    if event_type == "response.done":
        return ResponseDone(response_id=_response_id(raw))

    return Unknown(raw=raw)
