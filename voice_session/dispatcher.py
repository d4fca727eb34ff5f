"""
dispatcher.py — Event Dispatcher
=================================
Single entry point for every transport event: `handle(event)`.

Routing
-------
  SpeechStarted / SpeechStopped     → speaker flag + speaker signal
  ResponseCreated / ResponseDone    → assistant speaking / stopped
  ItemCreated                       → synchronizer.register (duplicate = no-op);
                                      typed items complete immediately
  TranscriptDelta / Completed       → synchronizer (completed assistant text → guardrail review)
  ToolCallStart / ToolCallEnd       → breadcrumb, resolved against the latest call of that name
  AgentHandoff                      → handoff notification
  GuardrailTripped                  → guardrail.on_tripped
  Unknown                           → logged

`handle()` never raises: malformed events are dropped with a warning and a
failing handler is logged, so one bad event cannot stall the stream or
corrupt other items.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Optional, Union, get_args

from voice_session.errors import MalformedEventError
from voice_session.events import (
    AgentHandoff,
    GuardrailTripped,
    ItemCreated,
    ResponseCreated,
    ResponseDone,
    SpeechStarted,
    SpeechStopped,
    ToolCallEnd,
    ToolCallStart,
    TranscriptCompleted,
    TranscriptDelta,
    TransportEvent,
    Unknown,
    parse_event,
)
from voice_session.guardrail import GuardrailPipeline
from voice_session.models import Lifecycle, Role
from voice_session.transcript import INAUDIBLE_TEXT, TranscriptSynchronizer

log = logging.getLogger("voice_session.dispatcher")

_VARIANTS = get_args(TransportEvent)

# Raw realtime sessions never report tool results, so records are bounded
MAX_TOOL_CALLS = 64


@dataclass
class ToolCallRecord:
    name: str
    args: Any = None
    call_id: Optional[str] = None
    result: Any = None
    finished: bool = False


class EventDispatcher:

    def __init__(
        self,
        synchronizer: TranscriptSynchronizer,
        guardrail: GuardrailPipeline,
        *,
        on_speaker: Optional[Callable[[Role, bool], None]] = None,
        on_handoff: Optional[Callable[[str], None]] = None,
        on_breadcrumb: Optional[Callable[[str, Any], None]] = None,
    ) -> None:
        self._synchronizer = synchronizer
        self._guardrail = guardrail
        self._on_speaker = on_speaker
        self._on_handoff = on_handoff
        self._on_breadcrumb = on_breadcrumb

        self.speaker: Optional[Role] = None
        self.tool_calls: deque[ToolCallRecord] = deque(maxlen=MAX_TOOL_CALLS)
        self.dropped = 0

        guardrail.bind(self.handle)

    # -----------------------------------------------------------------------
    # Entry point
    # -----------------------------------------------------------------------

    def handle(self, event: Union[dict, TransportEvent]) -> None:
        if not isinstance(event, _VARIANTS):
            try:
                event = parse_event(event)
            except MalformedEventError as exc:
                self.dropped += 1
                log.warning("event=transport_event_dropped type=%s reason=%s", exc.event_type, exc.reason)
                return
        try:
            self._route(event)
        except Exception as exc:
            self.dropped += 1
            log.error("event=dispatch_error variant=%s error=%s", type(event).__name__, exc, exc_info=True)

    def reset(self) -> None:
        """Forget per-connection state: the speaker flag and tool call records."""
        self.speaker = None
        self.tool_calls.clear()

    def _route(self, event: TransportEvent) -> None:
        # ── Speaker signals ─────────────────────────────────────────────────
        if isinstance(event, SpeechStarted):
            self._set_speaker(event.role, True)
            return
        if isinstance(event, SpeechStopped):
            self._set_speaker(event.role, False)
            return
        if isinstance(event, ResponseCreated):
            log.debug("event=response_created response_id=%s", event.response_id)
            self._set_speaker(Role.ASSISTANT, True)
            return
        if isinstance(event, ResponseDone):
            log.debug("event=response_done response_id=%s", event.response_id)
            self._set_speaker(Role.ASSISTANT, False)
            return

        # ── Transcript ──────────────────────────────────────────────────────
        if isinstance(event, ItemCreated):
            if event.text is None:
                self._synchronizer.register(event.item_id, event.role)
            else:
                # Typed turns carry their final text; no transcription events follow
                self._on_completed(TranscriptCompleted(item_id=event.item_id, text=event.text, role=event.role))
            return
        if isinstance(event, TranscriptDelta):
            self._synchronizer.apply_delta(event)
            return
        if isinstance(event, TranscriptCompleted):
            self._on_completed(event)
            return

        # ── Tools and handoffs ──────────────────────────────────────────────
        if isinstance(event, ToolCallStart):
            self._on_tool_start(event)
            return
        if isinstance(event, ToolCallEnd):
            self._on_tool_end(event)
            return
        if isinstance(event, AgentHandoff):
            log.info("event=agent_handoff target=%s", event.target_name)
            if self._on_handoff is not None:
                self._on_handoff(event.target_name)
            return

        # ── Moderation ──────────────────────────────────────────────────────
        if isinstance(event, GuardrailTripped):
            self._guardrail.on_tripped(event.verdict)
            return

        # ── Everything else ─────────────────────────────────────────────────
        if isinstance(event, Unknown):
            if event.type == "error":
                error = event.raw.get("error") or {}
                log.warning("event=server_error code=%s message=%s", error.get("code"), error.get("message"))
            else:
                log.debug("event=transport_event_unhandled type=%s", event.type)
            return

        log.warning("event=transport_event_unrouted variant=%s", type(event).__name__)

    # -----------------------------------------------------------------------
    # Handlers
    # -----------------------------------------------------------------------

    def _set_speaker(self, role: Role, started: bool) -> None:
        if started:
            self.speaker = role
        elif self.speaker is role:
            self.speaker = None
        log.info("event=speech_%s role=%s", "started" if started else "stopped", role.value)
        if self._on_speaker is not None:
            self._on_speaker(role, started)

    def _on_completed(self, event: TranscriptCompleted) -> None:
        before = self._synchronizer.get(event.item_id)
        was_done = before is not None and before.lifecycle is Lifecycle.DONE
        self._synchronizer.apply_completed(event)
        entry = self._synchronizer.get(event.item_id)
        if (
            entry is not None
            and not was_done
            and entry.role is Role.ASSISTANT
            and entry.lifecycle is Lifecycle.DONE
            and entry.text != INAUDIBLE_TEXT
        ):
            self._guardrail.schedule_review(entry.item_id, entry.text)

    def _on_tool_start(self, event: ToolCallStart) -> None:
        self.tool_calls.append(ToolCallRecord(name=event.name, args=event.args, call_id=event.call_id))
        log.info("event=tool_call_start name=%s call_id=%s", event.name, event.call_id)
        self._breadcrumb(f"function call: {event.name}", event.args)

    def _on_tool_end(self, event: ToolCallEnd) -> None:
        record = self._latest_call(event.name, event.call_id)
        if record is None:
            log.warning("event=tool_call_end_unmatched name=%s call_id=%s", event.name, event.call_id)
        else:
            record.result = event.result
            record.finished = True
        log.info("event=tool_call_end name=%s call_id=%s", event.name, event.call_id)
        self._breadcrumb(f"function call result: {event.name}", event.result)

    def _latest_call(self, name: str, call_id: Optional[str]) -> Optional[ToolCallRecord]:
        """Most recent unfinished call of `name` (matching call_id when both carry one)."""
        for record in reversed(self.tool_calls):
            if record.name != name or record.finished:
                continue
            if call_id and record.call_id and record.call_id != call_id:
                continue
            return record
        return None

    def _breadcrumb(self, title: str, data: Any) -> None:
        if self._on_breadcrumb is not None:
            self._on_breadcrumb(title, data)
