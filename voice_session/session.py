"""
session.py — Session Lifecycle Manager
=======================================
Owns the one live realtime session: credential fetch, audio sink, transport,
dispatcher registration, turn-detection binding, greeting, feature loops and
teardown.  The manager is the only writer of `Session.status`:

    DISCONNECTED → CONNECTING → CONNECTED → DISCONNECTED
                   CONNECTING → DISCONNECTED              (failure / abort)

The transcript (synchronizer), guardrail pipeline and dispatcher outlive a
single connection, so a reconnect keeps every entry seen so far.

Background tasks while CONNECTED
--------------------------------
  greeting        one-shot, greeting_delay_sec after CONNECTED
  stall monitor   warns when the loop blocks longer than stall_warn_ms
  features        one extractor per audio source (remote playback, local mic)
  reconnect       only after an unexpected transport close
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Callable, Optional

import numpy as np

from voice_session.audio_features import AudioFeatureExtractor, AudioFeatureFrame, activity_level
from voice_session.config import VoiceSessionConfig
from voice_session.credentials import CredentialSource
from voice_session.dispatcher import EventDispatcher
from voice_session.errors import CredentialError, PersistenceError, SessionConnectError
from voice_session.guardrail import GuardrailClassifier, GuardrailPipeline
from voice_session.models import Role, TranscriptEntry
from voice_session.persistence import MessageStore
from voice_session.transcript import TranscriptSynchronizer
from voice_session.transport import AudioSink, RealtimeTransport
from voice_session.turn_detection import TurnDetectionController, TurnDetectionMode

log = logging.getLogger("voice_session.session")


class SessionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class VoiceMode(str, Enum):
    ACTIVE = "voice_active"
    INACTIVE = "inactive"


_ALLOWED = {
    SessionStatus.DISCONNECTED: {SessionStatus.CONNECTING},
    SessionStatus.CONNECTING: {SessionStatus.CONNECTED, SessionStatus.DISCONNECTED},
    SessionStatus.CONNECTED: {SessionStatus.DISCONNECTED},
}


@dataclass
class Session:
    status: SessionStatus = SessionStatus.DISCONNECTED
    mode: VoiceMode = VoiceMode.INACTIVE
    turn_detection: TurnDetectionMode = TurnDetectionMode.VAD
    transport_handle: Optional[RealtimeTransport] = None


TransportFactory = Callable[[str, AudioSink], RealtimeTransport]
AudioSinkFactory = Callable[[], AudioSink]
MicrophoneFactory = Callable[[], AsyncIterator[np.ndarray]]


class _ConnectAborted(Exception):
    """disconnect() was requested while connect() was suspended."""


class SessionLifecycleManager:

    def __init__(
        self,
        config: VoiceSessionConfig,
        credentials: CredentialSource,
        transport_factory: TransportFactory,
        audio_sink_factory: AudioSinkFactory,
        *,
        store: Optional[MessageStore] = None,
        classifier: Optional[GuardrailClassifier] = None,
        microphone_factory: Optional[MicrophoneFactory] = None,
        on_transcript: Optional[Callable[[TranscriptEntry], None]] = None,
        on_speaker: Optional[Callable[[Role, bool], None]] = None,
        on_handoff: Optional[Callable[[str], None]] = None,
        on_breadcrumb: Optional[Callable[[str, Any], None]] = None,
        on_frame: Optional[Callable[[AudioFeatureFrame], None]] = None,
    ) -> None:
        self.config = config
        self._credentials = credentials
        self._transport_factory = transport_factory
        self._sink_factory = audio_sink_factory
        self._microphone_factory = microphone_factory
        self._store = store
        self._on_frame = on_frame

        self.session = Session(turn_detection=(
            TurnDetectionMode.PTT if config.turn_detection.push_to_talk else TurnDetectionMode.VAD
        ))
        self.synchronizer = TranscriptSynchronizer(store, on_update=on_transcript)
        self.guardrail = GuardrailPipeline(
            self.synchronizer,
            classifier if config.guardrail.enabled else None,
            timeout_ms=config.guardrail.timeout_ms,
        )
        self.turn_detection = TurnDetectionController(config.turn_detection)
        self.dispatcher = EventDispatcher(
            self.synchronizer,
            self.guardrail,
            on_speaker=on_speaker,
            on_handoff=on_handoff,
            on_breadcrumb=on_breadcrumb,
        )

        self.local_frame: Optional[AudioFeatureFrame] = None
        self.remote_frame: Optional[AudioFeatureFrame] = None

        self._transport: Optional[RealtimeTransport] = None
        self._sink: Optional[AudioSink] = None
        self._abort_connect = False
        self._status_listeners: list[Callable[[SessionStatus], None]] = []

        self._greeting_task: Optional[asyncio.Task] = None
        self._stall_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._feature_tasks: list[asyncio.Task] = []
        self.reconnect_attempt = 0

    # -----------------------------------------------------------------------
    # Status
    # -----------------------------------------------------------------------

    @property
    def status(self) -> SessionStatus:
        return self.session.status

    @property
    def voice_mode_enabled(self) -> bool:
        return self.session.mode is VoiceMode.ACTIVE

    def add_status_listener(self, listener: Callable[[SessionStatus], None]) -> None:
        self._status_listeners.append(listener)

    def remove_status_listener(self, listener: Callable[[SessionStatus], None]) -> None:
        if listener in self._status_listeners:
            self._status_listeners.remove(listener)

    def _set_status(self, status: SessionStatus) -> None:
        current = self.session.status
        if status is current:
            return
        if status not in _ALLOWED[current]:
            raise RuntimeError(f"illegal session transition {current.value} → {status.value}")
        self.session.status = status
        log.info("event=session_status from=%s to=%s", current.value, status.value)
        for listener in list(self._status_listeners):
            try:
                listener(status)
            except Exception as exc:
                log.warning("event=status_listener_error error=%s", exc)

    def snapshot(self) -> dict:
        return {
            "status": self.session.status.value,
            "voice_mode": self.session.mode.value,
            "turn_detection": self.session.turn_detection.value,
            "speaker": self.dispatcher.speaker.value if self.dispatcher.speaker else None,
            "ptt_user_speaking": self.turn_detection.user_speaking,
            "reconnect_attempt": self.reconnect_attempt,
            "transcript_entries": len(self.synchronizer),
            "guardrail_enabled": self.guardrail.enabled,
        }

    # -----------------------------------------------------------------------
    # Connect
    # -----------------------------------------------------------------------

    async def connect(self) -> None:
        if self.session.status is SessionStatus.CONNECTING:
            # a disconnect() that raced this connect is withdrawn
            self._abort_connect = False
        if self.session.status is not SessionStatus.DISCONNECTED:
            log.debug("event=connect_ignored status=%s", self.session.status.value)
            return

        self._abort_connect = False
        self._set_status(SessionStatus.CONNECTING)
        started = time.monotonic()
        sink: Optional[AudioSink] = None
        transport: Optional[RealtimeTransport] = None
        try:
            credential = await self._credentials.fetch()
            if not credential:
                raise CredentialError("credential collaborator returned no ephemeral key")
            self._check_abort()

            sink = self._sink_factory()
            sink.open()
            transport = self._transport_factory(credential, sink)

            await self._replay()
            self._check_abort()

            transport.set_event_sink(self.dispatcher.handle)
            transport.set_close_callback(self._on_transport_closed)
            await transport.connect()
            self._check_abort()
        except _ConnectAborted:
            log.info("event=connect_aborted")
            await self._release(transport, sink)
            self._set_status(SessionStatus.DISCONNECTED)
            return
        except SessionConnectError as exc:
            log.error("event=connect_failed error=%s", exc)
            await self._release(transport, sink)
            self._set_status(SessionStatus.DISCONNECTED)
            raise
        except asyncio.CancelledError:
            await self._release(transport, sink)
            self._set_status(SessionStatus.DISCONNECTED)
            raise
        except Exception as exc:
            log.error("event=connect_failed error=%s", exc, exc_info=True)
            await self._release(transport, sink)
            self._set_status(SessionStatus.DISCONNECTED)
            raise SessionConnectError(f"connect failed: {exc}") from exc

        self._transport = transport
        self._sink = sink
        self.session.transport_handle = transport
        self._set_status(SessionStatus.CONNECTED)
        log.info("event=session_connected connect_ms=%.0f", (time.monotonic() - started) * 1000.0)

        self.turn_detection.bind(transport.send_event)
        self._schedule_greeting()
        self._stall_task = asyncio.create_task(self._stall_monitor(), name="stall_monitor")
        self._start_features(transport, sink)

    def _check_abort(self) -> None:
        if self._abort_connect:
            raise _ConnectAborted()

    async def _replay(self) -> None:
        thread_id = self.config.persistence.thread_id
        if self._store is None or not thread_id:
            return
        try:
            messages = await self._store.list_messages(thread_id)
        except Exception as exc:
            # The live conversation proceeds without history
            log.warning("event=replay_failed thread_id=%s error=%s", thread_id, exc)
            return
        self.synchronizer.replay(messages)

    async def _release(self, transport: Optional[RealtimeTransport], sink: Optional[AudioSink]) -> None:
        if transport is not None:
            transport.set_event_sink(None)
            transport.set_close_callback(None)
            try:
                await transport.close()
            except Exception as exc:
                log.warning("event=transport_release_error error=%s", exc)
        if sink is not None:
            try:
                sink.close()
            except Exception as exc:
                log.warning("event=sink_release_error error=%s", exc)

    # -----------------------------------------------------------------------
    # Disconnect
    # -----------------------------------------------------------------------

    async def disconnect(self) -> None:
        """Idempotent.  While CONNECTING the pending connect() is aborted."""
        self._cancel_task(self._reconnect_task)
        self._reconnect_task = None
        self.reconnect_attempt = 0
        if self.session.status is SessionStatus.CONNECTING:
            log.info("event=disconnect_requested status=connecting")
            self._abort_connect = True
            return
        await self._teardown("requested")

    async def _teardown(self, reason: str) -> None:
        if self.session.status is SessionStatus.DISCONNECTED and self._transport is None:
            return
        log.info("event=session_teardown reason=%s", reason)

        tasks = [self._greeting_task, self._stall_task, *self._feature_tasks]
        self._greeting_task = None
        self._stall_task = None
        self._feature_tasks = []
        for task in tasks:
            self._cancel_task(task)
        live = [t for t in tasks if t is not None]
        if live:
            await asyncio.gather(*live, return_exceptions=True)

        self.turn_detection.unbind()
        transport, self._transport = self._transport, None
        sink, self._sink = self._sink, None
        await self._release(transport, sink)
        self.session.transport_handle = None
        self.dispatcher.reset()
        self.local_frame = None
        self.remote_frame = None
        self._set_status(SessionStatus.DISCONNECTED)
        await self.synchronizer.drain()

    async def aclose(self) -> None:
        self.session.mode = VoiceMode.INACTIVE
        await self.disconnect()
        await self.guardrail.aclose()
        await self.synchronizer.drain()

    # -----------------------------------------------------------------------
    # Voice mode
    # -----------------------------------------------------------------------

    async def toggle_mode(self, enabled: bool) -> None:
        self.session.mode = VoiceMode.ACTIVE if enabled else VoiceMode.INACTIVE
        log.info("event=voice_mode enabled=%s status=%s", enabled, self.session.status.value)
        if enabled:
            await self.connect()
        else:
            await self.disconnect()

    def reconfigure(self, config: VoiceSessionConfig) -> None:
        """Adopt a new config.  Turn detection and guardrail timeout apply
        immediately; realtime and audio-feature settings on the next connect."""
        self.config = config
        self.turn_detection.reconfigure(config.turn_detection)
        self.guardrail.timeout_ms = config.guardrail.timeout_ms
        log.info("event=session_reconfigured status=%s", self.session.status.value)

    def set_turn_detection(self, mode: TurnDetectionMode) -> None:
        self.turn_detection.set_mode(mode)
        self.session.turn_detection = self.turn_detection.mode

    # -----------------------------------------------------------------------
    # Live-session commands
    # -----------------------------------------------------------------------

    def send_event(self, event: dict) -> bool:
        if self._transport is None or self.session.status is not SessionStatus.CONNECTED:
            log.warning("event=send_event_dropped reason=not_connected type=%s", event.get("type"))
            return False
        self._transport.send_event(event)
        return True

    async def send_user_text(self, text: str) -> bool:
        """Voice mode: a user item + response.create.  Text mode: persist only."""
        if self.session.status is SessionStatus.CONNECTED:
            sent = self.send_event(_user_message(text))
            return sent and self.send_event({"type": "response.create"})

        thread_id = self.config.persistence.thread_id
        if self._store is None or not thread_id:
            log.warning("event=text_message_dropped reason=no_thread")
            return False
        try:
            await self._store.create(thread_id, Role.USER, text)
        except PersistenceError as exc:
            log.error("event=text_message_persist_failed thread_id=%s error=%s", thread_id, exc)
            return False
        log.info("event=text_message_persisted thread_id=%s len=%d", thread_id, len(text))
        return True

    def interrupt(self) -> bool:
        """Cancel the in-flight response and flush queued playback."""
        if not self.send_event({"type": "response.cancel"}):
            return False
        if self._sink is not None:
            self._sink.clear()
        log.info("event=interrupt")
        return True

    def mute(self, muted: bool) -> bool:
        if self._sink is None:
            log.debug("event=mute_ignored reason=no_sink")
            return False
        self._sink.mute(muted)
        return True

    def ptt_start(self) -> bool:
        return self.turn_detection.start()

    def ptt_end(self) -> bool:
        return self.turn_detection.end()

    # -----------------------------------------------------------------------
    # Greeting
    # -----------------------------------------------------------------------

    def _schedule_greeting(self) -> None:
        text = self.config.session.greeting_text
        if not text:
            return
        self._greeting_task = asyncio.create_task(self._greet(text), name="greeting")

    async def _greet(self, text: str) -> None:
        await asyncio.sleep(self.config.session.greeting_delay_sec)
        item_id = "greeting_" + uuid.uuid4().hex[:20]
        self.synchronizer.hide(item_id)
        if self.send_event(_user_message(text, item_id)):
            self.send_event({"type": "response.create"})
            log.info("event=greeting_sent")

    # -----------------------------------------------------------------------
    # Audio features
    # -----------------------------------------------------------------------

    def _start_features(self, transport: RealtimeTransport, sink: AudioSink) -> None:
        cfg = self.config.audio_features
        remote = AudioFeatureExtractor("remote", cfg, on_frame=self._frame)
        self._feature_tasks.append(
            asyncio.create_task(self._run_features(remote, sink.stream()), name="features_remote")
        )
        if self._microphone_factory is not None:
            local = AudioFeatureExtractor("local", cfg, on_frame=self._frame)
            self._feature_tasks.append(
                asyncio.create_task(
                    self._run_features(local, self._microphone_factory(), transport.append_audio),
                    name="features_local",
                )
            )

    async def _run_features(
        self,
        extractor: AudioFeatureExtractor,
        stream: AsyncIterator[np.ndarray],
        forward: Optional[Callable[[np.ndarray], None]] = None,
    ) -> None:
        try:
            await extractor.consume(stream, forward)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.error("event=feature_stream_failed source=%s error=%s", extractor.source, exc)

    def _frame(self, frame: AudioFeatureFrame) -> None:
        if frame.source == "local":
            self.local_frame = frame
        else:
            self.remote_frame = frame
        if self._on_frame is not None:
            self._on_frame(frame)

    def activity_level(self) -> float:
        return activity_level(self.dispatcher.speaker, self.local_frame, self.remote_frame)

    # -----------------------------------------------------------------------
    # Unexpected close → reconnect
    # -----------------------------------------------------------------------

    def _on_transport_closed(self) -> None:
        if self.session.status is not SessionStatus.CONNECTED:
            return
        log.warning("event=transport_dropped voice_mode=%s", self.voice_mode_enabled)
        self._cancel_task(self._reconnect_task)
        self._reconnect_task = asyncio.get_running_loop().create_task(self._recover(), name="reconnect")

    async def _recover(self) -> None:
        await self._teardown("transport_closed")
        attempts = self.config.session.reconnect_attempts
        while self.voice_mode_enabled and self.reconnect_attempt < attempts:
            await asyncio.sleep(self.config.session.reconnect_delay_sec)
            if not self.voice_mode_enabled or self.session.status is not SessionStatus.DISCONNECTED:
                break
            self.reconnect_attempt += 1
            log.info("event=reconnect_attempt attempt=%d max=%d", self.reconnect_attempt, attempts)
            try:
                await self.connect()
            except SessionConnectError as exc:
                log.warning("event=reconnect_failed attempt=%d error=%s", self.reconnect_attempt, exc)
                continue
            if self.session.status is SessionStatus.CONNECTED:
                self.reconnect_attempt = 0
                log.info("event=reconnected")
                return
        if self.voice_mode_enabled and self.reconnect_attempt >= attempts:
            log.error("event=reconnect_exhausted attempts=%d", attempts)

    # -----------------------------------------------------------------------
    # Event-loop health
    # -----------------------------------------------------------------------

    async def _stall_monitor(self) -> None:
        """Log a warning whenever the event loop blocks longer than stall_warn_ms."""
        tick_ms = 100.0
        warn_ms = self.config.session.stall_warn_ms
        prev = time.perf_counter() * 1000.0
        while True:
            await asyncio.sleep(tick_ms / 1000.0)
            now = time.perf_counter() * 1000.0
            drift = now - prev - tick_ms
            if drift > warn_ms:
                log.warning("event=event_loop_stall stall_ms=%.1f", drift)
            prev = now

    @staticmethod
    def _cancel_task(task: Optional[asyncio.Task]) -> None:
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()


def _user_message(text: str, item_id: Optional[str] = None) -> dict:
    item = {
        "type": "message",
        "role": "user",
        "content": [{"type": "input_text", "text": text}],
    }
    if item_id is not None:
        item["id"] = item_id
    return {"type": "conversation.item.create", "item": item}
