"""
transport.py — realtime websocket transport
============================================
One websocket per session.  Outbound events are queued and written by a
single writer task so callers never block on the socket (`send_event` is
fire-and-forget).  Inbound events are decoded by a single reader task and
handed, in delivery order, to the registered event sink.

Audio deltas (base64 PCM16) are routed straight to the audio sink and never
reach the event sink.

Handshake = websocket open + `session.created` within handshake_timeout_sec.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
from typing import AsyncIterator, Callable, Optional, Protocol

import numpy as np
import websockets

from voice_session.config import RealtimeConfig
from voice_session.errors import HandshakeError

log = logging.getLogger("voice_session.transport")

AUDIO_DELTA_TYPES = frozenset({"response.audio.delta", "response.output_audio.delta"})


class AudioSink(Protocol):
    """Playback side of the session (remote audio)."""

    def open(self) -> None: ...

    def write(self, samples: np.ndarray) -> None: ...

    def clear(self) -> None: ...

    def mute(self, muted: bool) -> None: ...

    def close(self) -> None: ...

    def stream(self) -> AsyncIterator[np.ndarray]: ...


class RealtimeTransport(Protocol):

    def set_event_sink(self, sink: Optional[Callable[[dict], None]]) -> None: ...

    def set_close_callback(self, callback: Optional[Callable[[], None]]) -> None: ...

    async def connect(self) -> None: ...

    def send_event(self, event: dict) -> None: ...

    def append_audio(self, chunk: np.ndarray) -> None: ...

    async def close(self) -> None: ...


def encode_pcm16(chunk: np.ndarray) -> str:
    samples = np.asarray(chunk)
    if samples.dtype != np.int16:
        samples = (np.clip(samples.astype(np.float32), -1.0, 1.0) * 32767.0).astype(np.int16)
    return base64.b64encode(samples.tobytes()).decode("ascii")


def decode_pcm16(payload: str) -> np.ndarray:
    return np.frombuffer(base64.b64decode(payload), dtype=np.int16)


class WebSocketRealtimeTransport:

    def __init__(
        self,
        api_key: str,
        config: RealtimeConfig,
        audio_sink: Optional[AudioSink] = None,
    ) -> None:
        self._api_key = api_key
        self._config = config
        self._audio_sink = audio_sink
        self._ws = None
        self._event_sink: Optional[Callable[[dict], None]] = None
        self._on_close: Optional[Callable[[], None]] = None
        self._outbox: asyncio.Queue[dict] = asyncio.Queue()
        self._reader_task: Optional[asyncio.Task] = None
        self._writer_task: Optional[asyncio.Task] = None
        self._closing = False

    def set_event_sink(self, sink: Optional[Callable[[dict], None]]) -> None:
        self._event_sink = sink

    def set_close_callback(self, callback: Optional[Callable[[], None]]) -> None:
        self._on_close = callback

    # -----------------------------------------------------------------------
    # Handshake
    # -----------------------------------------------------------------------

    async def connect(self) -> None:
        url = f"{self._config.url}?model={self._config.model}"
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "OpenAI-Beta": "realtime=v1",
        }
        timeout = self._config.handshake_timeout_sec
        log.info("event=transport_connecting url=%s", self._config.url)
        try:
            self._ws = await asyncio.wait_for(
                websockets.connect(url, additional_headers=headers, max_size=None),
                timeout=timeout,
            )
            first = json.loads(await asyncio.wait_for(self._ws.recv(), timeout=timeout))
        except asyncio.TimeoutError as exc:
            await self.close()
            raise HandshakeError(f"no session.created within {timeout:.1f}s") from exc
        except (OSError, websockets.InvalidHandshake, websockets.ConnectionClosed, json.JSONDecodeError) as exc:
            await self.close()
            raise HandshakeError(f"realtime handshake failed: {exc}") from exc

        if not isinstance(first, dict) or first.get("type") != "session.created":
            await self.close()
            raise HandshakeError(f"expected session.created, got {first.get('type') if isinstance(first, dict) else first!r}")

        session: dict = {
            "input_audio_format": "pcm16",
            "output_audio_format": "pcm16",
            "input_audio_transcription": {"model": self._config.input_transcription_model},
        }
        if self._config.voice:
            session["voice"] = self._config.voice
        self.send_event({"type": "session.update", "session": session})

        self._reader_task = asyncio.create_task(self._reader(), name="realtime_reader")
        self._writer_task = asyncio.create_task(self._writer(), name="realtime_writer")
        if self._event_sink is not None:
            self._event_sink(first)
        log.info("event=transport_connected")

    # -----------------------------------------------------------------------
    # Outbound
    # -----------------------------------------------------------------------

    def send_event(self, event: dict) -> None:
        if self._closing:
            log.debug("event=send_dropped reason=closing type=%s", event.get("type"))
            return
        self._outbox.put_nowait(event)

    def append_audio(self, chunk: np.ndarray) -> None:
        self.send_event({"type": "input_audio_buffer.append", "audio": encode_pcm16(chunk)})

    async def _writer(self) -> None:
        try:
            while True:
                event = await self._outbox.get()
                await self._ws.send(json.dumps(event))
                if event.get("type") != "input_audio_buffer.append":
                    log.debug("event=ws_send type=%s", event.get("type"))
        except websockets.ConnectionClosed as exc:
            log.warning("event=ws_send_failed reason=closed error=%s", exc)

    # -----------------------------------------------------------------------
    # Inbound
    # -----------------------------------------------------------------------

    async def _reader(self) -> None:
        try:
            async for message in self._ws:
                try:
                    event = json.loads(message)
                except json.JSONDecodeError:
                    log.warning("event=ws_receive_undecodable len=%d", len(message))
                    continue
                if isinstance(event, dict) and event.get("type") in AUDIO_DELTA_TYPES:
                    self._route_audio(event)
                    continue
                if self._event_sink is not None:
                    self._event_sink(event)
            log.info("event=ws_closed reason=server")
        except websockets.ConnectionClosed as exc:
            log.warning("event=ws_disconnected error=%s", exc)
        finally:
            if not self._closing and self._on_close is not None:
                self._on_close()

    def _route_audio(self, event: dict) -> None:
        if self._audio_sink is None:
            return
        payload = event.get("delta")
        if not isinstance(payload, str):
            log.warning("event=audio_delta_malformed item_id=%s", event.get("item_id"))
            return
        try:
            self._audio_sink.write(decode_pcm16(payload))
        except ValueError as exc:
            log.warning("event=audio_delta_undecodable error=%s", exc)

    # -----------------------------------------------------------------------
    # Teardown
    # -----------------------------------------------------------------------

    async def close(self) -> None:
        """Idempotent.  Stops both tasks and closes the socket."""
        self._closing = True
        current = asyncio.current_task()
        for task in (self._reader_task, self._writer_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._reader_task = None
        self._writer_task = None
        if self._ws is not None:
            ws, self._ws = self._ws, None
            try:
                await ws.close()
            except websockets.WebSocketException as exc:
                log.debug("event=ws_close_error error=%s", exc)
            log.info("event=transport_closed")
