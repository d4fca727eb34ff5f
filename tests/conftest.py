"""Shared fakes for the transport, audio sink, credentials and message store."""

from __future__ import annotations

import asyncio
from typing import Optional

import numpy as np
import pytest

from voice_session.config import VoiceSessionConfig
from voice_session.errors import PersistenceError
from voice_session.models import Role
from voice_session.persistence import StoredMessage
from voice_session.session import SessionLifecycleManager


class FakeTransport:
    def __init__(self, credential: str, sink, *, fail: Optional[Exception] = None) -> None:
        self.credential = credential
        self.sink = sink
        self.fail = fail
        self.sent: list[dict] = []
        self.audio: list[np.ndarray] = []
        self.event_sink = None
        self.on_close = None
        self.connected = False
        self.closed = False

    def set_event_sink(self, sink) -> None:
        self.event_sink = sink

    def set_close_callback(self, callback) -> None:
        self.on_close = callback

    async def connect(self) -> None:
        if self.fail is not None:
            raise self.fail
        self.connected = True

    def send_event(self, event: dict) -> None:
        self.sent.append(event)

    def append_audio(self, chunk: np.ndarray) -> None:
        self.audio.append(chunk)

    async def close(self) -> None:
        self.closed = True

    # -- test helpers --

    def emit(self, raw: dict) -> None:
        self.event_sink(raw)

    def drop(self) -> None:
        """Simulate the server closing the socket."""
        self.on_close()

    def types(self) -> list[str]:
        return [e["type"] for e in self.sent]


class FakeAudioSink:
    def __init__(self, *, fail_open: bool = False) -> None:
        self.fail_open = fail_open
        self.opened = False
        self.closed = False
        self.muted = False
        self.cleared = 0
        self.writes: list[np.ndarray] = []
        self._queue: Optional[asyncio.Queue] = None

    def _q(self) -> asyncio.Queue:
        if self._queue is None:
            self._queue = asyncio.Queue()
        return self._queue

    def open(self) -> None:
        if self.fail_open:
            raise RuntimeError("no output device")
        self.opened = True

    def write(self, samples: np.ndarray) -> None:
        self.writes.append(samples)
        self._q().put_nowait(samples)

    def clear(self) -> None:
        self.cleared += 1

    def mute(self, muted: bool) -> None:
        self.muted = muted

    def close(self) -> None:
        self.closed = True
        self._q().put_nowait(None)

    async def stream(self):
        queue = self._q()
        while True:
            chunk = await queue.get()
            if chunk is None:
                return
            yield chunk


class FakeCredentials:
    def __init__(self, value: Optional[str] = "ek_test", gate: Optional[asyncio.Event] = None) -> None:
        self.value = value
        self.gate = gate
        self.calls = 0

    async def fetch(self) -> Optional[str]:
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        return self.value


class RecordingStore:
    """MessageStore that records every call; optionally fails upserts."""

    def __init__(self, messages: Optional[list[StoredMessage]] = None, *, fail_upsert: bool = False) -> None:
        self.upserts: list[tuple[str, Role, str]] = []
        self.creates: list[tuple[str, Role, str]] = []
        self.messages = messages or []
        self.fail_upsert = fail_upsert

    async def upsert(self, item_id: str, role: Role, text: str) -> None:
        await asyncio.sleep(0)
        if self.fail_upsert:
            raise PersistenceError("chat api unavailable")
        self.upserts.append((item_id, role, text))

    async def create(self, thread_id: str, role: Role, text: str) -> None:
        self.creates.append((thread_id, role, text))

    async def list_messages(self, thread_id: str) -> list[StoredMessage]:
        return list(self.messages)


class Harness:
    """Builds a SessionLifecycleManager wired to fakes and records what it created."""

    def __init__(self) -> None:
        self.transports: list[FakeTransport] = []
        self.sinks: list[FakeAudioSink] = []
        self.statuses: list[str] = []
        self.transport_fail: Optional[Exception] = None
        self.sink_fail_open = False

    def build(
        self,
        config: Optional[VoiceSessionConfig] = None,
        credentials: Optional[FakeCredentials] = None,
        **kwargs,
    ) -> SessionLifecycleManager:
        if config is None:
            config = VoiceSessionConfig().merge_patch({
                "session": {"greeting_text": None, "reconnect_delay_sec": 0.0},
            })

        def sink_factory():
            sink = FakeAudioSink(fail_open=self.sink_fail_open)
            self.sinks.append(sink)
            return sink

        def transport_factory(credential, sink):
            transport = FakeTransport(credential, sink, fail=self.transport_fail)
            self.transports.append(transport)
            return transport

        manager = SessionLifecycleManager(
            config,
            credentials or FakeCredentials(),
            transport_factory,
            sink_factory,
            **kwargs,
        )
        manager.add_status_listener(lambda s: self.statuses.append(s.value))
        return manager

    @property
    def transport(self) -> FakeTransport:
        return self.transports[-1]


@pytest.fixture
def harness() -> Harness:
    return Harness()
