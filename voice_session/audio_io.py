"""
audio_io.py — local microphone source and speaker sink (sounddevice)
====================================================================
Both classes bridge sounddevice's audio thread and the asyncio loop:

  • SoundDeviceSink    — remote audio → speaker.  write() is called on the
                         loop; the PortAudio callback drains a lock-protected
                         buffer.  Every chunk is also fanned out to stream()
                         for the remote feature extractor.
  • MicrophoneSource   — mic → async iterator of int16 chunks.  The
                         PortAudio callback hands chunks to the loop with
                         call_soon_threadsafe.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import AsyncIterator, Optional

import numpy as np
import sounddevice as sd

log = logging.getLogger("voice_session.audio_io")

_END = None


class SoundDeviceSink:
    """In-memory PCM16 playback via sd.OutputStream."""

    CHANNELS = 1

    def __init__(self, sample_rate: int = 24000, blocksize: int = 1024) -> None:
        self.sample_rate = sample_rate
        self._blocksize = blocksize
        self._buf: list[np.ndarray] = []
        self._lock = threading.Lock()
        self._stream: Optional[sd.OutputStream] = None
        self._muted = False
        self._taps: asyncio.Queue[Optional[np.ndarray]] = asyncio.Queue(maxsize=256)

    def open(self) -> None:
        if self._stream is not None:
            return
        self._stream = sd.OutputStream(
            samplerate=self.sample_rate,
            channels=self.CHANNELS,
            dtype="float32",
            callback=self._callback,
            blocksize=self._blocksize,
        )
        self._stream.start()
        log.info("event=playback_opened sample_rate=%d", self.sample_rate)

    def write(self, samples: np.ndarray) -> None:
        """Enqueue PCM16 mono samples for playback and feature extraction."""
        if self._stream is None:
            return
        floats = np.asarray(samples, dtype=np.float32) / 32768.0
        with self._lock:
            self._buf.append(floats)
        try:
            self._taps.put_nowait(samples)
        except asyncio.QueueFull:
            log.debug("event=playback_tap_full dropped_samples=%d", len(samples))

    def clear(self) -> None:
        with self._lock:
            self._buf.clear()

    def mute(self, muted: bool) -> None:
        self._muted = muted
        log.info("event=playback_muted muted=%s", muted)

    def close(self) -> None:
        self.clear()
        if self._stream is not None:
            try:
                self._stream.stop()
                self._stream.close()
            except sd.PortAudioError as exc:
                log.warning("event=playback_close_error error=%s", exc)
            self._stream = None
            log.info("event=playback_closed")
        try:
            self._taps.put_nowait(_END)
        except asyncio.QueueFull:
            pass

    async def stream(self) -> AsyncIterator[np.ndarray]:
        while True:
            chunk = await self._taps.get()
            if chunk is _END:
                return
            yield chunk

    # -- sounddevice audio-thread callback --

    def _callback(self, outdata: np.ndarray, frames: int, _time, status) -> None:
        if status:
            log.warning("event=playback_status status=%s", status)
        needed = frames
        pos = 0
        with self._lock:
            while needed > 0 and self._buf:
                chunk = self._buf[0]
                take = min(needed, len(chunk))
                outdata[pos:pos + take, 0] = 0.0 if self._muted else chunk[:take]
                pos += take
                needed -= take
                if take < len(chunk):
                    self._buf[0] = chunk[take:]
                else:
                    self._buf.pop(0)
        if needed > 0:
            outdata[pos:, 0] = 0.0


class MicrophoneSource:
    """Capture mono int16 audio from the default input device."""

    def __init__(self, sample_rate: int = 24000, blocksize: int = 480) -> None:
        self.sample_rate = sample_rate
        self._blocksize = blocksize
        self._stream: Optional[sd.InputStream] = None
        self._queue: asyncio.Queue[Optional[np.ndarray]] = asyncio.Queue()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def start(self) -> None:
        if self._stream is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._stream = sd.InputStream(
            samplerate=self.sample_rate,
            channels=1,
            dtype="int16",
            blocksize=self._blocksize,
            callback=self._callback,
        )
        self._stream.start()
        log.info("event=mic_started sample_rate=%d", self.sample_rate)

    def stop(self) -> None:
        if self._stream is None:
            return
        try:
            self._stream.stop()
            self._stream.close()
        except sd.PortAudioError as exc:
            log.warning("event=mic_close_error error=%s", exc)
        self._stream = None
        self._queue.put_nowait(_END)
        log.info("event=mic_stopped")

    async def stream(self) -> AsyncIterator[np.ndarray]:
        self.start()
        try:
            while True:
                chunk = await self._queue.get()
                if chunk is _END:
                    return
                yield chunk
        finally:
            self.stop()

    def _callback(self, indata, frames, time_info, status) -> None:
        if status:
            log.warning("event=mic_status status=%s", status)
        if self._loop is not None:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, indata[:, 0].copy())
