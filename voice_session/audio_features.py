"""
audio_features.py — Audio Feature Extractor
============================================
Turns a live PCM stream into a smoothed, bounded feature frame on a fixed
cadence (default 60 Hz):

    volume  = clamp(rms_weight·rms + peak_weight·peak)
    bass    = mean normalised magnitude, lowest 10% of bins
    mid     = next 40% of bins
    treble  = remaining 50% of bins
    waveform = uniform subsample of the time-domain window

Every scalar goes through the same decaying exponential smoother

    s = s·decay + (raw − s·decay)·alpha,   then clamped to [0, 1]

so jitter is damped and levels fall back to zero when the stream goes quiet.

One extractor per stream (local mic, remote playback).  `consume()` ties the
extractor's lifetime to its stream: the tick loop starts with the stream and
stops when the stream ends or the consuming task is cancelled.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Optional

import numpy as np
import scipy.signal

from voice_session.config import AudioFeatureConfig
from voice_session.models import Role

log = logging.getLogger("voice_session.audio_features")

# No samples for this long → the analyser window is treated as silence
SILENCE_AFTER_SEC = 0.1


@dataclass(frozen=True)
class AudioFeatureFrame:
    source: str
    volume: float
    bass: float
    mid: float
    treble: float
    waveform: tuple[float, ...]

    def to_dict(self) -> dict:
        return {
            "source": self.source,
            "volume": self.volume,
            "bass": self.bass,
            "mid": self.mid,
            "treble": self.treble,
            "waveform": list(self.waveform),
        }


def _clamp(value: float, lo: float = 0.0, hi: float = 1.0) -> float:
    if not np.isfinite(value):
        return lo
    return float(min(hi, max(lo, value)))


def to_float_samples(chunk: np.ndarray) -> np.ndarray:
    """int16 / int32 / float PCM → float32 in [-1, 1], NaN/inf scrubbed."""
    samples = np.asarray(chunk)
    if samples.dtype.kind == "i":
        scale = float(np.iinfo(samples.dtype).max) + 1.0
        samples = samples.astype(np.float32) / scale
    else:
        samples = samples.astype(np.float32)
    samples = np.nan_to_num(samples.reshape(-1), nan=0.0, posinf=1.0, neginf=-1.0)
    return np.clip(samples, -1.0, 1.0)


class AudioAnalyser:
    """Fixed-window time/frequency analysis of the most recent samples.

    Mirrors a browser analyser node: Blackman window, magnitude smoothing
    over time, dB mapped linearly from [min_db, max_db] onto [0, 1].
    """

    def __init__(
        self,
        fft_size: int = 256,
        *,
        smoothing: float = 0.7,
        min_db: float = -100.0,
        max_db: float = -30.0,
    ) -> None:
        self.fft_size = fft_size
        self._smoothing = smoothing
        self._min_db = min_db
        self._max_db = max_db
        self._window = scipy.signal.get_window("blackman", fft_size)
        self._buffer = np.zeros(fft_size, dtype=np.float32)
        self._magnitudes = np.zeros(fft_size // 2, dtype=np.float64)
        self.last_push: Optional[float] = None
        self.closed = False

    @property
    def bin_count(self) -> int:
        return self.fft_size // 2

    def push(self, chunk: np.ndarray) -> None:
        samples = to_float_samples(chunk)
        if samples.size == 0:
            return
        if samples.size >= self.fft_size:
            self._buffer = samples[-self.fft_size:].copy()
        else:
            self._buffer = np.concatenate((self._buffer[samples.size:], samples))
        self.last_push = time.monotonic()

    def silence(self) -> None:
        self._buffer.fill(0.0)

    def time_domain(self) -> np.ndarray:
        return self._buffer.copy()

    def frequency_data(self) -> np.ndarray:
        spectrum = np.abs(np.fft.rfft(self._buffer * self._window))[: self.bin_count] / self.fft_size
        self._magnitudes = self._smoothing * self._magnitudes + (1.0 - self._smoothing) * spectrum
        db = 20.0 * np.log10(np.maximum(self._magnitudes, 1e-12))
        return np.clip((db - self._min_db) / (self._max_db - self._min_db), 0.0, 1.0)

    def close(self) -> None:
        self._buffer = np.zeros(0, dtype=np.float32)
        self._magnitudes = np.zeros(0, dtype=np.float64)
        self.closed = True


class AudioFeatureExtractor:

    def __init__(
        self,
        source: str,
        config: AudioFeatureConfig,
        on_frame: Optional[Callable[[AudioFeatureFrame], None]] = None,
    ) -> None:
        self.source = source
        self._config = config
        self._on_frame = on_frame
        self.analyser = AudioAnalyser(
            config.fft_size,
            smoothing=config.spectral_smoothing,
            min_db=config.min_db,
            max_db=config.max_db,
        )
        bins = self.analyser.bin_count
        bass_end = max(1, int(bins * config.bass_fraction))
        mid_end = min(bins - 1, bass_end + max(1, int(bins * config.mid_fraction)))
        self._bands = (slice(0, bass_end), slice(bass_end, mid_end), slice(mid_end, bins))
        self._waveform_idx = np.linspace(0, config.fft_size - 1, config.waveform_size).astype(int)
        self._smoothed = {"volume": 0.0, "bass": 0.0, "mid": 0.0, "treble": 0.0}
        self._tick_task: Optional[asyncio.Task] = None
        self.latest: Optional[AudioFeatureFrame] = None

    # -----------------------------------------------------------------------
    # Per-frame computation
    # -----------------------------------------------------------------------

    def feed(self, chunk: np.ndarray) -> None:
        self.analyser.push(chunk)

    def _smooth(self, key: str, raw: float) -> float:
        decayed = self._smoothed[key] * self._config.decay
        value = _clamp(decayed + (_clamp(raw) - decayed) * self._config.alpha)
        self._smoothed[key] = value
        return value

    def process(self, now: Optional[float] = None) -> AudioFeatureFrame:
        """Compute one frame from the current analyser window."""
        if self.analyser.closed:
            raise RuntimeError(f"feature extractor for {self.source} is closed")
        now = time.monotonic() if now is None else now
        last = self.analyser.last_push
        if last is None or now - last > SILENCE_AFTER_SEC:
            self.analyser.silence()

        samples = self.analyser.time_domain()
        peak = float(np.max(np.abs(samples))) if samples.size else 0.0
        rms = float(np.sqrt(np.mean(samples.astype(np.float64) ** 2))) if samples.size else 0.0
        raw_volume = self._config.rms_weight * rms + self._config.peak_weight * peak

        spectrum = self.analyser.frequency_data()
        raw_bands = [float(np.mean(spectrum[band])) if spectrum[band].size else 0.0 for band in self._bands]

        frame = AudioFeatureFrame(
            source=self.source,
            volume=self._smooth("volume", raw_volume),
            bass=self._smooth("bass", raw_bands[0]),
            mid=self._smooth("mid", raw_bands[1]),
            treble=self._smooth("treble", raw_bands[2]),
            waveform=tuple(float(v) for v in np.clip(samples[self._waveform_idx], -1.0, 1.0)),
        )
        self.latest = frame
        return frame

    # -----------------------------------------------------------------------
    # Animation loop
    # -----------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._tick_task is not None and not self._tick_task.done()

    def start(self) -> None:
        if self.running:
            return
        self._tick_task = asyncio.create_task(self._tick_loop(), name=f"features_{self.source}")

    async def stop(self) -> None:
        if self._tick_task is not None and not self._tick_task.done():
            self._tick_task.cancel()
            try:
                await self._tick_task
            except asyncio.CancelledError:
                pass
        self._tick_task = None
        self.analyser.close()
        log.debug("event=feature_loop_stopped source=%s", self.source)

    async def _tick_loop(self) -> None:
        interval = 1.0 / self._config.tick_hz
        while True:
            frame = self.process()
            if self._on_frame is not None:
                try:
                    self._on_frame(frame)
                except Exception as exc:
                    log.warning("event=feature_sink_error source=%s error=%s", self.source, exc)
            await asyncio.sleep(interval)

    async def consume(
        self,
        stream: AsyncIterator[np.ndarray],
        forward: Optional[Callable[[np.ndarray], None]] = None,
    ) -> None:
        """Feed `stream` into the analyser until it ends; ticks run meanwhile."""
        self.start()
        log.info("event=feature_stream_attached source=%s", self.source)
        try:
            async for chunk in stream:
                self.feed(chunk)
                if forward is not None:
                    forward(chunk)
        finally:
            await self.stop()
            log.info("event=feature_stream_ended source=%s", self.source)


def activity_level(
    speaker: Optional[Role],
    local: Optional[AudioFeatureFrame],
    remote: Optional[AudioFeatureFrame],
) -> float:
    """Level to show for the current speaker; half of the louder side when idle."""
    local_level = local.volume if local else 0.0
    remote_level = remote.volume if remote else 0.0
    if speaker is Role.USER:
        return local_level
    if speaker is Role.ASSISTANT:
        return remote_level
    return max(local_level * 0.5, remote_level * 0.5)
