"""
config.py — Voice Session · Runtime Configuration
==================================================
Pydantic models for every tunable parameter of the realtime session core.
Serialises to / deserialises from JSON.  Used by:
  • server.py   — GET/PUT /config endpoints, builds the session manager
  • session.py  — connect-time parameters, greeting, reconnect policy
  • each component constructor (extractor, guardrail, turn detection)
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, model_validator

log = logging.getLogger("voice_session.config")

# ---------------------------------------------------------------------------
# Default moderation prompt (kept here so config.py is the single source of truth)
# ---------------------------------------------------------------------------

DEFAULT_GUARDRAIL_PROMPT = """\
You are a content moderation classifier for the voice assistant of {company_name}.
You will receive one message the assistant is about to say to a customer.
Classify it into exactly one category:
OFFENSIVE  - hateful, harassing, sexual or demeaning language
OFF_BRAND  - disparages {company_name}, discusses competitors, or breaks the assistant persona
VIOLENCE   - threats, instructions for violence, self-harm encouragement
NONE       - acceptable content
Respond with ONLY a JSON object:
{{"tripwireTriggered": <true|false>, "category": "<CATEGORY>", "rationale": "<one short sentence>"}}
"""


# ---------------------------------------------------------------------------
# Per-component config sections
# ---------------------------------------------------------------------------

class RealtimeConfig(BaseModel):
    """Realtime transport parameters (passed to WebSocketRealtimeTransport)."""
    url: str = Field(default="wss://api.openai.com/v1/realtime", description="Realtime websocket endpoint")
    model: str = Field(default="gpt-4o-realtime-preview-2025-06-03", description="Realtime model ID")
    input_transcription_model: str = Field(default="gpt-4o-mini-transcribe", description="User speech transcription model")
    voice: Optional[str] = Field(default=None, description="Assistant voice")
    sample_rate: int = Field(default=24000, ge=8000, le=48000, description="PCM16 sample rate (Hz)")
    handshake_timeout_sec: float = Field(default=10.0, gt=0.0, le=60.0, description="Max wait for session.created")


class TurnDetectionConfig(BaseModel):
    """Server VAD parameters used whenever push-to-talk is off."""
    push_to_talk: bool = Field(default=False, description="Start in push-to-talk mode")
    threshold: float = Field(default=0.9, ge=0.0, le=1.0, description="VAD activation threshold")
    prefix_padding_ms: int = Field(default=300, ge=0, le=5000, description="Audio kept before speech start (ms)")
    silence_duration_ms: int = Field(default=500, ge=0, le=10000, description="Silence that ends a turn (ms)")


class AudioFeatureConfig(BaseModel):
    """Audio feature extraction tuning (analyser window, weights, smoothing)."""
    fft_size: int = Field(default=256, ge=32, le=32768, description="Analysis window (samples, power of two)")
    tick_hz: float = Field(default=60.0, gt=0.0, le=240.0, description="Frame cadence")
    spectral_smoothing: float = Field(default=0.7, ge=0.0, lt=1.0, description="Analyser smoothing time constant")
    min_db: float = Field(default=-100.0, description="Magnitude mapped to 0")
    max_db: float = Field(default=-30.0, description="Magnitude mapped to 1")
    rms_weight: float = Field(default=2.0, ge=0.0, description="Volume weight of RMS")
    peak_weight: float = Field(default=0.5, ge=0.0, description="Volume weight of peak amplitude")
    decay: float = Field(default=0.92, ge=0.0, le=1.0, description="Per-frame decay of smoothed values")
    alpha: float = Field(default=0.35, gt=0.0, le=1.0, description="Smoothing gain towards the raw value")
    bass_fraction: float = Field(default=0.1, gt=0.0, lt=1.0, description="Share of bins in the bass band")
    mid_fraction: float = Field(default=0.4, gt=0.0, lt=1.0, description="Share of bins in the mid band")
    waveform_size: int = Field(default=64, ge=2, le=4096, description="Waveform points per frame")

    @model_validator(mode="after")
    def _check_bands(self) -> "AudioFeatureConfig":
        if self.bass_fraction + self.mid_fraction >= 1.0:
            raise ValueError("bass_fraction + mid_fraction must leave room for the treble band")
        if self.fft_size & (self.fft_size - 1):
            raise ValueError("fft_size must be a power of two")
        return self


class GuardrailConfig(BaseModel):
    """Output moderation parameters (passed to GroqModerationClassifier)."""
    enabled: bool = Field(default=True, description="Review completed assistant messages")
    model: str = Field(default="openai/gpt-oss-20b", description="Groq classifier model")
    company_name: str = Field(default="NewTelco", description="Brand the assistant speaks for")
    timeout_ms: int = Field(default=1500, ge=50, le=30000, description="Classifier round-trip ceiling (ms)")
    prompt: str = Field(default=DEFAULT_GUARDRAIL_PROMPT, description="Classifier system prompt template")


class SessionConfig(BaseModel):
    """Lifecycle parameters."""
    credential_url: str = Field(default="http://localhost:3000/api/session", description="Ephemeral key endpoint")
    credential_timeout_sec: float = Field(default=10.0, gt=0.0, le=60.0)
    greeting_text: Optional[str] = Field(default="hi", description="Synthetic opening user turn (None disables)")
    greeting_delay_sec: float = Field(default=0.5, ge=0.0, le=10.0)
    reconnect_attempts: int = Field(default=3, ge=0, le=20, description="Consecutive reconnects after a drop")
    reconnect_delay_sec: float = Field(default=1.0, ge=0.0, le=60.0)
    stall_warn_ms: float = Field(default=150.0, ge=10.0, description="Event-loop stall warning threshold")


class PersistenceConfig(BaseModel):
    """Transcript mirror.  No base_url → in-memory store."""
    base_url: Optional[str] = Field(default=None, description="Chat API base URL, e.g. http://localhost:3000")
    thread_id: Optional[str] = Field(default=None, description="Thread the voice transcript is mirrored to")
    timeout_sec: float = Field(default=5.0, gt=0.0, le=60.0)


# ---------------------------------------------------------------------------
# Top-level config
# ---------------------------------------------------------------------------

class VoiceSessionConfig(BaseModel):
    """Complete runtime configuration for the voice session core."""
    realtime: RealtimeConfig = Field(default_factory=RealtimeConfig)
    turn_detection: TurnDetectionConfig = Field(default_factory=TurnDetectionConfig)
    audio_features: AudioFeatureConfig = Field(default_factory=AudioFeatureConfig)
    guardrail: GuardrailConfig = Field(default_factory=GuardrailConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    persistence: PersistenceConfig = Field(default_factory=PersistenceConfig)

    # -- Persistence -----------------------------------------------------------

    @classmethod
    def load(cls, path: str | Path) -> "VoiceSessionConfig":
        """Load config from a JSON file.  Returns defaults if file doesn't exist."""
        p = Path(path)
        if not p.exists():
            log.info("event=config_load_defaults path=%s", p)
            return cls()
        try:
            data = json.loads(p.read_text(encoding="utf-8"))
            config = cls.model_validate(data)
            log.info("event=config_loaded path=%s", p)
            return config
        except Exception as exc:
            log.warning("event=config_load_error path=%s error=%s — using defaults", p, exc)
            return cls()

    def save(self, path: str | Path) -> None:
        """Persist config to a JSON file (pretty-printed)."""
        p = Path(path)
        p.write_text(
            self.model_dump_json(indent=2),
            encoding="utf-8",
        )
        log.info("event=config_saved path=%s", p)

    def merge_patch(self, patch: dict) -> "VoiceSessionConfig":
        """Return a new config with `patch` merged over `self`.

        Supports nested partial updates, e.g.:
            {"turn_detection": {"threshold": 0.7}}
        only changes turn_detection.threshold, leaving everything else intact.
        """
        base = self.model_dump()
        _deep_merge(base, patch)
        return VoiceSessionConfig.model_validate(base)


def _deep_merge(base: dict, patch: dict) -> None:
    """Recursively merge `patch` into `base` in-place."""
    for key, value in patch.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
