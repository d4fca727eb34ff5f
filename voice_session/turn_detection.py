"""
turn_detection.py — VAD / push-to-talk switch
==============================================
Two mutually exclusive configurations, pushed to the live session with a
`session.update` event:

  • VAD  — server_vad; the server infers turn boundaries and creates responses
  • PTT  — turn_detection: null; the client brackets each utterance with
           start() (clear input buffer) and end() (commit + response.create)

The controller holds the chosen mode while no transport is bound and
re-applies it on the next bind.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Callable, Optional

from voice_session.config import TurnDetectionConfig

log = logging.getLogger("voice_session.turn_detection")


class TurnDetectionMode(str, Enum):
    VAD = "vad"
    PTT = "ptt"


class TurnDetectionController:

    def __init__(self, config: TurnDetectionConfig) -> None:
        self._config = config
        self.mode = TurnDetectionMode.PTT if config.push_to_talk else TurnDetectionMode.VAD
        self.user_speaking = False
        self._send: Optional[Callable[[dict], None]] = None

    # -----------------------------------------------------------------------
    # Transport binding
    # -----------------------------------------------------------------------

    @property
    def bound(self) -> bool:
        return self._send is not None

    def bind(self, send: Callable[[dict], None]) -> None:
        """Attach to a live transport and push the current mode."""
        self._send = send
        self.user_speaking = False
        self.apply()

    def unbind(self) -> None:
        self._send = None
        self.user_speaking = False

    # -----------------------------------------------------------------------
    # Configuration
    # -----------------------------------------------------------------------

    def turn_detection_payload(self) -> Optional[dict]:
        if self.mode is TurnDetectionMode.PTT:
            return None
        return {
            "type": "server_vad",
            "threshold": self._config.threshold,
            "prefix_padding_ms": self._config.prefix_padding_ms,
            "silence_duration_ms": self._config.silence_duration_ms,
            "create_response": True,
        }

    def session_update(self) -> dict:
        return {"type": "session.update", "session": {"turn_detection": self.turn_detection_payload()}}

    def apply(self) -> None:
        if self._send is None:
            return
        self._send(self.session_update())
        log.info("event=turn_detection_applied mode=%s", self.mode.value)

    def reconfigure(self, config: TurnDetectionConfig) -> None:
        """Swap VAD parameters; the current mode is kept and re-applied."""
        self._config = config
        self.apply()

    def set_mode(self, mode: TurnDetectionMode) -> None:
        mode = TurnDetectionMode(mode)
        if mode is TurnDetectionMode.VAD and self.user_speaking:
            # an open PTT utterance is abandoned, never committed
            log.info("event=ptt_utterance_abandoned reason=mode_switch")
            self.user_speaking = False
        self.mode = mode
        log.info("event=turn_detection_mode mode=%s bound=%s", mode.value, self.bound)
        self.apply()

    # -----------------------------------------------------------------------
    # Push-to-talk
    # -----------------------------------------------------------------------

    def start(self) -> bool:
        """Begin a PTT utterance.  Returns False (no-op) outside live PTT."""
        if self._send is None or self.mode is not TurnDetectionMode.PTT:
            log.debug("event=ptt_start_ignored mode=%s bound=%s", self.mode.value, self.bound)
            return False
        self.user_speaking = True
        self._send({"type": "input_audio_buffer.clear"})
        log.info("event=ptt_start")
        return True

    def end(self) -> bool:
        """Commit the utterance and request a response.  Needs a prior start()."""
        if self._send is None or self.mode is not TurnDetectionMode.PTT or not self.user_speaking:
            log.debug("event=ptt_end_ignored mode=%s speaking=%s", self.mode.value, self.user_speaking)
            return False
        self.user_speaking = False
        self._send({"type": "input_audio_buffer.commit"})
        self._send({"type": "response.create"})
        log.info("event=ptt_end")
        return True
