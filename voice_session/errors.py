"""Exception taxonomy for the voice session core."""

from __future__ import annotations


class VoiceSessionError(Exception):
    """Base class for every error raised by voice_session."""


class SessionConnectError(VoiceSessionError):
    """connect() failed; the session is back in DISCONNECTED."""


class CredentialError(SessionConnectError):
    """The credential collaborator returned no usable ephemeral key."""


class HandshakeError(SessionConnectError):
    """The realtime transport did not complete its handshake."""


class MalformedEventError(VoiceSessionError):
    """A transport event is missing a required field or has the wrong shape."""

    def __init__(self, event_type: str, reason: str) -> None:
        super().__init__(f"{event_type}: {reason}")
        self.event_type = event_type
        self.reason = reason


class GuardrailEvaluationError(VoiceSessionError):
    """The guardrail collaborator failed or returned an unusable verdict."""


class PersistenceError(VoiceSessionError):
    """The transcript mirror rejected a write."""
