"""
voice_session — realtime voice conversation orchestration core.

Owns one realtime session, turns its event stream into an exactly-once
transcript, moderates assistant output and derives audio level signals.
"""

__version__ = "1.0.0"
