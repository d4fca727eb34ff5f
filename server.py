"""
server.py — Voice Session · FastAPI Control Plane
=================================================
Hosts one SessionLifecycleManager and exposes it to a local UI.

Endpoints
---------
  POST /voice-mode         {enabled}        → toggle_mode (502 on connect failure)
  GET  /status                              → session snapshot
  POST /turn-detection     {mode}           → "vad" | "ptt"
  POST /ptt/start, /ptt/end                 → push-to-talk bracket
  POST /messages           {text}           → send_user_text
  POST /interrupt                           → response.cancel + flush playback
  POST /mute               {muted}          → mute speaker output
  GET  /transcript                          → entries in creation order
  GET  /config, PUT /config                 → runtime config (merge patch, persisted)
  GET  /health                              → liveness
  WS   /ws/logs                             → every server log record
  WS   /ws/signals                          → status / speaker / transcript /
                                              handoff / breadcrumb / feature frames

Audio I/O (sounddevice) is imported when the first session opens, so the
control plane itself starts on hosts without PortAudio.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Any, Literal, Set

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError

from voice_session import __version__
from voice_session.audio_features import AudioFeatureFrame
from voice_session.config import VoiceSessionConfig
from voice_session.credentials import HttpCredentialProvider
from voice_session.errors import SessionConnectError
from voice_session.guardrail import GroqModerationClassifier
from voice_session.models import Role, TranscriptEntry
from voice_session.persistence import HttpMessageStore, InMemoryMessageStore
from voice_session.session import SessionLifecycleManager, SessionStatus
from voice_session.transport import WebSocketRealtimeTransport
from voice_session.turn_detection import TurnDetectionMode

load_dotenv()

# ---------------------------------------------------------------------------
# WebSocket broadcasters (defined early, the logging handler needs one)
# ---------------------------------------------------------------------------

class LogBroadcaster:
    """Fan-out hub for real-time events to all connected WebSocket clients."""
    def __init__(self, history: int = 500) -> None:
        self._clients: Set[WebSocket] = set()
        self._history: list[dict] = []  # replayed to late-joiners
        self._limit = history

    async def connect(self, ws: WebSocket) -> None:
        await ws.accept()
        self._clients.add(ws)
        for event in self._history[-self._limit:]:
            try:
                await ws.send_text(json.dumps(event))
            except Exception:
                break

    def disconnect(self, ws: WebSocket) -> None:
        self._clients.discard(ws)

    async def broadcast(self, event: dict, remember: bool = True) -> None:
        if remember:
            self._history.append(event)
            if len(self._history) > self._limit:
                self._history = self._history[-self._limit:]
        dead: Set[WebSocket] = set()
        for ws in list(self._clients):
            try:
                await ws.send_text(json.dumps(event, default=str))
            except Exception:
                dead.add(ws)
        self._clients -= dead


broadcaster = LogBroadcaster()
signals = LogBroadcaster(history=200)


class _WsBroadcastHandler(logging.Handler):
    """Logging handler that forwards every server log record to all WS clients."""
    def emit(self, record: logging.LogRecord) -> None:
        event = {
            "source": "server",
            "level":  record.levelname,
            "logger": record.name,
            "msg":    self.format(record),
            "ts":     record.created,
        }
        try:
            loop = asyncio.get_running_loop()
            loop.call_soon_threadsafe(
                lambda: loop.create_task(broadcaster.broadcast(event))
            )
        except RuntimeError:
            pass  # no event loop yet during startup


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.DEBUG if os.getenv("VOICE_DEBUG") else logging.INFO,
    format="%(asctime)s.%(msecs)03d [%(levelname)s] %(name)s – %(message)s",
    datefmt="%H:%M:%S",
)
log = logging.getLogger("voice_session.server")

# Attach WS broadcast handler AFTER basicConfig has run
_ws_handler = _WsBroadcastHandler()
_ws_handler.setFormatter(logging.Formatter(
    "%(asctime)s.%(msecs)03d [%(levelname)s] %(name)s – %(message)s",
    datefmt="%H:%M:%S",
))
logging.root.addHandler(_ws_handler)

# ---------------------------------------------------------------------------
# Config (from environment)
# ---------------------------------------------------------------------------
CONFIG_PATH    = os.getenv("VOICE_CONFIG_PATH", "voice_config.json")
CREDENTIAL_URL = os.getenv("CREDENTIAL_URL")                  # overrides session.credential_url
CHAT_API_URL   = os.getenv("CHAT_API_URL")                    # overrides persistence.base_url
LOCAL_MIC      = os.getenv("VOICE_LOCAL_MIC", "1") != "0"


# ---------------------------------------------------------------------------
# Signal fan-out (sync callbacks → async broadcast)
# ---------------------------------------------------------------------------

def _publish(kind: str, payload: Any, remember: bool = True) -> None:
    event = {"kind": kind, "data": payload, "ts": time.time()}
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        return
    loop.create_task(signals.broadcast(event, remember))


def _on_status(new_status: SessionStatus) -> None:
    _publish("status", new_status.value)


def _on_speaker(role: Role, started: bool) -> None:
    _publish("speaker", {"role": role.value, "speaking": started})


def _on_transcript(entry: TranscriptEntry) -> None:
    _publish("transcript", entry.to_dict(), remember=False)


def _on_handoff(target: str) -> None:
    _publish("handoff", {"target": target})


def _on_breadcrumb(title: str, data: Any) -> None:
    _publish("breadcrumb", {"title": title, "data": data})


def _on_frame(frame: AudioFeatureFrame) -> None:
    _publish("features", frame.to_dict(), remember=False)


# ---------------------------------------------------------------------------
# Session assembly
# ---------------------------------------------------------------------------

class _State:
    config: VoiceSessionConfig
    manager: SessionLifecycleManager
    store: Any = None


state = _State()


def _build_manager(config: VoiceSessionConfig) -> SessionLifecycleManager:
    credentials = HttpCredentialProvider(
        CREDENTIAL_URL or config.session.credential_url,
        timeout_sec=config.session.credential_timeout_sec,
    )

    base_url = CHAT_API_URL or config.persistence.base_url
    if base_url and config.persistence.thread_id:
        store = HttpMessageStore(base_url, config.persistence.thread_id, timeout_sec=config.persistence.timeout_sec)
        log.info("event=persistence base_url=%s thread_id=%s", base_url, config.persistence.thread_id)
    else:
        store = InMemoryMessageStore(thread_id=config.persistence.thread_id or "default")
        log.info("event=persistence backend=memory")
    state.store = store

    classifier = None
    if config.guardrail.enabled and os.getenv("GROQ_API_KEY"):
        classifier = GroqModerationClassifier(config.guardrail)
    else:
        log.warning("event=guardrail_disabled enabled=%s groq_key=%s", config.guardrail.enabled, bool(os.getenv("GROQ_API_KEY")))

    def audio_sink_factory():
        from voice_session.audio_io import SoundDeviceSink
        return SoundDeviceSink(sample_rate=state.config.realtime.sample_rate)

    def transport_factory(credential: str, sink):
        return WebSocketRealtimeTransport(credential, state.config.realtime, sink)

    microphone_factory = None
    if LOCAL_MIC:
        def microphone_factory():
            from voice_session.audio_io import MicrophoneSource
            return MicrophoneSource(sample_rate=state.config.realtime.sample_rate).stream()

    manager = SessionLifecycleManager(
        config,
        credentials,
        transport_factory,
        audio_sink_factory,
        store=store,
        classifier=classifier,
        microphone_factory=microphone_factory,
        on_transcript=_on_transcript,
        on_speaker=_on_speaker,
        on_handoff=_on_handoff,
        on_breadcrumb=_on_breadcrumb,
        on_frame=_on_frame,
    )
    manager.add_status_listener(_on_status)
    return manager


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class VoiceModeRequest(BaseModel):
    enabled: bool


class TurnDetectionRequest(BaseModel):
    mode: Literal["vad", "ptt"]


class MessageRequest(BaseModel):
    text: str


class MuteRequest(BaseModel):
    muted: bool


# ---------------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------------

@asynccontextmanager
async def _lifespan(app: FastAPI):
    state.config = VoiceSessionConfig.load(CONFIG_PATH)
    state.manager = _build_manager(state.config)
    log.info("event=server_start config=%s", CONFIG_PATH)
    yield
    log.info("event=server_shutdown status=%s", state.manager.status.value)
    await state.manager.aclose()
    if isinstance(state.store, HttpMessageStore):
        await state.store.aclose()
    log.info("event=server_stopped")


app = FastAPI(
    title="Voice Session",
    version=__version__,
    description="Realtime voice session control plane",
    lifespan=_lifespan,
)

# Allow file:// and any local origin to reach the API (dev only)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@app.post("/voice-mode")
async def voice_mode(body: VoiceModeRequest) -> JSONResponse:
    try:
        await state.manager.toggle_mode(body.enabled)
    except SessionConnectError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    return JSONResponse(state.manager.snapshot())


@app.get("/status")
async def session_status() -> JSONResponse:
    snapshot = state.manager.snapshot()
    snapshot["activity_level"] = round(state.manager.activity_level(), 3)
    return JSONResponse(snapshot)


@app.post("/turn-detection")
async def turn_detection(body: TurnDetectionRequest) -> JSONResponse:
    state.manager.set_turn_detection(TurnDetectionMode(body.mode))
    return JSONResponse({"turn_detection": state.manager.session.turn_detection.value})


@app.post("/ptt/start")
async def ptt_start() -> JSONResponse:
    return JSONResponse({"accepted": state.manager.ptt_start()})


@app.post("/ptt/end")
async def ptt_end() -> JSONResponse:
    return JSONResponse({"accepted": state.manager.ptt_end()})


@app.post("/messages")
async def send_message(body: MessageRequest) -> JSONResponse:
    if not body.text.strip():
        raise HTTPException(status_code=400, detail="Message text is empty.")
    return JSONResponse({"accepted": await state.manager.send_user_text(body.text)})


@app.post("/interrupt")
async def interrupt() -> JSONResponse:
    return JSONResponse({"accepted": state.manager.interrupt()})


@app.post("/mute")
async def mute(body: MuteRequest) -> JSONResponse:
    return JSONResponse({"accepted": state.manager.mute(body.muted), "muted": body.muted})


@app.get("/transcript")
async def transcript() -> JSONResponse:
    return JSONResponse([entry.to_dict() for entry in state.manager.synchronizer.entries()])


@app.get("/config")
async def get_config() -> JSONResponse:
    return JSONResponse(state.config.model_dump())


@app.put("/config")
async def put_config(patch: dict) -> JSONResponse:
    """Merge-patch the runtime config, e.g. {"turn_detection": {"threshold": 0.7}}."""
    try:
        new_config = state.config.merge_patch(patch)
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=exc.errors()) from exc
    new_config.save(CONFIG_PATH)
    state.config = new_config
    state.manager.reconfigure(new_config)
    return JSONResponse(new_config.model_dump())


@app.get("/health")
async def health() -> JSONResponse:
    """Liveness check."""
    return JSONResponse({
        "status":  "ok",
        "version": __version__,
        "session": state.manager.status.value,
    })


async def _hold_open(ws: WebSocket, hub: LogBroadcaster, name: str) -> None:
    await hub.connect(ws)
    log.info("event=ws_%s_client_connected remote=%s", name, ws.client)
    try:
        while True:
            # Keep the connection alive; we only send, never receive
            await ws.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        hub.disconnect(ws)
        log.info("event=ws_%s_client_disconnected remote=%s", name, ws.client)


@app.websocket("/ws/logs")
async def ws_logs(ws: WebSocket) -> None:
    """
    Real-time log stream:
    {"source": "server", "level": "...", "logger": "...", "msg": "...", "ts": <unix float>}
    """
    await _hold_open(ws, broadcaster, "log")


@app.websocket("/ws/signals")
async def ws_signals(ws: WebSocket) -> None:
    """
    Session signals:
    {"kind": "status"|"speaker"|"transcript"|"handoff"|"breadcrumb"|"features", "data": ..., "ts": ...}
    """
    await _hold_open(ws, signals, "signals")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=os.getenv("HOST", "127.0.0.1"), port=int(os.getenv("PORT", "8000")))
