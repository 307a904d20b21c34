"""
server.py — Driver Support Voice Assistant · FastAPI Façade
===========================================================
Thin REST / WebSocket layer over the in-memory session store, the
dialogue orchestrator, and the LiveKit token issuer.

Endpoints
---------
  POST  /api/livekit/token                 Mint a LiveKit participant token
  POST  /api/sessions                      Start a voice session
  GET   /api/sessions/{id}                 Session summary
  PATCH /api/sessions/{id}/end             End a voice session
  POST  /api/sessions/{id}/reset           Restart the conversation
  POST  /api/sessions/{id}/utterances      One user utterance → one reply
  GET   /api/sessions/{id}/messages        Persisted message records
  GET   /api/sessions/{id}/transcript      Plain-text transcript download
  POST  /api/messages                      Store a message record
  POST  /api/groq/chat                     Raw completion (fallback on failure)
  GET   /api/groq/health                   Provider reachability
  GET   /api/health                        Service liveness
  GET   /config   PUT /config              Runtime configuration
  WS    /ws                                Transcript in → reply out
  WS    /ws/logs                           Live server log stream

Concurrency model
-----------------
The orchestrator does no locking.  Every utterance (HTTP or WS) runs
inside MemStorage.turn_lock(session_id), so at most one turn is in
flight per session while different sessions proceed in parallel.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Literal, Optional, Set

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from config import DriverSupportConfig
from dialogue import Turn
from fallback import FallbackResponder
from gateway import CompletionOptions, GatewayError, GroqChatGateway
from media_relay import LiveKitRelay, RelayUnavailable, TokenGenerationError
from orchestrator import DialogueOrchestrator, TurnResult
from storage import MemStorage, SessionEnded, SessionNotFound, VoiceSession

load_dotenv()

# ---------------------------------------------------------------------------
# WebSocket log broadcaster (defined early — referenced by logging handler)
# ---------------------------------------------------------------------------

LOG_REPLAY_SIZE = 200


class LogBroadcaster:
    """Fans server log events out to every /ws/logs subscriber."""
    def __init__(self, replay_size: int = LOG_REPLAY_SIZE) -> None:
        self._clients: Set[WebSocket] = set()
        self._history: list[dict] = []
        self._replay_size = replay_size

    async def connect(self, ws: WebSocket) -> None:
        await ws.accept()
        self._clients.add(ws)
        for event in list(self._history):
            await ws.send_text(json.dumps(event))

    def disconnect(self, ws: WebSocket) -> None:
        self._clients.discard(ws)

    async def broadcast(self, event: dict) -> None:
        self._history.append(event)
        del self._history[:-self._replay_size]
        dead: Set[WebSocket] = set()
        for ws in list(self._clients):
            try:
                await ws.send_text(json.dumps(event))
            except (WebSocketDisconnect, RuntimeError):
                dead.add(ws)
        self._clients -= dead


broadcaster = LogBroadcaster()


class _WsBroadcastHandler(logging.Handler):
    """Logging handler that forwards driver_support records to /ws/logs."""
    def emit(self, record: logging.LogRecord) -> None:
        event = {
            "level":  record.levelname,
            "logger": record.name,
            "msg":    self.format(record),
            "ts":     record.created,
        }
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return  # logged from a thread without a loop (startup, tests)
        loop.create_task(broadcaster.broadcast(event))


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
_LOG_FORMAT = "%(asctime)s.%(msecs)03d [%(levelname)s] %(name)s – %(message)s"

logging.basicConfig(
    level=logging.DEBUG if os.getenv("VOICE_DEBUG") else logging.INFO,
    format=_LOG_FORMAT,
    datefmt="%H:%M:%S",
)
log = logging.getLogger("driver_support.server")

_ws_handler = _WsBroadcastHandler()
_ws_handler.setFormatter(logging.Formatter(_LOG_FORMAT, datefmt="%H:%M:%S"))
logging.getLogger("driver_support").addHandler(_ws_handler)


# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------

@dataclass
class Services:
    config: DriverSupportConfig
    gateway: GroqChatGateway
    fallback: FallbackResponder
    orchestrator: DialogueOrchestrator
    storage: MemStorage
    relay: LiveKitRelay
    config_path: Optional[str] = None

    @classmethod
    def build(
        cls,
        config: DriverSupportConfig,
        *,
        gateway: Optional[GroqChatGateway] = None,
        storage: Optional[MemStorage] = None,
        config_path: Optional[str] = None,
    ) -> "Services":
        gateway = gateway or GroqChatGateway()
        fallback = FallbackResponder()
        return cls(
            config=config,
            gateway=gateway,
            fallback=fallback,
            orchestrator=DialogueOrchestrator(
                gateway,
                fallback,
                options=CompletionOptions.from_config(config.groq),
                reply_timeout_sec=config.groq.reply_timeout_sec,
            ),
            storage=storage or MemStorage(room_prefix=config.session.room_prefix),
            relay=LiveKitRelay(config.livekit),
            config_path=config_path,
        )

    def apply_config(self, config: DriverSupportConfig) -> None:
        """Swap in a new config.  Existing sessions keep their system prompt."""
        self.config = config
        self.orchestrator.options = CompletionOptions.from_config(config.groq)
        self.orchestrator.reply_timeout_sec = config.groq.reply_timeout_sec
        self.storage.room_prefix = config.session.room_prefix
        self.relay = LiveKitRelay(config.livekit)


services = Services.build(
    DriverSupportConfig.from_env(),
    config_path=os.getenv("DRIVER_SUPPORT_CONFIG"),
)


# ---------------------------------------------------------------------------
# Request / response models
# ---------------------------------------------------------------------------

class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class TokenRequest(_CamelModel):
    room_name: Optional[str] = Field(default=None, alias="roomName")
    participant: Optional[str] = None


class CreateSessionRequest(_CamelModel):
    scenario: Optional[str] = None
    language: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class UtteranceRequest(_CamelModel):
    text: str = ""
    speech_in_status: str = Field(default="Unknown", alias="speechInStatus")
    speech_out_status: str = Field(default="Unknown", alias="speechOutStatus")


class TranscriptMessage(UtteranceRequest):
    """One `transcript` frame on /ws; validated before any Turn is appended."""
    session_id: str = Field(alias="sessionId")
    is_final: bool = Field(default=True, alias="isFinal")


class MessageRequest(_CamelModel):
    session_id: str = Field(alias="sessionId")
    speaker: Literal["user", "bot"]
    content: str = Field(min_length=1)
    content_hindi: Optional[str] = Field(default=None, alias="contentHindi")
    audio_url: Optional[str] = Field(default=None, alias="audioUrl")
    processing_time: Optional[str] = Field(default=None, alias="processingTime")
    metadata: dict[str, Any] = Field(default_factory=dict)


class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


class ChatRequest(_CamelModel):
    messages: Optional[list[ChatMessage]] = None
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(default=200, ge=1, alias="maxTokens")


class TechnicalStatus(_CamelModel):
    """Client-visible, per-interaction observability snapshot."""
    provider_status: str = Field(serialization_alias="providerStatus")
    speech_in_status: str = Field(serialization_alias="speechInStatus")
    speech_out_status: str = Field(serialization_alias="speechOutStatus")
    latency_ms: int = Field(serialization_alias="latencyMs")

    @classmethod
    def from_turn(cls, result: TurnResult, speech_in: str, speech_out: str) -> "TechnicalStatus":
        if not result.used_fallback:
            provider = "Connected"
        elif result.fallback_reason == "not_configured":
            provider = "Not configured"
        else:
            provider = "Fallback"
        return cls(
            provider_status=provider,
            speech_in_status=speech_in,
            speech_out_status=speech_out,
            latency_ms=result.elapsed_ms,
        )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _require_session(session_id: str) -> VoiceSession:
    try:
        return services.storage.require_voice_session(session_id)
    except SessionNotFound:
        raise HTTPException(status_code=404, detail=f"No session '{session_id}'.") from None


def _session_summary(record: VoiceSession) -> dict:
    return {
        "sessionId":     record.id,
        "roomName":      record.room_name,
        "status":        record.status.value,
        "scenario":      record.scenario,
        "language":      record.language,
        "startedAt":     record.started_at.isoformat(),
        "endedAt":       record.ended_at.isoformat() if record.ended_at else None,
        "historyLength": len(record.dialogue),
        "phase":         record.dialogue.phase.value,
        "metadata":      record.metadata,
    }


def _message_dict(m) -> dict:
    return {
        "id":             m.id,
        "sessionId":      m.session_id,
        "speaker":        m.speaker,
        "content":        m.content,
        "contentHindi":   m.content_hindi,
        "timestamp":      m.timestamp.isoformat(),
        "audioUrl":       m.audio_url,
        "processingTime": m.processing_time,
        "metadata":       m.metadata,
    }


async def _run_turn(record: VoiceSession, text: str) -> Optional[TurnResult]:
    """Serialised utterance → reply cycle; persists both message records."""
    store = services.storage
    async with store.turn_lock(record.id):
        if not record.dialogue.is_active:
            raise SessionEnded(record.id)
        result = await services.orchestrator.handle_utterance(record.dialogue, text)
        if result is None:
            return None
        store.create_message(record.id, "user", text, content_hindi=text)
        store.create_message(
            record.id,
            "bot",
            result.reply,
            content_hindi=result.reply,
            processing_time=f"{result.elapsed_ms}ms",
            metadata={"source": result.source},
        )
    return result


def _turn_payload(result: TurnResult, speech_in: str, speech_out: str) -> dict:
    tech = TechnicalStatus.from_turn(result, speech_in, speech_out)
    return {
        "reply":           result.reply,
        "elapsedMs":       result.elapsed_ms,
        "source":          result.source,
        "technicalStatus": tech.model_dump(by_alias=True),
    }


# ---------------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------------

@asynccontextmanager
async def _lifespan(app: FastAPI):
    log.info(
        "event=server_start groq_configured=%s media_relay=%s",
        services.gateway.is_configured, services.relay.available,
    )
    yield
    active = sum(1 for s in services.storage.list_voice_sessions() if s.dialogue.is_active)
    log.info("event=server_shutdown active_sessions=%d", active)


app = FastAPI(
    title="Driver Support Voice Assistant",
    version="1.0.0",
    description="Scripted Hindi driver-support dialogue over Groq with LiveKit relay",
    lifespan=_lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Endpoints — media relay
# ---------------------------------------------------------------------------

@app.post("/api/livekit/token")
async def livekit_token(body: TokenRequest) -> JSONResponse:
    """Mint a LiveKit token for the browser participant of `roomName`."""
    if not body.room_name:
        raise HTTPException(status_code=400, detail="Room name is required")
    relay = services.relay
    try:
        token = relay.generate_token(body.room_name, body.participant)
    except RelayUnavailable as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except TokenGenerationError as exc:
        raise HTTPException(status_code=500, detail="Failed to generate token") from exc
    return JSONResponse({"token": token, "url": relay.url})


# ---------------------------------------------------------------------------
# Endpoints — sessions
# ---------------------------------------------------------------------------

@app.post("/api/sessions")
async def create_session(body: CreateSessionRequest) -> JSONResponse:
    cfg = services.config
    record = services.storage.create_voice_session(
        cfg.system_prompt,
        scenario=body.scenario or cfg.session.scenario,
        language=body.language or cfg.session.language,
        metadata=body.metadata,
    )
    return JSONResponse({
        "sessionId":  record.id,
        "roomName":   record.room_name,
        "mediaRelay": services.relay.available,
    })


@app.get("/api/sessions/{session_id}")
async def get_session(session_id: str) -> JSONResponse:
    return JSONResponse(_session_summary(_require_session(session_id)))


@app.patch("/api/sessions/{session_id}/end")
async def end_session(session_id: str) -> JSONResponse:
    services.storage.end_voice_session(session_id)
    return JSONResponse({"success": True})


@app.post("/api/sessions/{session_id}/reset")
async def reset_session(session_id: str) -> JSONResponse:
    """Restart the conversation: history back to the system prompt, message records cleared."""
    record = _require_session(session_id)
    async with services.storage.turn_lock(session_id):
        record.dialogue.reset()
        dropped = services.storage.clear_session_messages(session_id)
    log.info("event=session_reset session=%s dropped_messages=%d", session_id, dropped)
    return JSONResponse({"success": True, "historyLength": len(record.dialogue)})


@app.post("/api/sessions/{session_id}/utterances")
async def post_utterance(session_id: str, body: UtteranceRequest) -> JSONResponse:
    """One final STT transcript in, one reply out."""
    record = _require_session(session_id)
    try:
        result = await _run_turn(record, body.text)
    except SessionEnded:
        raise HTTPException(status_code=409, detail=f"Session '{session_id}' has ended.") from None
    if result is None:
        return JSONResponse({"reply": None, "elapsedMs": 0, "source": None, "technicalStatus": None})
    return JSONResponse(_turn_payload(result, body.speech_in_status, body.speech_out_status))


@app.get("/api/sessions/{session_id}/messages")
async def get_messages(session_id: str) -> JSONResponse:
    return JSONResponse([_message_dict(m) for m in services.storage.get_session_messages(session_id)])


@app.get("/api/sessions/{session_id}/transcript")
async def get_transcript(session_id: str) -> PlainTextResponse:
    record = _require_session(session_id)
    labels = services.config.session
    text = services.storage.render_transcript(session_id, labels.user_label, labels.bot_label)
    filename = f"ola-support-transcript-{record.started_at:%Y-%m-%d}.txt"
    return PlainTextResponse(
        text,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.post("/api/messages")
async def create_message(body: MessageRequest) -> JSONResponse:
    _require_session(body.session_id)
    message = services.storage.create_message(
        body.session_id,
        body.speaker,
        body.content,
        content_hindi=body.content_hindi,
        audio_url=body.audio_url,
        processing_time=body.processing_time,
        metadata=body.metadata,
    )
    return JSONResponse(_message_dict(message))


# ---------------------------------------------------------------------------
# Endpoints — LLM provider
# ---------------------------------------------------------------------------

@app.post("/api/groq/chat")
async def groq_chat(body: ChatRequest) -> JSONResponse:
    """Stateless completion over a client-supplied history."""
    if body.messages is None:
        raise HTTPException(status_code=400, detail="Messages array is required")

    history = tuple(Turn(m.role, m.content) for m in body.messages)
    options = CompletionOptions(
        model=services.config.groq.model,
        temperature=body.temperature,
        max_tokens=body.max_tokens,
        top_p=services.config.groq.top_p,
    )
    try:
        reply = await services.gateway.complete(history, options)
    except GatewayError as exc:
        log.info("event=chat_fallback reason=%s", exc)
        reply = services.fallback.respond(history)
    return JSONResponse({"message": reply})


@app.get("/api/groq/health")
async def groq_health() -> JSONResponse:
    return JSONResponse({"healthy": await services.gateway.health_check()})


@app.get("/api/health")
async def health() -> JSONResponse:
    """Liveness check."""
    return JSONResponse({
        "status":    "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "services": {
            "livekit":   services.relay.available,
            "groq":      services.gateway.is_configured,
            "websocket": True,
        },
    })


# ---------------------------------------------------------------------------
# Endpoints — runtime config
# ---------------------------------------------------------------------------

@app.get("/config")
async def get_config() -> JSONResponse:
    return JSONResponse(services.config.public_dump())


@app.put("/config")
async def put_config(patch: dict[str, Any]) -> JSONResponse:
    """Deep-merge `patch` over the running config; persisted when a path is set."""
    try:
        new_config = services.config.merge_patch(patch)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=exc.errors(include_url=False)) from exc

    services.apply_config(new_config)
    if services.config_path:
        new_config.save(services.config_path)
    log.info("event=config_updated keys=%s", sorted(patch))
    return JSONResponse(new_config.public_dump())


# ---------------------------------------------------------------------------
# WebSockets
# ---------------------------------------------------------------------------

async def _handle_ws_message(ws: WebSocket, message: dict) -> None:
    kind = message.get("type")

    if kind == "audio-data":
        log.debug("event=ws_audio_data_ignored")
        return

    if kind != "transcript":
        await ws.send_json({"type": "error", "error": f"Unknown message type: {kind}"})
        return

    try:
        frame = TranscriptMessage.model_validate(message)
    except ValidationError as exc:
        await ws.send_json({
            "type":   "error",
            "error":  "Invalid transcript message",
            "detail": exc.errors(include_url=False, include_context=False),
        })
        return

    # Only final recognition results reach the orchestrator.
    if not frame.is_final:
        log.debug("event=ws_interim_transcript text=%.60s", frame.text)
        return

    record = services.storage.get_voice_session(frame.session_id)
    if record is None:
        await ws.send_json({"type": "error", "error": "Unknown session"})
        return
    try:
        result = await _run_turn(record, frame.text)
    except SessionEnded:
        await ws.send_json({"type": "error", "error": "Session has ended"})
        return
    if result is None:
        return
    payload = _turn_payload(result, frame.speech_in_status, frame.speech_out_status)
    await ws.send_json({"type": "reply", "sessionId": record.id, **payload})


@app.websocket("/ws")
async def ws_dialogue(ws: WebSocket) -> None:
    """
    Real-time transcript channel.  Client sends
    {"type": "transcript", "sessionId": "...", "text": "...", "isFinal": true}
    and receives {"type": "reply", "reply": "...", "elapsedMs": ..., ...}.
    """
    await ws.accept()
    log.info("event=ws_client_connected remote=%s", ws.client)
    try:
        while True:
            raw = await ws.receive_text()
            try:
                message = json.loads(raw)
            except ValueError:
                await ws.send_json({"type": "error", "error": "Invalid JSON"})
                continue
            if not isinstance(message, dict):
                await ws.send_json({"type": "error", "error": "Expected a JSON object"})
                continue
            await _handle_ws_message(ws, message)
    except WebSocketDisconnect:
        pass
    finally:
        log.info("event=ws_client_disconnected remote=%s", ws.client)


@app.websocket("/ws/logs")
async def ws_logs(ws: WebSocket) -> None:
    """Live stream of driver_support log events as JSON objects."""
    await broadcaster.connect(ws)
    try:
        while True:
            await ws.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        broadcaster.disconnect(ws)


# For local dev convenience:
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "server:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8000")),
        reload=bool(os.getenv("VOICE_DEBUG")),
    )
