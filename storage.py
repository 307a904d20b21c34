"""
storage.py — Driver Support Voice Assistant · In-memory Session Store
=====================================================================
Voice-session records, persisted message records, and the per-session
turn lock that serialises utterances.  Everything lives in process
memory: a restart loses all sessions.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Optional

from dialogue import DialogueSession, SessionStatus

log = logging.getLogger("driver_support.storage")

Speaker = Literal["user", "bot"]


class SessionNotFound(LookupError):
    """No voice session with the given id."""


class SessionEnded(RuntimeError):
    """The voice session was already ended."""


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class VoiceSession:
    id: str
    room_name: str
    dialogue: DialogueSession = field(repr=False)
    scenario: str = "driver_support"
    language: str = "hindi"
    started_at: datetime = field(default_factory=_now)
    ended_at: Optional[datetime] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def status(self) -> SessionStatus:
        return self.dialogue.status


@dataclass
class ConversationMessage:
    id: str
    session_id: str
    speaker: Speaker
    content: str
    content_hindi: Optional[str] = None
    timestamp: datetime = field(default_factory=_now)
    audio_url: Optional[str] = None
    processing_time: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    # Insertion counter; orders messages whose timestamps collide.
    seq: int = 0


class MemStorage:
    """Dictionary-backed store for voice sessions and their messages."""

    def __init__(self, room_prefix: str = "ola-support") -> None:
        self.room_prefix = room_prefix
        self._sessions: dict[str, VoiceSession] = {}
        self._messages: dict[str, ConversationMessage] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._seq = 0

    # -- Voice sessions --------------------------------------------------------

    def create_voice_session(
        self,
        system_prompt: str,
        *,
        room_name: Optional[str] = None,
        scenario: str = "driver_support",
        language: str = "hindi",
        metadata: Optional[dict[str, Any]] = None,
    ) -> VoiceSession:
        session_id = str(uuid.uuid4())
        room = room_name or f"{self.room_prefix}-{int(time.time() * 1000)}"
        record = VoiceSession(
            id=session_id,
            room_name=room,
            dialogue=DialogueSession.create(system_prompt, session_id=session_id),
            scenario=scenario,
            language=language,
            metadata=dict(metadata or {}),
        )
        self._sessions[session_id] = record
        log.info("event=session_created session=%s room=%s", session_id, room)
        return record

    def get_voice_session(self, session_id: str) -> Optional[VoiceSession]:
        return self._sessions.get(session_id)

    def require_voice_session(self, session_id: str) -> VoiceSession:
        record = self._sessions.get(session_id)
        if record is None:
            raise SessionNotFound(session_id)
        return record

    def list_voice_sessions(self) -> list[VoiceSession]:
        return sorted(self._sessions.values(), key=lambda s: s.started_at)

    def end_voice_session(self, session_id: str) -> None:
        record = self._sessions.get(session_id)
        if record is None or not record.dialogue.is_active:
            return
        record.dialogue.end()
        record.ended_at = _now()
        self._locks.pop(session_id, None)
        log.info("event=session_ended session=%s turns=%d", session_id, record.dialogue.turn_count)

    def turn_lock(self, session_id: str) -> asyncio.Lock:
        """Per-session lock; hold it for the whole utterance → reply cycle.

        Ended sessions get a throwaway lock: no turn can run on them, so
        nothing needs serialising and the registry stays bounded.
        """
        record = self._sessions.get(session_id)
        if record is not None and not record.dialogue.is_active:
            return asyncio.Lock()
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        return lock

    # -- Messages --------------------------------------------------------------

    def create_message(
        self,
        session_id: str,
        speaker: Speaker,
        content: str,
        *,
        content_hindi: Optional[str] = None,
        audio_url: Optional[str] = None,
        processing_time: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> ConversationMessage:
        self._seq += 1
        message = ConversationMessage(
            id=str(uuid.uuid4()),
            session_id=session_id,
            speaker=speaker,
            content=content,
            content_hindi=content_hindi,
            audio_url=audio_url,
            processing_time=processing_time,
            metadata=dict(metadata or {}),
            seq=self._seq,
        )
        self._messages[message.id] = message
        return message

    def get_message(self, message_id: str) -> Optional[ConversationMessage]:
        return self._messages.get(message_id)

    def get_session_messages(self, session_id: str) -> list[ConversationMessage]:
        return sorted(
            (m for m in self._messages.values() if m.session_id == session_id),
            key=lambda m: (m.timestamp, m.seq),
        )

    def clear_session_messages(self, session_id: str) -> int:
        """Drop every message record of a session; returns how many went."""
        doomed = [mid for mid, m in self._messages.items() if m.session_id == session_id]
        for mid in doomed:
            del self._messages[mid]
        return len(doomed)

    def render_transcript(
        self,
        session_id: str,
        user_label: str = "Driver",
        bot_label: str = "Support Bot",
    ) -> str:
        lines = []
        for m in self.get_session_messages(session_id):
            label = user_label if m.speaker == "user" else bot_label
            lines.append(f"[{m.timestamp:%H:%M:%S}] {label}: {m.content_hindi or m.content}")
        return "\n".join(lines)
