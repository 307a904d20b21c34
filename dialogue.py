"""
dialogue.py — Driver Support Voice Assistant · Dialogue Session
===============================================================
Ordered, role-tagged conversation history for ONE conversation.

    history[0]   system Turn (seeded at creation, never removed)
    history[1:]  user / assistant Turns in chronological order

The session does no locking and no validation; the orchestrator rejects
blank utterances and the server serialises turns per session.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Literal, Optional

Role = Literal["system", "user", "assistant"]


class SessionStatus(str, Enum):
    ACTIVE = "active"
    ENDED = "ended"


class TurnPhase(str, Enum):
    IDLE = "idle"                       # ready for the next utterance
    AWAITING_REPLY = "awaiting_reply"   # user Turn appended, reply pending


@dataclass(frozen=True)
class Turn:
    """One role-tagged utterance."""
    role: Role
    content: str

    def to_message(self) -> dict:
        """Provider wire format: {"role": ..., "content": ...}."""
        return {"role": self.role, "content": self.content}


@dataclass
class DialogueSession:
    id: str
    system_prompt: str
    status: SessionStatus = SessionStatus.ACTIVE
    phase: TurnPhase = TurnPhase.IDLE
    _history: list[Turn] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._history = [Turn("system", self.system_prompt)]

    @classmethod
    def create(cls, system_prompt: str, session_id: Optional[str] = None) -> "DialogueSession":
        return cls(id=session_id or uuid.uuid4().hex, system_prompt=system_prompt)

    # -- Mutation --------------------------------------------------------------

    def append_user(self, text: str) -> None:
        self._history.append(Turn("user", text))
        self.phase = TurnPhase.AWAITING_REPLY

    def append_assistant(self, text: str) -> None:
        self._history.append(Turn("assistant", text))
        self.phase = TurnPhase.IDLE

    def reset(self) -> None:
        """Drop every Turn except the system prompt.  Idempotent."""
        del self._history[1:]
        self.phase = TurnPhase.IDLE

    def end(self) -> None:
        self.status = SessionStatus.ENDED

    # -- Read access -----------------------------------------------------------

    def snapshot(self) -> tuple[Turn, ...]:
        """Immutable copy of the history; Turns are frozen so nothing leaks back."""
        return tuple(self._history)

    @property
    def turn_count(self) -> int:
        """Number of non-system Turns."""
        return len(self._history) - 1

    @property
    def is_active(self) -> bool:
        return self.status is SessionStatus.ACTIVE

    def __len__(self) -> int:
        return len(self._history)


def as_messages(history: Iterable[Turn]) -> list[dict]:
    """Provider wire serialisation of a Turn sequence."""
    return [turn.to_message() for turn in history]
