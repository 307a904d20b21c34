"""
orchestrator.py — Driver Support Voice Assistant · Dialogue Orchestrator
========================================================================
Single entry point per user utterance.

    handle_utterance(session, text)
        blank text            → None (no Turn appended, gateway untouched)
        session.append_user   → phase AWAITING_REPLY
        gateway.complete      → reply            (source="llm")
          NotConfigured       → fallback reply   (source="fallback")
          UpstreamError       → fallback reply   (source="fallback")
          deadline expired    → fallback reply   (source="fallback")
          any other error     → fallback reply   (source="fallback")
        session.append_assistant → phase IDLE
        → TurnResult(reply, elapsed_ms, source, fallback_reason)

Gateway failures never escape: every non-blank utterance gets a reply.
The orchestrator does no locking; callers must keep at most one
handle_utterance in flight per session.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Literal, Optional

from dialogue import DialogueSession
from fallback import FallbackResponder
from gateway import CompletionOptions, GroqChatGateway, NotConfigured, UpstreamError

log = logging.getLogger("driver_support.orchestrator")

ReplySource = Literal["llm", "fallback"]


@dataclass(frozen=True)
class TurnResult:
    reply: str
    elapsed_ms: int
    source: ReplySource = "llm"
    fallback_reason: Optional[str] = None

    @property
    def used_fallback(self) -> bool:
        return self.source == "fallback"


class DialogueOrchestrator:

    def __init__(
        self,
        gateway: GroqChatGateway,
        fallback: Optional[FallbackResponder] = None,
        *,
        options: CompletionOptions = CompletionOptions(),
        reply_timeout_sec: Optional[float] = None,
    ) -> None:
        self.gateway = gateway
        self.fallback = fallback or FallbackResponder()
        self.options = options
        self.reply_timeout_sec = reply_timeout_sec

    async def handle_utterance(self, session: DialogueSession, text: str) -> Optional[TurnResult]:
        if not text or not text.strip():
            log.info("event=utterance_rejected session=%s reason=empty", session.id)
            return None

        started = time.monotonic()
        session.append_user(text)
        log.info("event=utterance session=%s turns=%d text=%.80s", session.id, len(session), text)

        reply, source, reason = await self._reply_for(session)
        session.append_assistant(reply)

        elapsed_ms = int((time.monotonic() - started) * 1000)
        log.info(
            "event=reply session=%s source=%s elapsed_ms=%d text=%.80s",
            session.id, source, elapsed_ms, reply,
        )
        return TurnResult(reply=reply, elapsed_ms=elapsed_ms, source=source, fallback_reason=reason)

    async def _reply_for(self, session: DialogueSession) -> tuple[str, ReplySource, Optional[str]]:
        """Two-branch result: (reply, "llm", None) or (reply, "fallback", reason)."""
        history = session.snapshot()
        try:
            reply = await self._complete_with_deadline(history)
        except NotConfigured:
            log.debug("event=fallback session=%s reason=not_configured", session.id)
            return self.fallback.respond(history), "fallback", "not_configured"
        except UpstreamError as exc:
            log.warning("event=fallback session=%s reason=upstream_error error=%s", session.id, exc)
            return self.fallback.respond(history), "fallback", str(exc)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.warning(
                "event=fallback session=%s reason=error error_type=%s error=%s",
                session.id, type(exc).__name__, exc,
            )
            return self.fallback.respond(history), "fallback", "error"
        return reply, "llm", None

    async def _complete_with_deadline(self, history) -> str:
        call = self.gateway.complete(history, self.options)
        if self.reply_timeout_sec is None:
            return await call
        try:
            return await asyncio.wait_for(call, timeout=self.reply_timeout_sec)
        except asyncio.TimeoutError as exc:
            raise UpstreamError("timeout") from exc
