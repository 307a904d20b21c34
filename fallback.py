"""
fallback.py — Driver Support Voice Assistant · Scripted Fallback Replies
========================================================================
Deterministic Hindi replies used whenever the Groq gateway is unavailable
or not configured.  The rule table encodes the same 3-step flow the
system prompt asks the LLM to follow:

    1. driver reports no rides   → ask to confirm the registered number
    2. driver confirms           → account is clear, relocate and recheck
    3. driver thanks / closes    → courtesy close
    –  anything else             → generic "how can I help"

Matching is a case-insensitive substring test against the most recent
user utterance only; rules are tried in order and the first hit wins.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Sequence

from dialogue import Turn

log = logging.getLogger("driver_support.fallback")


@dataclass(frozen=True)
class ScriptedReplyRule:
    name: str
    patterns: tuple[str, ...]
    reply: str

    def matches(self, utterance: str) -> bool:
        lowered = utterance.lower()
        return any(pattern in lowered for pattern in self.patterns)


REGISTRATION_PROMPT = "Ola customer support mein aapka swagat hai. Kya yeh aapka registered number hai?"
ACCOUNT_CLEAR_REPLY = (
    "Aapka number blocked nahi hai. Sab theek hai. "
    "Kripya apna location badal kar phir se rides check kijiye."
)
CLOSING_REPLY = "Aapka swagat hai! Koi aur samasya ho to hamen call kariye. Ola aapki seva mein hai."
DEFAULT_REPLY = "Main aapki madad karne ke liye yahan hoon. Kripya apni samasya batayiye."

DEFAULT_RULES: tuple[ScriptedReplyRule, ...] = (
    ScriptedReplyRule(
        name="no_rides",
        patterns=("ride nahi mil", "rides nahi", "2 ghante", "online hoon"),
        reply=REGISTRATION_PROMPT,
    ),
    ScriptedReplyRule(
        name="confirm_number",
        patterns=("haan", "yes", "registered number hai", "mera number"),
        reply=ACCOUNT_CLEAR_REPLY,
    ),
    ScriptedReplyRule(
        name="closing",
        patterns=("dhanyawad", "thank you", "theek hai"),
        reply=CLOSING_REPLY,
    ),
)


def last_user_utterance(history: Iterable[Turn]) -> str | None:
    last = None
    for turn in history:
        if turn.role == "user":
            last = turn.content
    return last


class FallbackResponder:
    """Rule-table reply generator.  Pure: same last utterance, same reply."""

    def __init__(
        self,
        rules: Sequence[ScriptedReplyRule] = DEFAULT_RULES,
        default_reply: str = DEFAULT_REPLY,
    ) -> None:
        self.rules = tuple(rules)
        self.default_reply = default_reply

    def _match(self, history: Iterable[Turn]) -> ScriptedReplyRule | None:
        utterance = last_user_utterance(history)
        if utterance is None:
            return None
        for rule in self.rules:
            if rule.matches(utterance):
                return rule
        return None

    def classify(self, history: Iterable[Turn]) -> str:
        """Name of the rule that would answer `history`, or "default"."""
        rule = self._match(history)
        return rule.name if rule else "default"

    def respond(self, history: Iterable[Turn]) -> str:
        rule = self._match(history)
        if rule is None:
            log.debug("event=fallback_reply rule=default")
            return self.default_reply
        log.debug("event=fallback_reply rule=%s", rule.name)
        return rule.reply
