"""Tests for the utterance → reply cycle in DialogueOrchestrator."""

import asyncio

import pytest

from conftest import StubGateway
from dialogue import DialogueSession, Turn, TurnPhase
from fallback import ACCOUNT_CLEAR_REPLY, REGISTRATION_PROMPT
from orchestrator import DialogueOrchestrator


def test_llm_reply_is_recorded(session):
    gateway = StubGateway(reply="Namaste, batayiye.")
    result = asyncio.run(DialogueOrchestrator(gateway).handle_utterance(session, "hello"))

    assert result.reply == "Namaste, batayiye."
    assert result.source == "llm"
    assert not result.used_fallback
    assert isinstance(result.elapsed_ms, int) and result.elapsed_ms >= 0
    assert session.snapshot()[-2:] == (Turn("user", "hello"), Turn("assistant", "Namaste, batayiye."))
    assert session.phase is TurnPhase.IDLE


def test_gateway_sees_history_with_new_user_turn(session):
    gateway = StubGateway(reply="ok")
    asyncio.run(DialogueOrchestrator(gateway).handle_utterance(session, "hello"))
    assert gateway.calls == [(Turn("system", session.system_prompt), Turn("user", "hello"))]


def test_gateway_failure_is_transparent(session, failing_gateway):
    orchestrator = DialogueOrchestrator(failing_gateway)
    result = asyncio.run(orchestrator.handle_utterance(session, "mujhe 2 ghante se ride nahi mil rahi"))

    assert result.reply == REGISTRATION_PROMPT
    assert result.used_fallback
    assert "503" in result.fallback_reason
    assert session.snapshot()[-1] == Turn("assistant", REGISTRATION_PROMPT)


def test_end_to_end_scripted_confirmation(unconfigured_gateway):
    session = DialogueSession.create("system")
    orchestrator = DialogueOrchestrator(unconfigured_gateway)

    result = asyncio.run(orchestrator.handle_utterance(session, "Haan, yeh mera registered number hai"))

    assert result.reply == ACCOUNT_CLEAR_REPLY
    assert result.fallback_reason == "not_configured"
    assert len(session) == 3
    assert [t.role for t in session.snapshot()] == ["system", "user", "assistant"]


@pytest.mark.parametrize("blank", ["", "   ", "\n\t"])
def test_empty_utterance_is_noop(session, blank):
    gateway = StubGateway(reply="should not be used")
    result = asyncio.run(DialogueOrchestrator(gateway).handle_utterance(session, blank))

    assert result is None
    assert len(session) == 1
    assert gateway.calls == []


def test_each_turn_adds_exactly_two(session, failing_gateway):
    orchestrator = DialogueOrchestrator(failing_gateway)
    for n, text in enumerate(["ride nahi mil rahi", "haan", "dhanyawad"], start=1):
        asyncio.run(orchestrator.handle_utterance(session, text))
        assert len(session) == 1 + 2 * n


def test_deadline_routes_to_fallback(session):
    gateway = StubGateway(reply="too late", delay=0.5)
    orchestrator = DialogueOrchestrator(gateway, reply_timeout_sec=0.01)

    result = asyncio.run(orchestrator.handle_utterance(session, "haan"))

    assert result.reply == ACCOUNT_CLEAR_REPLY
    assert result.fallback_reason == "timeout"
    assert len(session) == 3


def test_sessions_do_not_share_history(failing_gateway):
    orchestrator = DialogueOrchestrator(failing_gateway)
    a = DialogueSession.create("system")
    b = DialogueSession.create("system")

    async def both():
        await asyncio.gather(
            orchestrator.handle_utterance(a, "ride nahi mil rahi"),
            orchestrator.handle_utterance(b, "haan"),
        )

    asyncio.run(both())
    assert a.snapshot()[1:] == (Turn("user", "ride nahi mil rahi"), Turn("assistant", REGISTRATION_PROMPT))
    assert b.snapshot()[1:] == (Turn("user", "haan"), Turn("assistant", ACCOUNT_CLEAR_REPLY))


def test_unexpected_gateway_error_still_replies(session):
    orchestrator = DialogueOrchestrator(StubGateway(error=RuntimeError("boom")))

    result = asyncio.run(orchestrator.handle_utterance(session, "haan"))

    assert result.reply == ACCOUNT_CLEAR_REPLY
    assert result.fallback_reason == "error"
    assert [t.role for t in session.snapshot()] == ["system", "user", "assistant"]
    assert session.phase is TurnPhase.IDLE


def test_cancellation_is_not_swallowed(session):
    orchestrator = DialogueOrchestrator(StubGateway(error=asyncio.CancelledError()))
    with pytest.raises(asyncio.CancelledError):
        asyncio.run(orchestrator.handle_utterance(session, "haan"))
