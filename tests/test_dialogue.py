"""Tests for DialogueSession history management."""

from dialogue import DialogueSession, SessionStatus, Turn, TurnPhase, as_messages


def test_create_seeds_system_turn(session):
    assert session.snapshot() == (Turn("system", "You are a helpful Ola support agent."),)
    assert session.status is SessionStatus.ACTIVE
    assert session.turn_count == 0


def test_append_preserves_order(session):
    session.append_user("ride nahi mil rahi")
    session.append_assistant("Kya yeh aapka registered number hai?")
    session.append_user("haan")

    roles = [t.role for t in session.snapshot()]
    assert roles == ["system", "user", "assistant", "user"]
    assert session.snapshot()[0].role == "system"


def test_append_user_does_not_validate(session):
    session.append_user("")
    session.append_user("again")
    assert len(session) == 3


def test_phase_follows_turn_taking(session):
    assert session.phase is TurnPhase.IDLE
    session.append_user("hello")
    assert session.phase is TurnPhase.AWAITING_REPLY
    session.append_assistant("namaste")
    assert session.phase is TurnPhase.IDLE


def test_reset_restores_system_turn_only(session):
    session.append_user("a")
    session.append_assistant("b")
    session.reset()
    assert session.snapshot() == (Turn("system", session.system_prompt),)


def test_reset_is_idempotent(session):
    session.append_user("a")
    session.append_assistant("b")
    session.reset()
    once = session.snapshot()
    session.reset()
    assert session.snapshot() == once
    assert session.is_active


def test_snapshot_is_detached(session):
    session.append_user("hello")
    snap = list(session.snapshot())
    snap.append(Turn("assistant", "injected"))
    snap.pop(0)
    assert len(session) == 2
    assert session.snapshot()[0].role == "system"


def test_as_messages_wire_format(session):
    session.append_user("hi")
    assert as_messages(session.snapshot()) == [
        {"role": "system", "content": "You are a helpful Ola support agent."},
        {"role": "user", "content": "hi"},
    ]


def test_sessions_are_isolated():
    a = DialogueSession.create("prompt")
    b = DialogueSession.create("prompt")
    a.append_user("only in a")
    a.reset()
    a.append_user("still only in a")
    assert b.snapshot() == (Turn("system", "prompt"),)
    assert a.id != b.id


def test_end_marks_session_ended(session):
    session.append_user("x")
    session.end()
    assert session.status is SessionStatus.ENDED
    assert not session.is_active
    assert len(session) == 2


def test_direct_construction_seeds_system_turn():
    session = DialogueSession(id="s1", system_prompt="prompt")
    assert session.snapshot() == (Turn("system", "prompt"),)
    session.append_user("hi")
    session.reset()
    assert len(session) == 1
