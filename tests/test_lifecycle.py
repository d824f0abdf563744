import pytest

from callharness.call.lifecycle import CallLifecycle, CallRole, CallStatus
from callharness.errors import InvalidTransition


def test_caller_happy_path() -> None:
    lc = CallLifecycle("me")
    session = lc.create("c1", "p")
    assert (session.role, session.status, session.local_id) == (CallRole.CALLER, CallStatus.CREATED, "me")

    lc.accept()
    assert lc.end() is True
    assert session.status is CallStatus.ENDED


def test_end_is_idempotent() -> None:
    lc = CallLifecycle("me")
    lc.on_incoming("c1", "caller")
    assert lc.end() is True
    assert lc.end() is False
    assert lc.session.status is CallStatus.ENDED


def test_accept_from_ended_fails_and_keeps_status() -> None:
    lc = CallLifecycle("me")
    lc.create("c1", "p")
    lc.end()
    with pytest.raises(InvalidTransition):
        lc.accept()
    assert lc.session.status is CallStatus.ENDED


@pytest.mark.parametrize("action", ["accept", "reject"])
def test_only_created_can_be_answered(action) -> None:
    lc = CallLifecycle("me")
    lc.on_incoming("c1", "caller")
    lc.accept()
    with pytest.raises(InvalidTransition):
        getattr(lc, action)(*(["busy"] if action == "reject" else []))
    assert lc.session.status is CallStatus.ACCEPTED


def test_rejected_is_terminal() -> None:
    lc = CallLifecycle("me")
    lc.on_incoming("c1", "caller")
    lc.reject("busy")
    assert lc.session.reject_reason == "busy"
    with pytest.raises(InvalidTransition):
        lc.end()
    assert lc.session.status is CallStatus.REJECTED
    assert not lc.is_active("c1")


def test_no_session_rejects_actions() -> None:
    lc = CallLifecycle("me")
    for action in (lc.accept, lc.end):
        with pytest.raises(InvalidTransition):
            action()
    assert lc.session is None


def test_new_call_requires_terminal_previous() -> None:
    lc = CallLifecycle("me")
    lc.create("c1", "p")
    with pytest.raises(InvalidTransition):
        lc.on_incoming("c2", "q")
    assert lc.session.call_id == "c1"

    lc.end()
    session = lc.on_incoming("c2", "q")
    assert session.role is CallRole.CALLEE
    assert lc.is_active("c2")
    assert not lc.is_active("c1")


def test_checks_do_not_move_the_session() -> None:
    lc = CallLifecycle("me")
    session = lc.on_incoming("c1", "caller")

    assert lc.ensure_can_accept() is session
    assert lc.ensure_can_reject() is session
    assert lc.ensure_can_end() is session
    assert session.status is CallStatus.CREATED

    lc.end()
    assert lc.ensure_can_end() is None
    with pytest.raises(InvalidTransition):
        lc.ensure_can_accept()
