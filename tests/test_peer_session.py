import asyncio

import pytest

from callharness.errors import NegotiationFailure, SessionClosed
from callharness.rtc.peer_session import (
    CALLER_GREETING,
    DATA_CHANNEL_LABEL,
    PeerCallbacks,
    PeerSession,
    PeerState,
    candidate_from_json,
)

REMOTE_OFFER = {"type": "offer", "sdp": "v=0 remote-offer"}
REMOTE_ANSWER = {"type": "answer", "sdp": "v=0 remote-answer"}


def test_early_candidates_drain_in_order_right_after_remote_offer(pc_factory, candidate) -> None:
    async def scenario():
        session = PeerSession("c1", pc_factory=pc_factory)
        for port in (5001, 5002, 5003):
            await session.handle_candidate(candidate(port))
        assert session.pending_candidates == 3
        assert pc_factory.calls == []

        answer = await session.handle_offer(REMOTE_OFFER)
        await session.handle_candidate(candidate(5004))
        return session, answer

    session, answer = asyncio.run(scenario())

    assert pc_factory.calls == [
        ("setRemoteDescription", "offer"),
        ("addIceCandidate", 5001),
        ("addIceCandidate", 5002),
        ("addIceCandidate", 5003),
        ("createAnswer",),
        ("setLocalDescription", "answer"),
        ("addIceCandidate", 5004),
    ]
    assert answer == {"type": "answer", "sdp": "v=0 local-answer"}
    assert session.state is PeerState.NEGOTIATED
    assert session.remote_ready
    assert session.pending_candidates == 0


def test_candidate_arriving_during_offer_waits_for_drain(pc_factory, candidate) -> None:
    async def scenario():
        session = PeerSession("c1", pc_factory=pc_factory)
        await session.handle_candidate(candidate(6001))
        pc = pc_factory.last
        pc.remote_gate = asyncio.Event()

        offer_task = asyncio.ensure_future(session.handle_offer(REMOTE_OFFER))
        await asyncio.sleep(0)
        late_task = asyncio.ensure_future(session.handle_candidate(candidate(6002)))
        await asyncio.sleep(0)
        pc.remote_gate.set()
        await asyncio.gather(offer_task, late_task)

    asyncio.run(scenario())

    ice = [c for c in pc_factory.calls if c[0] == "addIceCandidate"]
    assert ice == [("addIceCandidate", 6001), ("addIceCandidate", 6002)]
    assert pc_factory.calls.index(("createAnswer",)) < pc_factory.calls.index(("addIceCandidate", 6002))


def test_start_as_caller_creates_channel_and_offer_once(pc_factory) -> None:
    async def scenario():
        session = PeerSession("c1", pc_factory=pc_factory)
        offer = await session.start_as_caller()
        with pytest.raises(NegotiationFailure):
            await session.start_as_caller()
        return session, offer

    session, offer = asyncio.run(scenario())

    assert offer == {"type": "offer", "sdp": "v=0 local-offer"}
    assert session.state is PeerState.LOCAL_OFFERED
    assert pc_factory.calls == [
        ("createDataChannel", DATA_CHANNEL_LABEL),
        ("createOffer",),
        ("setLocalDescription", "offer"),
    ]


def test_answer_after_offer_reaches_negotiated(pc_factory, candidate) -> None:
    async def scenario():
        session = PeerSession("c1", pc_factory=pc_factory)
        await session.start_as_caller()
        await session.handle_candidate(candidate(7001))
        await session.handle_answer(REMOTE_ANSWER)
        return session

    session = asyncio.run(scenario())

    assert session.state is PeerState.NEGOTIATED
    assert pc_factory.calls[-2:] == [("setRemoteDescription", "answer"), ("addIceCandidate", 7001)]


def test_bad_candidate_is_skipped(pc_factory, candidate) -> None:
    logs = []

    async def on_log(msg):
        logs.append(msg)

    async def scenario():
        session = PeerSession("c1", pc_factory=pc_factory, callbacks=PeerCallbacks(on_log=on_log))
        pc_factory.last.reject_ports.add(8002)
        for port in (8001, 8002, 8003):
            await session.handle_candidate(candidate(port))
        await session.handle_candidate({"candidate": "garbage"})
        await session.handle_offer(REMOTE_OFFER)
        await session.handle_candidate(candidate(8004))
        return session

    session = asyncio.run(scenario())

    ice = [c[1] for c in pc_factory.calls if c[0] == "addIceCandidate"]
    assert ice == [8001, 8002, 8003, 8004]
    assert session.state is PeerState.NEGOTIATED
    assert sum("addIce error" in line for line in logs) == 2


def test_end_of_candidates_marker_is_ignored(pc_factory) -> None:
    async def scenario():
        session = PeerSession("c1", pc_factory=pc_factory)
        await session.handle_candidate({"candidate": "", "sdpMid": "0"})
        return session

    session = asyncio.run(scenario())
    assert session.pending_candidates == 0


def test_remote_description_failure_keeps_session_open(pc_factory) -> None:
    async def scenario():
        session = PeerSession("c1", pc_factory=pc_factory)
        pc_factory.last.fail.add("setRemoteDescription")
        with pytest.raises(NegotiationFailure):
            await session.handle_offer(REMOTE_OFFER)
        return session

    session = asyncio.run(scenario())

    assert session.state is PeerState.NEW
    assert not session.closed
    assert not session.remote_ready
    assert ("createAnswer",) not in pc_factory.calls


def test_close_is_idempotent(pc_factory, candidate) -> None:
    async def scenario():
        session = PeerSession("c1", pc_factory=pc_factory)
        await session.start_as_caller()
        await session.handle_candidate(candidate(9001))
        await session.close()
        await session.close()
        return session

    session = asyncio.run(scenario())

    pc = pc_factory.last
    assert pc.close_count == 1
    assert pc.channels[0].close_count == 1
    assert session.state is PeerState.CLOSED
    assert session.pending_candidates == 0


def test_close_while_offer_pending_discards_result(pc_factory) -> None:
    async def scenario():
        session = PeerSession("c1", pc_factory=pc_factory)
        pc = pc_factory.last
        pc.remote_gate = asyncio.Event()
        task = asyncio.ensure_future(session.handle_offer(REMOTE_OFFER))
        await asyncio.sleep(0)
        await session.close()
        pc.remote_gate.set()
        with pytest.raises(SessionClosed):
            await task
        with pytest.raises(SessionClosed):
            await session.handle_answer(REMOTE_ANSWER)

    asyncio.run(scenario())

    assert ("createAnswer",) not in pc_factory.calls
    assert ("setLocalDescription", "answer") not in pc_factory.calls


def test_connection_state_connected_after_negotiation(pc_factory) -> None:
    states = []

    async def on_state(call_id, state):
        states.append((call_id, state))

    async def scenario():
        session = PeerSession("c1", pc_factory=pc_factory, callbacks=PeerCallbacks(on_connection_state=on_state))
        await session.handle_offer(REMOTE_OFFER)
        await pc_factory.last.set_connection_state("connected")
        return session

    session = asyncio.run(scenario())

    assert session.state is PeerState.CONNECTED
    assert states == [("c1", "connected")]


def test_caller_greets_when_channel_opens(pc_factory) -> None:
    async def scenario():
        session = PeerSession("c1", pc_factory=pc_factory)
        await session.start_as_caller()
        channel = pc_factory.last.channels[0]
        assert not session.send("early")
        await channel.open()
        assert session.send("hello")
        return channel

    channel = asyncio.run(scenario())
    assert channel.sent == [CALLER_GREETING, "hello"]


def test_callee_channel_already_open_reports_before_event_returns(pc_factory) -> None:
    opened = []

    async def on_open(call_id, label):
        opened.append((call_id, label))

    async def scenario():
        session = PeerSession("c1", callbacks=PeerCallbacks(on_channel_open=on_open), pc_factory=pc_factory)
        await session.handle_offer(REMOTE_OFFER)
        channel = await pc_factory.last.announce_channel(DATA_CHANNEL_LABEL)
        # No extra loop iteration: the open callback has already run.
        assert opened == [("c1", DATA_CHANNEL_LABEL)]
        assert session.send("pong")
        return channel

    channel = asyncio.run(scenario())
    # Only the caller greets.
    assert channel.sent == ["pong"]


def test_callee_channel_opening_later_reports_once(pc_factory) -> None:
    opened = []

    async def on_open(call_id, label):
        opened.append(label)

    async def scenario():
        session = PeerSession("c1", callbacks=PeerCallbacks(on_channel_open=on_open), pc_factory=pc_factory)
        channel = await pc_factory.last.announce_channel("test", already_open=False)
        assert opened == []
        await channel.open()
        return session.send("late")

    assert asyncio.run(scenario())
    assert opened == ["test"]


def test_candidate_from_json_accepts_attribute_form(candidate) -> None:
    cand = candidate_from_json(candidate(5555))
    assert cand.port == 5555
    assert cand.ip == "192.168.1.10"
    assert cand.foundation == "1"
    assert cand.sdpMid == "0"
