"""Shared fakes: an instrumented peer-connection primitive and an in-memory bus."""

from __future__ import annotations

import asyncio
import inspect
import json
from typing import Any, Dict, List, Optional

import pytest
from aiortc import RTCSessionDescription

from callharness.errors import TransportError


class FakeEmitter:
    def __init__(self) -> None:
        self._handlers: Dict[str, List[Any]] = {}

    def on(self, event: str, f: Any = None) -> Any:
        def register(fn: Any) -> Any:
            self._handlers.setdefault(event, []).append(fn)
            return fn

        return register(f) if f is not None else register

    async def fire(self, event: str, *args: Any) -> None:
        for fn in list(self._handlers.get(event, [])):
            result = fn(*args)
            if inspect.isawaitable(result):
                await result


class FakeDataChannel(FakeEmitter):
    def __init__(self, label: str) -> None:
        super().__init__()
        self.label = label
        self.readyState = "connecting"
        self.sent: List[Any] = []
        self.close_count = 0

    def send(self, data: Any) -> None:
        self.sent.append(data)

    def close(self) -> None:
        self.close_count += 1
        self.readyState = "closed"

    async def open(self) -> None:
        self.readyState = "open"
        await self.fire("open")


class FakePeerConnection(FakeEmitter):
    """Records every primitive call, in order, into a shared list."""

    def __init__(self, calls: List[tuple]) -> None:
        super().__init__()
        self.calls = calls
        self.localDescription: Optional[RTCSessionDescription] = None
        self.remoteDescription: Optional[RTCSessionDescription] = None
        self.connectionState = "new"
        self.channels: List[FakeDataChannel] = []
        self.close_count = 0
        self.fail: set = set()
        self.reject_ports: set = set()
        # When set, setRemoteDescription blocks until the event fires.
        self.remote_gate: Optional[asyncio.Event] = None

    def createDataChannel(self, label: str) -> FakeDataChannel:
        self.calls.append(("createDataChannel", label))
        channel = FakeDataChannel(label)
        self.channels.append(channel)
        return channel

    async def createOffer(self) -> RTCSessionDescription:
        self.calls.append(("createOffer",))
        self._maybe_fail("createOffer")
        return RTCSessionDescription(sdp="v=0 local-offer", type="offer")

    async def createAnswer(self) -> RTCSessionDescription:
        self.calls.append(("createAnswer",))
        self._maybe_fail("createAnswer")
        return RTCSessionDescription(sdp="v=0 local-answer", type="answer")

    async def setLocalDescription(self, desc: RTCSessionDescription) -> None:
        self.calls.append(("setLocalDescription", desc.type))
        self._maybe_fail("setLocalDescription")
        self.localDescription = desc

    async def setRemoteDescription(self, desc: RTCSessionDescription) -> None:
        self.calls.append(("setRemoteDescription", desc.type))
        if self.remote_gate is not None:
            await self.remote_gate.wait()
        self._maybe_fail("setRemoteDescription")
        self.remoteDescription = desc

    async def addIceCandidate(self, candidate: Any) -> None:
        self.calls.append(("addIceCandidate", candidate.port))
        if self.remoteDescription is None:
            raise RuntimeError("no remote description")
        if candidate.port in self.reject_ports:
            raise ValueError(f"bad candidate {candidate.port}")

    async def close(self) -> None:
        self.calls.append(("close",))
        self.close_count += 1
        self.connectionState = "closed"

    async def set_connection_state(self, state: str) -> None:
        self.connectionState = state
        await self.fire("connectionstatechange")

    async def announce_channel(self, label: str, *, already_open: bool = True) -> FakeDataChannel:
        """Hand over a channel created by the remote side, as aiortc's "datachannel" event does."""
        channel = FakeDataChannel(label)
        if already_open:
            channel.readyState = "open"
        self.channels.append(channel)
        await self.fire("datachannel", channel)
        return channel

    def _maybe_fail(self, name: str) -> None:
        if name in self.fail:
            raise RuntimeError(f"{name} exploded")


class FakePeerFactory:
    def __init__(self) -> None:
        self.calls: List[tuple] = []
        self.instances: List[FakePeerConnection] = []

    def __call__(self, rtc_config: Any) -> FakePeerConnection:
        pc = FakePeerConnection(self.calls)
        self.instances.append(pc)
        return pc

    @property
    def last(self) -> FakePeerConnection:
        return self.instances[-1]


class FakeBus:
    def __init__(self) -> None:
        self.published: List[tuple] = []
        self.raw: List[tuple] = []
        self.subscriptions: List[tuple] = []
        self.connected = True

    async def subscribe(self, destination: str, handler: Any) -> str:
        if not self.connected:
            raise TransportError("bus not connected")
        self.subscriptions.append((destination, handler))
        return f"sub-{len(self.subscriptions) - 1}"

    async def publish(self, destination: str, body: str) -> None:
        if not self.connected:
            raise TransportError("bus not connected")
        self.raw.append((destination, body))
        self.published.append((destination, json.loads(body)))

    def destinations(self) -> List[str]:
        return [d for d, _ in self.published]


def make_candidate(port: int) -> Dict[str, Any]:
    return {
        "candidate": f"candidate:1 1 udp 2130706431 192.168.1.10 {port} typ host",
        "sdpMid": "0",
        "sdpMLineIndex": 0,
    }


@pytest.fixture
def pc_factory() -> FakePeerFactory:
    return FakePeerFactory()


@pytest.fixture
def bus() -> FakeBus:
    return FakeBus()


@pytest.fixture
def candidate():
    return make_candidate
