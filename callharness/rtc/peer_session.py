"""One WebRTC peer connection and its data channel, for the lifetime of one call."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from aiortc import RTCIceCandidate, RTCPeerConnection, RTCSessionDescription
from aiortc.rtcconfiguration import RTCConfiguration
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from ..errors import CandidateApplyFailure, NegotiationFailure, SessionClosed
from ..net.protocol import IceCandidateDict, SessionDescriptionDict
from .ice_buffer import IceBuffer


logger = logging.getLogger(__name__)


AsyncPeerCallback = Callable[..., Awaitable[None]]
PeerConnectionFactory = Callable[[Optional[RTCConfiguration]], Any]

DATA_CHANNEL_LABEL = "test"
CALLER_GREETING = "ping-from-caller"


class PeerState(Enum):
    NEW = "new"
    LOCAL_OFFERED = "local-offered"
    REMOTE_OFFERED = "remote-offered"
    NEGOTIATED = "negotiated"
    CONNECTED = "connected"
    CLOSED = "closed"


def candidate_to_json(candidate: RTCIceCandidate) -> IceCandidateDict:
    return {
        "candidate": "candidate:" + candidate_to_sdp(candidate),
        "sdpMid": getattr(candidate, "sdpMid", None),
        "sdpMLineIndex": getattr(candidate, "sdpMLineIndex", None),
    }


def candidate_from_json(obj: IceCandidateDict) -> RTCIceCandidate:
    cand_sdp = obj.get("candidate")
    if not isinstance(cand_sdp, str) or not cand_sdp:
        raise ValueError("missing candidate")
    # Browsers send the attribute form, "candidate:<foundation> ...".
    if cand_sdp.startswith("candidate:"):
        cand_sdp = cand_sdp[len("candidate:") :]
    cand = candidate_from_sdp(cand_sdp)
    cand.sdpMid = obj.get("sdpMid")
    cand.sdpMLineIndex = obj.get("sdpMLineIndex")
    return cand


def _description_from_json(obj: SessionDescriptionDict, kind: str) -> RTCSessionDescription:
    sdp = obj.get("sdp") if isinstance(obj, dict) else None
    if not isinstance(sdp, str):
        raise NegotiationFailure(f"set remote {kind}", "missing sdp")
    return RTCSessionDescription(sdp=sdp, type=kind)


def _default_factory(rtc_config: Optional[RTCConfiguration]) -> RTCPeerConnection:
    return RTCPeerConnection(configuration=rtc_config)


@dataclass
class PeerCallbacks:
    on_log: Optional[AsyncPeerCallback] = None  # (msg: str)
    on_connection_state: Optional[AsyncPeerCallback] = None  # (call_id: str, state: str)
    on_local_ice: Optional[AsyncPeerCallback] = None  # (call_id: str, candidate: dict)
    on_channel_open: Optional[AsyncPeerCallback] = None  # (call_id: str, label: str)
    on_channel_message: Optional[AsyncPeerCallback] = None  # (call_id: str, data: str | bytes)


class PeerSession:
    """Negotiation for one call.

    Negotiation operations are serialized on an internal lock so that a
    candidate delivered while an offer is being applied waits for the offer
    (and the buffer drain) to finish. `close()` never waits for the lock;
    operations still in flight notice the bumped generation and raise
    `SessionClosed` instead of touching the closed connection.
    """

    def __init__(
        self,
        call_id: str,
        *,
        callbacks: Optional[PeerCallbacks] = None,
        rtc_config: Optional[RTCConfiguration] = None,
        pc_factory: Optional[PeerConnectionFactory] = None,
    ):
        self.call_id = call_id
        self._callbacks = callbacks or PeerCallbacks()
        self._pc = (pc_factory or _default_factory)(rtc_config)
        self._channel: Optional[Any] = None
        self._ice = IceBuffer()
        self._lock = asyncio.Lock()
        self._generation = 0
        self._state = PeerState.NEW
        self._offered = False

        @self._pc.on("icecandidate")
        async def on_icecandidate(event) -> None:
            if event is None or event.candidate is None or self.closed:
                return
            if self._callbacks.on_local_ice:
                await self._callbacks.on_local_ice(self.call_id, candidate_to_json(event.candidate))

        @self._pc.on("connectionstatechange")
        async def on_connectionstatechange() -> None:
            state = self._pc.connectionState
            await self._log(f"pc[{self.call_id}] connectionState={state}")
            if state == "connected" and self._state is PeerState.NEGOTIATED:
                self._set_state(PeerState.CONNECTED)
            if self._callbacks.on_connection_state:
                await self._callbacks.on_connection_state(self.call_id, state)

        @self._pc.on("datachannel")
        async def on_datachannel(channel) -> None:
            await self._adopt_channel(channel, caller=False)

    @property
    def state(self) -> PeerState:
        return self._state

    @property
    def closed(self) -> bool:
        return self._state is PeerState.CLOSED

    @property
    def remote_ready(self) -> bool:
        return self._ice.drained

    @property
    def pending_candidates(self) -> int:
        return len(self._ice)

    async def start_as_caller(self) -> SessionDescriptionDict:
        async with self._lock:
            generation = self._require_open("start_as_caller")
            if self._offered:
                raise NegotiationFailure("start_as_caller", "offer already created for this call")
            self._offered = True

            await self._adopt_channel(self._pc.createDataChannel(DATA_CHANNEL_LABEL), caller=True)
            offer = await self._step(generation, "createOffer", self._pc.createOffer)
            await self._step(generation, "setLocalDescription(offer)", self._pc.setLocalDescription, offer)
            self._set_state(PeerState.LOCAL_OFFERED)
            return self._local_description()

    async def handle_offer(self, sdp: SessionDescriptionDict) -> SessionDescriptionDict:
        async with self._lock:
            generation = self._require_open("handle_offer")
            desc = _description_from_json(sdp, "offer")
            await self._step(generation, "setRemoteDescription(offer)", self._pc.setRemoteDescription, desc)
            self._set_state(PeerState.REMOTE_OFFERED)
            await self._drain(generation)

            answer = await self._step(generation, "createAnswer", self._pc.createAnswer)
            await self._step(generation, "setLocalDescription(answer)", self._pc.setLocalDescription, answer)
            self._set_state(PeerState.NEGOTIATED)
            return self._local_description()

    async def handle_answer(self, sdp: SessionDescriptionDict) -> None:
        async with self._lock:
            generation = self._require_open("handle_answer")
            desc = _description_from_json(sdp, "answer")
            await self._step(generation, "setRemoteDescription(answer)", self._pc.setRemoteDescription, desc)
            await self._drain(generation)
            self._set_state(PeerState.NEGOTIATED)

    async def handle_candidate(self, candidate: IceCandidateDict) -> None:
        async with self._lock:
            generation = self._require_open("handle_candidate")
            if not candidate.get("candidate"):
                logger.debug("rtc end-of-candidates call_id=%s", self.call_id)
                return
            if self._ice.should_buffer:
                self._ice.append(candidate)
                logger.debug("rtc ice buffered call_id=%s pending=%s", self.call_id, len(self._ice))
                return
            await self._apply_candidate(generation, candidate)

    def send(self, data: str) -> bool:
        channel = self._channel
        if channel is None or getattr(channel, "readyState", None) != "open":
            return False
        channel.send(data)
        return True

    async def close(self) -> None:
        if self.closed:
            return
        self._generation += 1
        self._set_state(PeerState.CLOSED)
        self._ice.clear()
        channel, self._channel = self._channel, None
        try:
            if channel is not None:
                channel.close()
        finally:
            await self._pc.close()
        logger.info("rtc peer closed call_id=%s", self.call_id)

    def _require_open(self, op: str) -> int:
        if self.closed:
            raise SessionClosed(f"{op} on closed session call_id={self.call_id}")
        return self._generation

    def _check_generation(self, generation: int, op: str) -> None:
        if generation != self._generation:
            raise SessionClosed(f"{op} finished after close call_id={self.call_id}")

    async def _step(self, generation: int, op: str, fn: Callable[..., Awaitable[Any]], *args: Any) -> Any:
        self._check_generation(generation, op)
        try:
            result = await fn(*args)
        except Exception as e:
            self._check_generation(generation, op)
            logger.warning("rtc %s failed call_id=%s error=%s", op, self.call_id, e)
            raise NegotiationFailure(op, e) from e
        self._check_generation(generation, op)
        return result

    async def _drain(self, generation: int) -> None:
        pending = self._ice.drain()
        if pending:
            logger.info("rtc draining buffered ice call_id=%s count=%s", self.call_id, len(pending))
        for candidate in pending:
            await self._apply_candidate(generation, candidate)

    async def _apply_candidate(self, generation: int, candidate: IceCandidateDict) -> None:
        self._check_generation(generation, "addIceCandidate")
        try:
            await self._pc.addIceCandidate(candidate_from_json(candidate))
        except Exception as e:
            self._check_generation(generation, "addIceCandidate")
            failure = CandidateApplyFailure(str(e))
            logger.warning("rtc addIceCandidate failed call_id=%s error=%s", self.call_id, failure)
            await self._log(f"addIce error {failure}")
            return
        self._check_generation(generation, "addIceCandidate")

    def _local_description(self) -> SessionDescriptionDict:
        desc = self._pc.localDescription
        assert desc is not None
        return {"type": desc.type, "sdp": desc.sdp}

    def _set_state(self, state: PeerState) -> None:
        if self._state is PeerState.CLOSED or self._state is state:
            return
        logger.debug("rtc state call_id=%s %s -> %s", self.call_id, self._state.value, state.value)
        self._state = state

    async def _adopt_channel(self, channel: Any, *, caller: bool) -> None:
        if self.closed:
            return
        self._channel = channel
        side = "caller" if caller else "callee"

        async def on_open() -> None:
            await self._log(f"datachannel open ({side})")
            if caller:
                channel.send(CALLER_GREETING)
            if self._callbacks.on_channel_open:
                await self._callbacks.on_channel_open(self.call_id, channel.label)

        @channel.on("message")
        async def on_message(message) -> None:
            await self._log(f"{side} got: {message}")
            if self._callbacks.on_channel_message:
                await self._callbacks.on_channel_message(self.call_id, message)

        # Channels announced by the remote side can already be open when handed over.
        if getattr(channel, "readyState", None) == "open":
            await on_open()
        else:
            channel.on("open", on_open)

    async def _log(self, msg: str) -> None:
        if self._callbacks.on_log:
            await self._callbacks.on_log(msg)
