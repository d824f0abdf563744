"""Signaling orchestrator: one call, one peer session, one bus."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from aiortc.rtcconfiguration import RTCConfiguration

from ..errors import (
    CallApiError,
    CallIdMismatch,
    InvalidTransition,
    NegotiationFailure,
    ProtocolError,
    SessionClosed,
    TransportError,
)
from ..net import protocol
from ..net.bus_client import BusClient
from ..net.call_api import CallApi
from ..rtc.peer_session import PeerCallbacks, PeerConnectionFactory, PeerSession
from .lifecycle import CallLifecycle, CallSession, CallStatus


logger = logging.getLogger(__name__)


AsyncCallback = Callable[..., Awaitable[None]]


@dataclass
class OrchestratorCallbacks:
    on_log: Optional[AsyncCallback] = None  # (message: str)
    on_call_state: Optional[AsyncCallback] = None  # (session: CallSession | None)
    on_peer_state: Optional[AsyncCallback] = None  # (call_id: str, state: str)
    on_channel_open: Optional[AsyncCallback] = None  # (call_id: str, label: str)
    on_channel_message: Optional[AsyncCallback] = None  # (call_id: str, data: str | bytes)
    on_error: Optional[AsyncCallback] = None  # (kind: str, message: str)


class SignalingOrchestrator:
    """Routes bus traffic and local actions into CallLifecycle and PeerSession.

    Inbound signals are only acted on when they belong to the live call.
    Bus connectivity never touches call or peer state; after every
    (re)connect both per-user queues are subscribed again.
    """

    def __init__(
        self,
        bus: BusClient,
        local_id: str,
        *,
        call_api: Optional[CallApi] = None,
        callbacks: Optional[OrchestratorCallbacks] = None,
        rtc_config: Optional[RTCConfiguration] = None,
        pc_factory: Optional[PeerConnectionFactory] = None,
    ):
        self._bus = bus
        self._call_api = call_api
        self._callbacks = callbacks or OrchestratorCallbacks()
        self._rtc_config = rtc_config
        self._pc_factory = pc_factory
        self._lifecycle = CallLifecycle(local_id)
        self._peer: Optional[PeerSession] = None
        self._ending: Optional[str] = None

    @property
    def session(self) -> Optional[CallSession]:
        return self._lifecycle.session

    @property
    def peer(self) -> Optional[PeerSession]:
        return self._peer

    # ----------------------
    # Bus events
    # ----------------------
    async def on_bus_connected(self) -> None:
        try:
            await self._bus.subscribe(protocol.CALL_NOTIFICATIONS_QUEUE, self.handle_notification_body)
            await self._bus.subscribe(protocol.WEBRTC_SIGNALS_QUEUE, self.handle_signal_body)
        except TransportError as e:
            logger.warning("bus subscribe failed: %s", e)
            await self._error("transport", str(e))

    async def on_bus_disconnected(self, reason: str) -> None:
        s = self.session
        logger.info("bus down reason=%s call_id=%s", reason, s.call_id if s else None)
        await self._error("transport", f"bus disconnected ({reason})")

    async def handle_signal_body(self, body: str) -> None:
        try:
            msg = protocol.decode_signal(body)
        except ProtocolError as e:
            logger.warning("rtc signal dropped: %s", e)
            return
        await self.handle_signal(msg)

    async def handle_notification_body(self, body: str) -> None:
        try:
            note = protocol.decode_notification(body)
        except ProtocolError as e:
            logger.warning("call notification dropped: %s", e)
            return
        await self.handle_notification(note)

    async def handle_signal(self, msg: protocol.SignalMessage) -> None:
        try:
            session = self._require_active(msg.call_id)
        except CallIdMismatch as e:
            logger.debug("rtc signal discarded type=%s %s", msg.type, e)
            return

        if session.peer_id is None and msg.from_id:
            session.peer_id = msg.from_id

        peer = await self._ensure_peer(session)
        try:
            if msg.type == protocol.OFFER:
                logger.info("rtc offer received call_id=%s from=%s", msg.call_id, msg.from_id)
                assert msg.sdp is not None
                answer = await peer.handle_offer(msg.sdp)
                to_id = msg.from_id or session.peer_id or ""
                if await self._publish_signal(protocol.make_answer(session.call_id, session.local_id, to_id, answer)):
                    await self._log("ANSWER sent")
            elif msg.type == protocol.ANSWER:
                logger.info("rtc answer received call_id=%s from=%s", msg.call_id, msg.from_id)
                assert msg.sdp is not None
                await peer.handle_answer(msg.sdp)
                await self._log("ANSWER set")
            else:
                logger.debug("rtc ice received call_id=%s from=%s", msg.call_id, msg.from_id)
                assert msg.candidate is not None
                await peer.handle_candidate(msg.candidate)
        except SessionClosed as e:
            logger.debug("rtc result discarded: %s", e)
        except NegotiationFailure as e:
            logger.warning("rtc negotiation failed call_id=%s: %s", msg.call_id, e)
            await self._error("negotiation", str(e))

    async def handle_notification(self, note: protocol.CallNotification) -> None:
        logger.info("call notification type=%s call_id=%s", note.type, note.call_id)
        await self._log(f"CALL NOTIF: {note.type} {note.call_id or ''}")
        try:
            if note.type == protocol.INCOMING_CALL:
                if note.call_id is None:
                    logger.warning("incoming call without callId")
                    return
                self._lifecycle.ensure_can_create()
                await self._dispose_peer()
                self._lifecycle.on_incoming(note.call_id, note.from_id)
            elif note.type == protocol.CALL_ACCEPTED:
                s = self._require_active(note.call_id)
                if s.status is CallStatus.ACCEPTED:
                    logger.debug("call already accepted call_id=%s", s.call_id)
                    return
                self._lifecycle.accept()
            elif note.type == protocol.CALL_REJECTED:
                self._require_active(note.call_id)
                self._lifecycle.reject(note.reason or "")
                await self._dispose_peer()
            elif note.type == protocol.CALL_ENDED:
                s = self.session
                if s is None or s.call_id != note.call_id:
                    raise CallIdMismatch(note.call_id or "", s.call_id if s else None)
                if s.status is CallStatus.REJECTED:
                    return
                self._lifecycle.end()
                await self._dispose_peer()
            else:
                return
        except CallIdMismatch as e:
            logger.debug("call notification discarded type=%s %s", note.type, e)
            return
        except InvalidTransition as e:
            await self._invalid(e)
            return
        await self._call_state()

    # ----------------------
    # Local actions
    # ----------------------
    async def create_call(self, peer_id: str, call_id: Optional[str] = None, theme_id: int = 1) -> Optional[CallSession]:
        """Start a call as caller.

        Without `call_id` the call is registered through the REST API, which
        also makes the backend notify the callee. With one, the id is used as
        is (useful when both sides are driven by hand).
        """

        try:
            self._lifecycle.ensure_can_create()
        except InvalidTransition as e:
            await self._invalid(e)
            return None

        if call_id is None:
            if self._call_api is None:
                await self._error("call-api", "no call API configured")
                return None
            try:
                created = await self._call_api.create_call(peer_id, theme_id)
            except CallApiError as e:
                logger.warning("create call failed: %s", e)
                await self._error("call-api", str(e))
                return None
            call_id = created.call_id

        try:
            self._lifecycle.ensure_can_create()
            await self._dispose_peer()
            session = self._lifecycle.create(call_id, peer_id)
        except InvalidTransition as e:
            await self._invalid(e)
            return None

        await self._log(f"Call created: {call_id}")
        await self._call_state()
        return session

    async def accept(self) -> None:
        try:
            s = self._lifecycle.ensure_can_accept()
        except InvalidTransition as e:
            await self._invalid(e)
            return
        if not await self._publish(protocol.DEST_CALL_ACCEPT, protocol.encode(protocol.make_accept(s.call_id))):
            return
        # A CALL_ACCEPTED echo may have landed while the command was in flight.
        if self.session is s and s.status is CallStatus.CREATED:
            self._lifecycle.accept()
        await self._call_state()

    async def reject(self, reason: str = "busy") -> None:
        try:
            s = self._lifecycle.ensure_can_reject()
        except InvalidTransition as e:
            await self._invalid(e)
            return
        if not await self._publish(protocol.DEST_CALL_REJECT, protocol.encode(protocol.make_reject(s.call_id, reason))):
            return
        if self.session is s and s.status is CallStatus.CREATED:
            self._lifecycle.reject(reason)
            await self._dispose_peer()
        await self._call_state()

    async def start_offer(self) -> None:
        s = self.session
        if s is None or not s.live:
            await self._invalid(InvalidTransition("start offer", s.status.name if s else None))
            return
        if not s.peer_id:
            await self._error("no-peer", f"no peer known for call {s.call_id}")
            return

        peer = await self._ensure_peer(s)
        await self._log(f"Creating offer to {s.peer_id}")
        try:
            offer = await peer.start_as_caller()
        except SessionClosed as e:
            logger.debug("rtc offer discarded: %s", e)
            return
        except NegotiationFailure as e:
            logger.warning("rtc offer failed call_id=%s: %s", s.call_id, e)
            await self._error("negotiation", str(e))
            return

        if await self._publish_signal(protocol.make_offer(s.call_id, s.local_id, s.peer_id, offer)):
            await self._log("OFFER sent")

    async def end(self) -> None:
        try:
            s = self._lifecycle.ensure_can_end()
        except InvalidTransition as e:
            await self._invalid(e)
            return
        if s is None:
            logger.debug("call already ended call_id=%s", self.session.call_id if self.session else None)
            return
        if self._ending == s.call_id:
            logger.debug("call end already in flight call_id=%s", s.call_id)
            return

        self._ending = s.call_id
        try:
            published = await self._publish(protocol.DEST_CALL_END, protocol.encode(protocol.make_end(s.call_id)))
        finally:
            self._ending = None
        if not published:
            return

        if self.session is s and s.live:
            self._lifecycle.end()
        if self._peer is not None and self._peer.call_id == s.call_id:
            await self._dispose_peer()
        await self._call_state()

    async def send_data(self, text: str) -> bool:
        peer = self._peer
        if peer is None or not peer.send(text):
            await self._log("datachannel not open")
            return False
        return True

    async def shutdown(self) -> None:
        await self._dispose_peer()

    # ----------------------
    # Internals
    # ----------------------
    def _require_active(self, call_id: Optional[str]) -> CallSession:
        s = self.session
        if s is None or not self._lifecycle.is_active(call_id):
            raise CallIdMismatch(call_id or "", s.call_id if s else None)
        return s

    async def _ensure_peer(self, session: CallSession) -> PeerSession:
        peer = self._peer
        if peer is not None and peer.call_id == session.call_id and not peer.closed:
            return peer
        if peer is not None:
            await self._dispose_peer()
        if self._peer is None:
            self._peer = PeerSession(
                session.call_id,
                callbacks=PeerCallbacks(
                    on_log=self._log,
                    on_connection_state=self._on_peer_state,
                    on_local_ice=self._on_local_ice,
                    on_channel_open=self._on_channel_open,
                    on_channel_message=self._on_channel_message,
                ),
                rtc_config=self._rtc_config,
                pc_factory=self._pc_factory,
            )
            logger.debug("rtc created peer session call_id=%s", session.call_id)
        return self._peer

    async def _dispose_peer(self) -> None:
        peer, self._peer = self._peer, None
        if peer is not None:
            await peer.close()

    async def _on_local_ice(self, call_id: str, candidate: protocol.IceCandidateDict) -> None:
        s = self.session
        if s is None or not self._lifecycle.is_active(call_id):
            return
        if not s.peer_id:
            logger.debug("rtc local ice dropped call_id=%s (no peer yet)", call_id)
            return
        await self._publish_signal(protocol.make_ice(s.call_id, s.local_id, s.peer_id, candidate))

    async def _on_peer_state(self, call_id: str, state: str) -> None:
        if self._callbacks.on_peer_state:
            await self._callbacks.on_peer_state(call_id, state)

    async def _on_channel_open(self, call_id: str, label: str) -> None:
        logger.info("rtc datachannel open call_id=%s label=%s", call_id, label)
        if self._callbacks.on_channel_open:
            await self._callbacks.on_channel_open(call_id, label)

    async def _on_channel_message(self, call_id: str, data: Any) -> None:
        if self._callbacks.on_channel_message:
            await self._callbacks.on_channel_message(call_id, data)

    async def _publish_signal(self, msg: protocol.SignalMessage) -> bool:
        if not msg.to_id:
            # TODO: report unknown-recipient signals to the operator instead of dropping them.
            logger.debug("rtc %s dropped call_id=%s (no recipient)", msg.type, msg.call_id)
            return False
        return await self._publish(protocol.SIGNAL_DESTINATIONS[msg.type], protocol.encode_signal(msg))

    async def _publish(self, destination: str, body: str) -> bool:
        try:
            await self._bus.publish(destination, body)
        except TransportError as e:
            logger.warning("publish failed destination=%s: %s", destination, e)
            await self._error("transport", str(e))
            return False
        return True

    async def _invalid(self, e: InvalidTransition) -> None:
        logger.warning("call transition rejected: %s", e)
        await self._error("invalid-transition", str(e))

    async def _call_state(self) -> None:
        if self._callbacks.on_call_state:
            await self._callbacks.on_call_state(self.session)

    async def _error(self, kind: str, message: str) -> None:
        await self._log(f"Error: {message}")
        if self._callbacks.on_error:
            await self._callbacks.on_error(kind, message)

    async def _log(self, message: str) -> None:
        if self._callbacks.on_log:
            await self._callbacks.on_log(message)
