"""Signaling protocol helpers.

The backend speaks JSON bodies over STOMP destinations. Signals travel on the
per-user `webrtc-signals` queue, lifecycle notifications on the per-user
`call-notifications` queue, and commands are published to `/app/...`.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, TypedDict, cast

from ..errors import ProtocolError


# Signal types
OFFER = "OFFER"
ANSWER = "ANSWER"
ICE_CANDIDATE = "ICE_CANDIDATE"

SIGNAL_TYPES = (OFFER, ANSWER, ICE_CANDIDATE)

# Lifecycle notification types
INCOMING_CALL = "INCOMING_CALL"
CALL_ACCEPTED = "CALL_ACCEPTED"
CALL_REJECTED = "CALL_REJECTED"
CALL_ENDED = "CALL_ENDED"

# Subscriptions
CALL_NOTIFICATIONS_QUEUE = "/user/queue/call-notifications"
WEBRTC_SIGNALS_QUEUE = "/user/queue/webrtc-signals"

# Publish destinations
DEST_CALL_ACCEPT = "/app/call.accept"
DEST_CALL_REJECT = "/app/call.reject"
DEST_CALL_END = "/app/call.end"
DEST_WEBRTC_OFFER = "/app/webrtc.offer"
DEST_WEBRTC_ANSWER = "/app/webrtc.answer"
DEST_WEBRTC_ICE = "/app/webrtc.ice"

SIGNAL_DESTINATIONS = {
	OFFER: DEST_WEBRTC_OFFER,
	ANSWER: DEST_WEBRTC_ANSWER,
	ICE_CANDIDATE: DEST_WEBRTC_ICE,
}


class SessionDescriptionDict(TypedDict):
	type: str
	sdp: str


class IceCandidateDict(TypedDict, total=False):
	candidate: str
	sdpMid: Optional[str]
	sdpMLineIndex: Optional[int]
	usernameFragment: Optional[str]


@dataclass(frozen=True)
class SignalMessage:
	type: str
	call_id: str
	from_id: str
	to_id: str
	sdp: Optional[SessionDescriptionDict] = None
	candidate: Optional[IceCandidateDict] = None


@dataclass(frozen=True)
class CallNotification:
	type: str
	call_id: Optional[str]
	from_id: Optional[str] = None
	reason: Optional[str] = None
	raw: Dict[str, Any] = field(default_factory=dict)


def make_offer(call_id: str, from_id: str, to_id: str, sdp: SessionDescriptionDict) -> SignalMessage:
	return SignalMessage(OFFER, call_id, from_id, to_id, sdp=sdp)


def make_answer(call_id: str, from_id: str, to_id: str, sdp: SessionDescriptionDict) -> SignalMessage:
	return SignalMessage(ANSWER, call_id, from_id, to_id, sdp=sdp)


def make_ice(call_id: str, from_id: str, to_id: str, candidate: IceCandidateDict) -> SignalMessage:
	return SignalMessage(ICE_CANDIDATE, call_id, from_id, to_id, candidate=candidate)


def make_accept(call_id: str) -> Dict[str, Any]:
	return {"callId": call_id}


def make_reject(call_id: str, reason: str) -> Dict[str, Any]:
	return {"callId": call_id, "reason": reason}


def make_end(call_id: str) -> Dict[str, Any]:
	return {"callId": call_id}


def signal_to_wire(msg: SignalMessage) -> Dict[str, Any]:
	payload: Dict[str, Any] = {
		"type": msg.type,
		"callId": msg.call_id,
		"fromUserId": msg.from_id,
		"toUserId": msg.to_id,
	}
	if msg.type in (OFFER, ANSWER):
		payload["sdp"] = msg.sdp
	else:
		payload["candidate"] = msg.candidate
	return payload


def encode(payload: Dict[str, Any]) -> str:
	return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)


def encode_signal(msg: SignalMessage) -> str:
	return encode(signal_to_wire(msg))


def _load_object(raw: str) -> Dict[str, Any]:
	try:
		msg = json.loads(raw)
	except (TypeError, json.JSONDecodeError) as e:
		raise ProtocolError(f"invalid json: {e}") from e
	if not isinstance(msg, dict):
		raise ProtocolError("message is not an object")
	return msg


def _id(value: Any) -> Optional[str]:
	# The backend uses numeric ids; the harness treats every id as an opaque string.
	if value is None or value == "":
		return None
	return str(value)


def decode_signal(raw: str) -> SignalMessage:
	msg = _load_object(raw)

	mtype = msg.get("type")
	if mtype not in SIGNAL_TYPES:
		raise ProtocolError(f"unknown signal type: {mtype!r}")

	call_id = _id(msg.get("callId"))
	if call_id is None:
		raise ProtocolError("missing callId")

	from_id = _id(msg.get("fromUserId")) or ""
	to_id = _id(msg.get("toUserId")) or ""

	if mtype in (OFFER, ANSWER):
		sdp = msg.get("sdp")
		if not isinstance(sdp, dict) or not isinstance(sdp.get("sdp"), str):
			raise ProtocolError(f"{mtype} without sdp")
		return SignalMessage(mtype, call_id, from_id, to_id, sdp=cast(SessionDescriptionDict, sdp))

	candidate = msg.get("candidate")
	if not isinstance(candidate, dict):
		raise ProtocolError("ICE_CANDIDATE without candidate")
	return SignalMessage(mtype, call_id, from_id, to_id, candidate=cast(IceCandidateDict, candidate))


def decode_notification(raw: str) -> CallNotification:
	msg = _load_object(raw)
	mtype = msg.get("type")
	if not isinstance(mtype, str):
		raise ProtocolError("missing type")
	reason = msg.get("reason")
	return CallNotification(
		type=mtype,
		call_id=_id(msg.get("callId")),
		from_id=_id(msg.get("fromUserId", msg.get("callerId"))),
		reason=str(reason) if reason is not None else None,
		raw=msg,
	)
