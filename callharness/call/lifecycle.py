"""Call status bookkeeping for the single live call."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ..errors import InvalidTransition


logger = logging.getLogger(__name__)


class CallRole(Enum):
    CALLER = "caller"
    CALLEE = "callee"


class CallStatus(Enum):
    CREATED = "created"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    ENDED = "ended"

    @property
    def terminal(self) -> bool:
        return self in (CallStatus.REJECTED, CallStatus.ENDED)


@dataclass
class CallSession:
    call_id: str
    local_id: str
    peer_id: Optional[str]
    role: CallRole
    status: CallStatus = CallStatus.CREATED
    reject_reason: Optional[str] = None

    @property
    def live(self) -> bool:
        return not self.status.terminal


class CallLifecycle:
    """Holds at most one CallSession and moves it along the status graph.

    CREATED -> ACCEPTED -> ENDED, CREATED -> REJECTED, and any non-terminal
    status -> ENDED. REJECTED and ENDED are terminal.
    """

    def __init__(self, local_id: str):
        self.local_id = local_id
        self._session: Optional[CallSession] = None

    @property
    def session(self) -> Optional[CallSession]:
        return self._session

    def is_active(self, call_id: Optional[str]) -> bool:
        s = self._session
        return s is not None and s.live and call_id is not None and s.call_id == call_id

    def ensure_can_create(self) -> None:
        s = self._session
        if s is not None and s.live:
            raise InvalidTransition("start a new call", f"{s.call_id}:{s.status.name}")

    def create(self, call_id: str, peer_id: str) -> CallSession:
        return self._begin(call_id, peer_id, CallRole.CALLER)

    def on_incoming(self, call_id: str, from_id: Optional[str]) -> CallSession:
        return self._begin(call_id, from_id, CallRole.CALLEE)

    # The ensure_* checks raise exactly what the matching transition would,
    # without moving the session.
    def ensure_can_accept(self) -> CallSession:
        return self._require("accept", CallStatus.CREATED)

    def ensure_can_reject(self) -> CallSession:
        return self._require("reject", CallStatus.CREATED)

    def ensure_can_end(self) -> Optional[CallSession]:
        """Return the session to end, or None if it is already ENDED."""

        s = self._session
        if s is None:
            raise InvalidTransition("end", None)
        if s.status is CallStatus.ENDED:
            return None
        if s.status is CallStatus.REJECTED:
            raise InvalidTransition("end", s.status.name)
        return s

    def accept(self) -> CallSession:
        s = self.ensure_can_accept()
        self._move(s, CallStatus.ACCEPTED)
        return s

    def reject(self, reason: str) -> CallSession:
        s = self.ensure_can_reject()
        s.reject_reason = reason
        self._move(s, CallStatus.REJECTED)
        return s

    def end(self) -> bool:
        """Move the session to ENDED. Returns False if it already was."""

        s = self.ensure_can_end()
        if s is None:
            return False
        self._move(s, CallStatus.ENDED)
        return True

    def _begin(self, call_id: str, peer_id: Optional[str], role: CallRole) -> CallSession:
        self.ensure_can_create()
        self._session = CallSession(call_id=call_id, local_id=self.local_id, peer_id=peer_id, role=role)
        logger.info("call created call_id=%s role=%s peer=%s", call_id, role.value, peer_id)
        return self._session

    def _require(self, action: str, status: CallStatus) -> CallSession:
        s = self._session
        if s is None:
            raise InvalidTransition(action, None)
        if s.status is not status:
            raise InvalidTransition(action, s.status.name)
        return s

    def _move(self, s: CallSession, status: CallStatus) -> None:
        logger.info("call status call_id=%s %s -> %s", s.call_id, s.status.name, status.name)
        s.status = status
