"""Error conditions raised inside the harness.

None of these are fatal: callers log them and keep whatever state is still
consistent.
"""

from __future__ import annotations


class CallHarnessError(Exception):
    pass


class InvalidTransition(CallHarnessError):
    """A lifecycle action was attempted from a status that does not permit it."""

    def __init__(self, action: str, status: object):
        super().__init__(f"cannot {action} from {status}")
        self.action = action
        self.status = status


class CallIdMismatch(CallHarnessError):
    """A message referenced a call that is not the active one."""

    def __init__(self, call_id: str, active_call_id: object):
        super().__init__(f"call_id={call_id} active={active_call_id}")
        self.call_id = call_id
        self.active_call_id = active_call_id


class CandidateApplyFailure(CallHarnessError):
    pass


class NegotiationFailure(CallHarnessError):
    def __init__(self, step: str, cause: object = None):
        super().__init__(f"{step} failed: {cause}" if cause is not None else f"{step} failed")
        self.step = step


class SessionClosed(CallHarnessError):
    """A negotiation step finished after its peer session was closed."""


class TransportError(CallHarnessError):
    pass


class ProtocolError(CallHarnessError):
    pass


class CallApiError(CallHarnessError):
    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code
