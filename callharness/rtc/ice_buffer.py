"""Holding area for remote ICE candidates that arrive too early."""

from __future__ import annotations

from typing import List

from ..net.protocol import IceCandidateDict


class IceBuffer:
    """FIFO of candidates received before the remote description was applied.

    `drain()` is a one-shot transition: it hands back everything buffered, in
    arrival order, and from then on `should_buffer` is False so callers apply
    candidates directly.
    """

    def __init__(self) -> None:
        self._pending: List[IceCandidateDict] = []
        self._drained = False

    def __len__(self) -> int:
        return len(self._pending)

    @property
    def drained(self) -> bool:
        return self._drained

    @property
    def should_buffer(self) -> bool:
        return not self._drained

    def append(self, candidate: IceCandidateDict) -> None:
        self._pending.append(candidate)

    def drain(self) -> List[IceCandidateDict]:
        if self._drained:
            return []
        self._drained = True
        pending, self._pending = self._pending, []
        return pending

    def clear(self) -> None:
        self._pending = []
