"""REST client for the call-creation endpoint."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional, Union

import httpx

from ..errors import CallApiError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CreatedCall:
    call_id: str
    peer_id: str


def _recipient(peer_id: str) -> Union[int, str]:
    # The backend keys users by numeric id; keep anything else as given.
    return int(peer_id) if peer_id.isdigit() else peer_id


class CallApi:
    def __init__(
        self,
        base_url: str,
        token: str = "",
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self._timeout = timeout
        self._transport = transport

    async def create_call(self, peer_id: str, theme_id: int = 1) -> CreatedCall:
        """POST /call/create and return the server-assigned call id."""

        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        body = {"recipientId": _recipient(peer_id), "themeId": theme_id}

        logger.info("api create call recipient=%s theme=%s", peer_id, theme_id)
        async with httpx.AsyncClient(base_url=self.base_url, timeout=self._timeout, transport=self._transport) as client:
            try:
                res = await client.post("/call/create", json=body, headers=headers)
            except httpx.HTTPError as e:
                raise CallApiError(f"createCall failed: {e}") from e

        if res.is_error:
            raise CallApiError(f"createCall failed: {res.status_code}", status_code=res.status_code)

        try:
            data: Any = res.json()
        except ValueError as e:
            raise CallApiError("createCall returned invalid json", status_code=res.status_code) from e

        call_id = None
        if isinstance(data, dict):
            call_id = data.get("id", data.get("callId"))
        if call_id is None or call_id == "":
            raise CallApiError("createCall response has no call id", status_code=res.status_code)

        logger.info("api call created call_id=%s", call_id)
        return CreatedCall(call_id=str(call_id), peer_id=peer_id)
