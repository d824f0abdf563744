from __future__ import annotations

import asyncio
import logging
import os
import shlex
import sys
import time
from dataclasses import dataclass
from typing import Any, Optional

from aiortc.rtcconfiguration import RTCConfiguration

from .call.lifecycle import CallSession
from .call.orchestrator import OrchestratorCallbacks, SignalingOrchestrator
from .net.bus_client import BusCallbacks, BusClient
from .net.call_api import CallApi


logger = logging.getLogger(__name__)


HELP = """commands:
  connect | disconnect
  create [peer] [callId]   create a call (REST unless callId is given)
  accept | reject [reason] | end
  offer                    start WebRTC as caller (send OFFER)
  send <text>              send text on the data channel
  status | help | quit"""


@dataclass
class HarnessConfig:
    ws_url: str = "ws://127.0.0.1:8080/ws-native"
    api_base: str = "http://127.0.0.1:8080"
    token: str = ""
    me: str = ""
    peer: str = ""
    call_id: str = ""
    reconnect_delay: float = 5.0

    @classmethod
    def from_env(cls) -> "HarnessConfig":
        return cls(
            ws_url=os.environ.get("CALLHARNESS_WS_URL", cls.ws_url),
            api_base=os.environ.get("CALLHARNESS_API_BASE", cls.api_base),
            token=os.environ.get("CALLHARNESS_TOKEN", cls.token),
            me=os.environ.get("CALLHARNESS_ME", cls.me),
            peer=os.environ.get("CALLHARNESS_PEER", cls.peer),
            call_id=os.environ.get("CALLHARNESS_CALL_ID", cls.call_id),
        )


class HarnessApp:
    """Console front-end: wires the bus, the call API and the orchestrator."""

    def __init__(self, cfg: HarnessConfig, out: Any = None):
        self.cfg = cfg
        self._out = out or sys.stdout
        self._connected = False

        self.bus = BusClient(
            url=cfg.ws_url,
            token=cfg.token,
            reconnect_delay=cfg.reconnect_delay,
        )
        self.orchestrator = SignalingOrchestrator(
            self.bus,
            cfg.me,
            call_api=CallApi(cfg.api_base, cfg.token),
            callbacks=OrchestratorCallbacks(
                on_log=self._on_async_log,
                on_call_state=self._on_call_state,
                on_peer_state=self._on_peer_state,
                on_channel_open=self._on_channel_open,
                on_channel_message=self._on_channel_message,
            ),
            # Empty ICE server list: host candidates only, enough for same-machine tests.
            rtc_config=RTCConfiguration(iceServers=[]),
        )
        self.bus.callbacks = BusCallbacks(
            on_log=self._on_async_log,
            on_connected=self._on_connected,
            on_disconnected=self._on_disconnected,
            on_error=self._on_bus_error,
        )

    def log_line(self, message: str) -> None:
        print(f"[{time.strftime('%H:%M:%S')}] {message}", file=self._out, flush=True)

    async def run(self) -> None:
        if not self.cfg.token:
            self.log_line("No token set; the backend will likely refuse the connection (--token or CALLHARNESS_TOKEN).")
        self.log_line(HELP)
        reader = await _stdin_reader()
        try:
            while True:
                line = await reader.readline()
                if not line:
                    break
                if not await self.execute(line.decode("utf-8", "replace")):
                    break
        finally:
            await self.shutdown()

    async def execute(self, line: str) -> bool:
        """Run one console command; returns False when the console should exit."""

        try:
            parts = shlex.split(line)
        except ValueError as e:
            self.log_line(f"parse error: {e}")
            return True
        if not parts:
            return True

        cmd, args = parts[0].lower(), parts[1:]
        logger.debug("console command=%s args=%s", cmd, len(args))
        orch = self.orchestrator

        if cmd in ("quit", "exit"):
            return False
        if cmd == "help":
            self.log_line(HELP)
        elif cmd == "connect":
            await self.bus.connect()
        elif cmd == "disconnect":
            await self.bus.disconnect()
            self.log_line("Disconnected")
        elif cmd == "create":
            peer = args[0] if args else self.cfg.peer
            if not peer:
                self.log_line("peer is required (create <peer> or --peer)")
                return True
            call_id = args[1] if len(args) > 1 else (self.cfg.call_id or None)
            session = await orch.create_call(peer, call_id=call_id)
            if session is not None and call_id is None:
                self.log_line("Callee should get INCOMING_CALL")
        elif cmd == "accept":
            await orch.accept()
        elif cmd == "reject":
            await orch.reject(" ".join(args) or "busy")
        elif cmd == "offer":
            await orch.start_offer()
        elif cmd == "end":
            await orch.end()
        elif cmd == "send":
            await orch.send_data(" ".join(args))
        elif cmd == "status":
            self.log_line(self._status_line())
        else:
            self.log_line(f"unknown command: {cmd} (try help)")
        return True

    async def shutdown(self) -> None:
        logger.info("console shutdown")
        await self.orchestrator.shutdown()
        await self.bus.disconnect()

    def _status_line(self) -> str:
        s = self.orchestrator.session
        peer = self.orchestrator.peer
        bus = "connected" if self._connected else "disconnected"
        if s is None:
            return f"bus={bus} call=none"
        pc = peer.state.value if peer else "none"
        return f"bus={bus} call={s.call_id} role={s.role.value} status={s.status.name} peer={s.peer_id} pc={pc}"

    # ----------------------
    # Async callbacks
    # ----------------------
    async def _on_async_log(self, message: str) -> None:
        self.log_line(message)

    async def _on_connected(self) -> None:
        self._connected = True
        await self.orchestrator.on_bus_connected()

    async def _on_disconnected(self, reason: str) -> None:
        self._connected = False
        await self.orchestrator.on_bus_disconnected(reason)

    async def _on_bus_error(self, error: str, payload: dict) -> None:
        logger.debug("bus error payload=%s", payload)

    async def _on_call_state(self, session: Optional[CallSession]) -> None:
        if session is not None:
            self.log_line(f"call {session.call_id}: {session.status.name}")

    async def _on_peer_state(self, call_id: str, state: str) -> None:
        self.log_line(f"pc.state = {state}")

    async def _on_channel_open(self, call_id: str, label: str) -> None:
        self.log_line(f"datachannel '{label}' ready for call {call_id}; 'send <text>' now works")

    async def _on_channel_message(self, call_id: str, data: Any) -> None:
        logger.debug("datachannel message call_id=%s len=%s", call_id, len(data))


async def _stdin_reader() -> asyncio.StreamReader:
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader()
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)
    return reader
