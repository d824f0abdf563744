"""STOMP-over-WebSocket message bus client.

This is intentionally unaware of aiortc and of call state. It connects with a
bearer token, keeps the socket alive with heart-beats, reconnects after drops
and hands MESSAGE bodies to per-destination handlers.

Subscriptions do not survive a reconnect: `on_connected` fires after every
successful handshake and the owner is expected to subscribe again.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
from urllib.parse import urlencode, urlsplit, urlunsplit

import websockets

from ..errors import ProtocolError, TransportError
from . import stomp


logger = logging.getLogger(__name__)


AsyncCallback = Callable[..., Awaitable[None]]
MessageHandler = Callable[[str], Awaitable[None]]

STOMP_SUBPROTOCOLS = ["v12.stomp", "v11.stomp", "v10.stomp"]

# Missed heart-beat intervals tolerated before the broker is considered gone.
HEARTBEAT_GRACE = 2.0


def negotiate_heartbeat(client_out_ms: int, client_in_ms: int, server_header: str) -> Tuple[int, int]:
	"""Return (send_every_ms, expect_every_ms) from our offer and the CONNECTED header.

	Zero disables that direction.
	"""

	try:
		server_out, server_in = (int(x) for x in server_header.split(","))
	except ValueError:
		return 0, 0
	send = max(client_out_ms, server_in) if client_out_ms and server_in else 0
	expect = max(client_in_ms, server_out) if client_in_ms and server_out else 0
	return send, expect


def with_token(url: str, token: str) -> str:
	"""Append `token=...` to the query string so the HTTP upgrade carries identity."""

	if not token:
		return url
	parts = urlsplit(url)
	query = parts.query + ("&" if parts.query else "") + urlencode({"token": token})
	return urlunsplit(parts._replace(query=query))


@dataclass
class BusCallbacks:
	on_log: Optional[AsyncCallback] = None  # (message: str)
	on_connected: Optional[AsyncCallback] = None  # ()
	on_disconnected: Optional[AsyncCallback] = None  # (reason: str)
	on_error: Optional[AsyncCallback] = None  # (error: str, headers: dict)


class BusClient:
	def __init__(
		self,
		url: str,
		token: str = "",
		callbacks: Optional[BusCallbacks] = None,
		*,
		reconnect_delay: float = 5.0,
		heartbeat_outgoing_ms: int = 10000,
		heartbeat_incoming_ms: int = 10000,
	):
		self.url = url
		self.token = token
		self.callbacks = callbacks or BusCallbacks()
		self.reconnect_delay = reconnect_delay
		self.heartbeat_outgoing_ms = heartbeat_outgoing_ms
		self.heartbeat_incoming_ms = heartbeat_incoming_ms

		# websockets' protocol types moved between versions; keep runtime-safe.
		self._ws: Optional[Any] = None
		self._run_task: Optional[asyncio.Task[None]] = None
		self._heartbeat_tasks: List[asyncio.Task[None]] = []
		self._last_received = 0.0
		self._heartbeat_expired = False
		self._send_lock = asyncio.Lock()
		self._connected = False
		self._stopping = False
		self._parser = stomp.FrameParser()
		self._handlers: Dict[str, MessageHandler] = {}
		self._sub_ids = itertools.count()

	@property
	def is_connected(self) -> bool:
		return self._ws is not None and self._connected

	async def connect(self) -> None:
		if self._run_task and not self._run_task.done():
			return
		self._stopping = False
		self._run_task = asyncio.create_task(self._run(), name="bus-run")

	async def disconnect(self) -> None:
		await self._log("Disconnecting")
		logger.info("bus disconnect")
		self._stopping = True
		ws = self._ws
		if ws is not None and self._connected:
			try:
				await self._send_raw(stomp.encode_frame(stomp.Frame(stomp.DISCONNECT)))
			except TransportError:
				logger.debug("bus DISCONNECT frame not sent")
		if self._run_task:
			self._run_task.cancel()
			try:
				await self._run_task
			except asyncio.CancelledError:
				pass
			self._run_task = None
			await self._emit_disconnected("user")

	async def subscribe(self, destination: str, handler: MessageHandler) -> str:
		sub_id = f"sub-{next(self._sub_ids)}"
		frame = stomp.Frame(stomp.SUBSCRIBE, {"id": sub_id, "destination": destination, "ack": "auto"})
		await self._send_raw(stomp.encode_frame(frame))
		self._handlers[sub_id] = handler
		logger.info("bus subscribed destination=%s id=%s", destination, sub_id)
		return sub_id

	async def publish(self, destination: str, body: str) -> None:
		"""Send an already encoded JSON body to an application destination."""

		frame = stomp.Frame(
			stomp.SEND,
			{"destination": destination, "content-type": "application/json"},
			body,
		)
		logger.debug("bus send destination=%s body_len=%s", destination, len(body))
		await self._send_raw(stomp.encode_frame(frame))

	async def _send_raw(self, raw: str) -> None:
		ws = self._ws
		if ws is None or not self._connected:
			raise TransportError("bus not connected")
		try:
			async with self._send_lock:
				await ws.send(raw)
		except websockets.exceptions.ConnectionClosed as e:
			raise TransportError(f"bus connection closed: {e}") from e

	async def _run(self) -> None:
		try:
			while not self._stopping:
				reason = await self._session()
				self._connected = False
				self._handlers.clear()
				await self._emit_disconnected(reason)
				if self._stopping:
					break
				await self._log(f"Reconnecting in {self.reconnect_delay:g}s")
				await asyncio.sleep(self.reconnect_delay)
		except asyncio.CancelledError:
			pass
		finally:
			self._connected = False
			self._handlers.clear()
			await self._close_ws()

	async def _session(self) -> str:
		"""One connect/handshake/receive cycle; returns why it ended."""

		await self._log(f"Connecting to {self.url}")
		logger.info("bus connect url=%s", self.url)
		try:
			self._ws = await websockets.connect(with_token(self.url, self.token), subprotocols=STOMP_SUBPROTOCOLS)
		except (OSError, websockets.exceptions.WebSocketException) as e:
			logger.warning("bus connect failed url=%s error=%s", self.url, e)
			await self._emit_error("connect-failed", {"url": self.url, "message": str(e)})
			return "connect-failed"

		self._parser.reset()
		self._heartbeat_expired = False
		ws = self._ws
		try:
			await ws.send(stomp.encode_frame(self._connect_frame()))
			async for raw in ws:
				self._mark_received()
				if isinstance(raw, bytes):
					raw = raw.decode("utf-8")
				try:
					frames = self._parser.feed(raw)
				except ProtocolError as e:
					logger.warning("bus bad frame: %s", e)
					await self._emit_error("invalid-frame", {"message": str(e)})
					self._parser.reset()
					continue
				for frame in frames:
					await self._handle_frame(frame)
			return "heartbeat-timeout" if self._heartbeat_expired else "closed"
		except websockets.exceptions.ConnectionClosed as e:
			logger.info("bus connection closed: %s", e)
			return "closed"
		except Exception as e:
			logger.exception("bus recv loop crashed")
			await self._emit_error(f"recv-loop-exception: {e}", {})
			return "crashed"
		finally:
			self._stop_heartbeat()
			await self._close_ws()

	def _connect_frame(self) -> stomp.Frame:
		host = urlsplit(self.url).hostname or ""
		headers = {
			"accept-version": "1.2,1.1,1.0",
			"host": host,
			"heart-beat": f"{self.heartbeat_outgoing_ms},{self.heartbeat_incoming_ms}",
		}
		if self.token:
			headers["Authorization"] = f"Bearer {self.token}"
		return stomp.Frame(stomp.CONNECT, headers)

	async def _handle_frame(self, frame: stomp.Frame) -> None:
		if frame.command == stomp.CONNECTED:
			self._connected = True
			self._start_heartbeat(frame.headers.get("heart-beat", "0,0"))
			logger.info("bus connected version=%s", frame.headers.get("version", "?"))
			await self._log("STOMP connected")
			if self.callbacks.on_connected:
				await self.callbacks.on_connected()
			return

		if frame.command == stomp.MESSAGE:
			sub_id = frame.headers.get("subscription", "")
			handler = self._handlers.get(sub_id)
			if handler is None:
				logger.debug("bus message for unknown subscription id=%s", sub_id)
				return
			await handler(frame.body)
			return

		if frame.command == stomp.ERROR:
			message = frame.headers.get("message", "")
			logger.warning("bus STOMP error message=%s", message)
			await self._emit_error(f"STOMP error: {message}", frame.headers)
			return

		if frame.command == stomp.RECEIPT:
			logger.debug("bus receipt id=%s", frame.headers.get("receipt-id"))
			return

		logger.debug("bus frame ignored command=%s", frame.command)

	def _start_heartbeat(self, server_heartbeat: str) -> None:
		self._stop_heartbeat()
		send_ms, expect_ms = negotiate_heartbeat(self.heartbeat_outgoing_ms, self.heartbeat_incoming_ms, server_heartbeat)
		if send_ms:
			self._heartbeat_tasks.append(
				asyncio.create_task(self._heartbeat_loop(send_ms / 1000.0), name="bus-heartbeat")
			)
		if expect_ms:
			self._mark_received()
			self._heartbeat_tasks.append(
				asyncio.create_task(self._watchdog_loop(expect_ms / 1000.0 * HEARTBEAT_GRACE), name="bus-watchdog")
			)
		logger.debug("bus heart-beat send_ms=%s expect_ms=%s", send_ms, expect_ms)

	def _stop_heartbeat(self) -> None:
		tasks, self._heartbeat_tasks = self._heartbeat_tasks, []
		for task in tasks:
			task.cancel()

	def _mark_received(self) -> None:
		self._last_received = asyncio.get_running_loop().time()

	async def _heartbeat_loop(self, interval: float) -> None:
		while True:
			await asyncio.sleep(interval)
			try:
				await self._send_raw(stomp.HEARTBEAT)
			except TransportError:
				return

	async def _watchdog_loop(self, timeout: float) -> None:
		"""Close the socket once the broker has been silent for longer than `timeout`."""

		loop = asyncio.get_running_loop()
		while True:
			await asyncio.sleep(timeout / 2)
			silent = loop.time() - self._last_received
			if silent <= timeout:
				continue
			logger.warning("bus heart-beat timeout silent=%.1fs", silent)
			self._heartbeat_expired = True
			ws = self._ws
			if ws is not None:
				try:
					await ws.close()
				except (OSError, websockets.exceptions.WebSocketException):
					logger.debug("bus close error", exc_info=True)
			return

	async def _close_ws(self) -> None:
		ws, self._ws = self._ws, None
		if ws is None:
			return
		try:
			await ws.close()
		except (OSError, websockets.exceptions.WebSocketException):
			logger.debug("bus close error", exc_info=True)

	async def _emit_disconnected(self, reason: str) -> None:
		await self._log(f"Bus disconnected ({reason})")
		if self.callbacks.on_disconnected:
			await self.callbacks.on_disconnected(reason)

	async def _emit_error(self, error: str, payload: Dict[str, Any]) -> None:
		await self._log(f"Bus error: {error}")
		if self.callbacks.on_error:
			await self.callbacks.on_error(error, payload)

	async def _log(self, message: str) -> None:
		if self.callbacks.on_log:
			await self.callbacks.on_log(message)
