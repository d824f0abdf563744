"""Minimal STOMP 1.2 framing for text WebSocket transports."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List

from ..errors import ProtocolError


CONNECT = "CONNECT"
CONNECTED = "CONNECTED"
SUBSCRIBE = "SUBSCRIBE"
SEND = "SEND"
MESSAGE = "MESSAGE"
RECEIPT = "RECEIPT"
ERROR = "ERROR"
DISCONNECT = "DISCONNECT"

HEARTBEAT = "\n"

# CONNECT and CONNECTED headers are sent verbatim.
_UNESCAPED_COMMANDS = (CONNECT, CONNECTED)

_ESCAPES = (("\\", "\\\\"), ("\r", "\\r"), ("\n", "\\n"), (":", "\\c"))
_UNESCAPES = {"\\\\": "\\", "\\r": "\r", "\\n": "\n", "\\c": ":"}


@dataclass
class Frame:
	command: str
	headers: Dict[str, str] = field(default_factory=dict)
	body: str = ""


def _escape(value: str) -> str:
	for raw, escaped in _ESCAPES:
		value = value.replace(raw, escaped)
	return value


def _unescape(value: str) -> str:
	if "\\" not in value:
		return value
	out = []
	i = 0
	while i < len(value):
		pair = value[i : i + 2]
		if pair in _UNESCAPES:
			out.append(_UNESCAPES[pair])
			i += 2
			continue
		if value[i] == "\\":
			raise ProtocolError(f"invalid header escape in {value!r}")
		out.append(value[i])
		i += 1
	return "".join(out)


def encode_frame(frame: Frame) -> str:
	escape = frame.command not in _UNESCAPED_COMMANDS
	lines = [frame.command]
	for key, value in frame.headers.items():
		if escape:
			key, value = _escape(key), _escape(str(value))
		lines.append(f"{key}:{value}")
	return "\n".join(lines) + "\n\n" + frame.body + "\0"


def _decode_one(chunk: str) -> Frame:
	head, sep, body = chunk.partition("\n\n")
	if not sep:
		head, sep, body = chunk.partition("\r\n\r\n")
	if not sep:
		raise ProtocolError("frame without header terminator")

	lines = head.replace("\r\n", "\n").split("\n")
	command = lines[0]
	if not command:
		raise ProtocolError("frame without command")
	unescape = command not in _UNESCAPED_COMMANDS

	headers: Dict[str, str] = {}
	for line in lines[1:]:
		if not line:
			continue
		key, colon, value = line.partition(":")
		if not colon:
			raise ProtocolError(f"malformed header line {line!r}")
		if unescape:
			key, value = _unescape(key), _unescape(value)
		# Repeated headers: the first one wins.
		headers.setdefault(key, value)
	return Frame(command=command, headers=headers, body=body)


class FrameParser:
	"""Incremental parser; frames may span or share WebSocket messages."""

	def __init__(self) -> None:
		self._buffer = ""

	def feed(self, data: str) -> List[Frame]:
		self._buffer += data
		frames: List[Frame] = []
		while True:
			# Heart-beats are bare EOLs between frames.
			self._buffer = self._buffer.lstrip("\r\n")
			end = self._buffer.find("\0")
			if end < 0:
				break
			chunk, self._buffer = self._buffer[:end], self._buffer[end + 1 :]
			frames.append(_decode_one(chunk))
		return frames

	def reset(self) -> None:
		self._buffer = ""
