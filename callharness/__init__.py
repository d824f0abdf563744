"""Manual test harness for a STOMP/WebRTC call-signaling backend."""

__version__ = "0.1.0"
