"""Bridge between a UI shell's message objects and the chat engine."""

from routerchat.bridge.protocol import WebviewSink, message_kind, payload
from routerchat.bridge.router import MessageRouter

__all__ = ["MessageRouter", "WebviewSink", "message_kind", "payload"]
