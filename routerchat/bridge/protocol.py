"""UI shell message vocabulary and the sink that speaks it.

Inbound messages are plain dicts discriminated by ``type`` (or ``command``):

    sendMessage        {"text": str}
    cancelStream       {}
    saveApiKey         {"apiKey": str}
    testApiKey         {"apiKey": str}
    getModels          {}
    saveSelectedModel  {"modelId": str}
    getCurrentSettings {}

Outbound payloads carry the same discriminator under both keys so shells
written against either convention can read them.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any

from routerchat.core.errors import RouterChatError
from routerchat.core.sink import StreamSink

# Inbound
SEND_MESSAGE = "sendMessage"
CANCEL_STREAM = "cancelStream"
SAVE_API_KEY = "saveApiKey"
TEST_API_KEY = "testApiKey"
GET_MODELS = "getModels"
SAVE_SELECTED_MODEL = "saveSelectedModel"
GET_CURRENT_SETTINGS = "getCurrentSettings"

# Outbound: stream events
START_ASSISTANT_MESSAGE = "startAssistantMessage"
APPEND_MESSAGE_CHUNK = "appendMessageChunk"
END_STREAM = "endStream"
STREAM_CANCELLED = "streamCancelled"
ERROR = "error"

# Outbound: settings replies
API_KEY_SAVED = "apiKeySaved"
API_KEY_VALID = "apiKeyValid"
MODELS = "models"
MODEL_SAVED = "modelSaved"
CURRENT_SETTINGS = "currentSettings"
UPDATE_MODEL_INFO = "updateModelInfo"

Post = Callable[[dict[str, Any]], None]


def message_kind(message: Mapping[str, Any]) -> str | None:
    """Read the discriminator of an inbound message."""
    kind = message.get("type") or message.get("command")
    return kind if isinstance(kind, str) else None


def payload(kind: str, /, **fields: Any) -> dict[str, Any]:
    """Build an outbound payload."""
    return {"type": kind, "command": kind, **fields}


def error_payload(message: str, kind: str = "error") -> dict[str, Any]:
    return payload(ERROR, message=message, kind=kind)


class WebviewSink(StreamSink):
    """Forwards stream events to the UI shell as payload dicts."""

    def __init__(self, post: Post):
        self._post = post

    def on_start(self) -> None:
        self._post(payload(START_ASSISTANT_MESSAGE))

    def on_token(self, token: str) -> None:
        self._post(payload(APPEND_MESSAGE_CHUNK, content=token))

    def on_end(self) -> None:
        self._post(payload(END_STREAM))

    def on_cancel(self) -> None:
        self._post(payload(STREAM_CANCELLED))

    def on_error(self, error: RouterChatError) -> None:
        self._post(error_payload(str(error), error.kind))
