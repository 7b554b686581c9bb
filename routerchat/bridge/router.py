"""Dispatch of UI shell messages onto the chat engine and model directory."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from routerchat.bridge.protocol import (
    API_KEY_SAVED,
    API_KEY_VALID,
    CANCEL_STREAM,
    CURRENT_SETTINGS,
    GET_CURRENT_SETTINGS,
    GET_MODELS,
    MODEL_SAVED,
    MODELS,
    SAVE_API_KEY,
    SAVE_SELECTED_MODEL,
    SEND_MESSAGE,
    TEST_API_KEY,
    UPDATE_MODEL_INFO,
    Post,
    WebviewSink,
    error_payload,
    message_kind,
    payload,
)
from routerchat.core.credentials import CredentialStore
from routerchat.core.engine import ChatEngine, StreamState
from routerchat.core.errors import CredentialError, RouterChatError, UnavailableError
from routerchat.core.sink import CollectingSink, StreamSink
from routerchat.models.chat import ChatMessage

logger = logging.getLogger(__name__)

Handler = Callable[[Mapping[str, Any]], Awaitable[None]]


def mask_api_key(key: str | None) -> str:
    """Show only the tail of a key, e.g. ``sk-…a1b2``."""
    if not key:
        return ""
    if len(key) <= 8:
        return "*" * len(key)
    return f"{key[:3]}…{key[-4:]}"


class _TranscriptSink(StreamSink):
    """Forwards to the UI while keeping the reply text for the conversation history."""

    def __init__(self, ui: StreamSink):
        self.ui = ui
        self.reply = CollectingSink()

    def on_start(self) -> None:
        self.ui.on_start()

    def on_token(self, token: str) -> None:
        self.reply.on_token(token)
        self.ui.on_token(token)

    def on_end(self) -> None:
        self.ui.on_end()

    def on_cancel(self) -> None:
        self.ui.on_cancel()

    def on_error(self, error: RouterChatError) -> None:
        self.ui.on_error(error)


class MessageRouter:
    """
    Routes inbound UI messages to handlers and posts replies through ``post``.

    ``sendMessage`` awaits the whole stream, so hosts should hand each
    inbound message to ``submit`` (one task per message) to let a
    ``cancelStream`` through while a reply is streaming.
    """

    def __init__(
        self,
        engine: ChatEngine,
        credentials: CredentialStore,
        post: Post,
        keep_history: bool = True,
    ):
        self.engine = engine
        self.credentials = credentials
        self.post = post
        self.keep_history = keep_history
        self.history: list[ChatMessage] = []
        self._tasks: set[asyncio.Task[None]] = set()
        self._handlers: dict[str, Handler] = {
            SEND_MESSAGE: self._send_message,
            CANCEL_STREAM: self._cancel_stream,
            SAVE_API_KEY: self._save_api_key,
            TEST_API_KEY: self._test_api_key,
            GET_MODELS: self._get_models,
            SAVE_SELECTED_MODEL: self._save_selected_model,
            GET_CURRENT_SETTINGS: self._get_current_settings,
        }

    async def dispatch(self, message: Mapping[str, Any]) -> None:
        """Handle one inbound message. Errors are posted, not raised."""
        kind = message_kind(message)
        handler = self._handlers.get(kind) if kind else None
        if handler is None:
            logger.warning("Ignoring UI message with unknown type: %r", kind)
            return

        logger.debug("UI message: %s", kind)
        try:
            await handler(message)
        except RouterChatError as e:
            self.post(error_payload(str(e), e.kind))
        except CredentialError as e:
            self.post(error_payload(str(e), "credential"))
        except Exception as e:
            logger.exception("Handling UI message %s failed", kind)
            self.post(error_payload(str(e) or type(e).__name__))

    def submit(self, message: Mapping[str, Any]) -> asyncio.Task[None]:
        """Dispatch a message in its own task."""
        task = asyncio.create_task(self.dispatch(message))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for all submitted messages to be handled."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))

    # ── Handlers ──────────────────────────────────────────────────────

    async def _send_message(self, message: Mapping[str, Any]) -> None:
        text = message.get("text")
        if not isinstance(text, str) or not text.strip():
            return

        user_message = ChatMessage.user(text)
        sink = _TranscriptSink(WebviewSink(self.post))
        history = list(self.history) if self.keep_history else None
        session = await self.engine.send(user_message, sink, history=history)

        if self.keep_history and session.state is StreamState.COMPLETED:
            self.history.extend([user_message, ChatMessage.assistant(sink.reply.text)])

    async def _cancel_stream(self, message: Mapping[str, Any]) -> None:
        if not self.engine.cancel():
            logger.debug("cancelStream with no active stream")

    async def _save_api_key(self, message: Mapping[str, Any]) -> None:
        self.credentials.set_api_key(message.get("apiKey") or "")
        self.post(payload(API_KEY_SAVED))

    async def _test_api_key(self, message: Mapping[str, Any]) -> None:
        await self.engine.directory.test_credential(message.get("apiKey") or "")
        self.post(payload(API_KEY_VALID))

    async def _get_models(self, message: Mapping[str, Any]) -> None:
        models = await self.engine.directory.list_models()
        self.post(payload(MODELS, models=[m.to_wire() for m in models]))

    async def _save_selected_model(self, message: Mapping[str, Any]) -> None:
        model_id = message.get("modelId") or ""
        try:
            await self.engine.directory.set_selected_model(model_id)
        except UnavailableError as e:
            # The fallback was persisted; keep the UI in step before reporting
            self.post(payload(UPDATE_MODEL_INFO, modelId=e.fallback_id))
            raise
        self.post(payload(MODEL_SAVED))
        self.post(payload(UPDATE_MODEL_INFO, modelId=model_id))

    async def _get_current_settings(self, message: Mapping[str, Any]) -> None:
        api_key = self.credentials.get_api_key()
        selected = await self.engine.directory.get_selected_model()
        self.post(
            payload(
                CURRENT_SETTINGS,
                settings={
                    "apiKey": mask_api_key(api_key),
                    "hasApiKey": api_key is not None,
                    "selectedModel": selected,
                },
            )
        )
