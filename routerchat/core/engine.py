"""
Chat session engine.

Sends one chat request at a time to the gateway's chat completions endpoint,
decodes the streamed reply into tokens and reports them through a
StreamSink. Starting a new send cancels the one in flight.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator, Callable, Sequence
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import httpx

from routerchat.core.config import ConfigManager, resolve_base_url
from routerchat.core.credentials import CredentialStore
from routerchat.core.directory import ModelDirectory
from routerchat.core.errors import (
    AuthError,
    ProtocolError,
    RouterChatError,
    StreamCancelled,
    error_from_response,
    error_from_transport,
    extract_server_message,
)
from routerchat.core.gateway import GatewayClient, auth_headers
from routerchat.core.sink import CollectingSink, StreamSink
from routerchat.core.sse import SSEDecoder, aiter_tokens
from routerchat.models.chat import ChatMessage

logger = logging.getLogger(__name__)


class StreamState(str, Enum):
    """Lifecycle of one send."""

    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


TERMINAL_STATES = frozenset(
    {StreamState.COMPLETED, StreamState.CANCELLED, StreamState.FAILED}
)

_TRANSITIONS: dict[StreamState, frozenset[StreamState]] = {
    StreamState.IDLE: frozenset({StreamState.SENDING, StreamState.CANCELLED}),
    StreamState.SENDING: frozenset(
        {StreamState.STREAMING, StreamState.CANCELLED, StreamState.FAILED}
    ),
    StreamState.STREAMING: TERMINAL_STATES,
}


@dataclass
class StreamSession:
    """One in-flight send. Discarded once it reaches a terminal state."""

    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    state: StreamState = StreamState.IDLE
    model: str | None = None
    decoder: SSEDecoder = field(default_factory=SSEDecoder)
    tokens: int = 0
    error: RouterChatError | None = None
    _cancelled: bool = field(default=False, repr=False)
    _task: asyncio.Task[None] | None = field(default=None, repr=False)

    @property
    def cancelled(self) -> bool:
        """Whether cancellation was requested. Tokens are dropped from then on."""
        return self._cancelled

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def cancel(self) -> bool:
        """
        Request cancellation. Idempotent.

        Returns:
            True if this call requested it, False if it was already requested
            or the session had already finished.
        """
        if self.terminal or self._cancelled:
            return False
        self._cancelled = True
        # An idle task checks the flag before it sends anything
        if self.state is StreamState.IDLE:
            return True
        task = self._task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        return True

    def transition(self, state: StreamState) -> None:
        allowed = _TRANSITIONS.get(self.state, frozenset())
        if state not in allowed:
            raise RuntimeError(
                f"Invalid stream transition {self.state.value} -> {state.value}"
            )
        logger.debug("Stream %s: %s -> %s", self.id, self.state.value, state.value)
        self.state = state

    async def wait(self) -> None:
        """Wait until the session's streaming task has finished."""
        task = self._task
        if task is not None and task is not asyncio.current_task():
            await asyncio.wait({task})


def build_messages(
    message: str | ChatMessage,
    history: Sequence[ChatMessage] | None = None,
) -> list[ChatMessage]:
    """Conversation to send: the history, in order, followed by the new message."""
    if isinstance(message, str):
        message = ChatMessage.user(message)
    return [*(history or ()), message]


def build_payload(messages: Sequence[ChatMessage], model: str) -> dict[str, Any]:
    """Request body for a streaming chat completion."""
    return {
        "model": model,
        "messages": [m.to_wire() for m in messages],
        "stream": True,
    }


class ChatEngine(GatewayClient):
    """
    Streams chat completions from the gateway.

    At most one session is active at a time. The engine has no deadline of
    its own; the httpx timeout is the only one applied.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        directory: ModelDirectory,
        base_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: httpx.Timeout | float | None = None,
    ):
        super().__init__(base_url or directory.base_url, transport, timeout)
        self._credentials = credentials
        self._directory = directory
        self._active: StreamSession | None = None

    @classmethod
    def from_config(
        cls,
        credentials: CredentialStore,
        config: ConfigManager,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> ChatEngine:
        """Build an engine and its model directory from the persisted settings."""
        base_url = resolve_base_url(config)
        directory = ModelDirectory(credentials, config, base_url=base_url, transport=transport)
        return cls(credentials, directory, base_url=base_url, transport=transport)

    @property
    def directory(self) -> ModelDirectory:
        return self._directory

    @property
    def active_session(self) -> StreamSession | None:
        return self._active

    async def aclose(self) -> None:
        self.cancel()
        await super().aclose()
        await self._directory.aclose()

    # ── Streaming primitive ───────────────────────────────────────────

    def _require_token(self) -> str:
        token = self._credentials.get_api_key()
        if not token:
            raise AuthError("No API key configured. Run: routerchat key set")
        return token

    async def _check_stream_response(self, response: httpx.Response) -> None:
        """Reject error statuses and success responses that carry no event stream."""
        if not response.is_success:
            await response.aread()
            raise error_from_response(
                response.status_code, response.content, response.reason_phrase
            )

        if response.headers.get("content-length") == "0":
            raise ProtocolError(
                "Gateway returned an empty response body", status_code=response.status_code
            )

        content_type = response.headers.get("content-type", "")
        if content_type.startswith("application/json"):
            # Some gateways report failures as a 200 JSON body instead of a stream
            await response.aread()
            server_message = extract_server_message(response.content)
            raise ProtocolError(
                f"API error: {server_message}" if server_message
                else "Expected an event stream but got a JSON body",
                status_code=response.status_code,
                server_message=server_message,
            )

    async def stream_chat(
        self,
        messages: Sequence[ChatMessage],
        model: str | None = None,
        on_start: Callable[[], None] | None = None,
        decoder: SSEDecoder | None = None,
    ) -> AsyncIterator[str]:
        """
        Send a conversation and yield the reply's tokens as they arrive.

        Args:
            messages: Conversation, sent verbatim and in order
            model: Model id; defaults to the directory's selected model
            on_start: Called once the gateway has accepted the request
            decoder: Decoder to use (its buffer belongs to the caller's session)

        Raises:
            AuthError: no API key, or the gateway rejected it
            TransportError: network failure before or during the stream
            ProtocolError: error status or unusable response body
        """
        token = self._require_token()
        if model is None:
            model = await self._directory.get_selected_model()
        payload = build_payload(messages, model)
        logger.debug("POST chat/completions model=%s messages=%d", model, len(messages))

        try:
            async with self.http.stream(
                "POST",
                self.url("chat/completions"),
                json=payload,
                headers=auth_headers(token),
            ) as response:
                await self._check_stream_response(response)
                if on_start is not None:
                    on_start()
                async with aclosing(aiter_tokens(response.aiter_bytes(), decoder)) as tokens:
                    async for chunk_token in tokens:
                        yield chunk_token
        except httpx.RequestError as e:
            raise error_from_transport(e, self.base_url) from e

    # ── Session state machine ─────────────────────────────────────────

    def cancel(self) -> bool:
        """
        Cancel the active session, if any.

        Returns:
            True if a session was cancelled by this call
        """
        session = self._active
        if session is None:
            return False
        cancelled = session.cancel()
        if cancelled:
            logger.info("Stream %s cancellation requested", session.id)
        return cancelled

    async def send(
        self,
        message: str | ChatMessage,
        sink: StreamSink,
        history: Sequence[ChatMessage] | None = None,
        model: str | None = None,
    ) -> StreamSession:
        """
        Send a message and report the reply through ``sink``.

        Any session still streaming is cancelled first. Failures are delivered
        to ``sink.on_error`` and recorded on the returned session rather than
        raised.

        Args:
            message: New user message (text or a ChatMessage)
            sink: Receiver for the stream's events
            history: Earlier conversation to send before the message
            model: Model id override; defaults to the selected model

        Returns:
            The finished session, in a terminal state
        """
        messages = build_messages(message, history)
        session = StreamSession()
        # Claim the slot before yielding so concurrent sends form a chain
        previous, self._active = self._active, session
        if previous is not None and not previous.terminal:
            logger.info("Stream %s superseded by %s", previous.id, session.id)
            previous.cancel()
        else:
            previous = None
        session._task = asyncio.create_task(
            self._run(session, messages, sink, model, previous)
        )
        try:
            await asyncio.shield(session._task)
        except asyncio.CancelledError:
            # The caller was cancelled; stop the stream, then propagate.
            session.cancel()
            raise
        return session

    async def complete(
        self,
        message: str | ChatMessage,
        history: Sequence[ChatMessage] | None = None,
        model: str | None = None,
    ) -> str:
        """
        Send a message and return the whole reply.

        Raises:
            StreamCancelled: the stream was cancelled before it finished
            RouterChatError: the session failed
        """
        sink = CollectingSink()
        session = await self.send(message, sink, history=history, model=model)
        if session.state is StreamState.CANCELLED:
            raise StreamCancelled()
        if session.error is not None:
            raise session.error
        return sink.text

    async def _run(
        self,
        session: StreamSession,
        messages: list[ChatMessage],
        sink: StreamSink,
        model: str | None,
        previous: StreamSession | None = None,
    ) -> None:
        def started() -> None:
            session.transition(StreamState.STREAMING)
            logger.info("Stream %s started (model=%s)", session.id, session.model)
            sink.on_start()

        try:
            # The superseded session must reach a terminal state first
            if previous is not None:
                await previous.wait()
            if session.cancelled:
                raise asyncio.CancelledError
            session.transition(StreamState.SENDING)
            if model is None:
                self._require_token()
                model = await self._directory.get_selected_model()
            session.model = model

            async with aclosing(
                self.stream_chat(messages, model, on_start=started, decoder=session.decoder)
            ) as tokens:
                async for token in tokens:
                    if session.cancelled:
                        break
                    session.tokens += 1
                    sink.on_token(token)

            if session.cancelled:
                raise asyncio.CancelledError
        except asyncio.CancelledError:
            self._finish(session, StreamState.CANCELLED)
            sink.on_cancel()
        except RouterChatError as e:
            self._fail(session, e)
            sink.on_error(e)
        except Exception as e:
            logger.exception("Stream %s failed unexpectedly", session.id)
            error = RouterChatError(f"Unexpected error ({type(e).__name__}): {e}", original=e)
            self._fail(session, error)
            sink.on_error(error)
        else:
            self._finish(session, StreamState.COMPLETED)
            sink.on_end()

    def _fail(self, session: StreamSession, error: RouterChatError) -> None:
        session.error = error
        logger.warning("Stream %s failed: %s", session.id, error)
        self._finish(session, StreamState.FAILED)

    def _finish(self, session: StreamSession, state: StreamState) -> None:
        if session.state is StreamState.IDLE and state is not StreamState.CANCELLED:
            session.transition(StreamState.SENDING)
        session.transition(state)
        if self._active is session:
            self._active = None
        if state is StreamState.COMPLETED:
            logger.info(
                "Stream %s completed (%d tokens, %d skipped frames)",
                session.id,
                session.tokens,
                session.decoder.skipped,
            )
        elif state is StreamState.CANCELLED:
            logger.info("Stream %s cancelled after %d tokens", session.id, session.tokens)
