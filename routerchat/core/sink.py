"""Receivers for chat stream events."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

from routerchat.core.errors import RouterChatError


class StreamSink(ABC):
    """
    Receives the events of one chat stream.

    Per stream the engine calls ``on_start`` once, then ``on_token`` zero or
    more times in emission order, then exactly one of ``on_end``,
    ``on_cancel`` or ``on_error``. A stream that fails or is cancelled before
    the response arrives skips ``on_start``.
    """

    @abstractmethod
    def on_start(self) -> None:
        """The gateway accepted the request and the body is streaming."""
        ...

    @abstractmethod
    def on_token(self, token: str) -> None:
        """One fragment of generated text."""
        ...

    @abstractmethod
    def on_end(self) -> None:
        """The stream finished normally."""
        ...

    @abstractmethod
    def on_cancel(self) -> None:
        """The stream was stopped by the client."""
        ...

    @abstractmethod
    def on_error(self, error: RouterChatError) -> None:
        """The stream failed."""
        ...


class CollectingSink(StreamSink):
    """Records every event in order. Handy for scripting and tests."""

    def __init__(self) -> None:
        self.events: list[tuple[str, Any]] = []

    def on_start(self) -> None:
        self.events.append(("start", None))

    def on_token(self, token: str) -> None:
        self.events.append(("token", token))

    def on_end(self) -> None:
        self.events.append(("end", None))

    def on_cancel(self) -> None:
        self.events.append(("cancel", None))

    def on_error(self, error: RouterChatError) -> None:
        self.events.append(("error", error))

    @property
    def tokens(self) -> list[str]:
        return [data for kind, data in self.events if kind == "token"]

    @property
    def text(self) -> str:
        return "".join(self.tokens)

    @property
    def kinds(self) -> list[str]:
        return [kind for kind, _ in self.events]


class CallbackSink(StreamSink):
    """Adapts plain callables to the sink interface. Missing callbacks are no-ops."""

    def __init__(
        self,
        on_token: Callable[[str], None] | None = None,
        on_error: Callable[[RouterChatError], None] | None = None,
        on_start: Callable[[], None] | None = None,
        on_end: Callable[[], None] | None = None,
        on_cancel: Callable[[], None] | None = None,
    ):
        self._on_token = on_token
        self._on_error = on_error
        self._on_start = on_start
        self._on_end = on_end
        self._on_cancel = on_cancel

    def on_start(self) -> None:
        if self._on_start:
            self._on_start()

    def on_token(self, token: str) -> None:
        if self._on_token:
            self._on_token(token)

    def on_end(self) -> None:
        if self._on_end:
            self._on_end()

    def on_cancel(self) -> None:
        if self._on_cancel:
            self._on_cancel()

    def on_error(self, error: RouterChatError) -> None:
        if self._on_error:
            self._on_error(error)
