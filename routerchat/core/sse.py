"""
Incremental decoder for server-sent-event style chat completion streams.

Wire format, one event per line:

    data: {"choices":[{"delta":{"content":"Hel"}}]}
    data: {"choices":[{"delta":{"content":"lo"}}]}
    data: [DONE]

Network chunks do not line up with lines, so the decoder buffers the
unterminated tail of each chunk and only interprets complete lines. A single
malformed frame is skipped (and counted), never raised.
"""

import codecs
import json
import logging
from collections.abc import AsyncIterable, AsyncIterator, Iterable, Iterator
from typing import Any

logger = logging.getLogger(__name__)

DATA_PREFIX = "data: "
DONE_PAYLOAD = "[DONE]"


class _Done:
    """Marker returned by parse_data_line for the end-of-stream payload."""

    def __repr__(self) -> str:
        return "DONE"


DONE = _Done()


class FrameSkipped(Exception):
    """Internal: a data line that could not yield a token. Never leaves this module."""


def extract_content(event: Any) -> str:
    """
    Return ``choices[0].delta.content`` from a decoded event.

    Raises:
        FrameSkipped: if the path is absent or the content is not a string
    """
    try:
        content = event["choices"][0]["delta"]["content"]
    except (KeyError, IndexError, TypeError) as e:
        raise FrameSkipped(f"no choices[0].delta.content ({e!r})") from e
    if not isinstance(content, str):
        raise FrameSkipped(f"content is {type(content).__name__}, not str")
    return content


def parse_data_line(line: str) -> str | _Done | None:
    """
    Classify one complete line.

    Returns:
        DONE for the terminator, the token text for a content frame, or None
        for lines that carry nothing (blank, non-data, empty content).

    Raises:
        FrameSkipped: for a data line whose payload is not a usable event
    """
    line = line.rstrip("\r")
    if not line.strip() or not line.startswith(DATA_PREFIX):
        return None

    payload = line[len(DATA_PREFIX):]
    if payload.strip() == DONE_PAYLOAD:
        return DONE

    try:
        event = json.loads(payload)
    except json.JSONDecodeError as e:
        raise FrameSkipped(f"invalid JSON: {e}") from e

    content = extract_content(event)
    return content or None


class SSEDecoder:
    """
    Stateful decoder for one stream. Not restartable: once ``[DONE]`` has
    been seen, or ``finish()`` has been called, further input yields nothing.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self.done = False
        self.finished = False
        self.skipped = 0

    @property
    def closed(self) -> bool:
        return self.done or self.finished

    @property
    def pending(self) -> str:
        """Buffered text not yet terminated by a newline."""
        return self._buffer

    def feed(self, chunk: bytes | str) -> list[str]:
        """
        Add a network chunk and return the tokens completed by it.

        Args:
            chunk: Raw bytes or already-decoded text, split anywhere

        Returns:
            Tokens in stream order (possibly empty)
        """
        if self.closed:
            return []

        if isinstance(chunk, bytes):
            chunk = self._utf8.decode(chunk)
        self._buffer += chunk

        tokens: list[str] = []
        while not self.done:
            newline = self._buffer.find("\n")
            if newline < 0:
                break
            line = self._buffer[:newline]
            self._buffer = self._buffer[newline + 1:]
            self._handle_line(line, tokens)

        if self.done:
            self._buffer = ""
        return tokens

    def finish(self) -> list[str]:
        """
        Signal end of input. The unterminated tail, if any, gets one final
        parse attempt under the same rules.
        """
        if self.closed:
            return []

        self._buffer += self._utf8.decode(b"", final=True)
        tail, self._buffer = self._buffer, ""
        tokens: list[str] = []
        for line in tail.split("\n"):
            if self.done:
                break
            self._handle_line(line, tokens)
        self.finished = True
        return tokens

    def _handle_line(self, line: str, tokens: list[str]) -> None:
        try:
            result = parse_data_line(line)
        except FrameSkipped as e:
            self.skipped += 1
            logger.debug("Skipping malformed stream frame: %s", e)
            return

        if result is DONE:
            self.done = True
        elif result is not None:
            tokens.append(result)


def iter_tokens(chunks: Iterable[bytes | str]) -> Iterator[str]:
    """Lazily decode a synchronous chunk source into tokens."""
    decoder = SSEDecoder()
    for chunk in chunks:
        yield from decoder.feed(chunk)
        if decoder.done:
            return
    yield from decoder.finish()


async def aiter_tokens(
    chunks: AsyncIterable[bytes | str],
    decoder: SSEDecoder | None = None,
) -> AsyncIterator[str]:
    """
    Lazily decode an asynchronous chunk source into tokens.

    Stops pulling from ``chunks`` as soon as ``[DONE]`` is seen. Pass a
    ``decoder`` to keep its buffer and skip count visible to the caller.
    """
    if decoder is None:
        decoder = SSEDecoder()
    async for chunk in chunks:
        for token in decoder.feed(chunk):
            yield token
        if decoder.done:
            break
    else:
        for token in decoder.finish():
            yield token
    if decoder.skipped:
        logger.debug("Stream ended with %d skipped frame(s)", decoder.skipped)
