"""
Pytest fixtures for routerchat tests.
"""

import asyncio
import json
import os
import tempfile
from pathlib import Path
from typing import Any

import httpx
import pytest

from routerchat.core.config import ConfigManager
from routerchat.core.credentials import CredentialStore
from routerchat.core.directory import ModelDirectory
from routerchat.core.engine import ChatEngine

BASE_URL = "https://gateway.test/api/v1"


def sse_event(content: str) -> str:
    """One content frame, as the gateway sends it."""
    return f"data: {json.dumps({'choices': [{'delta': {'content': content}}]})}\n\n"


SSE_DONE = "data: [DONE]\n\n"


def model_entry(model_id: str, available: bool | None = None, **extra: Any) -> dict[str, Any]:
    entry: dict[str, Any] = {
        "id": model_id,
        "name": model_id.split("/")[-1].title(),
        "context_length": 8192,
        "pricing": {"prompt": "0.000001", "completion": "0.000002"},
    }
    if available is not None:
        entry["available"] = available
    entry.update(extra)
    return entry


class FakeClock:
    """Controllable replacement for time.time."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeGateway:
    """
    In-process stand-in for the gateway, served through httpx.MockTransport.

    ``chat_chunks`` is streamed for each chat request. Setting ``hold_after``
    makes the stream pause after that many chunks until ``release`` is set,
    which lets tests cancel mid-stream.
    """

    def __init__(self) -> None:
        self.models: list[dict[str, Any]] = [
            model_entry("openai/gpt-3.5-turbo"),
            model_entry("model-x"),
            model_entry("model-down", available=False),
        ]
        self.models_status = 200
        self.models_body: bytes | None = None
        self.models_error: Exception | None = None

        self.chat_chunks: list[bytes | str] = [sse_event("Hi"), SSE_DONE]
        self.chat_status = 200
        self.chat_body: bytes | None = None
        self.chat_headers: dict[str, str] = {"content-type": "text/event-stream"}
        self.chat_error: Exception | None = None
        self.stream_error: Exception | None = None
        self.hold_after: int | None = None

        self.requests: list[httpx.Request] = []
        self.release = asyncio.Event()
        self.streaming = asyncio.Event()
        self.stream_closed = 0

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def count(self, path_suffix: str) -> int:
        return sum(1 for r in self.requests if r.url.path.endswith(path_suffix))

    def chat_payloads(self) -> list[dict[str, Any]]:
        return [
            json.loads(r.content)
            for r in self.requests
            if r.url.path.endswith("/chat/completions")
        ]

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path.endswith("/models"):
            if self.models_error is not None:
                raise self.models_error
            if self.models_body is not None:
                return httpx.Response(self.models_status, content=self.models_body)
            return httpx.Response(self.models_status, json={"data": self.models})

        if path.endswith("/chat/completions"):
            if self.chat_error is not None:
                raise self.chat_error
            if self.chat_body is not None:
                return httpx.Response(
                    self.chat_status, content=self.chat_body, headers=self.chat_headers
                )
            return httpx.Response(
                self.chat_status, content=self._stream(), headers=self.chat_headers
            )

        return httpx.Response(404, json={"error": {"message": "no route"}})

    async def _stream(self):
        try:
            for index, chunk in enumerate(self.chat_chunks):
                if self.hold_after is not None and index == self.hold_after:
                    self.streaming.set()
                    await self.release.wait()
                yield chunk.encode() if isinstance(chunk, str) else chunk
            if self.hold_after is not None and self.hold_after >= len(self.chat_chunks):
                self.streaming.set()
                await self.release.wait()
            if self.stream_error is not None:
                raise self.stream_error
        finally:
            self.stream_closed += 1


@pytest.fixture(autouse=True)
def _clean_env(tmp_path, monkeypatch):
    """Keep real keys, URLs and home directories out of the tests."""
    original_env = os.environ.copy()
    monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)
    monkeypatch.delenv("OPENROUTER_BASE_URL", raising=False)
    monkeypatch.setenv("ROUTERCHAT_HOME", str(tmp_path / "home"))
    yield
    os.environ.clear()
    os.environ.update(original_env)


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def config(tmp_path):
    """ConfigManager backed by a temp directory."""
    return ConfigManager(base_dir=tmp_path / "settings")


@pytest.fixture
def credentials(tmp_path):
    """CredentialStore holding the test key."""
    store = CredentialStore(base_dir=tmp_path / "credentials")
    store.set_api_key("sk-test")
    return store


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def directory(credentials, config, gateway, clock):
    return ModelDirectory(
        credentials, config, base_url=BASE_URL, clock=clock, transport=gateway.transport
    )


@pytest.fixture
def engine(credentials, directory, gateway):
    return ChatEngine(credentials, directory, base_url=BASE_URL, transport=gateway.transport)
