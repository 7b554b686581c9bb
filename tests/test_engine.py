"""
Tests for routerchat.core.engine — session lifecycle, streaming and cancellation.
"""

import asyncio

import httpx
import pytest

from conftest import BASE_URL, SSE_DONE, sse_event
from routerchat.core.config import SELECTED_MODEL_KEY
from routerchat.core.directory import DEFAULT_MODEL_ID
from routerchat.core.engine import (
    StreamSession,
    StreamState,
    build_messages,
    build_payload,
)
from routerchat.core.errors import (
    AuthError,
    ProtocolError,
    RouterChatError,
    StreamCancelled,
    TransportError,
)
from routerchat.core.sink import CallbackSink, CollectingSink
from routerchat.models.chat import ChatMessage


class TestRequestBuilding:
    def test_history_then_message(self):
        history = [ChatMessage.system("be brief"), ChatMessage.user("hi"), ChatMessage.assistant("yo")]
        messages = build_messages("again", history)
        assert [m.content for m in messages] == ["be brief", "hi", "yo", "again"]
        assert messages[-1].role == "user"

    def test_payload_shape(self):
        payload = build_payload([ChatMessage.user("hello")], "model-x")
        assert payload == {
            "model": "model-x",
            "messages": [{"role": "user", "content": "hello"}],
            "stream": True,
        }


class TestSessionState:
    def test_valid_path(self):
        session = StreamSession()
        session.transition(StreamState.SENDING)
        session.transition(StreamState.STREAMING)
        session.transition(StreamState.COMPLETED)
        assert session.terminal

    def test_invalid_transition(self):
        session = StreamSession()
        with pytest.raises(RuntimeError):
            session.transition(StreamState.STREAMING)

    def test_no_transition_out_of_terminal(self):
        session = StreamSession()
        session.transition(StreamState.CANCELLED)
        with pytest.raises(RuntimeError):
            session.transition(StreamState.SENDING)

    def test_cancel_is_idempotent(self):
        session = StreamSession()
        assert session.cancel() is True
        assert session.cancel() is False
        assert session.cancelled


class TestSend:
    @pytest.mark.asyncio
    async def test_end_to_end(self, engine, gateway):
        sink = CollectingSink()
        session = await engine.send("hello", sink, model="model-x")

        assert session.state is StreamState.COMPLETED
        assert sink.events == [("start", None), ("token", "Hi"), ("end", None)]
        assert session.tokens == 1
        assert engine.active_session is None

        request = gateway.requests[-1]
        assert str(request.url) == f"{BASE_URL}/chat/completions"
        assert request.headers["Authorization"] == "Bearer sk-test"
        assert gateway.chat_payloads() == [
            {"model": "model-x", "messages": [{"role": "user", "content": "hello"}], "stream": True}
        ]

    @pytest.mark.asyncio
    async def test_tokens_in_order(self, engine, gateway):
        gateway.chat_chunks = [sse_event("a"), sse_event("b") + sse_event("c"), SSE_DONE]
        sink = CollectingSink()
        await engine.send("hello", sink, model="model-x")
        assert sink.tokens == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_uses_selected_model(self, engine, gateway, config):
        config.set(SELECTED_MODEL_KEY, "model-x")
        await engine.send("hello", CollectingSink())
        assert gateway.chat_payloads()[0]["model"] == "model-x"

    @pytest.mark.asyncio
    async def test_default_model_without_selection(self, engine, gateway):
        await engine.send("hello", CollectingSink())
        assert gateway.chat_payloads()[0]["model"] == DEFAULT_MODEL_ID
        assert gateway.count("/models") == 0

    @pytest.mark.asyncio
    async def test_history_sent_in_order(self, engine, gateway):
        history = [ChatMessage.user("one"), ChatMessage.assistant("two")]
        await engine.send("three", CollectingSink(), history=history, model="model-x")
        messages = gateway.chat_payloads()[0]["messages"]
        assert [m["content"] for m in messages] == ["one", "two", "three"]
        assert [m["role"] for m in messages] == ["user", "assistant", "user"]

    @pytest.mark.asyncio
    async def test_empty_reply(self, engine, gateway):
        gateway.chat_chunks = [SSE_DONE]
        sink = CollectingSink()
        session = await engine.send("hello", sink, model="model-x")
        assert session.state is StreamState.COMPLETED
        assert sink.kinds == ["start", "end"]

    @pytest.mark.asyncio
    async def test_skipped_frames_do_not_fail(self, engine, gateway):
        gateway.chat_chunks = [sse_event("a"), "data: {broken\n\n", sse_event("b"), SSE_DONE]
        sink = CollectingSink()
        session = await engine.send("hello", sink, model="model-x")
        assert session.state is StreamState.COMPLETED
        assert sink.tokens == ["a", "b"]
        assert session.decoder.skipped == 1

    @pytest.mark.asyncio
    async def test_callback_sink(self, engine):
        seen = []
        sink = CallbackSink(on_token=seen.append)
        session = await engine.send("hello", sink, model="model-x")
        assert session.state is StreamState.COMPLETED
        assert seen == ["Hi"]


class TestSendFailures:
    @pytest.mark.asyncio
    async def test_no_credential(self, engine, gateway, credentials):
        credentials.delete_api_key()
        sink = CollectingSink()
        session = await engine.send("hello", sink)

        assert session.state is StreamState.FAILED
        assert isinstance(session.error, AuthError)
        assert sink.kinds == ["error"]
        assert gateway.requests == []

    @pytest.mark.asyncio
    async def test_401(self, engine, gateway):
        gateway.chat_status = 401
        gateway.chat_body = b'{"error": {"message": "No auth credentials found"}}'
        gateway.chat_headers = {"content-type": "application/json"}
        sink = CollectingSink()
        session = await engine.send("hello", sink, model="model-x")

        assert session.state is StreamState.FAILED
        assert isinstance(session.error, AuthError)
        assert "No auth credentials found" in str(session.error)
        assert sink.kinds == ["error"]

    @pytest.mark.asyncio
    async def test_server_error_with_message(self, engine, gateway):
        gateway.chat_status = 500
        gateway.chat_body = b'{"error": {"message": "upstream exploded"}}'
        gateway.chat_headers = {"content-type": "application/json"}
        sink = CollectingSink()
        session = await engine.send("hello", sink, model="model-x")

        error = session.error
        assert isinstance(error, ProtocolError)
        assert error.status_code == 500
        assert str(error) == "API error (500): upstream exploded"

    @pytest.mark.asyncio
    async def test_server_error_without_body(self, engine, gateway):
        gateway.chat_status = 502
        gateway.chat_body = b"<html>bad gateway</html>"
        gateway.chat_headers = {"content-type": "text/html"}
        session = await engine.send("hello", CollectingSink(), model="model-x")
        assert str(session.error) == "API error: HTTP 502 Bad Gateway"

    @pytest.mark.asyncio
    async def test_json_body_on_success(self, engine, gateway):
        gateway.chat_body = b'{"error": {"message": "quota exceeded"}}'
        gateway.chat_headers = {"content-type": "application/json"}
        sink = CollectingSink()
        session = await engine.send("hello", sink, model="model-x")

        assert isinstance(session.error, ProtocolError)
        assert session.error.server_message == "quota exceeded"
        assert sink.kinds == ["error"]

    @pytest.mark.asyncio
    async def test_connect_error(self, engine, gateway):
        gateway.chat_error = httpx.ConnectError("Connection refused")
        sink = CollectingSink()
        session = await engine.send("hello", sink, model="model-x")
        assert isinstance(session.error, TransportError)
        assert sink.kinds == ["error"]

    @pytest.mark.asyncio
    async def test_mid_stream_failure(self, engine, gateway):
        gateway.chat_chunks = [sse_event("partial")]
        gateway.stream_error = httpx.ReadError("Connection reset")
        sink = CollectingSink()
        session = await engine.send("hello", sink, model="model-x")

        assert session.state is StreamState.FAILED
        assert isinstance(session.error, TransportError)
        assert sink.kinds == ["start", "token", "error"]
        assert engine.active_session is None

    @pytest.mark.asyncio
    async def test_sink_exception_reported_as_failure(self, engine):
        def explode(token):
            raise ValueError("boom")

        errors = []
        sink = CallbackSink(on_token=explode, on_error=errors.append)
        session = await engine.send("hello", sink, model="model-x")

        assert session.state is StreamState.FAILED
        assert isinstance(errors[0], RouterChatError)
        assert "boom" in str(errors[0])


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_mid_stream(self, engine, gateway):
        gateway.hold_after = 1
        sink = CollectingSink()
        task = asyncio.create_task(engine.send("hello", sink, model="model-x"))
        await gateway.streaming.wait()

        assert engine.cancel() is True
        session = await task

        assert session.state is StreamState.CANCELLED
        assert sink.kinds == ["start", "token", "cancel"]
        assert gateway.stream_closed == 1
        assert engine.active_session is None

    @pytest.mark.asyncio
    async def test_cancel_twice(self, engine, gateway):
        gateway.hold_after = 1
        sink = CollectingSink()
        task = asyncio.create_task(engine.send("hello", sink, model="model-x"))
        await gateway.streaming.wait()

        assert engine.cancel() is True
        assert engine.cancel() is False
        await task
        assert sink.kinds.count("cancel") == 1

    @pytest.mark.asyncio
    async def test_cancel_without_active_stream(self, engine):
        assert engine.cancel() is False

    @pytest.mark.asyncio
    async def test_cancel_after_completion(self, engine):
        session = await engine.send("hello", CollectingSink(), model="model-x")
        assert session.cancel() is False
        assert session.state is StreamState.COMPLETED

    @pytest.mark.asyncio
    async def test_new_send_supersedes_previous(self, engine, gateway):
        gateway.hold_after = 1
        first_sink = CollectingSink()
        first = asyncio.create_task(engine.send("A", first_sink, model="model-x"))
        await gateway.streaming.wait()

        gateway.hold_after = None
        gateway.chat_chunks = [sse_event("B reply"), SSE_DONE]
        second_sink = CollectingSink()
        second_session = await engine.send("B", second_sink, model="model-x")
        first_session = await first

        assert first_session.state is StreamState.CANCELLED
        assert first_sink.kinds == ["start", "token", "cancel"]
        assert second_session.state is StreamState.COMPLETED
        assert second_sink.events == [("start", None), ("token", "B reply"), ("end", None)]
        # First session finished before the second one started
        assert [p["messages"][-1]["content"] for p in gateway.chat_payloads()] == ["A", "B"]

    @pytest.mark.asyncio
    async def test_overlapping_sends_keep_one_stream(self, engine, gateway):
        gateway.hold_after = 1
        sink_a = CollectingSink()
        task_a = asyncio.create_task(engine.send("A", sink_a, model="model-x"))
        await gateway.streaming.wait()

        gateway.hold_after = None
        gateway.chat_chunks = [sse_event("x"), sse_event("y"), SSE_DONE]
        sink_b, sink_c = CollectingSink(), CollectingSink()
        task_b = asyncio.create_task(engine.send("B", sink_b, model="model-x"))
        task_c = asyncio.create_task(engine.send("C", sink_c, model="model-x"))
        session_a, session_b, session_c = await asyncio.gather(task_a, task_b, task_c)

        assert session_a.state is StreamState.CANCELLED
        assert session_b.state is StreamState.CANCELLED
        assert session_c.state is StreamState.COMPLETED
        assert sink_a.kinds == ["start", "token", "cancel"]
        # B was superseded before it sent anything
        assert sink_b.kinds == ["cancel"]
        assert sink_c.kinds == ["start", "token", "token", "end"]
        assert [p["messages"][-1]["content"] for p in gateway.chat_payloads()] == ["A", "C"]
        assert engine.active_session is None

    @pytest.mark.asyncio
    async def test_active_session_claimed_immediately(self, engine, gateway):
        gateway.hold_after = 1
        task_a = asyncio.create_task(engine.send("A", CollectingSink(), model="model-x"))
        await gateway.streaming.wait()
        session_a = engine.active_session

        gateway.hold_after = None
        task_b = asyncio.create_task(engine.send("B", CollectingSink(), model="model-x"))
        await asyncio.sleep(0)

        assert engine.active_session is not session_a
        assert session_a.cancelled
        await asyncio.gather(task_a, task_b)

    @pytest.mark.asyncio
    async def test_caller_cancellation_stops_stream(self, engine, gateway):
        gateway.hold_after = 1
        sink = CollectingSink()
        task = asyncio.create_task(engine.send("hello", sink, model="model-x"))
        await gateway.streaming.wait()
        session = engine.active_session

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        await session.wait()

        assert session.state is StreamState.CANCELLED
        assert sink.kinds[-1] == "cancel"


class TestComplete:
    @pytest.mark.asyncio
    async def test_returns_text(self, engine, gateway):
        gateway.chat_chunks = [sse_event("Hel"), sse_event("lo"), SSE_DONE]
        assert await engine.complete("hello", model="model-x") == "Hello"

    @pytest.mark.asyncio
    async def test_raises_session_error(self, engine, gateway):
        gateway.chat_status = 401
        gateway.chat_body = b"{}"
        gateway.chat_headers = {"content-type": "application/json"}
        with pytest.raises(AuthError):
            await engine.complete("hello", model="model-x")

    @pytest.mark.asyncio
    async def test_raises_when_cancelled(self, engine, gateway):
        gateway.hold_after = 1
        task = asyncio.create_task(engine.complete("hello", model="model-x"))
        await gateway.streaming.wait()
        engine.cancel()
        with pytest.raises(StreamCancelled):
            await task


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_context_manager_closes_clients(self, engine):
        async with engine:
            await engine.send("hello", CollectingSink(), model="model-x")
        assert engine._http is None
        assert engine.directory._http is None
