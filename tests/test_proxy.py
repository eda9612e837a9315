"""
Proxy Collector Tests
=====================
Tests for transparent forwarding and usage extraction.
"""

import asyncio
import gzip
import json
from collections.abc import AsyncGenerator, Callable

import httpx
import pytest
from fastapi import FastAPI

from codex_meter.collectors.proxy import (
    PROXY_METHODS,
    CaptureBuffer,
    ProxyCollector,
    conversation_from_request,
    extract_usage,
    relative_path,
    usage_from_sse,
)
from codex_meter.core.channel import UsageChannel
from codex_meter.schemas.usage import UsageEvent

UPSTREAM = "https://api.example.com/v1"

CHAT_RESPONSE = {
    "id": "chatcmpl-1",
    "model": "gpt-4.1-mini-2025-04-14",
    "choices": [{"index": 0, "message": {"role": "assistant", "content": "hi"}}],
    "usage": {
        "prompt_tokens": 100,
        "completion_tokens": 20,
        "prompt_tokens_details": {"cached_tokens": 60},
    },
}

SSE_BODY = (
    "event: response.created\n"
    'data: {"type":"response.created","response":{"model":"gpt-5"}}\n\n'
    "event: response.output_text.delta\n"
    'data: {"type":"response.output_text.delta","delta":"Hel"}\n\n'
    "event: response.completed\n"
    'data: {"type":"response.completed","response":{"model":"gpt-5",'
    '"usage":{"input_tokens":8558,"input_tokens_details":{"cached_tokens":8448},"output_tokens":52}}}\n\n'
)


class TrackedStream(httpx.AsyncByteStream):
    """Upstream body that remembers whether it was released."""

    def __init__(self, body: bytes):
        self.body = body
        self.closed = False

    async def __aiter__(self):
        yield self.body

    async def aclose(self) -> None:
        self.closed = True


class Upstream:
    """Records forwarded requests and answers with a canned response."""

    def __init__(self, respond: Callable[[httpx.Request], httpx.Response]):
        self.respond = respond
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.respond(request)


def build(
    channel: UsageChannel,
    upstream: Upstream,
    **kwargs,
) -> tuple[ProxyCollector, httpx.AsyncClient]:
    upstream_client = httpx.AsyncClient(transport=httpx.MockTransport(upstream))
    collector = ProxyCollector(channel, UPSTREAM, client=upstream_client, **kwargs)
    app = FastAPI()
    app.add_api_route("/{path:path}", collector.forward, methods=PROXY_METHODS)
    client = httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://meter")
    return collector, client


@pytest.fixture
async def json_proxy(channel: UsageChannel) -> AsyncGenerator[tuple[Upstream, httpx.AsyncClient], None]:
    upstream = Upstream(lambda request: httpx.Response(200, json=CHAT_RESPONSE))
    collector, client = build(channel, upstream)
    yield upstream, client
    await client.aclose()
    await collector.client.aclose()


async def emitted(channel: UsageChannel) -> list[UsageEvent]:
    events = []
    while channel.qsize():
        events.append(await channel.receive())
        channel.task_done()
    return events


class TestForwarding:
    """Requests and responses pass through unchanged."""

    async def test_json_response_is_forwarded_and_recorded(self, json_proxy, channel: UsageChannel):
        upstream, client = json_proxy

        response = await client.post(
            "/v1/chat/completions?stream=false",
            json={"model": "gpt-4.1-mini", "messages": []},
            headers={"Authorization": "Bearer sk-test", "X-Custom": "1"},
        )

        assert response.status_code == 200
        assert response.json() == CHAT_RESPONSE

        forwarded = upstream.requests[0]
        assert str(forwarded.url) == "https://api.example.com/v1/chat/completions?stream=false"
        assert forwarded.headers["authorization"] == "Bearer sk-test"
        assert forwarded.headers["x-custom"] == "1"
        assert forwarded.headers["host"] == "api.example.com"
        assert json.loads(forwarded.content) == {"model": "gpt-4.1-mini", "messages": []}

        [event] = await emitted(channel)
        assert event.source_id.startswith("proxy:")
        assert event.collector == "proxy"
        assert event.model == "gpt-4.1-mini-2025-04-14"
        assert (event.prompt_tokens, event.cached_prompt_tokens, event.completion_tokens) == (40, 60, 20)
        assert event.latency_ms is not None

    async def test_only_client_headers_are_forwarded(self, json_proxy):
        """The upstream client adds no headers of its own."""
        upstream, client = json_proxy
        for name in ("accept", "accept-encoding", "connection", "user-agent"):
            del client.headers[name]

        await client.post("/v1/chat/completions", json={"model": "gpt-4.1"}, headers={"Authorization": "Bearer k"})

        forwarded = upstream.requests[0]
        assert set(forwarded.headers.keys()) == {"host", "authorization", "content-type", "content-length"}

    async def test_hop_by_hop_headers_are_dropped(self, json_proxy):
        upstream, client = json_proxy

        await client.get("/v1/models", headers={"Proxy-Authorization": "secret", "TE": "trailers"})

        forwarded = upstream.requests[0]
        assert "proxy-authorization" not in forwarded.headers
        assert "te" not in forwarded.headers

    async def test_each_request_gets_a_fresh_source_id(self, json_proxy, channel: UsageChannel):
        _, client = json_proxy

        await client.post("/v1/chat/completions", json={})
        await client.post("/v1/chat/completions", json={})

        events = await emitted(channel)
        assert len({event.source_id for event in events}) == 2

    async def test_streamed_response_is_byte_identical(self, channel: UsageChannel):
        upstream = Upstream(
            lambda request: httpx.Response(
                200,
                content=SSE_BODY.encode(),
                headers={"content-type": "text/event-stream"},
            )
        )
        collector, client = build(channel, upstream)

        response = await client.post("/v1/responses", json={"model": "gpt-5", "stream": True})

        assert response.status_code == 200
        assert response.content == SSE_BODY.encode()
        assert response.headers["content-type"] == "text/event-stream"

        [event] = await emitted(channel)
        assert event.model == "gpt-5"
        assert (event.prompt_tokens, event.cached_prompt_tokens, event.completion_tokens) == (110, 8448, 52)
        await client.aclose()

    async def test_upstream_error_is_passed_through(self, channel: UsageChannel):
        error = {"error": {"message": "rate limited"}, "usage": {"prompt_tokens": 5}}
        upstream = Upstream(
            lambda request: httpx.Response(429, json=error, headers={"retry-after": "3"})
        )
        collector, client = build(channel, upstream)

        response = await client.post("/v1/chat/completions", json={"model": "gpt-4.1"})

        assert response.status_code == 429
        assert response.json() == error
        assert response.headers["retry-after"] == "3"
        assert await emitted(channel) == []
        await client.aclose()

    async def test_unreachable_upstream_returns_502(self, channel: UsageChannel):
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        collector, client = build(channel, Upstream(refuse))

        response = await client.post("/v1/chat/completions", json={})

        assert response.status_code == 502
        assert await emitted(channel) == []
        await client.aclose()

    async def test_oversized_request_is_rejected(self, channel: UsageChannel):
        upstream = Upstream(lambda request: httpx.Response(200, json=CHAT_RESPONSE))
        collector, client = build(channel, upstream, max_request_body_bytes=16)

        response = await client.post("/v1/chat/completions", content=b"x" * 100)

        assert response.status_code == 413
        assert upstream.requests == []
        await client.aclose()


    async def test_disconnect_before_streaming_releases_upstream(self, channel: UsageChannel):
        stream = TrackedStream(json.dumps(CHAT_RESPONSE).encode())
        upstream = Upstream(lambda request: httpx.Response(200, stream=stream))
        collector = ProxyCollector(
            channel, UPSTREAM, client=httpx.AsyncClient(transport=httpx.MockTransport(upstream))
        )
        app = FastAPI()
        app.add_api_route("/{path:path}", collector.forward, methods=PROXY_METHODS)

        scope = {
            "type": "http",
            "asgi": {"version": "3.0"},
            "http_version": "1.1",
            "method": "POST",
            "scheme": "http",
            "path": "/v1/chat/completions",
            "raw_path": b"/v1/chat/completions",
            "root_path": "",
            "query_string": b"",
            "headers": [(b"host", b"meter"), (b"content-type", b"application/json"), (b"content-length", b"2")],
            "client": ("127.0.0.1", 50000),
            "server": ("meter", 80),
        }
        messages = [{"type": "http.request", "body": b"{}", "more_body": False}, {"type": "http.disconnect"}]

        async def receive():
            if messages:
                return messages.pop(0)
            await asyncio.Event().wait()

        async def send(message):
            # The client is gone; nothing can be written.
            await asyncio.Event().wait()

        await asyncio.wait_for(app(scope, receive, send), timeout=5)

        assert len(upstream.requests) == 1
        assert stream.closed is True
        assert await emitted(channel) == []
        await collector.client.aclose()


class TestSessions:
    """Requests are attributed to the client conversation."""

    async def test_conversation_header(self, json_proxy, channel: UsageChannel):
        _, client = json_proxy

        await client.post("/v1/chat/completions", json={}, headers={"session_id": "conv-1"})

        [event] = await emitted(channel)
        assert event.session_id == "conv-1"

    async def test_prompt_cache_key_fallback(self, json_proxy, channel: UsageChannel):
        _, client = json_proxy

        await client.post("/v1/responses", json={"model": "gpt-5", "prompt_cache_key": "conv-2"})

        [event] = await emitted(channel)
        assert event.session_id == "conv-2"

    def test_header_wins_over_body(self):
        body = json.dumps({"prompt_cache_key": "from-body"}).encode()

        assert conversation_from_request({"conversation_id": "from-header"}, body) == "from-header"
        assert conversation_from_request({}, body) == "from-body"
        assert conversation_from_request({}, b"not json") is None

    async def test_reasoning_tokens_are_recorded(self, channel: UsageChannel):
        usage = {"input_tokens": 10, "output_tokens": 50, "output_tokens_details": {"reasoning_tokens": 30}}
        upstream = Upstream(lambda request: httpx.Response(200, json={"model": "o3", "usage": usage}))
        collector, client = build(channel, upstream)

        await client.post("/v1/responses", json={"model": "o3"})

        [event] = await emitted(channel)
        assert (event.completion_tokens, event.reasoning_tokens) == (50, 30)
        await client.aclose()


class TestExtraction:
    """Usage extraction never affects the forwarded response."""

    async def test_capture_overflow_still_forwards(self, channel: UsageChannel):
        upstream = Upstream(lambda request: httpx.Response(200, json=CHAT_RESPONSE))
        collector, client = build(channel, upstream, capture_limit_bytes=10)

        response = await client.post("/v1/chat/completions", json={})

        assert response.json() == CHAT_RESPONSE
        assert await emitted(channel) == []
        await client.aclose()

    async def test_response_without_usage(self, channel: UsageChannel):
        upstream = Upstream(lambda request: httpx.Response(200, json={"data": []}))
        collector, client = build(channel, upstream)

        response = await client.get("/v1/models")

        assert response.json() == {"data": []}
        assert await emitted(channel) == []
        await client.aclose()

    async def test_gzip_body_is_decoded_for_extraction(self, channel: UsageChannel):
        body = gzip.compress(json.dumps(CHAT_RESPONSE).encode())
        upstream = Upstream(
            lambda request: httpx.Response(
                200,
                content=body,
                headers={"content-type": "application/json", "content-encoding": "gzip"},
            )
        )
        collector, client = build(channel, upstream)

        response = await client.post("/v1/chat/completions", json={})

        assert response.json() == CHAT_RESPONSE
        assert len(await emitted(channel)) == 1
        await client.aclose()

    async def test_model_falls_back_to_request(self, channel: UsageChannel):
        upstream = Upstream(
            lambda request: httpx.Response(200, json={"usage": {"prompt_tokens": 3, "completion_tokens": 1}})
        )
        collector, client = build(channel, upstream)

        await client.post("/v1/chat/completions", json={"model": "o3"})

        [event] = await emitted(channel)
        assert event.model == "o3"
        await client.aclose()

    def test_chat_stream_uses_last_usage_chunk(self):
        body = (
            'data: {"model":"gpt-4o","choices":[{"delta":{"content":"a"}}]}\n\n'
            'data: {"model":"gpt-4o","choices":[],"usage":{"prompt_tokens":12,"completion_tokens":3}}\n\n'
            "data: [DONE]\n\n"
        )

        counts = usage_from_sse(body)

        assert (counts.prompt_tokens, counts.completion_tokens, counts.model) == (12, 3, "gpt-4o")

    def test_sse_detected_without_content_type(self):
        counts = extract_usage(SSE_BODY.encode(), "")
        assert counts.completion_tokens == 52

    def test_non_json_body(self):
        assert extract_usage(b"<html>", "text/html") is None

    def test_capture_buffer_limit(self):
        buffer = CaptureBuffer(limit=5)
        buffer.feed(b"abc")
        buffer.feed(b"def")
        buffer.feed(b"g")

        assert buffer.overflowed
        assert buffer.getvalue() == b""


class TestPathMapping:
    """Tests for public path to upstream URL mapping."""

    @pytest.mark.parametrize(
        "base,path,expected",
        [
            ("/v1", "/v1/responses", "/responses"),
            ("/v1", "/v1", "/"),
            ("/v1", "/v1beta/models", "/v1beta/models"),
            ("/", "/chat/completions", "/chat/completions"),
        ],
    )
    def test_relative_path(self, base, path, expected):
        assert relative_path(base, path) == expected

    async def test_upstream_url(self, channel: UsageChannel):
        collector = ProxyCollector(channel, "https://api.example.com/v1/", public_base_path="v1/")

        assert collector.public_base_path == "/v1"
        assert collector.upstream_url("/v1/responses", "a=1") == "https://api.example.com/v1/responses?a=1"
        assert collector.upstream_url("/v1") == "https://api.example.com/v1/"
        await collector.aclose()
