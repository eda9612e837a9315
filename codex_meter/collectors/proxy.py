"""
Intercepting Proxy
==================
Transparent HTTP proxy that forwards every request upstream and records the
usage reported by completed responses.

Responses are streamed back byte-for-byte as they arrive. A copy of the body
is kept in a bounded buffer; once the response has been fully delivered, the
usage summary is extracted from that copy and emitted as one UsageEvent.
Nothing about extraction can delay, alter or fail the forwarded response.
"""

import asyncio
import json
import time
import zlib
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

import httpx
import structlog
from fastapi import Request
from fastapi.responses import JSONResponse, Response, StreamingResponse
from starlette.background import BackgroundTask

from codex_meter.collectors.records import MalformedRecordError, UsageCounts, usage_from_payload
from codex_meter.core.channel import UsageChannel
from codex_meter.core.metrics import RESPONSES_UNEXTRACTED
from codex_meter.schemas.usage import MAX_SESSION_ID_LENGTH, UsageEvent

logger = structlog.get_logger()

HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "proxy-connection",
        "te",
        "trailer",
        "transfer-encoding",
        "upgrade",
    }
)
# httpx sets these itself from the target URL and the buffered body.
REQUEST_SKIP_HEADERS = HOP_BY_HOP_HEADERS | {"host", "content-length"}

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]

CONVERSATION_HEADERS = ("conversation_id", "session_id")


class RequestTooLarge(Exception):
    """Inbound request body exceeds the configured limit."""


class CaptureBuffer:
    """
    Size-bounded copy of a forwarded body.

    Once the limit is exceeded the copy is discarded and further chunks are
    ignored; forwarding is unaffected.
    """

    def __init__(self, limit: int):
        self.limit = limit
        self.size = 0
        self.overflowed = False
        self.complete = False
        self._chunks: list[bytes] = []

    def feed(self, chunk: bytes) -> None:
        if self.overflowed:
            return
        if self.size + len(chunk) > self.limit:
            self.overflowed = True
            self._chunks.clear()
            return
        self._chunks.append(chunk)
        self.size += len(chunk)

    def getvalue(self) -> bytes:
        return b"".join(self._chunks)


def normalize_base_path(value: str) -> str:
    path = value.strip()
    if not path:
        return "/"
    if not path.startswith("/"):
        path = "/" + path
    path = path.rstrip("/")
    return path or "/"


def relative_path(base: str, path: str) -> str:
    """
    Strip ``base`` from ``path`` on a segment boundary.

    ``/v1/responses`` becomes ``/responses`` under ``/v1``, while
    ``/v1beta/models`` is passed through untouched.
    """
    if base == "/":
        return path
    if path == base:
        return "/"
    if path.startswith(base + "/"):
        return path[len(base):]
    return path


def decode_body(body: bytes, content_encoding: str) -> Optional[bytes]:
    """Undo gzip or deflate content coding; ``None`` if the coding is unsupported."""
    encoding = content_encoding.strip().lower()
    if encoding in ("", "identity"):
        return body
    try:
        if encoding in ("gzip", "x-gzip"):
            return zlib.decompress(body, 16 + zlib.MAX_WBITS)
        if encoding == "deflate":
            try:
                return zlib.decompress(body)
            except zlib.error:
                return zlib.decompress(body, -zlib.MAX_WBITS)
    except zlib.error as e:
        logger.debug("Could not decompress captured body", encoding=encoding, error=str(e))
        return None
    return None


def _sse_payloads(body: str):
    text = body.replace("\r\n", "\n")
    for block in text.split("\n\n"):
        data = [
            line[5:].lstrip()
            for line in block.split("\n")
            if line.startswith("data:")
        ]
        if data:
            yield "\n".join(data)


def usage_from_sse(body: str) -> Optional[UsageCounts]:
    """
    Find the terminal usage summary in a server-sent event stream.

    Prefers a ``response.completed`` event; otherwise takes the last chunk
    carrying a ``usage`` object (chat completions with usage reporting).
    """
    usage = None
    for payload in _sse_payloads(body):
        if payload == "[DONE]":
            continue
        try:
            value = json.loads(payload)
        except json.JSONDecodeError:
            continue
        if not isinstance(value, dict):
            continue

        if value.get("type") == "response.completed":
            value = value.get("response")
        try:
            counts = usage_from_payload(value)
        except MalformedRecordError:
            continue
        if counts is not None:
            usage = counts
    return usage


def extract_usage(body: bytes, content_type: str) -> Optional[UsageCounts]:
    """Extract usage from a JSON or event-stream response body."""
    text = body.decode("utf-8", errors="replace")
    stripped = text.lstrip()
    if "text/event-stream" in content_type.lower() or stripped.startswith(("data:", "event:")):
        return usage_from_sse(text)

    try:
        value = json.loads(text)
    except json.JSONDecodeError:
        return None
    if isinstance(value, dict) and value.get("type") == "response.completed":
        value = value.get("response")
    try:
        return usage_from_payload(value)
    except MalformedRecordError:
        return None


def model_from_request(body: bytes) -> Optional[str]:
    if not body:
        return None
    try:
        value = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    if isinstance(value, dict) and isinstance(value.get("model"), str):
        return value["model"] or None
    return None


def conversation_from_request(headers: Mapping[str, str], body: bytes) -> Optional[str]:
    """
    Identify the client conversation a request belongs to.

    Codex sends the id in a ``conversation_id`` or ``session_id`` header; the
    request's ``prompt_cache_key`` is used when neither is present.
    """
    for name in CONVERSATION_HEADERS:
        value = headers.get(name, "").strip()
        if value:
            return value[:MAX_SESSION_ID_LENGTH]
    if not body:
        return None
    try:
        value = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    if isinstance(value, dict) and isinstance(value.get("prompt_cache_key"), str):
        return value["prompt_cache_key"][:MAX_SESSION_ID_LENGTH] or None
    return None


class RelayResponse(StreamingResponse):
    """
    Streaming response that always releases the upstream response.

    The relay generator closes it after the last chunk, but a client that
    disconnects before streaming starts never runs the generator at all.
    """

    def __init__(self, upstream: httpx.Response, content, background: Optional[BackgroundTask] = None):
        super().__init__(content, status_code=upstream.status_code, background=background)
        self.upstream = upstream

    async def __call__(self, scope, receive, send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            await self.upstream.aclose()


class ProxyCollector:
    """
    Proxy collector.

    Args:
        channel: Channel to the Aggregator
        upstream_base_url: Real API base URL, e.g. ``https://api.openai.com/v1``
        public_base_path: Path prefix clients use for the upstream base URL
        capture_limit_bytes: Largest response body kept for usage extraction
        max_request_body_bytes: Largest request body accepted for forwarding
        timeout: Upstream read timeout in seconds
        client: Preconfigured HTTP client (tests inject a mock transport)
    """

    name = "proxy"

    def __init__(
        self,
        channel: UsageChannel,
        upstream_base_url: str,
        public_base_path: str = "/v1",
        capture_limit_bytes: int = 4 * 1024 * 1024,
        max_request_body_bytes: int = 16 * 1024 * 1024,
        timeout: float = 600.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.channel = channel
        self.upstream_base_url = upstream_base_url.rstrip("/")
        self.public_base_path = normalize_base_path(public_base_path)
        self.capture_limit_bytes = capture_limit_bytes
        self.max_request_body_bytes = max_request_body_bytes
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=10.0),
            follow_redirects=False,
        )
        self.emitted = 0

    async def run(self, stop: asyncio.Event) -> None:
        """Keep the upstream client open until shutdown."""
        logger.info(
            "Proxy collector started",
            upstream=self.upstream_base_url,
            public_base_path=self.public_base_path,
        )
        await stop.wait()
        await self.aclose()
        logger.info("Proxy collector stopped", emitted=self.emitted)

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    def upstream_url(self, path: str, query: str = "") -> str:
        rel = relative_path(self.public_base_path, path)
        url = self.upstream_base_url + "/" + rel.lstrip("/")
        if query:
            url += "?" + query
        return url

    async def forward(self, request: Request) -> Response:
        """Forward one request and stream the upstream response back."""
        try:
            body = await self._read_body(request)
        except RequestTooLarge:
            logger.warning("Request body too large", path=request.url.path)
            return JSONResponse(
                status_code=413,
                content={"detail": "Request body too large"},
            )

        url = self.upstream_url(request.url.path, request.url.query)
        headers = [
            (name, value)
            for name, value in request.headers.raw
            if name.decode("latin-1").lower() not in REQUEST_SKIP_HEADERS
        ]
        # Built directly so none of the client's default headers are added.
        upstream_request = httpx.Request(
            request.method,
            url,
            headers=headers,
            content=body if body or "content-length" in request.headers else None,
            extensions={"timeout": self.client.timeout.as_dict()},
        )

        started = time.monotonic()
        try:
            upstream = await self.client.send(upstream_request, stream=True)
        except httpx.HTTPError as e:
            logger.error("Upstream request failed", url=url, error=str(e))
            return JSONResponse(
                status_code=502,
                content={"detail": "Upstream request failed"},
            )

        capture = CaptureBuffer(self.capture_limit_bytes)
        response = RelayResponse(
            upstream,
            self._relay(upstream, capture),
            background=BackgroundTask(
                self.record_usage,
                upstream,
                capture,
                started,
                model_from_request(body),
                conversation_from_request(request.headers, body),
            ),
        )
        response.raw_headers = [
            (name, value)
            for name, value in upstream.headers.raw
            if name.decode("latin-1").lower() not in HOP_BY_HOP_HEADERS
        ]
        return response

    async def record_usage(
        self,
        upstream: httpx.Response,
        capture: CaptureBuffer,
        started: float,
        model_hint: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> Optional[UsageEvent]:
        """Emit a UsageEvent for a fully delivered response, if it reports usage."""
        if not upstream.is_success:
            self._unextracted("upstream_status", status=upstream.status_code)
            return None
        if not capture.complete:
            self._unextracted("incomplete")
            return None
        if capture.overflowed:
            self._unextracted("capture_overflow", limit=capture.limit)
            return None

        body = decode_body(capture.getvalue(), upstream.headers.get("content-encoding", ""))
        if body is None:
            self._unextracted("content_encoding")
            return None

        usage = extract_usage(body, upstream.headers.get("content-type", ""))
        if usage is None:
            self._unextracted("no_usage")
            return None

        model = usage.model or model_hint
        if not model:
            self._unextracted("no_model")
            return None

        event = UsageEvent(
            source_id=f"proxy:{uuid4().hex}",
            timestamp=datetime.now(timezone.utc),
            model=model,
            prompt_tokens=usage.prompt_tokens,
            cached_prompt_tokens=usage.cached_prompt_tokens,
            completion_tokens=usage.completion_tokens,
            reasoning_tokens=usage.reasoning_tokens,
            latency_ms=int((time.monotonic() - started) * 1000),
            collector="proxy",
            session_id=session_id,
        )
        if await self.channel.send(event):
            self.emitted += 1
        return event

    async def _relay(self, upstream: httpx.Response, capture: CaptureBuffer):
        try:
            async for chunk in upstream.aiter_raw():
                capture.feed(chunk)
                yield chunk
            capture.complete = True
        except httpx.HTTPError as e:
            logger.warning("Upstream stream interrupted", url=str(upstream.url), error=str(e))
            raise
        finally:
            await upstream.aclose()

    async def _read_body(self, request: Request) -> bytes:
        declared = request.headers.get("content-length")
        if declared and declared.isdigit() and int(declared) > self.max_request_body_bytes:
            raise RequestTooLarge()

        chunks = []
        size = 0
        async for chunk in request.stream():
            size += len(chunk)
            if size > self.max_request_body_bytes:
                raise RequestTooLarge()
            chunks.append(chunk)
        return b"".join(chunks)

    def _unextracted(self, reason: str, **context) -> None:
        RESPONSES_UNEXTRACTED.labels(reason=reason).inc()
        logger.debug("No usage recorded for response", reason=reason, **context)
