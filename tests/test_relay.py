"""
Upstream Relay Tests

Covers request construction, header forwarding and incremental body relay.
Run with: pytest tests/test_relay.py
"""

import dataclasses
import json
import time

import httpcore
import pytest

from copilot_proxy.core.errors import UpstreamFailure
from copilot_proxy.services.relay import UpstreamRelay
from fakes import (
    LAST_CHUNK,
    SSE_DONE,
    FakeNetworkStream,
    chunk,
    chunked_headers,
    http_response,
    json_response,
    sse_event,
)

MESSAGES = [{"role": "user", "content": "hi"}]


def test_payload_has_fixed_model_and_cap(settings):
    relay = UpstreamRelay(settings)
    payload = json.loads(relay.build_payload(MESSAGES, True))

    assert payload == {
        "messages": MESSAGES,
        "model": "Qwen/Qwen3-Coder-480B-A35B-Instruct",
        "stream": True,
        "max_tokens": 2000,
    }
    assert list(payload) == ["messages", "model", "stream", "max_tokens"]


@pytest.mark.asyncio
async def test_request_written_through_tls_tunnel(settings):
    stream = FakeNetworkStream([json_response(200, {"choices": []})])
    relay = UpstreamRelay(settings)
    payload = relay.build_payload(MESSAGES, False)

    upstream = await relay.send(stream, payload)
    await upstream.aclose()

    assert stream.tls_hostname == "api.studio.nebius.ai"
    written = bytes(stream.written)
    assert written.startswith(b"POST /v1/chat/completions HTTP/1.1\r\n")
    assert b"Authorization: Bearer nebius-test-key" in written
    assert b"Content-Type: application/json" in written
    assert f"Content-Length: {len(payload)}".encode() in written
    assert written.endswith(payload)


@pytest.mark.asyncio
async def test_status_and_headers_exposed(settings):
    body = b'{"error": {"message": "rate limited"}}'
    stream = FakeNetworkStream([
        http_response(429, body, reason="Too Many Requests", extra_headers=[("Retry-After", "3"), ("Connection", "keep-alive")]),
    ])
    relay = UpstreamRelay(settings)

    upstream = await relay.send(stream, relay.build_payload(MESSAGES, False))
    received = b"".join([piece async for piece in upstream.aiter_bytes()])
    await upstream.aclose()

    assert upstream.status == 429
    assert upstream.header("retry-after") == "3"
    forwarded = dict(upstream.forwarded_headers())
    assert forwarded[b"content-type"] == b"application/json"
    assert forwarded[b"retry-after"] == b"3"
    assert b"connection" not in forwarded
    assert received == body
    assert stream.closed


@pytest.mark.asyncio
async def test_body_chunks_forwarded_as_they_arrive(settings):
    stream = FakeNetworkStream([
        chunked_headers(),
        chunk(sse_event("Hel")),
        (0.5, chunk(sse_event("lo"))),
        (0.5, chunk(SSE_DONE)),
        LAST_CHUNK,
    ])
    relay = UpstreamRelay(settings)

    started = time.perf_counter()
    upstream = await relay.send(stream, relay.build_payload(MESSAGES, True))
    arrivals = []
    async for piece in upstream.aiter_bytes():
        arrivals.append((time.perf_counter() - started, piece))
    await upstream.aclose()

    assert arrivals[0][0] < 0.3
    assert arrivals[0][1] == sse_event("Hel")
    assert arrivals[-1][0] >= 0.9
    assert b"".join(piece for _, piece in arrivals).endswith(SSE_DONE)


@pytest.mark.asyncio
async def test_tls_failure_is_upstream_failure(settings):
    stream = FakeNetworkStream([], tls_error=httpcore.ConnectError("certificate verify failed"))
    relay = UpstreamRelay(settings)

    with pytest.raises(UpstreamFailure) as excinfo:
        await relay.send(stream, relay.build_payload(MESSAGES, False))

    assert excinfo.value.status_code == 500
    assert "certificate verify failed" in excinfo.value.message
    assert stream.closed


@pytest.mark.asyncio
async def test_read_error_before_headers(settings):
    stream = FakeNetworkStream([httpcore.ReadError("connection reset")])
    relay = UpstreamRelay(settings)

    with pytest.raises(UpstreamFailure):
        await relay.send(stream, relay.build_payload(MESSAGES, False))

    assert stream.closed


@pytest.mark.asyncio
async def test_read_error_mid_body(settings):
    stream = FakeNetworkStream([
        chunked_headers(),
        chunk(sse_event("partial")),
        httpcore.ReadError("connection reset"),
    ])
    relay = UpstreamRelay(settings)
    upstream = await relay.send(stream, relay.build_payload(MESSAGES, True))

    received = []
    with pytest.raises(UpstreamFailure):
        async for piece in upstream.aiter_bytes():
            received.append(piece)
    await upstream.aclose()

    assert received == [sse_event("partial")]
    assert stream.closed


@pytest.mark.asyncio
async def test_aclose_is_idempotent(settings):
    stream = FakeNetworkStream([json_response(200, {"choices": []})])
    relay = UpstreamRelay(settings)
    upstream = await relay.send(stream, relay.build_payload(MESSAGES, False))

    await upstream.aclose()
    await upstream.aclose()

    assert stream.closed


@pytest.mark.asyncio
async def test_stalled_response_headers_time_out(settings):
    stream = FakeNetworkStream([(5, json_response(200, {"choices": []}))])
    relay = UpstreamRelay(dataclasses.replace(settings, upstream_timeout=0.1))

    with pytest.raises(UpstreamFailure) as excinfo:
        await relay.send(stream, relay.build_payload(MESSAGES, False))

    assert excinfo.value.status_code == 500
    assert "timed out" in excinfo.value.message
    assert stream.closed


@pytest.mark.asyncio
async def test_stalled_body_times_out_per_read(settings):
    stream = FakeNetworkStream([
        chunked_headers(),
        (0.05, chunk(sse_event("Hel"))),
        (5, chunk(SSE_DONE)),
    ])
    relay = UpstreamRelay(dataclasses.replace(settings, upstream_timeout=0.2))
    upstream = await relay.send(stream, relay.build_payload(MESSAGES, True))

    received = []
    with pytest.raises(UpstreamFailure) as excinfo:
        async for piece in upstream.aiter_bytes():
            received.append(piece)
    await upstream.aclose()

    assert received == [sse_event("Hel")]
    assert "timed out" in excinfo.value.message
    assert stream.closed
