"""
Upstream chat-completions relay over an established tunnel.

Negotiates TLS with the upstream host inside the tunnel, sends the
chat-completions request and exposes the response status, headers and an
incremental body iterator. The body is never buffered whole: each chunk is
handed on as soon as it is read off the wire.
"""

import json
import ssl
from typing import AsyncIterator, List, Optional, Sequence, Tuple

import anyio
import certifi
import httpcore

from copilot_proxy.core.config import Settings, logger
from copilot_proxy.core.errors import UpstreamFailure
from copilot_proxy.services.tunnel import close_shielded

RELAY_ERRORS = (
    httpcore.NetworkError,
    httpcore.TimeoutException,
    httpcore.ProtocolError,
    ssl.SSLError,
    OSError,
)

# Hop-by-hop headers describing the upstream connection itself
HOP_BY_HOP_HEADERS = {b"connection", b"keep-alive"}


def build_ssl_context() -> ssl.SSLContext:
    context = ssl.create_default_context(cafile=certifi.where())
    context.set_alpn_protocols(["http/1.1"])
    return context


class UpstreamResponse:
    """A live upstream response; owns the tunnel until closed."""

    def __init__(self, connection: httpcore.AsyncHTTP11Connection, response: httpcore.Response):
        self._connection = connection
        self._response = response
        self._closed = False

    @property
    def status(self) -> int:
        return self._response.status

    def forwarded_headers(self) -> List[Tuple[bytes, bytes]]:
        """Upstream headers for the client, lower-cased for ASGI."""
        return [
            (name.lower(), value)
            for name, value in self._response.headers
            if name.lower() not in HOP_BY_HOP_HEADERS
        ]

    def header(self, name: str) -> Optional[str]:
        key = name.lower().encode("ascii")
        for header_name, value in self._response.headers:
            if header_name.lower() == key:
                return value.decode("latin-1")
        return None

    async def aiter_bytes(self) -> AsyncIterator[bytes]:
        """Yield body chunks as they arrive.

        Raises UpstreamFailure if the connection breaks mid-body.
        """
        try:
            async for chunk in self._response.aiter_stream():
                if chunk:
                    yield chunk
        except RELAY_ERRORS as e:
            raise UpstreamFailure(f"Upstream stream interrupted: {e}") from e

    async def aclose(self) -> None:
        """Release the response and tear down the tunnel. Safe to call twice."""
        if self._closed:
            return
        self._closed = True
        try:
            with anyio.CancelScope(shield=True):
                await self._response.aclose()
        except RELAY_ERRORS as e:
            logger.debug(f"[Relay] Error while closing response: {e}")
        finally:
            await close_shielded(self._connection)


class UpstreamRelay:
    def __init__(self, settings: Settings, ssl_context: Optional[ssl.SSLContext] = None):
        self.settings = settings
        self._ssl_context = ssl_context if ssl_context is not None else build_ssl_context()
        self._origin = httpcore.Origin(
            scheme=b"https",
            host=settings.upstream_host.encode("ascii"),
            port=settings.upstream_port,
        )

    def build_payload(self, messages: Sequence[dict], stream: bool) -> bytes:
        body = {
            "messages": list(messages),
            "model": self.settings.model,
            "stream": stream,
            "max_tokens": self.settings.max_tokens,
        }
        return json.dumps(body, ensure_ascii=False, separators=(",", ":")).encode("utf-8")

    def build_request(self, payload: bytes) -> httpcore.Request:
        settings = self.settings
        url = httpcore.URL(
            scheme=self._origin.scheme,
            host=self._origin.host,
            port=self._origin.port,
            target=settings.upstream_path.encode("ascii"),
        )
        headers = [
            (b"Host", settings.upstream_host.encode("ascii")),
            (b"Content-Type", b"application/json"),
            (b"Authorization", f"Bearer {settings.upstream_api_key}".encode("utf-8")),
            (b"Content-Length", str(len(payload)).encode("ascii")),
            (b"Connection", b"close"),
        ]
        return httpcore.Request(
            method=b"POST",
            url=url,
            headers=headers,
            content=payload,
            extensions={"timeout": self.settings.timeouts},
        )

    async def send(self, tunnel: httpcore.AsyncNetworkStream, payload: bytes) -> UpstreamResponse:
        """Send the request through the tunnel and wait for response headers.

        Takes ownership of the tunnel: on failure it is closed before
        UpstreamFailure is raised, on success it is closed by the returned
        UpstreamResponse.
        """
        settings = self.settings
        connection = None
        try:
            tls_stream = await tunnel.start_tls(
                self._ssl_context,
                server_hostname=settings.upstream_host,
                timeout=settings.upstream_timeout,
            )
            connection = httpcore.AsyncHTTP11Connection(origin=self._origin, stream=tls_stream)
            logger.info(f"[Relay] POST https://{settings.upstream_host}{settings.upstream_path} ({len(payload)} bytes)")
            response = await connection.handle_async_request(self.build_request(payload))
        except BaseException as e:
            await close_shielded(connection if connection is not None else tunnel)
            if isinstance(e, RELAY_ERRORS):
                logger.error(f"[Relay] API error: {type(e).__name__}: {e}")
                raise UpstreamFailure(str(e) or type(e).__name__) from e
            raise

        logger.info(f"[Relay] Response status: {response.status}")
        return UpstreamResponse(connection, response)
