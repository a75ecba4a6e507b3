"""
HTTP CONNECT tunnel through the corporate forward proxy.

Opens a TCP connection to the proxy, asks it to CONNECT to the upstream
host:port with Basic proxy credentials and hands back the raw byte stream.
The tunneled bytes are never interpreted here; TLS is negotiated by the
relay on top of the returned stream.
"""

import base64
from typing import Optional

import anyio
import httpcore

from copilot_proxy.core.config import Settings, logger
from copilot_proxy.core.errors import TunnelFailure

TUNNEL_ERRORS = (
    httpcore.NetworkError,
    httpcore.TimeoutException,
    httpcore.ProtocolError,
    OSError,
)


async def close_shielded(resource) -> None:
    """Close a connection or stream even while the task is being cancelled."""
    with anyio.CancelScope(shield=True):
        await resource.aclose()


def proxy_authorization(user: str, password: str) -> str:
    token = base64.b64encode(f"{user}:{password}".encode("utf-8")).decode("ascii")
    return f"Basic {token}"


class TunnelEstablisher:
    """Opens one CONNECT tunnel per call; nothing is pooled or reused."""

    def __init__(self, settings: Settings, network_backend: Optional[httpcore.AsyncNetworkBackend] = None):
        self.settings = settings
        self._backend = network_backend if network_backend is not None else httpcore.AnyIOBackend()
        self._proxy_origin = httpcore.Origin(
            scheme=b"http",
            host=settings.proxy_host.encode("ascii"),
            port=settings.proxy_port,
        )
        self._target = settings.upstream_target.encode("ascii")
        self._proxy_authorization = proxy_authorization(settings.proxy_user, settings.proxy_pass)

    def build_connect_request(self) -> httpcore.Request:
        url = httpcore.URL(
            scheme=self._proxy_origin.scheme,
            host=self._proxy_origin.host,
            port=self._proxy_origin.port,
            target=self._target,
        )
        headers = [
            (b"Host", self._target),
            (b"Proxy-Authorization", self._proxy_authorization.encode("ascii")),
        ]
        return httpcore.Request(
            method=b"CONNECT",
            url=url,
            headers=headers,
            extensions={"timeout": self.settings.timeouts},
        )

    async def open(self) -> httpcore.AsyncNetworkStream:
        """Establish the tunnel and return the raw stream to the upstream.

        Raises TunnelFailure if the proxy can't be reached or answers the
        CONNECT with anything but 200. The socket is closed before raising.
        """
        settings = self.settings
        logger.info(f"[Tunnel] CONNECT {settings.upstream_target} via {settings.proxy_address}")

        try:
            stream = await self._backend.connect_tcp(
                settings.proxy_host,
                settings.proxy_port,
                timeout=settings.upstream_timeout,
            )
        except TUNNEL_ERRORS as e:
            logger.error(f"[Tunnel] Proxy connect error: {type(e).__name__}: {e}")
            raise TunnelFailure(f"Forward proxy unreachable: {e}") from e

        connection = httpcore.AsyncHTTP11Connection(origin=self._proxy_origin, stream=stream)
        try:
            response = await connection.handle_async_request(self.build_connect_request())
        except TUNNEL_ERRORS as e:
            await close_shielded(connection)
            logger.error(f"[Tunnel] CONNECT handshake failed: {type(e).__name__}: {e}")
            raise TunnelFailure(f"Forward proxy handshake failed: {e}") from e
        except BaseException:
            await close_shielded(connection)
            raise

        if response.status != 200:
            reason = response.extensions.get("reason_phrase", b"").decode("ascii", errors="ignore")
            await close_shielded(connection)
            logger.error(f"[Tunnel] Upstream proxy error: {response.status} {reason}".rstrip())
            raise TunnelFailure(f"Corporate proxy error: {response.status} {reason}".rstrip())

        logger.info(f"[Tunnel] Established to {settings.upstream_target}")
        return response.extensions["network_stream"]
