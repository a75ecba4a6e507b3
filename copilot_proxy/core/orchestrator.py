"""
Chat request orchestration: auth -> payload -> tunnel -> relay -> metrics.

One ChatOrchestrator is shared by all requests; everything it keeps per
request lives in a RequestLifecycle and the UpstreamResponse it owns.
"""

from typing import Optional, Tuple

import anyio
import httpcore
from starlette.background import BackgroundTask
from starlette.requests import ClientDisconnect, Request
from starlette.responses import Response, StreamingResponse

from copilot_proxy.core.auth import AuthGate
from copilot_proxy.core.config import Settings, logger
from copilot_proxy.core.errors import (
    BadRequest,
    ClientDisconnected,
    PayloadTooLarge,
    ProxyError,
    UpstreamFailure,
)
from copilot_proxy.core.lifecycle import RequestLifecycle, Stage
from copilot_proxy.core.models import InboundRequest, decode_body, request_type_hint
from copilot_proxy.services.metrics import MetricsRegistry
from copilot_proxy.services.relay import UpstreamRelay, UpstreamResponse
from copilot_proxy.services.tunnel import TunnelEstablisher


async def read_body(request: Request, limit: int) -> Tuple[bytes, bool]:
    """Read at most limit bytes of the request body.

    Returns (body, oversized). Reading stops as soon as the declared or
    received length passes the limit, so an oversized body is never held
    in memory whole.
    """
    declared = request.headers.get("content-length")
    if declared is not None and declared.isdigit() and int(declared) > limit:
        return b"", True

    received = bytearray()
    async for piece in request.stream():
        received.extend(piece)
        if len(received) > limit:
            return b"", True
    return bytes(received), False


class ChatOrchestrator:
    def __init__(
        self,
        settings: Settings,
        metrics: MetricsRegistry,
        auth: Optional[AuthGate] = None,
        tunnel: Optional[TunnelEstablisher] = None,
        relay: Optional[UpstreamRelay] = None,
        network_backend: Optional[httpcore.AsyncNetworkBackend] = None,
    ):
        self.settings = settings
        self.metrics = metrics
        self.auth = auth or AuthGate(settings.service_token)
        self.tunnel = tunnel or TunnelEstablisher(settings, network_backend=network_backend)
        self.relay = relay or UpstreamRelay(settings)

    async def handle(self, request: Request) -> Response:
        """Run one chat request through every stage, exactly once."""
        lifecycle = RequestLifecycle(self.metrics)

        try:
            raw, oversized = await read_body(request, self.settings.max_body_bytes)
            body = None if oversized else decode_body(raw)
            lifecycle.request_type = request_type_hint(body)

            self.auth.authenticate(request.headers.get("authorization"))
            lifecycle.advance(Stage.AUTHENTICATED)

            if oversized:
                raise PayloadTooLarge(f"Request body exceeds {self.settings.max_body_bytes} bytes")
            if body is None:
                raise BadRequest("Request body is not valid JSON")
            inbound = InboundRequest.from_json(body)
            payload = self.relay.build_payload([m.to_dict() for m in inbound.messages], inbound.stream)

            lifecycle.advance(Stage.TUNNELING)
            tunnel = await self.tunnel.open()

            lifecycle.advance(Stage.RELAYING)
            upstream = await self.relay.send(tunnel, payload)
        except ClientDisconnect:
            logger.warning(f"[Proxy] Client disconnected while sending the body at stage {lifecycle.stage.value}")
            error = ClientDisconnected("Client disconnected before the request body was received")
            lifecycle.fail(error)
            return error.to_response()
        except ProxyError as e:
            self._log_failure(lifecycle, e)
            lifecycle.fail(e)
            return e.to_response()
        except anyio.get_cancelled_exc_class():
            logger.warning(f"[Proxy] Client disconnected at stage {lifecycle.stage.value}")
            lifecycle.fail(ClientDisconnected("Client disconnected before the response started"))
            raise
        except Exception as e:
            logger.exception(f"[Proxy] Unexpected error at stage {lifecycle.stage.value}: {e}")
            error = ProxyError(f"Internal proxy error: {e}")
            lifecycle.fail(error)
            return error.to_response()

        logger.info(
            f"[Proxy] {inbound.request_type} request -> upstream status {upstream.status} "
            f"({upstream.header('content-type') or 'no content-type'})"
        )
        return self._relay_response(upstream, lifecycle)

    def _relay_response(self, upstream: UpstreamResponse, lifecycle: RequestLifecycle) -> StreamingResponse:
        """Stream the upstream body to the client as it arrives.

        The status code and headers are already committed once this
        response starts, so a later failure can only cut the connection.
        """
        status = upstream.status

        async def body():
            try:
                async for chunk in upstream.aiter_bytes():
                    yield chunk
            except UpstreamFailure as e:
                self._log_failure(lifecycle, e)
                lifecycle.fail(e, status_code=status)
                raise
            finally:
                await upstream.aclose()
                if not lifecycle.finished:
                    lifecycle.complete(status)

        async def release():
            # Covers a body iterator that was never started
            await upstream.aclose()
            if not lifecycle.finished:
                lifecycle.complete(status)

        response = StreamingResponse(body(), status_code=status, background=BackgroundTask(release))
        response.raw_headers = upstream.forwarded_headers()
        return response

    def _log_failure(self, lifecycle: RequestLifecycle, error: ProxyError) -> None:
        stage = lifecycle.stage.value
        if error.status_code == 401:
            logger.warning(f"[Auth] Rejected request at stage {stage}: {error.message}")
        else:
            logger.error(f"[Proxy] {error.kind} failure at stage {stage}: {error.message}")
