#!/usr/bin/env python3
"""
Excel Copilot Proxy - Authenticated, metered chat-completions relay through a corporate proxy
"""

from typing import Optional

import httpcore
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.routing import Route

from copilot_proxy.api.endpoints import chat_endpoint, get_logs_endpoint, health_check, metrics_endpoint
from copilot_proxy.core.config import DEFAULT_SERVICE_TOKEN, Settings, configure_logging, logger
from copilot_proxy.core.middleware import CORSHeadersMiddleware
from copilot_proxy.core.orchestrator import ChatOrchestrator
from copilot_proxy.services.metrics import MetricsRegistry


def create_app(
    settings: Optional[Settings] = None,
    metrics: Optional[MetricsRegistry] = None,
    network_backend: Optional[httpcore.AsyncNetworkBackend] = None,
) -> Starlette:
    """Build the ASGI app. Everything it needs is passed in, nothing is read from globals."""
    settings = settings or Settings.from_env()
    metrics = metrics or MetricsRegistry()

    routes = [
        Route("/api/chat", chat_endpoint, methods=["POST"]),
        Route("/metrics", metrics_endpoint, methods=["GET"]),
        Route("/health", health_check, methods=["GET"]),
        Route("/logs", get_logs_endpoint, methods=["GET"]),
    ]

    middleware = [
        Middleware(CORSHeadersMiddleware)
    ]

    app = Starlette(routes=routes, middleware=middleware)
    app.state.settings = settings
    app.state.metrics = metrics
    app.state.orchestrator = ChatOrchestrator(settings, metrics, network_backend=network_backend)
    return app


def log_banner(settings: Settings) -> None:
    logger.info("=" * 70)
    logger.info("Excel Copilot Proxy")
    logger.info("=" * 70)
    logger.info(f"Upstream: https://{settings.upstream_target}{settings.upstream_path}")
    logger.info(f"Model: {settings.model} (max_tokens={settings.max_tokens})")
    logger.info(f"Forward proxy: {settings.proxy_address} (user: {settings.proxy_user or 'none'})")
    logger.info(f"Upstream timeout: {settings.upstream_timeout or 'unbounded'}")

    if settings.service_token == DEFAULT_SERVICE_TOKEN:
        logger.warning("Authentication: using the DEFAULT service token, set SERVICE_TOKEN")
    if not settings.upstream_api_key:
        logger.warning("NEBIUS_API_KEY is not set, upstream requests will be rejected")

    logger.info("=" * 70)
    logger.info(f"Proxy listening on http://{settings.host}:{settings.port}")
    logger.info(f"API endpoint: http://localhost:{settings.port}/api/chat")
    logger.info(f"Metrics: http://localhost:{settings.port}/metrics")
    logger.info("=" * 70)


def main() -> None:
    import uvicorn

    settings = Settings.from_env()
    configure_logging(settings.log_file)
    log_banner(settings)

    uvicorn.run(create_app(settings), host=settings.host, port=settings.port, log_level="info")


if __name__ == "__main__":
    main()
