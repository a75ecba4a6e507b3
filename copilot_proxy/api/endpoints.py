"""
All HTTP route handler functions for the Excel Copilot Proxy.
"""

from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from copilot_proxy.core.auth import AUTH_ERROR_MESSAGE
from copilot_proxy.core.config import recent_logs


# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------

async def chat_endpoint(request: Request):
    return await request.app.state.orchestrator.handle(request)


# ---------------------------------------------------------------------------
# Observability
# ---------------------------------------------------------------------------

async def metrics_endpoint(request: Request):
    """Prometheus scrape endpoint. Unauthenticated."""
    metrics = request.app.state.metrics
    return Response(content=metrics.render(), media_type=metrics.content_type)


async def health_check(request: Request):
    settings = request.app.state.settings
    return JSONResponse({
        "status": "ok",
        "upstream": settings.upstream_host,
        "proxy": settings.proxy_address,
    })


async def get_logs_endpoint(request: Request):
    """Recent log entries; requires the service token."""
    auth = request.app.state.orchestrator.auth
    if not auth.is_authorized(request.headers.get("authorization")):
        return JSONResponse(content={"error": AUTH_ERROR_MESSAGE}, status_code=401)
    return JSONResponse({"logs": recent_logs()})
