"""
Proxy-originated failures and their client-visible status codes.

Statuses returned by the upstream API itself are not errors of this proxy
and never pass through these classes.
"""

from starlette.responses import JSONResponse


class ProxyError(Exception):
    """Base class for failures that terminate a request inside the proxy."""

    status_code = 500
    kind = "internal"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_response(self) -> JSONResponse:
        return JSONResponse(content={"error": self.message}, status_code=self.status_code)


class AuthFailure(ProxyError):
    status_code = 401
    kind = "auth"


class BadRequest(ProxyError):
    status_code = 400
    kind = "bad_request"


class PayloadTooLarge(ProxyError):
    status_code = 413
    kind = "bad_request"


class TunnelFailure(ProxyError):
    """The forward proxy was unreachable or refused the CONNECT."""

    status_code = 502
    kind = "tunnel"


class UpstreamFailure(ProxyError):
    """Network error talking to the upstream API."""

    status_code = 500
    kind = "upstream"


class ClientDisconnected(ProxyError):
    """The client went away before a response was started."""

    status_code = 499
    kind = "cancelled"
