"""
Bearer-token gate for inbound requests.
"""

import hmac
from typing import Optional

from copilot_proxy.core.errors import AuthFailure

AUTH_ERROR_MESSAGE = "Invalid access token. Contact your administrator."


class AuthGate:
    """Accepts a request iff its Authorization header is exactly ``Bearer <token>``."""

    def __init__(self, service_token: str):
        self._expected = f"Bearer {service_token}".encode("utf-8")

    def is_authorized(self, authorization: Optional[str]) -> bool:
        # Case-sensitive, no trimming.
        if authorization is None:
            return False
        return hmac.compare_digest(authorization.encode("utf-8"), self._expected)

    def authenticate(self, authorization: Optional[str]) -> None:
        if not self.is_authorized(authorization):
            raise AuthFailure(AUTH_ERROR_MESSAGE)
