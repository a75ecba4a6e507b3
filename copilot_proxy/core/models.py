"""
Inbound chat request parsing.
"""

import json
from dataclasses import dataclass
from typing import Any, Optional, Tuple

from copilot_proxy.core.errors import BadRequest

ROLES = ("user", "system", "assistant")


@dataclass(frozen=True)
class Message:
    role: str
    content: str

    def to_dict(self) -> dict:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class InboundRequest:
    messages: Tuple[Message, ...]
    stream: bool

    @property
    def request_type(self) -> str:
        return "stream" if self.stream else "sync"

    @classmethod
    def from_json(cls, body: Any) -> "InboundRequest":
        """Validate a decoded JSON body. Raises BadRequest on a bad shape."""
        if not isinstance(body, dict):
            raise BadRequest("Request body must be a JSON object")

        raw_messages = body.get("messages")
        if raw_messages is None:
            raw_messages = []
        if not isinstance(raw_messages, list):
            raise BadRequest("'messages' must be a list")

        messages = []
        for index, item in enumerate(raw_messages):
            if not isinstance(item, dict):
                raise BadRequest(f"messages[{index}] must be an object")
            role = item.get("role")
            content = item.get("content")
            if role not in ROLES:
                raise BadRequest(f"messages[{index}].role must be one of {', '.join(ROLES)}")
            if not isinstance(content, str):
                raise BadRequest(f"messages[{index}].content must be a string")
            messages.append(Message(role=role, content=content))

        return cls(messages=tuple(messages), stream=bool(body.get("stream")))


def decode_body(raw: bytes) -> Optional[Any]:
    """Decode a JSON body; None when it isn't valid JSON."""
    if not raw:
        return {}
    try:
        return json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None


def request_type_hint(body: Any) -> str:
    """Best-effort stream/sync label, usable before the body is validated."""
    if isinstance(body, dict) and body.get("stream"):
        return "stream"
    return "sync"
