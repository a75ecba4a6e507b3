"""
Inbound Request Parsing Tests

Run with: pytest tests/test_models.py
"""

import pytest

from copilot_proxy.core.errors import BadRequest
from copilot_proxy.core.models import InboundRequest, Message, decode_body, request_type_hint


def test_parses_messages_in_order():
    inbound = InboundRequest.from_json({
        "messages": [
            {"role": "system", "content": "You are a spreadsheet assistant"},
            {"role": "user", "content": "Sum column B"},
        ],
        "stream": True,
    })

    assert inbound.messages == (
        Message("system", "You are a spreadsheet assistant"),
        Message("user", "Sum column B"),
    )
    assert inbound.stream is True
    assert inbound.request_type == "stream"


def test_missing_fields_default():
    inbound = InboundRequest.from_json({})
    assert inbound.messages == ()
    assert inbound.stream is False
    assert inbound.request_type == "sync"


@pytest.mark.parametrize(
    "body",
    [
        [],
        "hello",
        {"messages": "hi"},
        {"messages": ["hi"]},
        {"messages": [{"role": "tool", "content": "x"}]},
        {"messages": [{"role": "user"}]},
        {"messages": [{"role": "user", "content": ["x"]}]},
    ],
)
def test_bad_shapes_rejected(body):
    with pytest.raises(BadRequest):
        InboundRequest.from_json(body)


def test_decode_body():
    assert decode_body(b"") == {}
    assert decode_body(b'{"stream": true}') == {"stream": True}
    assert decode_body(b"{not json") is None
    assert decode_body(b"\xff\xfe") is None


def test_request_type_hint():
    assert request_type_hint({"stream": True}) == "stream"
    assert request_type_hint({"stream": 0}) == "sync"
    assert request_type_hint(None) == "sync"
    assert request_type_hint(["stream"]) == "sync"
