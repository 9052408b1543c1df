from __future__ import annotations

import pytest

from contentflow.capture import WebhookTestService, parse_payload
from contentflow.errors import TokenNotFound
from contentflow.tokens import TokenCache


@pytest.mark.parametrize(
    ("body", "expected"),
    [
        (b'{"a": 1}', {"a": 1}),
        (b"[1, 2]", [1, 2]),
        (b"plain text", "plain text"),
        (b"", ""),
        (b"{broken", "{broken"),
        (b"\xff\xfe raw", "\\xff\\xfe raw"),
    ],
)
def test_parse_payload_falls_back_to_text(body, expected):
    assert parse_payload(body) == expected


@pytest.fixture
def service(store, clock) -> WebhookTestService:
    return WebhookTestService(TokenCache("http://localhost:8000", clock=clock), store)


def test_capture_records_event_and_burns_token(service, store, clock):
    armed = service.arm("wf-9", "node-3")

    event = service.capture(armed.token, b'{"hello": "world"}', {"Content-Type": "application/json"})

    assert event.workflow_id == "wf-9"
    assert event.node_id == "node-3"
    assert event.headers == {"content-type": "application/json"}
    assert event.captured_at == clock()
    assert store.list_captured_events("wf-9") == [event]
    with pytest.raises(TokenNotFound):
        service.capture(armed.token, b"{}", {})


@pytest.mark.parametrize(("workflow_id", "node_id"), [("", "n"), ("wf", "")])
def test_arm_requires_both_ids(service, workflow_id, node_id):
    with pytest.raises(ValueError):
        service.arm(workflow_id, node_id)
