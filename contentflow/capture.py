from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Mapping
from typing import Any

from .models import ArmedTest, CapturedEvent
from .store import SQLiteStore
from .tokens import TokenCache

logger = logging.getLogger(__name__)


def parse_payload(body: bytes) -> Any:
    """Decode a captured body as JSON, keeping the text when it is not JSON."""
    text = body.decode("utf-8", errors="backslashreplace")
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return text


class WebhookTestService:
    def __init__(self, cache: TokenCache, store: SQLiteStore) -> None:
        self.cache = cache
        self.store = store

    def arm(self, workflow_id: str, node_id: str) -> ArmedTest:
        if not workflow_id:
            raise ValueError("Workflow ID is required")
        if not node_id:
            raise ValueError("Node ID is required")
        return self.cache.arm(workflow_id, node_id)

    def capture(self, token: str, body: bytes, headers: Mapping[str, str]) -> CapturedEvent:
        """Redeem ``token`` and record the request as a captured event.

        Raises :class:`~contentflow.errors.TokenError` when the token is
        unknown, already used or expired.
        """
        session = self.cache.redeem(token)
        event = CapturedEvent(
            id=str(uuid.uuid4()),
            workflow_id=session.workflow_id,
            node_id=session.node_id,
            payload=parse_payload(body),
            headers={key.lower(): value for key, value in headers.items()},
            captured_at=self.cache.now(),
        )
        self.store.add_captured_event(event)
        logger.info("Captured webhook test payload for workflow %s node %s", event.workflow_id, event.node_id)
        return event
