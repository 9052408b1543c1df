from __future__ import annotations

import json
import logging
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from .errors import BackendRejected, BackendUnavailable
from .models import ContentPlan

logger = logging.getLogger(__name__)

MAX_ERROR_BODY = 2000


def render_payload(plan: ContentPlan) -> dict[str, Any]:
    return {
        "planId": plan.id,
        "influencerId": plan.influencer_id,
        "lookId": plan.look_id,
        "prompt": plan.prompt,
        "title": plan.title,
        "userId": plan.user_id,
    }


class RenderBackend:
    """Synchronous client for the video render service."""

    def __init__(self, base_url: str, api_key: str = "", timeout: float = 30.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout

    def generate_video(self, plan: ContentPlan) -> dict[str, Any]:
        if not self.base_url:
            raise BackendUnavailable("BACKEND_URL not configured")

        req = Request(
            f"{self.base_url}/generate-video",
            data=json.dumps(render_payload(plan)).encode("utf-8"),
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {self.api_key}",
                "User-Agent": "ContentFlow-Dispatcher/0.1",
            },
            method="POST",
        )
        try:
            with urlopen(req, timeout=self.timeout) as resp:  # noqa: S310
                body = resp.read().decode("utf-8", errors="replace")
        except HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace")[:MAX_ERROR_BODY]
            raise BackendRejected(exc.code, detail) from exc
        except (URLError, TimeoutError, OSError) as exc:
            raise BackendUnavailable(f"Backend unreachable: {exc}") from exc

        if not body:
            return {}
        try:
            parsed = json.loads(body)
        except json.JSONDecodeError:
            return {"raw": body}
        return parsed if isinstance(parsed, dict) else {"result": parsed}
