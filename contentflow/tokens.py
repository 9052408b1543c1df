from __future__ import annotations

import logging
import secrets
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable

from apscheduler.schedulers.background import BackgroundScheduler

from .errors import TokenError, TokenExpired, TokenNotFound
from .models import ArmedTest, WebhookTestSession

logger = logging.getLogger(__name__)

TOKEN_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"
TOKEN_LENGTH = 10
DEFAULT_TTL = timedelta(minutes=5)
SWEEP_JOB_ID = "webhook-test-token-sweep"

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def generate_token(length: int = TOKEN_LENGTH) -> str:
    return "".join(secrets.choice(TOKEN_ALPHABET) for _ in range(length))


class TokenCache:
    """Short-lived, single-use webhook test tokens held in memory.

    Every read-modify-write happens under one lock, so a token is redeemed
    at most once even when captures race. Expired entries are refused on
    redeem and removed by a periodic sweep that runs between :meth:`start`
    and :meth:`stop`.
    """

    def __init__(
        self,
        base_url: str,
        ttl: timedelta = DEFAULT_TTL,
        sweep_interval_seconds: int = 60,
        clock: Clock = utc_now,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.ttl = ttl
        self.sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._sessions: dict[str, WebhookTestSession] = {}
        self._scheduler: BackgroundScheduler | None = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def now(self) -> datetime:
        return self._clock()

    def webhook_url(self, token: str) -> str:
        return f"{self.base_url}/t/{token}"

    def arm(self, workflow_id: str, node_id: str) -> ArmedTest:
        token = generate_token()
        expires_at = self._clock() + self.ttl
        session = WebhookTestSession(
            token=token,
            workflow_id=workflow_id,
            node_id=node_id,
            expires_at=expires_at,
        )
        with self._lock:
            self._sessions[token] = session
        logger.info("Armed webhook test %s for workflow %s node %s", token, workflow_id, node_id)
        return ArmedTest(token=token, webhook_url=self.webhook_url(token), expires_at=expires_at)

    def redeem(self, token: str) -> WebhookTestSession:
        """Remove and return the live session for ``token``.

        Raises :class:`TokenNotFound` or :class:`TokenExpired`.
        """
        now = self._clock()
        with self._lock:
            session = self._sessions.pop(token, None)
        if session is None:
            raise TokenNotFound(token)
        if now > session.expires_at:
            logger.info("Webhook test token %s expired at %s", token, session.expires_at.isoformat())
            raise TokenExpired(token)
        return session

    def consume(self, token: str) -> WebhookTestSession | None:
        try:
            return self.redeem(token)
        except TokenError:
            return None

    def sweep(self, now: datetime | None = None) -> int:
        cutoff = now or self._clock()
        with self._lock:
            expired = [token for token, session in self._sessions.items() if session.expires_at < cutoff]
            for token in expired:
                del self._sessions[token]
        if expired:
            logger.debug("Swept %d expired webhook test tokens", len(expired))
        return len(expired)

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self) -> None:
        if self.running:
            return
        scheduler = BackgroundScheduler(timezone="UTC")
        scheduler.add_job(
            self.sweep,
            trigger="interval",
            seconds=self.sweep_interval_seconds,
            id=SWEEP_JOB_ID,
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info("Token sweep started (every %ss)", self.sweep_interval_seconds)

    def stop(self) -> None:
        if self._scheduler is None:
            return
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("Token sweep stopped")
