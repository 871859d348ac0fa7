"""
Trigger outbox delivery.

Rows written by the message persister are picked up here and POSTed to the
analysis / transcription endpoints, or to the instance webhook_url for
forwarded events. Failures are retried with exponential backoff until
OUTBOX_MAX_ATTEMPTS, then parked as failed. Rows left in dispatching by a
worker that died mid-delivery go back to pending once their lease expires.
Ingestion never waits on any of this.
"""

import asyncio
import json
import logging
from typing import Callable, Optional, Protocol

import httpx
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import Settings
from app.errors import UpstreamError
from app.metrics import record_outbox_delivery
from app.models import OutboxStatus, TriggerKind, TriggerOutbox
from app.utils import utc_now_iso

logger = logging.getLogger(__name__)

USER_AGENT = "chat-ingestion-outbox/1.0"


class TriggerDispatcher(Protocol):
    def dispatch(self, kind: str, payload: dict, target_url: Optional[str] = None) -> None:
        """Deliver one trigger, raising UpstreamError on failure."""
        ...


class HttpTriggerDispatcher:
    def __init__(
        self,
        endpoints: dict,
        auth_token: Optional[str],
        timeout: float,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.endpoints = endpoints
        self.auth_token = auth_token
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> "HttpTriggerDispatcher":
        return cls(
            endpoints={
                TriggerKind.ANALYSIS.value: settings.ANALYSIS_TRIGGER_URL,
                TriggerKind.TRANSCRIPTION.value: settings.TRANSCRIPTION_TRIGGER_URL,
                # Forward rows carry their own target_url
            },
            auth_token=settings.TRIGGER_AUTH_TOKEN,
            timeout=settings.TRIGGER_TIMEOUT_SECONDS,
        )

    def dispatch(self, kind: str, payload: dict, target_url: Optional[str] = None) -> None:
        url = target_url or self.endpoints.get(kind)
        if not url:
            raise UpstreamError(f"no endpoint configured for {kind} triggers")

        headers = {"User-Agent": USER_AGENT}
        # Per-row targets are instance webhooks and never get the trigger token
        if self.auth_token and not target_url:
            headers["Authorization"] = f"Bearer {self.auth_token}"
        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                response = client.post(url, json=payload, headers=headers)
                response.raise_for_status()
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise UpstreamError(f"{kind} trigger failed: {e}") from e


def backoff_seconds(attempts: int, base: float) -> float:
    """Delay before the next try after ``attempts`` failures: base, 2*base, 4*base..."""
    return base * (2 ** max(attempts - 1, 0))


class OutboxWorker:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        dispatcher: TriggerDispatcher,
        batch_size: int = 50,
        max_attempts: int = 5,
        backoff_base_seconds: float = 30.0,
        poll_interval_seconds: float = 5.0,
        lease_seconds: float = 300.0,
    ):
        self.session_factory = session_factory
        self.dispatcher = dispatcher
        self.batch_size = batch_size
        self.max_attempts = max_attempts
        self.backoff_base_seconds = backoff_base_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.lease_seconds = lease_seconds

    def _requeue_expired(self, db: Session) -> int:
        """Return rows whose dispatching lease ran out to pending."""
        now = utc_now_iso()
        result = db.execute(
            update(TriggerOutbox)
            .where(
                TriggerOutbox.status == OutboxStatus.DISPATCHING.value,
                TriggerOutbox.updated_at <= utc_now_iso(-self.lease_seconds),
            )
            .values(status=OutboxStatus.PENDING.value, next_attempt_at=now, updated_at=now)
        )
        db.commit()
        if result.rowcount:
            logger.warning(f"Requeued {result.rowcount} outbox rows with an expired dispatching lease")
        return result.rowcount

    def _claim(self, db: Session, row_id: str) -> bool:
        # Conditional update so concurrent workers never deliver a row twice
        result = db.execute(
            update(TriggerOutbox)
            .where(TriggerOutbox.id == row_id, TriggerOutbox.status == OutboxStatus.PENDING.value)
            .values(status=OutboxStatus.DISPATCHING.value, updated_at=utc_now_iso())
        )
        db.commit()
        return result.rowcount == 1

    def _deliver(self, db: Session, row: TriggerOutbox) -> str:
        try:
            self.dispatcher.dispatch(row.kind, json.loads(row.payload), target_url=row.target_url)
        except Exception as e:
            if not isinstance(e, UpstreamError):
                logger.exception(f"Unexpected error delivering {row.kind} trigger {row.id}")
            attempts = row.attempts + 1
            row.attempts = attempts
            row.last_error = str(e)
            row.updated_at = utc_now_iso()
            if attempts >= self.max_attempts:
                row.status = OutboxStatus.FAILED.value
                outcome = "failed"
                logger.error(f"Giving up on {row.kind} trigger {row.id} after {attempts} attempts: {e}")
            else:
                delay = backoff_seconds(attempts, self.backoff_base_seconds)
                row.status = OutboxStatus.PENDING.value
                row.next_attempt_at = utc_now_iso(delay)
                outcome = "retry"
                logger.warning(f"{row.kind} trigger {row.id} failed, retrying in {delay:.0f}s: {e}")
        else:
            row.attempts = row.attempts + 1
            row.status = OutboxStatus.DELIVERED.value
            row.last_error = None
            row.updated_at = utc_now_iso()
            outcome = "delivered"
            logger.info(f"Delivered {row.kind} trigger {row.id}")

        db.commit()
        record_outbox_delivery(row.kind, outcome)
        return outcome

    def run_once(self) -> int:
        """
        Deliver every due trigger once.

        Returns:
            Number of rows this pass attempted
        """
        db = self.session_factory()
        attempted = 0
        try:
            self._requeue_expired(db)
            due = (
                db.query(TriggerOutbox.id)
                .filter(
                    TriggerOutbox.status == OutboxStatus.PENDING.value,
                    TriggerOutbox.next_attempt_at <= utc_now_iso(),
                )
                .order_by(TriggerOutbox.next_attempt_at.asc(), TriggerOutbox.id.asc())
                .limit(self.batch_size)
                .all()
            )
            for (row_id,) in due:
                if not self._claim(db, row_id):
                    continue
                row = db.get(TriggerOutbox, row_id)
                self._deliver(db, row)
                attempted += 1
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Outbox pass aborted: {e}")
        finally:
            db.close()
        return attempted

    async def run_forever(self) -> None:
        logger.info("Outbox worker started")
        try:
            while True:
                try:
                    await asyncio.to_thread(self.run_once)
                except Exception:
                    # Keep polling; unfinished rows are requeued by their lease
                    logger.exception("Outbox pass failed")
                await asyncio.sleep(self.poll_interval_seconds)
        except asyncio.CancelledError:
            logger.info("Outbox worker stopped")
            raise
