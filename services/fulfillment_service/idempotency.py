"""Webhook Idempotency Ledger.

Durable record of every payment gateway event id we have seen and what
became of it. First sight of an id is decided by the unique constraint on
``external_event_id``: of any number of concurrent deliveries exactly one
insert succeeds, and that caller owns the event. Everyone else is a
duplicate unless the owner's attempt failed, in which case a later
delivery may take the event over through ``claim_retry``.

The ledger performs no retries of its own. Storage failures surface as
``StorageError`` and the orchestrator decides what to do with them.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel
from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from shared.database import utcnow
from shared.errors import StorageError, WebhookEventNotFound

from .models import WebhookEvent

logger = logging.getLogger(__name__)


class AttemptOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class WebhookEventSnapshot(BaseModel):
    """Committed state of a webhook event record."""
    external_event_id: str
    event_type: str
    processed: bool
    attempts: int
    last_error: Optional[str] = None
    in_progress: bool
    processed_at: Optional[datetime] = None
    order_id: Optional[UUID] = None
    created_at: datetime

    class Config:
        from_attributes = True


@dataclass(frozen=True)
class SeenResult:
    is_new: bool
    record: WebhookEventSnapshot


class WebhookIdempotencyLedger:
    """First-writer-wins bookkeeping for delivered webhook events."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def record_seen(self, event_id: str, event_type: str) -> SeenResult:
        """
        Create the record for ``event_id`` unless it exists.

        The creator holds the processing claim until it records its attempt.
        An existing record is returned untouched with ``is_new=False``.
        """
        record = WebhookEvent(
            external_event_id=event_id,
            event_type=event_type,
            processed=False,
            attempts=0,
            in_progress=True,
            claimed_at=utcnow(),
        )

        async with self.session_factory() as session:
            session.add(record)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.info(f"Webhook event {event_id} already recorded")
                return SeenResult(is_new=False, record=await self.get(event_id))
            except SQLAlchemyError as e:
                raise StorageError(f"Failed to record webhook event {event_id}: {e}") from e

        logger.info(f"Recorded new webhook event {event_id} ({event_type})")
        return SeenResult(is_new=True, record=WebhookEventSnapshot.model_validate(record))

    async def mark_attempt(
        self,
        event_id: str,
        outcome: AttemptOutcome,
        error: Optional[str] = None,
        order_id: Optional[UUID] = None,
    ) -> None:
        """
        Count one processing attempt and release the claim.

        ``processed`` is only ever set, never cleared, so a late failure
        report cannot undo an earlier success.
        """
        outcome = AttemptOutcome(outcome)
        values = {
            "attempts": WebhookEvent.attempts + 1,
            "in_progress": False,
            "updated_at": utcnow(),
        }
        if outcome == AttemptOutcome.SUCCESS:
            values.update(processed=True, processed_at=utcnow())
            if order_id is not None:
                values["order_id"] = order_id
        else:
            values["last_error"] = error

        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    update(WebhookEvent)
                    .where(WebhookEvent.external_event_id == event_id)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                matched = result.rowcount
                await session.commit()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to record attempt for webhook event {event_id}: {e}") from e

        if matched != 1:
            raise WebhookEventNotFound(f"Webhook event {event_id} not found")

        logger.info(f"Recorded {outcome.value} attempt for webhook event {event_id}")

    async def is_processed(self, event_id: str) -> bool:
        try:
            return (await self.get(event_id)).processed
        except WebhookEventNotFound:
            return False

    async def claim_retry(self, event_id: str, ttl_seconds: int = 300) -> bool:
        """
        Take over an unprocessed event for another attempt.

        Succeeds only when nobody holds the event: its last attempt was
        recorded as a failure, or the previous claim is older than
        ``ttl_seconds`` (the worker that held it died). Processed events and
        events another worker is busy with are never claimable.
        """
        now = utcnow()
        cutoff = now - timedelta(seconds=ttl_seconds)

        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    update(WebhookEvent)
                    .where(
                        WebhookEvent.external_event_id == event_id,
                        WebhookEvent.processed.is_(False),
                        or_(
                            WebhookEvent.in_progress.is_(False),
                            WebhookEvent.claimed_at < cutoff,
                        ),
                    )
                    .values(in_progress=True, claimed_at=now, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                claimed = result.rowcount == 1
                await session.commit()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to claim webhook event {event_id}: {e}") from e

        if claimed:
            logger.info(f"Claimed webhook event {event_id} for another attempt")
        return claimed

    async def get(self, event_id: str) -> WebhookEventSnapshot:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(WebhookEvent).where(WebhookEvent.external_event_id == event_id)
                )
                record = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to read webhook event {event_id}: {e}") from e

        if record is None:
            raise WebhookEventNotFound(f"Webhook event {event_id} not found")
        return WebhookEventSnapshot.model_validate(record)

    async def list_retryable(self, max_attempts: int = 3, limit: int = 50) -> List[WebhookEventSnapshot]:
        """Unprocessed events that have not used up their attempts, oldest first."""
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(WebhookEvent)
                    .where(
                        WebhookEvent.processed.is_(False),
                        WebhookEvent.attempts < max_attempts,
                    )
                    .order_by(WebhookEvent.created_at)
                    .limit(limit)
                )
                return [WebhookEventSnapshot.model_validate(r) for r in result.scalars().all()]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to list retryable webhook events: {e}") from e
