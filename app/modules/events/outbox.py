import uuid
import asyncio
import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import JSON, TIMESTAMP, Integer, String, Text, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.base import Base, TimestampedMixin
from app.core.db import SessionLocal
from app.platform.ports.event_bus import MEDIA_TOPIC

log = logging.getLogger("event.outbox")

# media lifecycle event types
MEDIA_ASSET_PROCESSED = "media.asset.processed"
MEDIA_ASSET_REPLACED = "media.asset.replaced"
MEDIA_OBJECTS_PURGED = "media.objects.purged"

MAX_PUBLISH_ATTEMPTS = 10

class EventOutbox(Base, TimestampedMixin):
    event_type: Mapped[str] = mapped_column(String(64))
    subject_type: Mapped[str] = mapped_column(String(32))  # submission | user
    subject_id: Mapped[str] = mapped_column(String(64))
    payload: Mapped[dict] = mapped_column(JSON)

    occurred_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), server_default=text("CURRENT_TIMESTAMP"))

    status: Mapped[str] = mapped_column(String(16), default="pending")  # pending | processing | sent | dead
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    next_attempt_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), server_default=text("CURRENT_TIMESTAMP"))
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    def envelope(self) -> dict:
        return {
            "event_type": self.event_type,
            "subject": {"type": self.subject_type, "id": self.subject_id},
            "payload": self.payload,
            "occurred_at": self.occurred_at.isoformat() if self.occurred_at else None,
            "outbox_id": str(self.id),
        }

def publish_backoff_seconds(attempts: int) -> int:
    return min(60, 2 ** min(attempts, 6))  # 2,4,8,16,32,60s

class OutboxRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def enqueue(self, *, event_type: str, subject_type: str, subject_id: str | uuid.UUID, payload: dict, occurred_at: datetime | None = None) -> EventOutbox:
        """Add an event to the caller's transaction; it is relayed only if that transaction commits."""
        at = occurred_at or datetime.now(timezone.utc)
        event = EventOutbox(
            event_type=event_type, subject_type=subject_type, subject_id=str(subject_id),
            payload=payload, occurred_at=at, next_attempt_at=at, status="pending", attempts=0,
        )
        self.session.add(event)
        await self.session.flush()
        return event

    async def claim_batch(self, limit: int = 50) -> list[EventOutbox]:
        due = (EventOutbox.status == "pending") & (EventOutbox.next_attempt_at <= datetime.now(timezone.utc))
        stmt = select(EventOutbox).where(due).order_by(EventOutbox.created_at).limit(limit)
        # concurrent relays skip each other's rows
        claimed = (await self.session.scalars(stmt.with_for_update(skip_locked=True))).all()
        for event in claimed:
            event.status = "processing"
        await self.session.flush()
        return list(claimed)

    async def mark_sent(self, event: EventOutbox):
        event.status, event.last_error = "sent", None
        await self.session.flush()

    async def mark_failed(self, event: EventOutbox, error: str):
        event.attempts = (event.attempts or 0) + 1
        event.last_error = error[:2000]
        if event.attempts < MAX_PUBLISH_ATTEMPTS:
            event.status = "pending"
            event.next_attempt_at = datetime.now(timezone.utc) + timedelta(seconds=publish_backoff_seconds(event.attempts))
        else:
            event.status = "dead"  # left for inspection, never retried
        await self.session.flush()

# relay

async def relay_batch(repo: OutboxRepository, bus, limit: int = 50) -> int:
    """Publish one claimed batch; returns how many events were claimed."""
    batch = await repo.claim_batch(limit=limit)
    for event in batch:
        try:
            await bus.publish(topic=MEDIA_TOPIC, key=event.subject_id or "-", value=event.envelope())
        except Exception as exc:
            log.warning("Publishing %s %s failed (attempt %d): %s", event.event_type, event.id, (event.attempts or 0) + 1, exc)
            await repo.mark_failed(event, str(exc))
            continue
        await repo.mark_sent(event)
    return len(batch)

async def run_outbox_relay(poll_interval_seconds: float = 1.0):
    from app.platform.provider_registry import registry
    bus = registry.event_bus()
    log.info("Relaying outbox events through %s", type(bus).__name__)
    while True:
        try:
            async with SessionLocal() as session:
                try:
                    claimed = await relay_batch(OutboxRepository(session), bus)
                    await session.commit()
                except Exception:
                    await session.rollback()
                    raise
        except asyncio.CancelledError:
            log.info("Outbox relay stopped")
            raise
        except Exception:
            log.exception("Outbox relay pass failed; retrying after %.1fs", poll_interval_seconds)
            claimed = 0
        if not claimed:
            await asyncio.sleep(poll_interval_seconds)
