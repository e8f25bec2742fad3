from datetime import datetime, timedelta
from typing import List, Optional, Tuple
from sqlalchemy import and_, or_, select, update
from scrapkart.common.utils import now
from scrapkart.db.utils import dialect_insert
from scrapkart.schema.full_schema import OutboxEvent, OutboxEventStatus


async def emit_outbox_event(session, topic: str, payload: dict,
                            aggregate_type: str,
                            aggregate_id: int,
                            next_retry_at: Optional[datetime] = None) -> int:
    """Queue a side effect in the caller's transaction; one row per (aggregate, topic)."""
    stmt = dialect_insert(session, OutboxEvent).values(
        topic=topic,
        payload=payload,
        aggregate_type=aggregate_type,
        aggregate_id=aggregate_id,
        status=OutboxEventStatus.PENDING.value,
        attempts=0,
        next_retry_at=next_retry_at,
        created_at=now(),
    ).on_conflict_do_nothing(
        index_elements=["aggregate_type", "aggregate_id", "topic"],
    ).returning(OutboxEvent.id)
    res = await session.execute(stmt)
    ev_id = res.scalar_one_or_none()

    if ev_id is None:
        existing = await session.execute(
            select(OutboxEvent.id).where(
                OutboxEvent.aggregate_type == aggregate_type,
                OutboxEvent.aggregate_id == aggregate_id,
                OutboxEvent.topic == topic,
            )
        )
        ev_id = existing.scalar_one()
    return ev_id


async def claim_outbox_batch(session, batch_size: int, lock_seconds: int) -> List[Tuple]:
    ts = now()
    pending_cond = and_(
        OutboxEvent.status == OutboxEventStatus.PENDING.value,
        or_(OutboxEvent.next_retry_at.is_(None), OutboxEvent.next_retry_at <= ts),
        or_(OutboxEvent.locked_until.is_(None), OutboxEvent.locked_until <= ts),
    )
    stmt = (
        select(OutboxEvent.id, OutboxEvent.topic, OutboxEvent.payload, OutboxEvent.attempts)
        .where(pending_cond)
        .order_by(OutboxEvent.id)
        .limit(batch_size)
        .with_for_update(skip_locked=True)
    )
    rows = (await session.execute(stmt)).all()
    if rows:
        await session.execute(
            update(OutboxEvent)
            .where(OutboxEvent.id.in_([r[0] for r in rows]))
            .values(locked_until=ts + timedelta(seconds=lock_seconds))
            .execution_options(synchronize_session=False)
        )
    return rows


async def mark_outbox_sent(session, outbox_id: int) -> None:
    await session.execute(
        update(OutboxEvent)
        .where(OutboxEvent.id == outbox_id)
        .values(status=OutboxEventStatus.SENT.value, sent_at=now(), locked_until=None, last_error=None)
        .execution_options(synchronize_session=False)
    )


async def mark_outbox_retry(session, outbox_id: int, attempts: int, next_retry_at: datetime, error: str) -> None:
    await session.execute(
        update(OutboxEvent)
        .where(OutboxEvent.id == outbox_id)
        .values(attempts=attempts, next_retry_at=next_retry_at, locked_until=None,
                status=OutboxEventStatus.PENDING.value, last_error=error)
        .execution_options(synchronize_session=False)
    )


async def mark_outbox_failed(session, outbox_id: int, attempts: int, error: str) -> None:
    await session.execute(
        update(OutboxEvent)
        .where(OutboxEvent.id == outbox_id)
        .values(status=OutboxEventStatus.FAILED.value, attempts=attempts, locked_until=None,
                next_retry_at=None, last_error=error)
        .execution_options(synchronize_session=False)
    )
