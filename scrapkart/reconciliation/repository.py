from typing import Any, Dict, List, Optional
from sqlalchemy import select, update
from scrapkart.common.utils import now
from scrapkart.db.utils import dialect_insert
from scrapkart.schema.full_schema import ProcessedEvent, ReconciliationConflict


async def insert_processed_event_if_absent(session, event_key: str, source: str,
                                           order_id: Optional[int] = None) -> bool:
    stmt = dialect_insert(session, ProcessedEvent).values(
        event_key=event_key,
        source=source,
        order_id=order_id,
        first_seen_at=now(),
    ).on_conflict_do_nothing(
        index_elements=["event_key"],
    ).returning(ProcessedEvent.id)
    res = await session.execute(stmt)
    return res.scalar_one_or_none() is not None


async def get_processed_event(session, event_key: str) -> Optional[ProcessedEvent]:
    stmt = (
        select(ProcessedEvent)
        .where(ProcessedEvent.event_key == event_key)
        .execution_options(populate_existing=True)
    )
    res = await session.execute(stmt)
    return res.scalar_one_or_none()


async def save_event_outcome(session, event_key: str, outcome: Dict[str, Any]) -> None:
    await session.execute(
        update(ProcessedEvent)
        .where(ProcessedEvent.event_key == event_key)
        .values(outcome_summary=outcome, completed_at=now())
        .execution_options(synchronize_session=False)
    )


async def record_conflict(session, *, source: str, outcome: str, reason: str,
                          order_id: Optional[int] = None,
                          event_key: Optional[str] = None,
                          gateway_transaction_id: Optional[str] = None,
                          competing_transaction_id: Optional[str] = None,
                          details: Optional[Dict[str, Any]] = None) -> int:
    row = ReconciliationConflict(
        order_id=order_id,
        event_key=event_key,
        source=source,
        outcome=outcome,
        reason=reason,
        gateway_transaction_id=gateway_transaction_id,
        competing_transaction_id=competing_transaction_id,
        details=details,
    )
    session.add(row)
    await session.flush()
    return row.id


async def list_conflicts(session, *, limit: int, offset: int = 0,
                         unresolved_only: bool = True) -> List[ReconciliationConflict]:
    stmt = select(ReconciliationConflict).order_by(ReconciliationConflict.id.desc()).limit(limit).offset(offset)
    if unresolved_only:
        stmt = stmt.where(ReconciliationConflict.resolved_at.is_(None))
    res = await session.execute(stmt)
    return list(res.scalars().all())
