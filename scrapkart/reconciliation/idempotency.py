from typing import Any, Dict, Optional
from scrapkart.common.custom_exceptions import Unavailable
from scrapkart.reconciliation.constants import logger
from scrapkart.reconciliation.outcomes import Admission, Admitted, AlreadyProcessed, EventSource
from scrapkart.reconciliation.repository import get_processed_event, insert_processed_event_if_absent, save_event_outcome


class IdempotencyGuard:
    """Insert-if-absent admission of event keys.

    Admission runs inside the caller's transaction: if the unit of work rolls
    back, the key is released with it, so a failure never marks an event done.
    """

    async def admit(self, session, event_key: str, source: EventSource,
                    order_id: Optional[int] = None) -> Admission:
        if await insert_processed_event_if_absent(session, event_key, source.value, order_id):
            return Admitted(event_key=event_key)

        record = await get_processed_event(session, event_key)
        if record is None or record.outcome_summary is None:
            # visible row without an outcome: another writer has not committed yet
            logger.warning("idempotency.admission_in_flight", extra={"event_key": event_key})
            raise Unavailable("event is being processed, retry later")

        logger.info("idempotency.duplicate", extra={"event_key": event_key, "source": source.value})
        return AlreadyProcessed(event_key=event_key, cached_outcome=dict(record.outcome_summary))

    async def record_outcome(self, session, event_key: str, outcome: Dict[str, Any]) -> None:
        await save_event_outcome(session, event_key, outcome)
