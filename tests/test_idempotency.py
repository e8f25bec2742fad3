import pytest

from scrapkart.common.custom_exceptions import Unavailable
from scrapkart.reconciliation.idempotency import IdempotencyGuard
from scrapkart.reconciliation.outcomes import Admitted, AlreadyProcessed, EventSource
from scrapkart.schema.full_schema import ProcessedEvent

from conftest import count_rows


async def test_first_delivery_is_admitted_and_replay_gets_cached_outcome(session_factory):
    guard = IdempotencyGuard()
    async with session_factory() as session:
        async with session.begin():
            first = await guard.admit(session, "rzp:evt_1", EventSource.WEBHOOK)
            await guard.record_outcome(session, "rzp:evt_1", {"status": "applied"})

    async with session_factory() as session:
        async with session.begin():
            second = await guard.admit(session, "rzp:evt_1", EventSource.WEBHOOK)

    assert isinstance(first, Admitted)
    assert isinstance(second, AlreadyProcessed)
    assert second.cached_outcome == {"status": "applied"}
    assert await count_rows(ProcessedEvent) == 1


async def test_rolled_back_admission_releases_the_key(session_factory):
    guard = IdempotencyGuard()
    with pytest.raises(RuntimeError):
        async with session_factory() as session:
            async with session.begin():
                await guard.admit(session, "rzp:evt_2", EventSource.WEBHOOK)
                raise RuntimeError("downstream failure")

    assert await count_rows(ProcessedEvent) == 0
    async with session_factory() as session:
        async with session.begin():
            again = await guard.admit(session, "rzp:evt_2", EventSource.WEBHOOK)
    assert isinstance(again, Admitted)


async def test_key_without_outcome_is_reported_in_flight(session_factory):
    guard = IdempotencyGuard()
    async with session_factory() as session:
        async with session.begin():
            await guard.admit(session, "rzp:evt_3", EventSource.WEBHOOK)

    with pytest.raises(Unavailable):
        async with session_factory() as session:
            async with session.begin():
                await guard.admit(session, "rzp:evt_3", EventSource.WEBHOOK)
