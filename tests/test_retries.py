import asyncio

import pytest
from sqlalchemy.exc import OperationalError

from scrapkart.common.circuit_breaker import CircuitBreaker
from scrapkart.common.custom_exceptions import Unavailable, ValidationError
from scrapkart.common.retries import compute_backoff, is_recoverable_exception, retry_with_db_circuit


def db_down():
    return OperationalError("SELECT 1", {}, Exception("connection refused"))


def test_recoverable_classification():
    assert is_recoverable_exception(db_down())
    assert is_recoverable_exception(ConnectionError())
    assert not is_recoverable_exception(ValidationError("bad"))
    assert not is_recoverable_exception(asyncio.CancelledError())


def test_backoff_grows_and_caps():
    assert compute_backoff(1, 0.1) == pytest.approx(0.1)
    assert compute_backoff(3, 0.1) == pytest.approx(0.4)
    assert compute_backoff(20, 0.1, cap=1.0) == 1.0


async def test_transient_failure_is_retried_then_succeeds():
    calls = []
    circuit = CircuitBreaker("test", failure_threshold=5, recovery_timeout=60)

    @retry_with_db_circuit(attempts=3, base_delay=0.001, circuit=circuit)
    async def op():
        calls.append(1)
        if len(calls) < 3:
            raise db_down()
        return "ok"

    assert await op() == "ok"
    assert len(calls) == 3
    assert circuit.state == "CLOSED"


async def test_exhaustion_raises_unavailable():
    circuit = CircuitBreaker("test", failure_threshold=10, recovery_timeout=60)

    @retry_with_db_circuit(attempts=3, base_delay=0.001, circuit=circuit)
    async def op():
        raise db_down()

    with pytest.raises(Unavailable):
        await op()


async def test_business_errors_pass_through_untouched():
    calls = []

    @retry_with_db_circuit(attempts=3, base_delay=0.001, circuit=CircuitBreaker("test"))
    async def op():
        calls.append(1)
        raise ValidationError("bad input")

    with pytest.raises(ValidationError):
        await op()
    assert len(calls) == 1


async def test_open_circuit_fails_fast_and_recovers():
    circuit = CircuitBreaker("test", failure_threshold=2, recovery_timeout=0.05)
    healthy = False

    @retry_with_db_circuit(attempts=1, circuit=circuit)
    async def op():
        if not healthy:
            raise db_down()
        return "ok"

    for _ in range(2):
        with pytest.raises(Unavailable):
            await op()
    assert circuit.state == "OPEN"

    with pytest.raises(Unavailable):
        await op()

    await asyncio.sleep(0.06)
    healthy = True
    assert await op() == "ok"
    assert circuit.state == "CLOSED"
