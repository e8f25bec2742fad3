import asyncio
import functools
import random
from typing import Callable, Optional
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError
from scrapkart.common import logger
from scrapkart.common.circuit_breaker import CircuitBreaker, CircuitOpenError, db_circuit
from scrapkart.common.custom_exceptions import Unavailable


def is_recoverable_exception(exc: BaseException) -> bool:
    if isinstance(exc, asyncio.CancelledError):
        return False
    if isinstance(exc, (TimeoutError, ConnectionError, OperationalError, InterfaceError)):
        return True
    if isinstance(exc, DBAPIError):
        if getattr(exc, "connection_invalidated", False):
            return True
        orig = getattr(exc, "orig", None)
        if orig is not None:
            name = type(orig).__name__.lower()
            if any(k in name for k in ("timeout", "connection", "brokenpipe", "deadlock", "serialization")):
                return True
    return False


def compute_backoff(attempt: int, base: float, factor: float = 2.0, cap: float = 3600.0) -> float:
    return min(cap, base * (factor ** (attempt - 1)))


async def sleep_with_jitter(delay: float, jitter: float) -> None:
    jitter_val = random.uniform(-jitter * delay, jitter * delay)
    await asyncio.sleep(max(0.0, delay + jitter_val))


def retry_with_db_circuit(
    *,
    attempts: int = 3,
    base_delay: float = 0.1,
    factor: float = 2.0,
    max_delay: float = 1.0,
    jitter: float = 0.15,
    if_retryable: Optional[Callable[[BaseException], bool]] = None,
    circuit: CircuitBreaker = db_circuit,
):
    """Retry a whole unit of DB work on transient faults.

    The wrapped coroutine must open its own session/transaction so every attempt
    re-reads fresh state. Exhaustion or an open circuit surfaces as Unavailable.
    """
    if if_retryable is None:
        if_retryable = is_recoverable_exception

    def deco(fn: Callable):
        @functools.wraps(fn)
        async def wrapper(*args, **kwargs):
            for attempt in range(1, attempts + 1):
                try:
                    await circuit.before_call()
                except CircuitOpenError as exc:
                    raise Unavailable("service unavailable (db)") from exc

                acquired_probe = False
                if circuit.state == "HALF_OPEN":
                    acquired_probe = await circuit.acquire_half_open_probe(timeout=0.1)
                    if not acquired_probe:
                        raise Unavailable("service unavailable (db)")

                try:
                    result = await fn(*args, **kwargs)
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    if not if_retryable(exc):
                        raise
                    await circuit.record_failure()
                    if attempt == attempts:
                        logger.error("db.retry.exhausted", extra={"operation": fn.__qualname__, "attempts": attempts})
                        raise Unavailable("storage temporarily unavailable") from exc
                    delay = compute_backoff(attempt, base_delay, factor, max_delay)
                    logger.warning(
                        "db.retry.attempt_failed",
                        extra={"operation": fn.__qualname__, "attempt": attempt, "delay": delay, "error": str(exc)},
                    )
                    await sleep_with_jitter(delay, jitter)
                    continue
                finally:
                    if acquired_probe:
                        circuit.release_half_open_probe()

                await circuit.record_success()
                return result

        return wrapper
    return deco
