import asyncio
from datetime import timedelta
from typing import Any, Callable

from scrapkart.common.retries import compute_backoff
from scrapkart.common.utils import now
from scrapkart.notifications.constants import (
    BACKOFF_BASE, BACKOFF_CAP, DEFAULT_BATCH, DEFAULT_LOCK_SECONDS, DEFAULT_POLL_SECONDS,
    MAX_PUBLISH_ATTEMPTS, logger,
)
from scrapkart.notifications.repository import claim_outbox_batch, mark_outbox_failed, mark_outbox_retry, mark_outbox_sent


class OutboxRelay:
    """Polls the outbox and hands each row to the notifier.

    Rows are leased (locked_until) in a short claim transaction and delivered
    outside it; a crashed relay's lease simply expires. Delivery failures only
    touch the outbox row, never order or payment state.
    """

    def __init__(
        self,
        session_factory: Callable[[], Any],
        notifier,
        *,
        batch_size: int = DEFAULT_BATCH,
        poll_interval: float = DEFAULT_POLL_SECONDS,
        lock_seconds: int = DEFAULT_LOCK_SECONDS,
        max_attempts: int = MAX_PUBLISH_ATTEMPTS,
        backoff_base: float = BACKOFF_BASE,
    ):
        self.session_factory = session_factory
        self.notifier = notifier
        self.batch_size = batch_size
        self.poll_interval = poll_interval
        self.lock_seconds = lock_seconds
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self._stop = asyncio.Event()

    def stop(self):
        self._stop.set()

    async def run(self):
        logger.info("outbox.relay.started")
        while not self._stop.is_set():
            try:
                processed = await self.process_batch()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("outbox.relay.loop_error")
                processed = 0
            if not processed:
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass
        logger.info("outbox.relay.stopped")

    async def process_batch(self) -> int:
        async with self.session_factory() as session:
            async with session.begin():
                rows = await claim_outbox_batch(session, self.batch_size, self.lock_seconds)

        for outbox_id, topic, payload, attempts in rows:
            attempts = int(attempts or 0)
            try:
                await self.notifier.deliver(topic, payload)
            except Exception as ex:
                await self._record_failure(int(outbox_id), topic, attempts + 1, ex)
                continue
            async with self.session_factory() as session:
                async with session.begin():
                    await mark_outbox_sent(session, int(outbox_id))
        return len(rows)

    async def _record_failure(self, outbox_id: int, topic: str, attempts: int, ex: Exception):
        async with self.session_factory() as session:
            async with session.begin():
                if attempts >= self.max_attempts:
                    logger.error("outbox.delivery.failed_permanently",
                                 extra={"outbox_id": outbox_id, "topic": topic, "attempts": attempts, "error": repr(ex)})
                    await mark_outbox_failed(session, outbox_id, attempts, repr(ex))
                    return
                backoff = compute_backoff(attempts, self.backoff_base, cap=BACKOFF_CAP)
                logger.warning("outbox.delivery.retry_scheduled",
                               extra={"outbox_id": outbox_id, "topic": topic, "attempts": attempts, "backoff": backoff})
                await mark_outbox_retry(session, outbox_id, attempts, now() + timedelta(seconds=backoff), repr(ex))
