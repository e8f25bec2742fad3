import time
from dataclasses import asdict, dataclass
from typing import Callable, Optional
from uuid import UUID

from scrapkart.auth.models import Principal
from scrapkart.common.custom_exceptions import NotFound, PermissionDenied, Unavailable, ValidationError
from scrapkart.common.retries import compute_backoff, retry_with_db_circuit, sleep_with_jitter
from scrapkart.common.utils import short_ref
from scrapkart.notifications.constants import TOPIC_ORDER_REFUNDED
from scrapkart.notifications.repository import emit_outbox_event
from scrapkart.orders.repository import get_order_by_public_id
from scrapkart.payments.constants import REFUND_CLAIM_TTL_SECONDS, REFUND_ROLES, REFUND_WAIT_POLL_SECONDS, logger
from scrapkart.payments.gateway import GatewayRejected
from scrapkart.payments.repository import (
    complete_refund_request, fail_refund_request, get_refund_request, get_settled_payment,
    insert_refund_request_if_absent, reclaim_refund_request, release_refund_request,
    restart_failed_refund_request,
)
from scrapkart.reconciliation.outcomes import Applied, Conflict, EventSource, OrderSnapshot, RefundResult, RefundStatus
from scrapkart.reconciliation.repository import record_conflict
from scrapkart.reconciliation.transitions import TransitionAuthority
from scrapkart.schema.full_schema import OrderPaymentStatus, OrderStatus, RefundRequestStatus


@dataclass(frozen=True)
class RefundClaim:
    refund_pk: int
    refund_request_id: UUID
    order_pk: int
    order_public_id: str
    gateway_transaction_id: str
    amount: int


# another caller holds a live lease on the request
LEASE_HELD = object()


class RefundCoordinator:
    """Cancel-with-refund for a settled order.

    The refund request row is claimed (and its id persisted) before the gateway
    is called; the request id is the gateway idempotency key, so a retry after a
    crash reuses it. Concurrent callers wait on the one claim holder and answer
    from its result.
    """

    def __init__(self, session_factory: Callable, gateway, *,
                 authority: Optional[TransitionAuthority] = None,
                 claim_ttl_seconds: int = REFUND_CLAIM_TTL_SECONDS,
                 wait_poll_seconds: float = REFUND_WAIT_POLL_SECONDS):
        self.session_factory = session_factory
        self.gateway = gateway
        self.authority = authority or TransitionAuthority()
        self.claim_ttl_seconds = claim_ttl_seconds
        self.wait_poll_seconds = wait_poll_seconds

    async def refund(self, order_id: str, requested_by: Principal, amount: Optional[int] = None) -> RefundResult:
        if not requested_by.has_role(*REFUND_ROLES):
            logger.warning("refund.forbidden", extra={"security": True, "user_id": requested_by.user_id,
                                                      "role": requested_by.role})
            raise PermissionDenied("refunds require an operator role")
        if amount is not None and (isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0):
            raise ValidationError("refund amount must be a positive integer number of paise")

        claim = await self._claim_or_wait(order_id, requested_by, amount)
        if isinstance(claim, RefundResult):
            logger.info("refund.short_circuit", extra={"order_public_id": order_id, "result": claim.status.value})
            return claim

        try:
            gateway_refund = await self.gateway.refund(
                claim.gateway_transaction_id, claim.amount, str(claim.refund_request_id),
                notes={"order_reference": claim.order_public_id},
            )
        except GatewayRejected as exc:
            await self._mark_failed(claim, str(exc))
            logger.warning("refund.gateway.rejected", extra={"order_public_id": claim.order_public_id,
                                                             "http_status": exc.status_code})
            return RefundResult(status=RefundStatus.REJECTED, order_id=claim.order_public_id,
                                refund_request_id=str(claim.refund_request_id), amount=claim.amount,
                                reason="gateway rejected refund")
        except Unavailable as exc:
            await self._release(claim, str(exc))
            logger.error("refund.gateway.failed", extra={"order_public_id": claim.order_public_id})
            raise

        return await self._finalize(claim, requested_by, gateway_refund.get("id"))

    async def _claim_or_wait(self, order_id: str, requested_by: Principal, amount: Optional[int]):
        # an expired lease is taken over by _claim, so the wait is bounded by the lease ttl
        deadline = time.monotonic() + 2 * self.claim_ttl_seconds
        attempt = 0
        while True:
            claim = await self._claim(order_id, requested_by, amount, waited=attempt > 0)
            if claim is not LEASE_HELD:
                return claim
            if time.monotonic() >= deadline:
                raise Unavailable("refund is held by another request, retry later")
            attempt += 1
            delay = compute_backoff(attempt, self.wait_poll_seconds, cap=1.0)
            logger.info("refund.wait_for_claim", extra={"order_public_id": order_id, "attempt": attempt,
                                                        "delay": delay})
            await sleep_with_jitter(delay, 0.15)

    @retry_with_db_circuit()
    async def _claim(self, order_id: str, requested_by: Principal, amount: Optional[int], waited: bool = False):
        async with self.session_factory() as session:
            async with session.begin():
                order = await get_order_by_public_id(session, order_id, for_update=True)
                if order is None:
                    raise NotFound("order not found")
                snapshot = OrderSnapshot.from_row(order)

                def result(status: RefundStatus, reason: Optional[str] = None, refund_request_id=None) -> RefundResult:
                    return RefundResult(status=status, order_id=snapshot.order_id, reason=reason,
                                        refund_request_id=str(refund_request_id) if refund_request_id else None,
                                        order=asdict(snapshot))

                if OrderPaymentStatus(order.payment_status) is OrderPaymentStatus.REFUNDED:
                    return result(RefundStatus.ALREADY_REFUNDED)
                if OrderStatus(order.status) is OrderStatus.CANCELLED:
                    return result(RefundStatus.REJECTED, "order is cancelled")

                payment = await get_settled_payment(session, order.id)
                if payment is None:
                    return result(RefundStatus.REJECTED, "order has no settled payment")
                if OrderStatus(order.status) not in (OrderStatus.PENDING, OrderStatus.CONFIRMED):
                    return result(RefundStatus.REJECTED, f"order in {OrderStatus(order.status).name} cannot be cancelled")

                refund_amount = payment.amount if amount is None else amount
                if refund_amount > payment.amount:
                    raise ValidationError("refund amount exceeds the settled amount",
                                          details={"settled_amount": payment.amount})

                inserted = await insert_refund_request_if_absent(
                    session, payment_id=payment.id, order_id=order.id,
                    amount=refund_amount, requested_by=requested_by.user_id,
                )
                if inserted is None:
                    existing = await get_refund_request(session, payment.id)
                    status = RefundRequestStatus(existing.status)
                    if status is RefundRequestStatus.COMPLETED:
                        return result(RefundStatus.ALREADY_REFUNDED, refund_request_id=existing.refund_request_id)
                    if status is RefundRequestStatus.FAILED:
                        if waited:
                            # the request we waited on was turned down by the gateway
                            return result(RefundStatus.REJECTED, existing.last_error or "gateway rejected refund",
                                          refund_request_id=existing.refund_request_id)
                        taken = await restart_failed_refund_request(session, existing.id, amount=refund_amount,
                                                                    requested_by=requested_by.user_id)
                    else:
                        if amount is not None and amount != existing.amount:
                            raise ValidationError("a refund of a different amount is already pending",
                                                  details={"pending_amount": existing.amount})
                        taken = await reclaim_refund_request(session, existing.id, lease_seconds=self.claim_ttl_seconds,
                                                             requested_by=requested_by.user_id)
                    if not taken:
                        return LEASE_HELD

                request = await get_refund_request(session, payment.id)
                logger.info("refund.claimed", extra={"order_public_id": snapshot.order_id,
                                                     "refund_request_id": str(request.refund_request_id),
                                                     "requested_by": requested_by.user_id,
                                                     "attempt": request.attempts})
                return RefundClaim(
                    refund_pk=request.id,
                    refund_request_id=request.refund_request_id,
                    order_pk=order.id,
                    order_public_id=snapshot.order_id,
                    gateway_transaction_id=payment.gateway_transaction_id,
                    amount=request.amount,
                )

    @retry_with_db_circuit()
    async def _finalize(self, claim: RefundClaim, requested_by: Principal,
                        gateway_refund_id: Optional[str]) -> RefundResult:
        async with self.session_factory() as session:
            async with session.begin():
                await complete_refund_request(session, claim.refund_pk, gateway_refund_id)
                outcome = await self.authority.apply_refund(
                    session, order_id=claim.order_pk, gateway_transaction_id=claim.gateway_transaction_id,
                )
                if isinstance(outcome, Conflict):
                    await record_conflict(
                        session,
                        source=EventSource.OPERATOR.value,
                        outcome="REFUNDED",
                        reason=f"refund executed but not applied: {outcome.reason}",
                        order_id=claim.order_pk,
                        gateway_transaction_id=claim.gateway_transaction_id,
                        details={"refund_request_id": str(claim.refund_request_id),
                                 "gateway_refund_id": gateway_refund_id, "actor": requested_by.user_id},
                    )
                    status, reason = RefundStatus.REJECTED, outcome.reason
                else:
                    if isinstance(outcome, Applied):
                        await emit_outbox_event(
                            session, TOPIC_ORDER_REFUNDED,
                            {
                                "order_id": claim.order_public_id,
                                "order_ref": short_ref(claim.order_public_id),
                                "user_id": outcome.order.user_id,
                                "gateway_transaction_id": claim.gateway_transaction_id,
                                "amount": claim.amount,
                                "order_status": outcome.order.status,
                                "payment_status": outcome.order.payment_status,
                            },
                            aggregate_type="order", aggregate_id=claim.order_pk,
                        )
                    # Unchanged: the refund webhook won the race; this caller still performed the refund
                    status, reason = RefundStatus.REFUNDED, None

        logger.info("refund.completed", extra={"order_public_id": claim.order_public_id,
                                               "refund_request_id": str(claim.refund_request_id),
                                               "gateway_refund_id": gateway_refund_id, "result": status.value})
        order = asdict(outcome.order) if outcome.order else None
        return RefundResult(status=status, order_id=claim.order_public_id,
                            refund_request_id=str(claim.refund_request_id),
                            gateway_refund_id=gateway_refund_id, amount=claim.amount,
                            reason=reason, order=order)

    @retry_with_db_circuit()
    async def _release(self, claim: RefundClaim, error: str) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                await release_refund_request(session, claim.refund_pk, error)

    @retry_with_db_circuit()
    async def _mark_failed(self, claim: RefundClaim, error: str) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                await fail_refund_request(session, claim.refund_pk, error)
