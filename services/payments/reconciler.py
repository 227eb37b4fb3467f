"""
Applies verified payment events to orders exactly once.

Every state change goes through ``OrderStore.try_transition``, a conditional
update that only succeeds while the order is still in the expected state.
Callback handlers, provider retries and the expiration sweep may race on the
same order; whichever transition lands first wins and the others fall back
to re-reading the order and treating it as terminal.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, List, Optional

from core.db import utcnow
from core.errors import AmountMismatch, OrderNotFound, OrderStateConflict, PaymentRequestError
from models.order import OrderStatus
from services.payments.base import Clock, EnrollmentService, OrderSnapshot, OrderStore, PaymentCallback

logger = logging.getLogger(__name__)


class SystemClock:
    def now(self) -> datetime:
        return utcnow()


class Outcome:
    PAID = "paid"
    FAILED = "failed"
    DUPLICATE = "duplicate"


@dataclass
class ReconcileResult:
    outcome: str
    order: OrderSnapshot
    enrollment: Any = None
    grant_failed: bool = False

    @property
    def applied(self) -> bool:
        return self.outcome in (Outcome.PAID, Outcome.FAILED)


@dataclass
class SweepResult:
    expired: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)

    @property
    def processed_count(self) -> int:
        return len(self.expired)


@dataclass
class RefundReservation:
    order: OrderSnapshot
    amount: int
    previous_total: int
    new_total: int

    @property
    def is_full(self) -> bool:
        paid = self.order.amount
        return self.new_total >= paid


class OrderReconciler:
    def __init__(
        self,
        store: OrderStore,
        enrollments: EnrollmentService,
        clock: Optional[Clock] = None,
        expiration: timedelta = timedelta(minutes=15),
    ):
        self.store = store
        self.enrollments = enrollments
        self.clock = clock or SystemClock()
        self.expiration = expiration

    # --- callbacks ---------------------------------------------------------

    def reconcile(self, callback: PaymentCallback) -> ReconcileResult:
        order = self.store.find_by_id(callback.order_id)
        if order is None:
            logger.warning("%s event for unknown order %s (trans %s)",
                           callback.provider, callback.order_id, callback.trans_id)
            raise OrderNotFound(callback.order_id)

        if callback.amount != order.amount:
            logger.warning("%s event for order %s carries amount %s, expected %s",
                           callback.provider, order.order_id, callback.amount, order.amount)
            raise AmountMismatch(order.order_id, order.amount, callback.amount)

        if order.status == OrderStatus.PENDING:
            if self.is_expired(order):
                if self.store.try_transition(order.order_id, OrderStatus.PENDING, OrderStatus.EXPIRED,
                                             {"notes": "Payment window elapsed before the gateway confirmed"}):
                    logger.info("Order %s expired on late %s event", order.order_id, callback.provider)
            else:
                result = self._apply(order, callback)
                if result is not None:
                    return result
            order = self.store.find_by_id(callback.order_id)

        return self._settled(order, callback)

    def _apply(self, order: OrderSnapshot, callback: PaymentCallback) -> Optional[ReconcileResult]:
        now = self.clock.now()
        if callback.succeeded:
            target = OrderStatus.PAID
            metadata = {"transaction_id": callback.trans_id, "paid_amount": callback.amount, "paid_at": now}
        else:
            target = OrderStatus.FAILED
            metadata = {"transaction_id": callback.trans_id,
                        "notes": f"{callback.provider} result {callback.result_code}: {callback.message}"}

        if not self.store.try_transition(order.order_id, OrderStatus.PENDING, target, metadata,
                                         attempt_id=callback.request_id):
            # Another delivery or the sweep got there first
            return None

        updated = self.store.find_by_id(order.order_id)
        if target == OrderStatus.FAILED:
            logger.info("Order %s marked FAILED (%s result %s)", order.order_id, callback.provider, callback.result_code)
            return ReconcileResult(Outcome.FAILED, updated)

        logger.info("Order %s marked PAID via %s transaction %s", order.order_id, callback.provider, callback.trans_id)
        try:
            enrollment = self.enrollments.grant_access(order.order_id)
        except Exception:
            logger.exception("Order %s is PAID but granting access failed; needs manual enrollment", order.order_id)
            return ReconcileResult(Outcome.PAID, updated, grant_failed=True)
        return ReconcileResult(Outcome.PAID, updated, enrollment=enrollment)

    def _settled(self, order: Optional[OrderSnapshot], callback: PaymentCallback) -> ReconcileResult:
        if order is None:
            raise OrderNotFound(callback.order_id)
        if order.transaction_id and callback.trans_id and order.transaction_id == str(callback.trans_id):
            logger.info("Duplicate %s delivery for order %s (trans %s) acknowledged",
                        callback.provider, order.order_id, callback.trans_id)
            return ReconcileResult(Outcome.DUPLICATE, order)

        error = OrderStateConflict(order.order_id, order.status, order.transaction_id, callback.trans_id)
        if callback.succeeded:
            # Money moved for an order we no longer consider payable
            logger.error("Payment conflict needs manual review: %s", error)
        else:
            logger.warning("Ignoring %s event for settled order: %s", callback.provider, error)
        raise error

    # --- expiration --------------------------------------------------------

    def is_expired(self, order: OrderSnapshot) -> bool:
        """Measured from the newest payment link's expiry when one was issued, else from order creation."""
        return order.payment_deadline(self.expiration) <= self.clock.now()

    def expire_stale(self, limit: int = 500) -> SweepResult:
        result = SweepResult()
        for order in self.store.find_stale_pending(self.clock.now(), self.expiration, limit):
            if self.store.try_transition(order.order_id, OrderStatus.PENDING, OrderStatus.EXPIRED,
                                         {"notes": "Payment link expired without confirmation"}):
                result.expired.append(order.order_id)
            else:
                result.skipped.append(order.order_id)
        if result.expired or result.skipped:
            logger.info("Expiration sweep: %d expired, %d skipped", len(result.expired), len(result.skipped))
        return result

    def expire_if_stale(self, order_id: str) -> bool:
        order = self.store.find_by_id(order_id)
        if order is None:
            raise OrderNotFound(order_id)
        if order.status != OrderStatus.PENDING or not self.is_expired(order):
            return False
        return self.store.try_transition(order_id, OrderStatus.PENDING, OrderStatus.EXPIRED,
                                         {"notes": "Payment link expired without confirmation"})

    # --- refunds -----------------------------------------------------------

    def reserve_refund(self, order_id: str, amount: Optional[int]) -> RefundReservation:
        order = self.store.find_by_id(order_id)
        if order is None:
            raise OrderNotFound(order_id)
        if order.status != OrderStatus.PAID:
            raise PaymentRequestError("Only paid orders can be refunded")

        requested = order.amount - order.refund_amount if amount is None else amount
        if requested <= 0:
            raise PaymentRequestError("Refund amount must be greater than 0")
        if requested > order.amount - order.refund_amount:
            raise PaymentRequestError("Refund amount exceeds remaining paid amount")

        new_total = order.refund_amount + requested
        if not self.store.try_transition(order_id, OrderStatus.PAID, OrderStatus.PAID,
                                         {"refund_amount": new_total},
                                         guard={"refund_amount": order.refund_amount}):
            raise PaymentRequestError("Order changed while the refund was being prepared; retry", status_code=409)
        return RefundReservation(order, requested, order.refund_amount, new_total)

    def release_refund(self, reservation: RefundReservation) -> bool:
        released = self.store.try_transition(reservation.order.order_id, OrderStatus.PAID, OrderStatus.PAID,
                                             {"refund_amount": reservation.previous_total},
                                             guard={"refund_amount": reservation.new_total})
        if not released:
            logger.error("Could not release refund reservation on order %s", reservation.order.order_id)
        return released

    def complete_refund(self, reservation: RefundReservation) -> bool:
        """Record a confirmed refund. Only a full refund leaves PAID, and only once."""
        now = self.clock.now()
        if not reservation.is_full:
            return self.store.try_transition(reservation.order.order_id, OrderStatus.PAID, OrderStatus.PAID,
                                             {"refunded_at": now},
                                             guard={"refund_amount": reservation.new_total})
        if not self.store.try_transition(reservation.order.order_id, OrderStatus.PAID, OrderStatus.REFUNDED,
                                         {"refunded_at": now},
                                         guard={"refund_amount": reservation.new_total}):
            return False
        try:
            self.enrollments.revoke_access(reservation.order.order_id)
        except Exception:
            logger.exception("Order %s refunded but enrollment could not be revoked", reservation.order.order_id)
        return True
