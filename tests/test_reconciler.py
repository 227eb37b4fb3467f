import threading
from datetime import datetime, timedelta

import pytest

from core.errors import AmountMismatch, OrderNotFound, OrderStateConflict, PaymentRequestError
from models.order import OrderStatus
from services.payments.base import MOMO, VNPAY, OrderSnapshot, PaymentCallback
from services.payments.reconciler import OrderReconciler, Outcome

NOW = datetime(2026, 10, 19, 3, 0, 0)


class FakeClock:
    def __init__(self, now=NOW):
        self.current = now

    def now(self):
        return self.current

    def advance(self, **kwargs):
        self.current += timedelta(**kwargs)


class InMemoryOrderStore:
    """Order store whose conditional update is guarded by a lock, like a row-level UPDATE."""

    def __init__(self):
        self.rows = {}
        self.lock = threading.Lock()
        self.before_transition = None
        self.attempts = []

    def add(self, order_id, amount=100000, status=OrderStatus.PENDING, created_at=NOW, **fields):
        self.rows[order_id] = {
            "id": len(self.rows) + 1,
            "status": status,
            "amount": amount,
            "created_at": created_at,
            "transaction_id": None,
            "refund_amount": 0,
            "expires_at": None,
            **fields,
        }

    def find_by_id(self, order_id):
        row = self.rows.get(order_id)
        if row is None:
            return None
        return OrderSnapshot(
            id=row["id"],
            order_id=order_id,
            status=row["status"],
            amount=row["amount"],
            transaction_id=row["transaction_id"],
            created_at=row["created_at"],
            refund_amount=row["refund_amount"],
            expires_at=row["expires_at"],
        )

    def try_transition(self, order_id, from_state, to_state, metadata=None, guard=None, attempt_id=None):
        if self.before_transition:
            hook, self.before_transition = self.before_transition, None
            hook()
        with self.lock:
            row = self.rows.get(order_id)
            if row is None or row["status"] != from_state:
                return False
            if any(row.get(column) != value for column, value in (guard or {}).items()):
                return False
            row.update(metadata or {})
            row["status"] = to_state
            self.attempts.append(attempt_id)
            return True

    def find_stale_pending(self, now, expiration, limit):
        pending = [self.find_by_id(oid) for oid, row in self.rows.items() if row["status"] == OrderStatus.PENDING]
        return [o for o in pending if o.payment_deadline(expiration) <= now][:limit]


class RecordingEnrollments:
    def __init__(self, fail=False):
        self.granted = []
        self.revoked = []
        self.fail = fail
        self.lock = threading.Lock()

    def grant_access(self, order_id):
        if self.fail:
            raise RuntimeError("enrollment service down")
        with self.lock:
            self.granted.append(order_id)
        return {"order_id": order_id}

    def revoke_access(self, order_id):
        self.revoked.append(order_id)
        return True


def callback(order_id="ORD-1", trans_id="14226112", result_code="00", amount=100000, provider=VNPAY,
             request_id=None):
    return PaymentCallback(
        provider=provider,
        order_id=order_id,
        trans_id=trans_id,
        result_code=result_code,
        amount=amount,
        message="",
        response_time=None,
        signature="",
        source_ip="113.160.92.202",
        request_id=request_id,
    )


@pytest.fixture
def store():
    s = InMemoryOrderStore()
    s.add("ORD-1")
    return s


@pytest.fixture
def enrollments():
    return RecordingEnrollments()


@pytest.fixture
def clock():
    return FakeClock(NOW + timedelta(minutes=5))


@pytest.fixture
def reconciler(store, enrollments, clock):
    return OrderReconciler(store, enrollments, clock=clock, expiration=timedelta(minutes=15))


class TestReconcileCallbacks:
    """Test cases for applying payment events to orders"""

    def test_success_marks_paid_and_grants_access(self, reconciler, store, enrollments, clock):
        result = reconciler.reconcile(callback())

        assert result.outcome == Outcome.PAID
        assert result.applied
        assert result.order.status == OrderStatus.PAID
        assert store.rows["ORD-1"]["transaction_id"] == "14226112"
        assert store.rows["ORD-1"]["paid_amount"] == 100000
        assert store.rows["ORD-1"]["paid_at"] == clock.now()
        assert enrollments.granted == ["ORD-1"]

    def test_duplicate_delivery_is_a_no_op(self, reconciler, enrollments):
        reconciler.reconcile(callback())
        second = reconciler.reconcile(callback())

        assert second.outcome == Outcome.DUPLICATE
        assert not second.applied
        assert enrollments.granted == ["ORD-1"]

    def test_failure_marks_failed_without_access(self, reconciler, store, enrollments):
        result = reconciler.reconcile(callback(result_code="24", trans_id="0"))

        assert result.outcome == Outcome.FAILED
        assert store.rows["ORD-1"]["status"] == OrderStatus.FAILED
        assert "24" in store.rows["ORD-1"]["notes"]
        assert enrollments.granted == []

    def test_success_after_failure_with_new_transaction_conflicts(self, reconciler, store, enrollments):
        reconciler.reconcile(callback(result_code="24", trans_id="111"))

        with pytest.raises(OrderStateConflict) as exc_info:
            reconciler.reconcile(callback(trans_id="222"))

        assert exc_info.value.stored_trans_id == "111"
        assert exc_info.value.incoming_trans_id == "222"
        assert store.rows["ORD-1"]["status"] == OrderStatus.FAILED
        assert store.rows["ORD-1"]["transaction_id"] == "111"
        assert enrollments.granted == []

    def test_unknown_order(self, reconciler):
        with pytest.raises(OrderNotFound):
            reconciler.reconcile(callback(order_id="ORD-404"))

    def test_amount_mismatch_leaves_order_pending(self, reconciler, store, enrollments):
        with pytest.raises(AmountMismatch) as exc_info:
            reconciler.reconcile(callback(amount=1000))

        assert exc_info.value.expected == 100000
        assert exc_info.value.received == 1000
        assert store.rows["ORD-1"]["status"] == OrderStatus.PENDING
        assert enrollments.granted == []

    def test_missing_transaction_id_never_counts_as_duplicate(self, reconciler):
        reconciler.reconcile(callback(result_code="24", trans_id=None))
        with pytest.raises(OrderStateConflict):
            reconciler.reconcile(callback(result_code="24", trans_id=None))

    def test_momo_success_code(self, store, enrollments, clock):
        store.add("ORD-2")
        reconciler = OrderReconciler(store, enrollments, clock=clock)
        result = reconciler.reconcile(callback(order_id="ORD-2", result_code="0", provider=MOMO))
        assert result.outcome == Outcome.PAID

    def test_grant_failure_is_reported_not_raised(self, store, clock):
        reconciler = OrderReconciler(store, RecordingEnrollments(fail=True), clock=clock)
        result = reconciler.reconcile(callback())

        assert result.outcome == Outcome.PAID
        assert result.grant_failed
        assert store.rows["ORD-1"]["status"] == OrderStatus.PAID

    def test_transition_names_the_winning_attempt(self, reconciler, store):
        reconciler.reconcile(callback(request_id="ORD-1-VNPAY-1792380000000"))
        assert store.attempts == ["ORD-1-VNPAY-1792380000000"]


class TestExpiration:
    """Test cases for the payment window and the expiration sweep"""

    def test_late_success_expires_and_conflicts(self, reconciler, store, enrollments, clock):
        clock.advance(minutes=15)

        with pytest.raises(OrderStateConflict) as exc_info:
            reconciler.reconcile(callback())

        assert exc_info.value.state == OrderStatus.EXPIRED
        assert store.rows["ORD-1"]["status"] == OrderStatus.EXPIRED
        assert enrollments.granted == []

    def test_link_deadline_replaces_order_age(self, reconciler, store, enrollments, clock):
        # Order is 25 minutes old but its newest link is valid for another 5
        store.add("ORD-2", created_at=clock.now() - timedelta(minutes=25), expires_at=clock.now() + timedelta(minutes=5))

        assert reconciler.expire_stale().expired == []
        result = reconciler.reconcile(callback(order_id="ORD-2"))

        assert result.outcome == Outcome.PAID
        assert enrollments.granted == ["ORD-2"]

    def test_sweep_honours_link_deadline(self, reconciler, store, clock):
        store.add("ORD-2", created_at=NOW - timedelta(hours=1), expires_at=clock.now() + timedelta(minutes=5))
        store.add("ORD-3", created_at=clock.now(), expires_at=clock.now() + timedelta(minutes=1))
        clock.advance(minutes=2)

        assert reconciler.expire_stale().expired == ["ORD-3"]
        clock.advance(minutes=3)
        assert reconciler.expire_stale().expired == ["ORD-2"]
        clock.advance(minutes=5)
        assert reconciler.expire_stale().expired == ["ORD-1"]

    def test_sweep_and_callbacks_agree_on_the_boundary(self, reconciler, store, clock):
        clock.advance(minutes=10)
        order = store.find_by_id("ORD-1")
        assert order.created_at + timedelta(minutes=15) == clock.now()

        assert reconciler.is_expired(order)
        assert reconciler.expire_stale().expired == ["ORD-1"]

    def test_sweep_expires_only_stale_orders(self, reconciler, store, clock):
        clock.advance(minutes=20)
        store.add("ORD-FRESH", created_at=clock.now() - timedelta(minutes=1))
        store.add("ORD-PAID", status=OrderStatus.PAID, created_at=NOW - timedelta(hours=1))

        result = reconciler.expire_stale()

        assert result.expired == ["ORD-1"]
        assert result.processed_count == 1
        assert store.rows["ORD-FRESH"]["status"] == OrderStatus.PENDING
        assert store.rows["ORD-PAID"]["status"] == OrderStatus.PAID

    def test_sweep_skips_orders_settled_meanwhile(self, reconciler, store, clock):
        clock.advance(minutes=20)
        store.before_transition = lambda: store.rows["ORD-1"].update(status=OrderStatus.PAID)

        result = reconciler.expire_stale()

        assert result.expired == []
        assert result.skipped == ["ORD-1"]
        assert store.rows["ORD-1"]["status"] == OrderStatus.PAID

    def test_callback_first_then_sweep(self, reconciler, store, enrollments, clock):
        reconciler.reconcile(callback())
        clock.advance(minutes=30)

        assert reconciler.expire_stale().processed_count == 0
        assert store.rows["ORD-1"]["status"] == OrderStatus.PAID
        assert enrollments.granted == ["ORD-1"]

    def test_sweep_first_then_callback(self, reconciler, store, enrollments, clock):
        clock.advance(minutes=30)
        reconciler.expire_stale()

        with pytest.raises(OrderStateConflict):
            reconciler.reconcile(callback())
        assert store.rows["ORD-1"]["status"] == OrderStatus.EXPIRED
        assert enrollments.granted == []

    def test_sweep_wins_between_read_and_update(self, reconciler, store, enrollments):
        # The callback read PENDING, then the sweep expired the order before its update ran
        store.before_transition = lambda: store.rows["ORD-1"].update(status=OrderStatus.EXPIRED)

        with pytest.raises(OrderStateConflict):
            reconciler.reconcile(callback())
        assert store.rows["ORD-1"]["status"] == OrderStatus.EXPIRED
        assert enrollments.granted == []

    def test_expire_if_stale(self, reconciler, store, clock):
        assert reconciler.expire_if_stale("ORD-1") is False
        clock.advance(minutes=15)
        assert reconciler.expire_if_stale("ORD-1") is True
        assert reconciler.expire_if_stale("ORD-1") is False
        with pytest.raises(OrderNotFound):
            reconciler.expire_if_stale("ORD-404")


class TestConcurrentDelivery:
    def test_parallel_identical_callbacks_grant_once(self, reconciler, enrollments):
        barrier = threading.Barrier(8)
        outcomes = []
        errors = []

        def deliver():
            barrier.wait()
            try:
                outcomes.append(reconciler.reconcile(callback()).outcome)
            except Exception as exc:
                errors.append(exc)

        threads = [threading.Thread(target=deliver) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert outcomes.count(Outcome.PAID) == 1
        assert outcomes.count(Outcome.DUPLICATE) == 7
        assert enrollments.granted == ["ORD-1"]

    def test_parallel_sweep_and_callback_settle_once(self, store, enrollments):
        clock = FakeClock(NOW + timedelta(minutes=14, seconds=59))
        reconciler = OrderReconciler(store, enrollments, clock=clock)
        sweeper = OrderReconciler(store, enrollments, clock=FakeClock(NOW + timedelta(minutes=20)))
        barrier = threading.Barrier(2)
        results = {}

        def pay():
            barrier.wait()
            try:
                results["callback"] = reconciler.reconcile(callback()).outcome
            except OrderStateConflict:
                results["callback"] = "conflict"

        def sweep():
            barrier.wait()
            results["sweep"] = sweeper.expire_stale().processed_count

        threads = [threading.Thread(target=pay), threading.Thread(target=sweep)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        status = store.rows["ORD-1"]["status"]
        if status == OrderStatus.PAID:
            assert results == {"callback": Outcome.PAID, "sweep": 0}
            assert enrollments.granted == ["ORD-1"]
        else:
            assert status == OrderStatus.EXPIRED
            assert results == {"callback": "conflict", "sweep": 1}
            assert enrollments.granted == []


class TestRefunds:
    """Test cases for refund reservations"""

    @pytest.fixture
    def paid(self, reconciler):
        reconciler.reconcile(callback())
        return reconciler

    def test_partial_refund_keeps_order_paid(self, paid, store, enrollments):
        reservation = paid.reserve_refund("ORD-1", 40000)

        assert store.rows["ORD-1"]["refund_amount"] == 40000
        assert not reservation.is_full
        assert paid.complete_refund(reservation) is True
        assert store.rows["ORD-1"]["status"] == OrderStatus.PAID
        assert store.rows["ORD-1"]["refunded_at"] is not None
        assert enrollments.revoked == []

    def test_full_refund_revokes_access_once(self, paid, store, enrollments):
        first = paid.reserve_refund("ORD-1", 40000)
        paid.complete_refund(first)
        rest = paid.reserve_refund("ORD-1", None)

        assert rest.amount == 60000
        assert rest.is_full
        assert paid.complete_refund(rest) is True
        assert store.rows["ORD-1"]["status"] == OrderStatus.REFUNDED
        assert paid.complete_refund(rest) is False
        assert enrollments.revoked == ["ORD-1"]

    def test_refund_cannot_exceed_paid_amount(self, paid):
        paid.reserve_refund("ORD-1", 90000)
        with pytest.raises(PaymentRequestError):
            paid.reserve_refund("ORD-1", 20000)

    def test_refund_requires_paid_order(self, reconciler):
        with pytest.raises(PaymentRequestError):
            reconciler.reserve_refund("ORD-1", 1000)

    def test_non_positive_refund(self, paid):
        with pytest.raises(PaymentRequestError):
            paid.reserve_refund("ORD-1", 0)

    def test_concurrent_reservation_is_rejected(self, paid, store):
        store.before_transition = lambda: store.rows["ORD-1"].update(refund_amount=50000)
        with pytest.raises(PaymentRequestError) as exc_info:
            paid.reserve_refund("ORD-1", 10000)
        assert exc_info.value.status_code == 409
        assert store.rows["ORD-1"]["refund_amount"] == 50000

    def test_release_restores_previous_total(self, paid, store):
        reservation = paid.reserve_refund("ORD-1", 30000)
        assert paid.release_refund(reservation) is True
        assert store.rows["ORD-1"]["refund_amount"] == 0
