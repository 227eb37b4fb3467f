from datetime import timedelta

import pytest

from core.db import utcnow
from models import Enrollment, OrderStatus, PaymentTransaction, TransactionStatus
from services.payments.service import PaymentService

VNPAY_IP = "113.160.92.202"


class FakeClock:
    def __init__(self, now):
        self.current = now

    def now(self):
        return self.current

    def advance(self, **kwargs):
        self.current += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock(utcnow())


@pytest.fixture
def service(db, clock):
    return PaymentService(db, clock=clock)


class TestPaymentWindow:
    """Test cases for the window a payment link keeps an order payable"""

    def test_payment_inside_late_link_window_is_accepted(self, service, db, clock, make_order, student,
                                                          vnpay_query):
        order = make_order(created_at=clock.now() - timedelta(minutes=10))
        link = service.create_vnpay_payment(student, order.id, VNPAY_IP)

        # Past created_at + 15 minutes, still inside the link's vnp_ExpireDate
        clock.advance(minutes=10)
        assert service.reconciler.expire_stale().expired == []
        ack = service.handle_vnpay_ipn(vnpay_query(order, txn_ref=link["txn_ref"]), VNPAY_IP)

        assert ack == {"RspCode": "00", "Message": "Confirm Success"}
        db.refresh(order)
        assert order.status == OrderStatus.PAID
        assert db.query(Enrollment).count() == 1

    def test_payment_after_link_expiry_is_refused(self, service, db, clock, make_order, student, vnpay_query):
        order = make_order()
        link = service.create_vnpay_payment(student, order.id, VNPAY_IP)

        clock.advance(minutes=16)
        ack = service.handle_vnpay_ipn(vnpay_query(order, txn_ref=link["txn_ref"]), VNPAY_IP)

        assert ack["RspCode"] == "02"
        db.refresh(order)
        assert order.status == OrderStatus.EXPIRED
        assert db.query(Enrollment).count() == 0

    def test_sweep_waits_for_the_link(self, service, db, clock, make_order, student):
        order = make_order(created_at=clock.now() - timedelta(minutes=14))
        service.create_vnpay_payment(student, order.id, VNPAY_IP)

        clock.advance(minutes=5)
        assert service.reconciler.expire_stale().expired == []
        clock.advance(minutes=11)
        assert service.reconciler.expire_stale().expired == [order.order_code]

    def test_expired_saved_link_is_not_reused(self, service, db, clock, make_order, student):
        order = make_order()
        first = service.create_vnpay_payment(student, order.id, VNPAY_IP)
        # A later deadline keeps the order open past the saved link's own expiry
        order.expires_at = clock.now() + timedelta(hours=1)
        db.commit()

        clock.advance(minutes=20)
        second = service.create_vnpay_payment(student, order.id, VNPAY_IP)

        assert second["txn_ref"] != first["txn_ref"]
        assert second["message"] == "New VNPay payment URL created"
        old = db.query(PaymentTransaction).filter_by(transaction_id=first["txn_ref"]).one()
        db.refresh(old)
        assert old.status == TransactionStatus.FAILED

    def test_winning_attempt_goes_straight_to_success(self, service, db, make_order, student, vnpay_query):
        order = make_order()
        link = service.create_vnpay_payment(student, order.id, VNPAY_IP)
        service.handle_vnpay_ipn(vnpay_query(order, txn_ref=link["txn_ref"]), VNPAY_IP)

        tx = db.query(PaymentTransaction).filter_by(transaction_id=link["txn_ref"]).one()
        db.refresh(tx)
        assert tx.status == TransactionStatus.SUCCESS
        assert tx.error_message is None


class TestMalformedNotifications:
    def test_non_mapping_body_is_acknowledged(self, service):
        assert service.handle_momo_ipn(None, "203.0.113.5") == {"resultCode": 20, "message": "Bad format request"}
        assert service.handle_momo_ipn(["ORD-1"], "203.0.113.5")["resultCode"] == 20
