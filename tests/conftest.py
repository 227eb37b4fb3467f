import itertools

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from main import app
from core.config import settings
from core.db import Base, get_db
from models import Course, Order, OrderStatus, User
from security import jwt as jwt_utils
from services import email as email_service
from services.payments.canonical import momo_keys
from services.payments.signing import MOMO_SCHEME, VNPAY_SCHEME

_order_codes = itertools.count(1)


@pytest.fixture()
def db():
    """Fresh in-memory database shared by the test and the app."""
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    TestingSessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
    Base.metadata.create_all(bind=engine)

    session = TestingSessionLocal()

    def _get_db():
        try:
            yield session
        finally:
            pass

    app.dependency_overrides[get_db] = _get_db
    try:
        yield session
    finally:
        session.close()
        app.dependency_overrides.clear()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture(autouse=True)
def mock_email_send(monkeypatch):
    sent = []

    def _fake_send(to_email: str, subject: str, body: str) -> None:
        sent.append({"to": to_email, "subject": subject, "body": body})

    monkeypatch.setattr(email_service, "send_email", _fake_send)
    return sent


@pytest.fixture()
def client(db):
    with TestClient(app) as c:
        yield c


@pytest.fixture()
def student(db):
    user = User(email="student@example.com", full_name="Nguyen Van A", role="STUDENT")
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture()
def other_student(db):
    user = User(email="other@example.com", full_name="Tran Thi B", role="STUDENT")
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture()
def admin(db):
    user = User(email="admin@example.com", full_name="Admin", role="ADMIN")
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture()
def course(db):
    course = Course(title="Python co ban", price=100000)
    db.add(course)
    db.commit()
    db.refresh(course)
    return course


@pytest.fixture()
def make_order(db, student, course):
    """Factory for orders; defaults to a fresh PENDING VNPay order of 100,000 VND."""

    def _make(gateway="VNPAY", price=100000, status=OrderStatus.PENDING, user=None, created_at=None, **fields):
        order = Order(
            order_code=f"ORD-2026-{next(_order_codes):05d}",
            user_id=(user or student).id,
            course_id=course.id,
            gateway=gateway,
            status=status,
            final_price=price,
            **fields,
        )
        if created_at is not None:
            order.created_at = created_at
        db.add(order)
        db.commit()
        db.refresh(order)
        return order

    return _make


@pytest.fixture()
def auth_headers(student):
    return {"Authorization": f"Bearer {jwt_utils.create_access_token(str(student.id))}"}


@pytest.fixture()
def admin_headers(admin):
    return {"Authorization": f"Bearer {jwt_utils.create_access_token(str(admin.id))}"}


@pytest.fixture()
def vnpay_query():
    """Build a VNPay return/IPN query string signed with the test hash secret."""

    def _build(order, trans_no="14226112", response_code="00", amount=None, txn_ref=None, tamper=None):
        params = {
            "vnp_Amount": str((order.final_price if amount is None else amount) * 100),
            "vnp_BankCode": "NCB",
            "vnp_CardType": "ATM",
            "vnp_OrderInfo": "Thanh toan khoa hoc Python co ban",
            "vnp_PayDate": "20261019103000",
            "vnp_ResponseCode": response_code,
            "vnp_TmnCode": settings.VNPAY_TMN_CODE,
            "vnp_TransactionNo": trans_no,
            "vnp_TransactionStatus": response_code,
            "vnp_TxnRef": txn_ref or f"{order.order_code}-VNPAY-1792380000000",
        }
        params["vnp_SecureHash"] = VNPAY_SCHEME.sign(params, None, settings.VNPAY_HASH_SECRET)
        if tamper:
            params.update(tamper)
        return params

    return _build


@pytest.fixture()
def momo_payload():
    """Build a MoMo IPN body signed with the test secret key."""

    def _build(order, trans_id=4088878653, result_code=0, amount=None, request_id=None, tamper=None):
        payload = {
            "partnerCode": settings.MOMO_PARTNER_CODE,
            "orderId": order.order_code,
            "requestId": request_id or f"{order.order_code}-MOMO-1792380000000",
            "amount": order.final_price if amount is None else amount,
            "orderInfo": "Thanh toan khoa hoc Python co ban",
            "orderType": "momo_wallet",
            "transId": trans_id,
            "resultCode": result_code,
            "message": "Thành công." if result_code == 0 else "Giao dịch bị từ chối bởi người dùng.",
            "payType": "qr",
            "responseTime": 1792380000000,
            "extraData": "",
        }
        signed = {key: str(value) for key, value in payload.items()}
        signed["accessKey"] = settings.MOMO_ACCESS_KEY
        payload["signature"] = MOMO_SCHEME.sign(signed, momo_keys("webhook"), settings.MOMO_SECRET_KEY)
        if tamper:
            payload.update(tamper)
        return payload

    return _build
