import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.db import utcnow
from core.errors import OrderNotFound
from models.course import Course
from models.enrollment import Enrollment
from models.order import Order, OrderStatus
from models.payment import PaymentTransaction, TransactionStatus
from services.payments.base import OrderSnapshot

logger = logging.getLogger(__name__)

ORDER_METADATA_COLUMNS = frozenset(
    {"transaction_id", "paid_amount", "paid_at", "refund_amount", "refunded_at", "expires_at", "notes"}
)


def snapshot(order: Order) -> OrderSnapshot:
    return OrderSnapshot(
        id=order.id,
        order_id=order.order_code,
        status=order.status,
        amount=order.final_price,
        transaction_id=order.transaction_id,
        created_at=order.created_at,
        user_id=order.user_id,
        course_id=order.course_id,
        gateway=order.gateway,
        refund_amount=order.refund_amount or 0,
        expires_at=order.expires_at,
    )


class SqlOrderStore:
    """OrderStore backed by the ``orders`` table; transitions are single conditional UPDATEs."""

    def __init__(self, db: Session):
        self.db = db

    def load(self, order_id: str) -> Optional[Order]:
        stmt = (
            select(Order)
            .where(Order.order_code == order_id)
            .execution_options(populate_existing=True)
        )
        return self.db.execute(stmt).scalars().first()

    def find_by_id(self, order_id: str) -> Optional[OrderSnapshot]:
        order = self.load(order_id)
        return snapshot(order) if order else None

    def try_transition(self, order_id: str, from_state: str, to_state: str,
                       metadata: Optional[Dict[str, Any]] = None,
                       guard: Optional[Dict[str, Any]] = None,
                       attempt_id: Optional[str] = None) -> bool:
        metadata = dict(metadata or {})
        unknown = set(metadata) - ORDER_METADATA_COLUMNS
        if unknown:
            raise ValueError(f"Unsupported order metadata: {sorted(unknown)}")

        stmt = update(Order).where(Order.order_code == order_id, Order.status == from_state)
        for column, expected in (guard or {}).items():
            stmt = stmt.where(getattr(Order, column) == expected)
        stmt = stmt.values(status=to_state, updated_at=utcnow(), **metadata)

        result = self.db.execute(stmt.execution_options(synchronize_session=False))
        if result.rowcount != 1:
            return False

        if to_state != from_state:
            self._settle_attempts(order_id, to_state, attempt_id)
        self.db.commit()
        return True

    def _settle_attempts(self, order_id: str, to_state: str, attempt_id: Optional[str] = None) -> None:
        """Close dangling PENDING attempts once the order can no longer be paid."""
        if to_state == OrderStatus.EXPIRED:
            message = "Payment link expired before the gateway confirmed"
        elif to_state == OrderStatus.PAID:
            message = "Payment attempt superseded by a successful payment"
        else:
            return
        order_pk = select(Order.id).where(Order.order_code == order_id).scalar_subquery()
        stmt = update(PaymentTransaction).where(
            PaymentTransaction.order_id == order_pk,
            PaymentTransaction.status == TransactionStatus.PENDING,
        )
        if attempt_id:
            stmt = stmt.where(PaymentTransaction.transaction_id != attempt_id)
        self.db.execute(
            stmt
            .values(status=TransactionStatus.FAILED, error_message=message, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )

    @staticmethod
    def past_deadline(now: datetime, expiration: timedelta):
        """SQL form of ``OrderSnapshot.payment_deadline(expiration) <= now``."""
        return or_(
            and_(Order.expires_at.is_not(None), Order.expires_at <= now),
            and_(Order.expires_at.is_(None), Order.created_at <= now - expiration),
        )

    def find_stale_pending(self, now: datetime, expiration: timedelta, limit: int) -> List[OrderSnapshot]:
        stmt = (
            select(Order)
            .where(Order.status == OrderStatus.PENDING, self.past_deadline(now, expiration))
            .order_by(Order.created_at.asc())
            .limit(limit)
        )
        return [snapshot(o) for o in self.db.execute(stmt).scalars().all()]

    def count_stale_pending(self, now: datetime, expiration: timedelta) -> int:
        return self.db.scalar(
            select(func.count(Order.id)).where(Order.status == OrderStatus.PENDING, self.past_deadline(now, expiration))
        ) or 0


class SqlEnrollmentService:
    """Grants course access for paid orders; the unique ``order_id`` column caps it at one grant."""

    def __init__(self, db: Session):
        self.db = db

    def _order(self, order_id: str) -> Order:
        order = self.db.execute(select(Order).where(Order.order_code == order_id)).scalars().first()
        if not order:
            raise OrderNotFound(order_id)
        return order

    def _existing(self, order: Order) -> Optional[Enrollment]:
        return self.db.execute(
            select(Enrollment).where(
                (Enrollment.order_id == order.id)
                | ((Enrollment.user_id == order.user_id) & (Enrollment.course_id == order.course_id))
            )
        ).scalars().first()

    def grant_access(self, order_id: str) -> Enrollment:
        order = self._order(order_id)
        existing = self._existing(order)
        if existing:
            logger.info("User %s already enrolled in course %s", order.user_id, order.course_id)
            return existing

        enrollment = Enrollment(user_id=order.user_id, course_id=order.course_id, order_id=order.id)
        self.db.add(enrollment)
        try:
            self.db.flush()
        except IntegrityError:
            self.db.rollback()
            return self._existing(order)
        self.db.execute(
            update(Course)
            .where(Course.id == order.course_id)
            .values(enrolled_count=Course.enrolled_count + 1)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        logger.info("Enrolled user %s in course %s from order %s", order.user_id, order.course_id, order_id)
        return enrollment

    def revoke_access(self, order_id: str) -> bool:
        order = self._order(order_id)
        result = self.db.execute(
            delete(Enrollment).where(Enrollment.order_id == order.id).execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.warning("No enrollment to drop for order %s", order_id)
            self.db.commit()
            return False
        self.db.execute(
            update(Course)
            .where(Course.id == order.course_id, Course.enrolled_count > 0)
            .values(enrolled_count=Course.enrolled_count - 1)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        logger.info("Enrollment for order %s removed after refund", order_id)
        return True
