import logging
from datetime import timedelta

from celery import current_app

from core.config import settings
from core.db import db_session
from services.payments.reconciler import OrderReconciler
from services.payments.store import SqlEnrollmentService, SqlOrderStore

logger = logging.getLogger(__name__)


@current_app.task(bind=True, max_retries=3)
def expire_pending_orders(self, limit: int = 500):
    """
    Move PENDING orders past their payment window to EXPIRED.
    Runs on the beat schedule; orders a callback settles first are skipped.
    """
    try:
        with db_session() as db:
            reconciler = OrderReconciler(
                SqlOrderStore(db),
                SqlEnrollmentService(db),
                expiration=timedelta(minutes=settings.PAYMENT_EXPIRATION_MINUTES),
            )
            result = reconciler.expire_stale(limit=limit)
    except Exception as exc:
        logger.warning("Expiration sweep failed (attempt %s): %s", self.request.retries + 1, exc)
        raise self.retry(exc=exc, countdown=min(2 ** self.request.retries * 10, 300))

    return {
        "processed_count": result.processed_count,
        "expired": result.expired,
        "skipped": result.skipped,
    }
