"""
Payment orchestration for the HTTP layer.

Builds signed gateway requests for payers, runs provider callbacks through the
webhook gate and the reconciler, and keeps one ``PaymentTransaction`` row per
attempt or refund for audit.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, Mapping, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from core.config import MoMoConfig, VNPayConfig, settings
from core.db import utcnow
from core.errors import (
    MalformedNotification,
    OrderNotFound,
    PaymentError,
    PaymentRequestError,
    ProviderError,
    ProviderTimeout,
)
from models.order import Order, OrderStatus
from models.payment import PaymentTransaction, TransactionStatus
from models.user import User
from services import email as email_service
from services.payments.base import MOMO, VNPAY, Clock, PaymentCallback, generate_txn_ref
from services.payments.canonical import momo_keys, normalize_amount
from services.payments.momo import MoMoGateway, decode_extra_data
from services.payments.reconciler import OrderReconciler, Outcome, ReconcileResult, SystemClock
from services.payments.signing import MOMO_SCHEME, VNPAY_SCHEME
from services.payments.store import SqlEnrollmentService, SqlOrderStore
from services.payments.vnpay import VNPayGateway, parse_date, vnpay_params
from services.payments.webhook import WebhookAuthenticator, momo_ack, vnpay_ack

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100

GATEWAY_LABELS = {VNPAY: "VNPay", MOMO: "MoMo"}


@dataclass(frozen=True)
class ReturnResult:
    """What the payer-facing redirect needs to know; never carries internal detail."""
    success: bool
    order_code: Optional[str]
    message: str


class PaymentService:
    def __init__(
        self,
        db: Session,
        vnpay_config: Optional[VNPayConfig] = None,
        momo_config: Optional[MoMoConfig] = None,
        clock: Optional[Clock] = None,
        http=None,
        allow_unlisted: Optional[bool] = None,
    ):
        self.db = db
        self.clock = clock or SystemClock()
        self.store = SqlOrderStore(db)
        self.enrollments = SqlEnrollmentService(db)
        self.reconciler = OrderReconciler(
            self.store,
            self.enrollments,
            clock=self.clock,
            expiration=timedelta(minutes=settings.PAYMENT_EXPIRATION_MINUTES),
        )
        self.vnpay = VNPayGateway(vnpay_config or settings.vnpay_config())
        self.momo = MoMoGateway(momo_config or settings.momo_config(), http=http)

        if allow_unlisted is None:
            allow_unlisted = settings.WEBHOOK_ALLOW_UNLISTED_SOURCES
        self.vnpay_webhook = WebhookAuthenticator(
            VNPAY_SCHEME, None, self.vnpay.config.hash_secret, self.vnpay.config.ip_allowlist, allow_unlisted
        )
        self.momo_webhook = WebhookAuthenticator(
            MOMO_SCHEME, momo_keys("webhook"), self.momo.config.secret_key, self.momo.config.ip_allowlist,
            allow_unlisted,
        )

    # --- checkout ----------------------------------------------------------

    def _payable_order(self, user: User, order_pk: int, gateway: str) -> Order:
        order = self.db.get(Order, order_pk, populate_existing=True)
        if not order:
            raise PaymentRequestError("Order not found", status_code=404)
        if order.user_id != user.id:
            raise PaymentRequestError("You are not authorized to pay for this order", status_code=403)
        if order.gateway != gateway:
            raise PaymentRequestError(f"Order is not assigned to {GATEWAY_LABELS[gateway]}")
        if order.status == OrderStatus.PAID:
            raise PaymentRequestError("Order has already been paid")
        if order.status == OrderStatus.REFUNDED:
            raise PaymentRequestError("Order has already been refunded")
        if order.status != OrderStatus.PENDING:
            raise PaymentRequestError(f"Order cannot be paid in status {order.status}")
        if self.reconciler.expire_if_stale(order.order_code):
            raise PaymentRequestError("Payment window for this order has expired")
        if normalize_amount(order.final_price) <= 0:
            raise PaymentRequestError("Order amount must be greater than 0")
        return order

    @staticmethod
    def _order_info(order: Order) -> str:
        title = (order.course.title if order.course else "") or order.order_code
        return f"Thanh toan khoa hoc {title.strip()}"

    def _pending_attempt(self, order: Order, gateway: str) -> Optional[PaymentTransaction]:
        stmt = (
            select(PaymentTransaction)
            .where(
                PaymentTransaction.order_id == order.id,
                PaymentTransaction.gateway == gateway,
                PaymentTransaction.status == TransactionStatus.PENDING,
            )
            .order_by(PaymentTransaction.created_at.desc(), PaymentTransaction.id.desc())
            .execution_options(populate_existing=True)
        )
        return self.db.execute(stmt).scalars().first()

    def _extend_window(self, order: Order, deadline: datetime) -> None:
        """Move the order's payment deadline to the expiry of the link being handed out."""
        if not self.store.try_transition(order.order_code, OrderStatus.PENDING, OrderStatus.PENDING,
                                         {"expires_at": deadline}):
            raise PaymentRequestError("Order can no longer be paid", status_code=409)
        self.db.refresh(order)

    def _supersede_attempts(self, order: Order) -> None:
        self.db.execute(
            update(PaymentTransaction)
            .where(PaymentTransaction.order_id == order.id, PaymentTransaction.status == TransactionStatus.PENDING)
            .values(status=TransactionStatus.FAILED, error_message="Superseded by a newer payment attempt",
                    updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )

    def _record_attempt(
        self,
        order: Order,
        gateway: str,
        transaction_id: str,
        amount: int,
        response: Optional[Dict[str, Any]],
        client_ip: Optional[str],
        status: str = TransactionStatus.PENDING,
        error_message: Optional[str] = None,
    ) -> PaymentTransaction:
        transaction = PaymentTransaction(
            order_id=order.id,
            transaction_id=transaction_id,
            gateway=gateway,
            amount=amount,
            currency="VND",
            status=status,
            gateway_response=response,
            error_message=error_message,
            ip_address=client_ip,
        )
        self.db.add(transaction)
        self.db.commit()
        self.db.refresh(transaction)
        return transaction

    def create_vnpay_payment(self, user: User, order_pk: int, client_ip: Optional[str] = None) -> Dict[str, Any]:
        order = self._payable_order(user, order_pk, VNPAY)

        existing = self._pending_attempt(order, VNPAY)
        saved = (existing.gateway_response or {}) if existing else {}
        link_expires = parse_date(saved.get("vnp_ExpireDate"))
        if saved.get("vnp_SecureHash") and link_expires and link_expires > self.clock.now():
            logger.info("Reusing VNPay payment URL for order %s", order.order_code)
            return {
                "pay_url": self.vnpay.payment_url(saved),
                "txn_ref": existing.transaction_id,
                "message": "Payment URL already exists",
                "order": order,
                "transaction": existing,
            }

        now = self.clock.now()
        txn_ref = generate_txn_ref(order.order_code, VNPAY, now)
        request = self.vnpay.build_payment(
            order.order_code, order.final_price, self._order_info(order), txn_ref, client_ip, now
        )
        self._extend_window(order, parse_date(request.params["vnp_ExpireDate"]))
        self._supersede_attempts(order)
        # The signed params are kept so the same URL can be handed out again
        transaction = self._record_attempt(order, VNPAY, txn_ref, request.amount, request.params, client_ip)
        logger.info("New VNPay payment URL created for order %s (txn %s)", order.order_code, txn_ref)
        return {
            "pay_url": request.pay_url,
            "txn_ref": txn_ref,
            "message": "New VNPay payment URL created",
            "order": order,
            "transaction": transaction,
        }

    def create_momo_payment(self, user: User, order_pk: int, client_ip: Optional[str] = None) -> Dict[str, Any]:
        order = self._payable_order(user, order_pk, MOMO)

        existing = self._pending_attempt(order, MOMO)
        saved = (existing.gateway_response or {}) if existing else {}
        if saved.get("payUrl"):
            logger.info("Returning existing pending MoMo transaction for order %s", order.order_code)
            return {
                "pay_url": saved.get("payUrl"),
                "deeplink": saved.get("deeplink"),
                "qr_code_url": saved.get("qrCodeUrl"),
                "request_id": existing.transaction_id,
                "message": "Payment URL already exists",
                "order": order,
                "transaction": existing,
            }

        request_id = generate_txn_ref(order.order_code, MOMO, self.clock.now())
        request = self.momo.build_payment(
            order.order_code,
            order.final_price,
            self._order_info(order),
            request_id,
            extra={"orderId": order.id, "orderCode": order.order_code, "userId": user.id},
        )
        self._extend_window(order, self.clock.now() + self.reconciler.expiration)
        self._supersede_attempts(order)
        try:
            response = self.momo.create_payment(request)
        except (ProviderError, ProviderTimeout) as exc:
            self._record_attempt(
                order, MOMO, request_id, request.amount, getattr(exc, "response", None) or None, client_ip,
                status=TransactionStatus.FAILED, error_message=str(exc),
            )
            raise

        transaction = self._record_attempt(order, MOMO, request_id, request.amount, response, client_ip)
        logger.info("New MoMo payment created for order %s (request %s)", order.order_code, request_id)
        return {
            "pay_url": response.get("payUrl"),
            "deeplink": response.get("deeplink"),
            "qr_code_url": response.get("qrCodeUrl"),
            "request_id": request_id,
            "message": "New MoMo payment created",
            "order": order,
            "transaction": transaction,
        }

    # --- callbacks ---------------------------------------------------------

    def _record_outcome(self, result: ReconcileResult, callback: PaymentCallback) -> None:
        order = self.store.load(callback.order_id)
        status = TransactionStatus.SUCCESS if result.outcome == Outcome.PAID else TransactionStatus.FAILED
        response = {**callback.raw, "gatewayTransactionId": callback.trans_id}

        transaction = None
        if callback.request_id:
            transaction = self.db.execute(
                select(PaymentTransaction)
                .where(PaymentTransaction.transaction_id == callback.request_id)
                .execution_options(populate_existing=True)
            ).scalars().first()
        if transaction is None:
            logger.warning("No recorded attempt %s for order %s; recording the callback on its own",
                           callback.request_id, callback.order_id)
            transaction = PaymentTransaction(
                order_id=order.id,
                transaction_id=callback.request_id or f"{callback.order_id}-{callback.provider}-{callback.trans_id}",
                gateway=callback.provider,
                amount=callback.amount,
                currency="VND",
                ip_address=callback.source_ip,
            )
            self.db.add(transaction)

        transaction.status = status
        transaction.gateway_response = response
        transaction.error_message = None if status == TransactionStatus.SUCCESS else callback.message
        transaction.updated_at = utcnow()
        self.db.commit()

    def _notify(self, result: ReconcileResult, callback: PaymentCallback) -> None:
        order = self.store.load(callback.order_id)
        try:
            if result.outcome == Outcome.PAID:
                email_service.send_payment_success_email(order)
            else:
                email_service.send_payment_failed_email(order, callback.message)
        except Exception:
            logger.exception("Could not send payment email for order %s", callback.order_id)

    def _apply_callback(self, callback: PaymentCallback) -> ReconcileResult:
        result = self.reconciler.reconcile(callback)
        if result.applied:
            self._record_outcome(result, callback)
            self._notify(result, callback)
        return result

    def handle_vnpay_ipn(self, query: Mapping[str, Any], source_ip: Optional[str]) -> Dict[str, str]:
        """Server-to-server notification; always answered with a VNPay acknowledgment."""
        params = vnpay_params(query)
        try:
            self.vnpay_webhook.authenticate(source_ip, params, params.get("vnp_SecureHash"))
            self._apply_callback(self.vnpay.parse_callback(params, source_ip))
        except PaymentError as exc:
            return vnpay_ack(exc)
        except Exception as exc:
            logger.exception("VNPay IPN for %s failed", params.get("vnp_TxnRef"))
            self.db.rollback()
            return vnpay_ack(exc)
        return vnpay_ack()

    def handle_momo_ipn(self, payload: Any, source_ip: Optional[str]) -> Dict[str, Any]:
        """Server-to-server notification; always answered with a MoMo acknowledgment."""
        if not isinstance(payload, Mapping):
            logger.warning("MoMo IPN from %s is not a JSON object", source_ip or "-")
            return momo_ack(MalformedNotification("MoMo notification body must be a JSON object"))
        try:
            self.momo_webhook.authenticate(
                source_ip, self.momo.signature_payload(payload), self.momo.signature_of(payload)
            )
            callback = self.momo.parse_callback(payload, source_ip)
            extra = decode_extra_data(payload.get("extraData"))
            if extra and extra.get("orderCode") not in (None, callback.order_id):
                logger.warning("MoMo extraData names order %s but orderId is %s",
                               extra.get("orderCode"), callback.order_id)
            self._apply_callback(callback)
        except PaymentError as exc:
            return momo_ack(exc)
        except Exception as exc:
            logger.exception("MoMo IPN for %s failed", payload.get("orderId"))
            self.db.rollback()
            return momo_ack(exc)
        return momo_ack()

    def _payer_result(self, callback: PaymentCallback) -> ReturnResult:
        try:
            result = self._apply_callback(callback)
        except PaymentError as exc:
            logger.info("%s return for order %s not settled: %s", callback.provider, callback.order_id, exc)
            return ReturnResult(False, callback.order_id, "Payment could not be confirmed")
        if result.order.status == OrderStatus.PAID:
            return ReturnResult(True, callback.order_id, "Payment successful")
        return ReturnResult(False, callback.order_id, callback.message or "Payment failed")

    def handle_vnpay_return(self, query: Mapping[str, Any], source_ip: Optional[str] = None) -> ReturnResult:
        """Browser redirect from VNPay. Signed like the IPN but arrives from the payer, so no source check."""
        params = vnpay_params(query)
        callback = self.vnpay.parse_callback(params, source_ip)
        if not self.vnpay.verify(params):
            logger.warning("VNPay return for %s has an invalid signature", params.get("vnp_TxnRef"))
            return ReturnResult(False, callback.order_id or None, "Invalid signature")
        return self._payer_result(callback)

    def handle_momo_return(self, payload: Mapping[str, Any], source_ip: Optional[str] = None) -> ReturnResult:
        if not self.momo.verify(payload, "callback"):
            logger.warning("MoMo return for %s has an invalid signature", payload.get("orderId"))
            return ReturnResult(False, payload.get("orderId"), "Invalid signature")
        try:
            callback = self.momo.parse_callback(payload, source_ip)
        except PaymentError:
            return ReturnResult(False, payload.get("orderId"), "Invalid signature")
        return self._payer_result(callback)

    # --- refunds -----------------------------------------------------------

    def refund_order(
        self,
        order_pk: int,
        admin: User,
        amount: Optional[Any] = None,
        reason: Optional[str] = None,
    ) -> Dict[str, Any]:
        order = self.db.get(Order, order_pk, populate_existing=True)
        if not order:
            raise PaymentRequestError("Order not found", status_code=404)
        if order.status != OrderStatus.PAID:
            raise PaymentRequestError("Only paid orders can be refunded")
        if not order.transaction_id:
            raise PaymentRequestError("No successful transaction found for this order to refund")

        try:
            requested = None if amount is None else normalize_amount(amount)
        except ValueError:
            raise PaymentRequestError("Refund amount must be a number")
        try:
            reservation = self.reconciler.reserve_refund(order.order_code, requested)
        except OrderNotFound:
            raise PaymentRequestError("Order not found", status_code=404)

        description = reason or f"Refund for order {order.order_code} by admin {admin.id}"
        refund_ref = "refund-" + generate_txn_ref(order.order_code, order.gateway, self.clock.now())
        audit = {"adminId": admin.id, "adminEmail": admin.email, "reason": description}

        if order.gateway == MOMO:
            body = self.momo.build_refund(refund_ref, refund_ref, reservation.amount, order.transaction_id, description)
            try:
                response = self.momo.refund(body)
            except ProviderTimeout:
                # MoMo may still have refunded; keep the reservation until someone checks
                self._record_attempt(
                    order, MOMO, refund_ref, reservation.amount, {**audit, "requestId": refund_ref}, None,
                    error_message="Refund outcome unknown after timeout; verify in the MoMo portal",
                )
                logger.error("MoMo refund for order %s timed out; reservation of %s kept for manual review",
                             order.order_code, reservation.amount)
                raise
            except ProviderError as exc:
                self.reconciler.release_refund(reservation)
                self._record_attempt(
                    order, MOMO, refund_ref, reservation.amount, {**exc.response, **audit}, None,
                    status=TransactionStatus.FAILED, error_message=str(exc),
                )
                logger.error("MoMo refund failed for order %s: %s", order.order_code, exc)
                raise
            response = {**response, **audit, "gatewayTransactionId": str(response.get("transId") or order.transaction_id)}
            manual = False
        else:
            response = {**audit, "refundDate": self.clock.now().isoformat(), "requiresManualProcessing": True}
            manual = True

        transaction = self._record_attempt(
            order, order.gateway, refund_ref, reservation.amount, response, None, status=TransactionStatus.REFUNDED
        )
        if not self.reconciler.complete_refund(reservation):
            logger.error("Refund %s for order %s recorded but the order changed underneath it",
                         refund_ref, order.order_code)

        order = self.db.get(Order, order_pk, populate_existing=True)
        logger.info("%s refund for order %s: %s VND (%s)", GATEWAY_LABELS.get(order.gateway, order.gateway),
                    order.order_code, reservation.amount, "full" if reservation.is_full else "partial")
        try:
            email_service.send_refund_email(order, reservation.amount, reservation.is_full)
        except Exception:
            logger.exception("Could not send refund email for order %s", order.order_code)

        if manual:
            message = "VNPay refund recorded. Please process refund manually in VNPay portal."
        elif reservation.is_full:
            message = "MoMo refund completed successfully"
        else:
            message = "MoMo partial refund completed successfully"
        return {
            "order": order,
            "refund_transaction": transaction,
            "amount": reservation.amount,
            "full_refund": reservation.is_full,
            "requires_manual_action": manual,
            "message": message,
        }

    # --- reporting ---------------------------------------------------------

    def list_transactions(
        self,
        user: User,
        page: int = 1,
        limit: int = 20,
        gateway: Optional[str] = None,
        status: Optional[str] = None,
        transaction_id: Optional[str] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        user_id: Optional[int] = None,
    ) -> Dict[str, Any]:
        page = max(page, 1)
        limit = min(max(limit, 1), MAX_PAGE_SIZE)

        stmt = select(PaymentTransaction).join(Order, PaymentTransaction.order_id == Order.id)
        if gateway:
            stmt = stmt.where(PaymentTransaction.gateway == gateway.upper())
        if status:
            stmt = stmt.where(PaymentTransaction.status == status.upper())
        if transaction_id:
            stmt = stmt.where(PaymentTransaction.transaction_id.ilike(f"%{transaction_id}%"))
        if start_date:
            stmt = stmt.where(PaymentTransaction.created_at >= datetime.combine(start_date, time.min))
        if end_date:
            stmt = stmt.where(PaymentTransaction.created_at < datetime.combine(end_date + timedelta(days=1), time.min))
        # Only admins see other people's transactions
        if not user.is_admin:
            stmt = stmt.where(Order.user_id == user.id)
        elif user_id:
            stmt = stmt.where(Order.user_id == user_id)

        total = self.db.scalar(select(func.count()).select_from(stmt.subquery()))
        items = self.db.execute(
            stmt.order_by(PaymentTransaction.created_at.desc(), PaymentTransaction.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        ).scalars().all()
        return {
            "data": items,
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "total_pages": (total + limit - 1) // limit,
            },
        }

    def get_transaction(self, user: User, transaction_pk: int) -> PaymentTransaction:
        transaction = self.db.get(PaymentTransaction, transaction_pk)
        if not transaction:
            raise PaymentRequestError("Transaction not found", status_code=404)
        if not user.is_admin and transaction.order.user_id != user.id:
            raise PaymentRequestError("You do not have permission to view this transaction", status_code=403)
        return transaction

    def expiration_stats(self) -> Dict[str, Any]:
        """Attempt counts per gateway and status over the last day, plus orders waiting for the sweep."""
        now = self.clock.now()
        rows = self.db.execute(
            select(PaymentTransaction.gateway, PaymentTransaction.status, func.count(PaymentTransaction.id))
            .where(PaymentTransaction.created_at >= now - timedelta(hours=24))
            .group_by(PaymentTransaction.gateway, PaymentTransaction.status)
        ).all()
        last_24_hours: Dict[str, Dict[str, int]] = {}
        for gateway, status, count in rows:
            last_24_hours.setdefault(gateway, {})[status] = count

        pending = self.db.scalar(select(func.count(Order.id)).where(Order.status == OrderStatus.PENDING)) or 0
        return {
            "last_24_hours": last_24_hours,
            "pending_orders": pending,
            "awaiting_expiry": self.store.count_stale_pending(now, self.reconciler.expiration),
            "expiration_minutes": int(self.reconciler.expiration.total_seconds() // 60),
            "timestamp": now,
        }
