import json
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from core.config import settings
from core.db import get_db
from models.user import User
from schemas.payment import (
    ExpirationStats,
    MoMoCreateResponse,
    PaymentCreateRequest,
    RefundOut,
    RefundRequest,
    TransactionDetail,
    TransactionFilters,
    TransactionPage,
    VNPayCreateResponse,
)
from security.deps import get_current_user, require_admin
from services.payments.service import PaymentService, ReturnResult

router = APIRouter(prefix="/payments", tags=["payments"])


def get_payment_service(db: Session = Depends(get_db)) -> PaymentService:
    return PaymentService(db)


def client_ip(request: Request) -> Optional[str]:
    if settings.TRUST_PROXY_HEADERS:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def _redirect(result: ReturnResult) -> RedirectResponse:
    base = settings.PAYMENT_SUCCESS_URL if result.success else settings.PAYMENT_FAILURE_URL
    query = urlencode({"orderCode": result.order_code}) if result.order_code else ""
    return RedirectResponse(url=f"{base}?{query}" if query else base, status_code=302)


@router.post("/vnpay/create", response_model=VNPayCreateResponse)
def create_vnpay_payment(
    data: PaymentCreateRequest,
    request: Request,
    user: User = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    return service.create_vnpay_payment(user, data.order_id, client_ip(request))


@router.post("/momo/create", response_model=MoMoCreateResponse)
def create_momo_payment(
    data: PaymentCreateRequest,
    request: Request,
    user: User = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    return service.create_momo_payment(user, data.order_id, client_ip(request))


@router.get("/vnpay/return")
def vnpay_return(request: Request, service: PaymentService = Depends(get_payment_service)):
    return _redirect(service.handle_vnpay_return(dict(request.query_params), client_ip(request)))


@router.get("/momo/return")
def momo_return(request: Request, service: PaymentService = Depends(get_payment_service)):
    return _redirect(service.handle_momo_return(dict(request.query_params), client_ip(request)))


@router.get("/vnpay/ipn")
def vnpay_ipn(request: Request, service: PaymentService = Depends(get_payment_service)):
    return service.handle_vnpay_ipn(dict(request.query_params), client_ip(request))


@router.post("/momo/ipn")
async def momo_ipn(request: Request, service: PaymentService = Depends(get_payment_service)):
    # Any body, valid JSON or not, is answered with a MoMo acknowledgment
    raw = await request.body()
    try:
        payload = json.loads(raw)
    except ValueError:
        payload = None
    return service.handle_momo_ipn(payload, client_ip(request))


@router.post("/orders/{order_id}/refund", response_model=RefundOut)
def refund_order(
    order_id: int,
    data: RefundRequest,
    admin: User = Depends(require_admin),
    service: PaymentService = Depends(get_payment_service),
):
    return service.refund_order(order_id, admin, data.amount, data.reason)


@router.get("/transactions", response_model=TransactionPage)
def list_transactions(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    filters: TransactionFilters = Depends(),
    user: User = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    return service.list_transactions(user, page=page, limit=limit, **filters.model_dump())


@router.get("/transactions/{transaction_id}", response_model=TransactionDetail)
def get_transaction(
    transaction_id: int,
    user: User = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    return service.get_transaction(user, transaction_id)


@router.get("/expiration-stats", response_model=ExpirationStats)
def expiration_stats(
    admin: User = Depends(require_admin),
    service: PaymentService = Depends(get_payment_service),
):
    return service.expiration_stats()
