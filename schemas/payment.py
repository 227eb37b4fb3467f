from datetime import date, datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from schemas.order import OrderOut


class PaymentCreateRequest(BaseModel):
    order_id: int


class TransactionOut(BaseModel):
    id: int
    order_id: int
    transaction_id: str
    gateway: str
    amount: int
    currency: str
    status: str
    error_message: Optional[str] = None
    ip_address: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class OrderSummary(BaseModel):
    id: int
    order_code: str
    user_id: int
    course_id: int
    status: str
    final_price: int

    class Config:
        from_attributes = True


class TransactionDetail(TransactionOut):
    gateway_response: Optional[Dict[str, Any]] = None
    order: OrderSummary


class VNPayCreateResponse(BaseModel):
    pay_url: str
    txn_ref: str
    message: str
    order: OrderOut


class MoMoCreateResponse(BaseModel):
    pay_url: Optional[str] = None
    deeplink: Optional[str] = None
    qr_code_url: Optional[str] = None
    request_id: str
    message: str
    order: OrderOut


class RefundRequest(BaseModel):
    # Omitted means the whole remaining paid amount
    amount: Optional[int] = Field(default=None, gt=0)
    reason: Optional[str] = Field(default=None, max_length=500)


class RefundOut(BaseModel):
    order: OrderOut
    refund_transaction: TransactionOut
    amount: int
    full_refund: bool
    requires_manual_action: bool
    message: str


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int


class TransactionPage(BaseModel):
    data: List[TransactionOut]
    pagination: Pagination


class TransactionFilters(BaseModel):
    gateway: Optional[str] = None
    status: Optional[str] = None
    transaction_id: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    user_id: Optional[int] = None


class ExpirationStats(BaseModel):
    # gateway -> transaction status -> count
    last_24_hours: Dict[str, Dict[str, int]]
    pending_orders: int
    awaiting_expiry: int
    expiration_minutes: int
    timestamp: datetime
