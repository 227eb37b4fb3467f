from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class OrderOut(BaseModel):
    id: int
    order_code: str
    gateway: str
    status: str
    final_price: int
    paid_amount: Optional[int] = None
    transaction_id: Optional[str] = None
    paid_at: Optional[datetime] = None
    refund_amount: int = 0
    refunded_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    class Config:
        from_attributes = True
