"""
Value types shared by the gateway adapters, the webhook gate and the reconciler.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Protocol


VNPAY = "VNPAY"
MOMO = "MOMO"


@dataclass(frozen=True)
class PaymentRequest:
    provider: str
    order_id: str                 # merchant order reference (Order.order_code)
    amount: int                   # VND, already normalized
    order_info: str
    return_url: str
    notify_url: Optional[str]
    request_id: str               # vnp_TxnRef / MoMo requestId
    extra_data: str = ""
    signature: str = ""
    # exact parameters that were signed, plus the signature field
    params: Dict[str, Any] = field(default_factory=dict)
    pay_url: Optional[str] = None


@dataclass(frozen=True)
class PaymentCallback:
    provider: str
    order_id: str
    trans_id: Optional[str]       # gateway transaction number
    result_code: str
    amount: int
    message: str
    response_time: Optional[str]
    signature: str
    source_ip: Optional[str]
    request_id: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        if self.provider == VNPAY:
            return self.result_code == "00"
        return self.result_code == "0"


@dataclass(frozen=True)
class OrderSnapshot:
    """Read-only view of an order as the payment core sees it."""
    id: int
    order_id: str
    status: str
    amount: int
    transaction_id: Optional[str]
    created_at: datetime
    user_id: Optional[int] = None
    course_id: Optional[int] = None
    gateway: Optional[str] = None
    refund_amount: int = 0
    expires_at: Optional[datetime] = None

    def payment_deadline(self, expiration: timedelta) -> datetime:
        return self.expires_at or self.created_at + expiration


class OrderStore(Protocol):
    def find_by_id(self, order_id: str) -> Optional[OrderSnapshot]:
        ...

    def try_transition(self, order_id: str, from_state: str, to_state: str,
                       metadata: Optional[Dict[str, Any]] = None,
                       guard: Optional[Dict[str, Any]] = None,
                       attempt_id: Optional[str] = None) -> bool:
        """Atomically move ``order_id`` from ``from_state`` to ``to_state``.

        ``guard`` adds column equality conditions to the update. Returns
        False when the order no longer matches; nothing is written then.
        ``attempt_id`` names the payment attempt that caused the move, so it
        is not closed along with the other open attempts.
        """
        ...

    def find_stale_pending(self, now: datetime, expiration: timedelta, limit: int) -> list[OrderSnapshot]:
        """PENDING orders whose payment deadline is at or before ``now``."""
        ...


class EnrollmentService(Protocol):
    def grant_access(self, order_id: str) -> Any:
        ...

    def revoke_access(self, order_id: str) -> Any:
        ...


class Clock(Protocol):
    def now(self) -> datetime:
        ...


def generate_txn_ref(order_code: str, gateway: str, now: datetime) -> str:
    # naive datetimes here are UTC
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    millis = int(now.timestamp() * 1000)
    return f"{order_code}-{gateway}-{millis}"


def parse_txn_ref(txn_ref: Optional[str]) -> Dict[str, Optional[str]]:
    """Split ``{order_code}-{gateway}-{millis}``; order codes may contain dashes."""
    if not txn_ref:
        return {"order_code": None, "gateway": None, "timestamp": None}
    parts = txn_ref.rsplit("-", 2)
    if len(parts) < 3 or parts[1] not in (VNPAY, MOMO) or not parts[2].isdigit():
        return {"order_code": txn_ref, "gateway": None, "timestamp": None}
    return {"order_code": parts[0], "gateway": parts[1], "timestamp": parts[2]}
