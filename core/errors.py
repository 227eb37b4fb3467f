"""Error taxonomy for the payment core.

Verification and reconciliation failures are raised as these types and are
translated to provider acknowledgments by the IPN handlers; only
``PaymentRequestError`` is meant to reach the payer-facing API as-is.
"""
from typing import Optional


class PaymentError(Exception):
    """Base class for payment failures."""


class ConfigurationError(PaymentError):
    """A gateway secret or URL is missing. Fatal at startup."""


class InvalidSignature(PaymentError):
    pass


class MalformedNotification(PaymentError):
    """A provider notification body could not be read as a JSON object."""


class UnauthorizedSource(PaymentError):
    def __init__(self, source_ip: Optional[str]):
        super().__init__(f"Unauthorized webhook source: {source_ip or 'unknown'}")
        self.source_ip = source_ip


class OrderNotFound(PaymentError):
    def __init__(self, order_id: str):
        super().__init__(f"Order not found: {order_id}")
        self.order_id = order_id


class OrderStateConflict(PaymentError):
    """A terminal order received an event from a different transaction."""

    def __init__(self, order_id: str, state: str, stored_trans_id: Optional[str], incoming_trans_id: Optional[str]):
        super().__init__(
            f"Order {order_id} is already {state} via transaction {stored_trans_id!r}; "
            f"refusing transaction {incoming_trans_id!r}"
        )
        self.order_id = order_id
        self.state = state
        self.stored_trans_id = stored_trans_id
        self.incoming_trans_id = incoming_trans_id


class AmountMismatch(PaymentError):
    def __init__(self, order_id: str, expected: int, received: int):
        super().__init__(f"Payment amount mismatch for {order_id}. Expected {expected}, received {received}")
        self.order_id = order_id
        self.expected = expected
        self.received = received


class ProviderTimeout(PaymentError):
    """An outbound gateway call did not answer in time. Callers decide whether to retry."""


class ProviderError(PaymentError):
    def __init__(self, message: str, result_code: Optional[int] = None, response: Optional[dict] = None):
        super().__init__(message)
        self.result_code = result_code
        self.response = response or {}


class PaymentRequestError(PaymentError):
    """Rejected payer/admin request; carries the HTTP status to answer with."""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
