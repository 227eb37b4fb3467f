"""Provider-specific canonical strings that get signed.

VNPay signs every ``vnp_*`` field sorted by encoded key; MoMo signs a fixed,
documented list of fields per call type. Both produce ``key=value`` pairs
joined with ``&``.
"""
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Mapping, Optional, Sequence
from urllib.parse import quote_plus

VNPAY_HASH_FIELDS = ("vnp_SecureHash", "vnp_SecureHashType")

# MoMo AIO v2 field orders, as published in the gateway documentation.
# Add a new version key instead of editing an existing tuple.
MOMO_SIGNATURE_KEYS = {
    "v2": {
        "create": (
            "accessKey", "amount", "extraData", "ipnUrl", "orderId", "orderInfo",
            "partnerCode", "redirectUrl", "requestId", "requestType",
        ),
        "callback": (
            "accessKey", "amount", "extraData", "message", "orderId", "orderInfo",
            "orderType", "partnerCode", "payType", "requestId", "responseTime",
            "resultCode", "transId",
        ),
        "webhook": (
            "accessKey", "amount", "extraData", "message", "orderId", "orderInfo",
            "orderType", "partnerCode", "payType", "requestId", "responseTime",
            "resultCode", "transId",
        ),
        "refund": (
            "accessKey", "amount", "description", "orderId", "partnerCode",
            "requestId", "transId",
        ),
    },
}
MOMO_KEYS_VERSION = "v2"


def momo_keys(call_type: str, version: str = MOMO_KEYS_VERSION) -> tuple:
    try:
        return MOMO_SIGNATURE_KEYS[version][call_type]
    except KeyError:
        raise ValueError(f"Unknown MoMo signature key set: {version}/{call_type}") from None


def normalize_amount(value: Any) -> int:
    """Round a money value to a whole number of VND, half up."""
    if value is None or value == "":
        return 0
    if isinstance(value, bool):
        raise ValueError("Amount must be numeric, got a boolean")
    if isinstance(value, int):
        return value
    try:
        dec = Decimal(str(value).strip())
    except InvalidOperation:
        raise ValueError(f"Amount must be numeric, got {value!r}") from None
    if not dec.is_finite():
        raise ValueError(f"Amount must be finite, got {value!r}")
    return int(dec.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (Decimal, float)):
        return str(normalize_amount(value))
    return str(value)


def vnpay_canonical(params: Mapping[str, Any], keys: Optional[Sequence[str]] = None) -> str:
    """``quote_plus`` every key and value, sort by encoded key, join with ``&``.

    ``keys`` is accepted for a uniform signer interface and ignored: VNPay
    signs whatever ``vnp_*`` fields were sent.
    """
    pairs = []
    for key, value in params.items():
        if key in VNPAY_HASH_FIELDS:
            continue
        pairs.append((quote_plus(str(key)), quote_plus(_text(value))))
    pairs.sort(key=lambda pair: pair[0])
    return "&".join(f"{k}={v}" for k, v in pairs)


def momo_canonical(params: Mapping[str, Any], keys: Optional[Sequence[str]] = None) -> str:
    if not keys:
        raise ValueError("MoMo canonicalization needs an explicit key order")
    return "&".join(f"{key}={_text(params.get(key))}" for key in keys)
