import ipaddress
import logging
from typing import Any, Dict, Iterable, Mapping, Optional, Sequence

from core.errors import (
    AmountMismatch,
    InvalidSignature,
    MalformedNotification,
    OrderNotFound,
    OrderStateConflict,
    UnauthorizedSource,
)
from services.payments.signing import SignatureScheme

logger = logging.getLogger(__name__)

IPV4_MAPPED_PREFIX = "::ffff:"


def normalize_ip(ip: Optional[str]) -> str:
    if not ip:
        return ""
    ip = ip.strip()
    if ip.lower().startswith(IPV4_MAPPED_PREFIX):
        ip = ip[len(IPV4_MAPPED_PREFIX):]
    try:
        return str(ipaddress.ip_address(ip))
    except ValueError:
        return ip


class WebhookAuthenticator:
    """Gate for server-to-server notifications: source address first, then signature."""

    def __init__(
        self,
        scheme: SignatureScheme,
        keys: Optional[Sequence[str]],
        secret: str,
        allowlist: Iterable[str] = (),
        allow_unlisted: bool = False,
    ):
        self.scheme = scheme
        self.keys = keys
        self.secret = secret
        self.allowlist = frozenset(normalize_ip(ip) for ip in allowlist if ip and ip.strip())
        self.allow_unlisted = allow_unlisted

    def check_source(self, source_ip: Optional[str]) -> str:
        ip = normalize_ip(source_ip)
        if self.allowlist:
            if ip not in self.allowlist:
                logger.warning("%s webhook rejected: source %s not in allow-list", self.scheme.name, ip or "-")
                raise UnauthorizedSource(source_ip)
            return ip
        if not self.allow_unlisted:
            logger.warning(
                "%s webhook rejected: no allow-list configured and unlisted sources are denied", self.scheme.name
            )
            raise UnauthorizedSource(source_ip)
        return ip

    def authenticate(self, source_ip: Optional[str], payload: Mapping[str, Any], signature: Optional[str]) -> Mapping[str, Any]:
        self.check_source(source_ip)
        if not self.scheme.verify(payload, signature, self.keys, self.secret):
            logger.warning("%s webhook rejected: invalid signature from %s", self.scheme.name, normalize_ip(source_ip))
            raise InvalidSignature(f"Invalid {self.scheme.name} signature")
        return payload


# --- acknowledgments -------------------------------------------------------

VNPAY_ACKS = {
    None: ("00", "Confirm Success"),
    OrderNotFound: ("01", "Order not found"),
    OrderStateConflict: ("02", "Order already confirmed"),
    AmountMismatch: ("04", "Invalid amount"),
    InvalidSignature: ("97", "Invalid signature"),
    MalformedNotification: ("99", "Invalid request"),
    UnauthorizedSource: ("99", "Unknown error"),
}

MOMO_ACKS = {
    None: (0, "Success"),
    UnauthorizedSource: (11, "Access denied"),
    MalformedNotification: (20, "Bad format request"),
    InvalidSignature: (13, "Merchant authentication failed"),
    AmountMismatch: (22, "Invalid amount"),
    OrderStateConflict: (41, "Duplicated orderId"),
    OrderNotFound: (42, "Invalid orderId or orderId is not found"),
}


def _lookup(table: dict, error: Optional[BaseException], fallback):
    if error is None:
        return table[None]
    for exc_type, ack in table.items():
        if exc_type is not None and isinstance(error, exc_type):
            return ack
    return fallback


def vnpay_ack(error: Optional[BaseException] = None) -> Dict[str, str]:
    code, message = _lookup(VNPAY_ACKS, error, ("99", "Unknown error"))
    return {"RspCode": code, "Message": message}


def momo_ack(error: Optional[BaseException] = None) -> Dict[str, Any]:
    code, message = _lookup(MOMO_ACKS, error, (99, "Unknown error"))
    return {"resultCode": code, "message": message}
