import hashlib
import hmac
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, Sequence

from core.errors import ConfigurationError
from services.payments.canonical import vnpay_canonical, momo_canonical


@dataclass(frozen=True)
class SignatureScheme:
    name: str
    digest: Callable
    canonicalize: Callable[[Mapping[str, Any], Optional[Sequence[str]]], str]

    def sign(self, params: Mapping[str, Any], keys: Optional[Sequence[str]], secret: Optional[str]) -> str:
        if not secret:
            raise ConfigurationError(f"{self.name} signing secret is not configured")
        data = self.canonicalize(params, keys)
        return hmac.new(secret.encode("utf-8"), data.encode("utf-8"), self.digest).hexdigest()

    def verify(
        self,
        params: Mapping[str, Any],
        provided_signature: Optional[str],
        keys: Optional[Sequence[str]],
        secret: Optional[str],
    ) -> bool:
        if not provided_signature or not isinstance(provided_signature, str):
            return False
        expected = self.sign(params, keys, secret)
        # VNPay returns upper-case hex on some channels
        provided = provided_signature.strip().lower()
        return hmac.compare_digest(expected.encode("ascii"), provided.encode("utf-8"))


VNPAY_SCHEME = SignatureScheme("VNPay", hashlib.sha512, vnpay_canonical)
MOMO_SCHEME = SignatureScheme("MoMo", hashlib.sha256, momo_canonical)
