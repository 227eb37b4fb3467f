import base64
import json
import logging
from typing import Any, Dict, Mapping, Optional

import requests

from core.config import MoMoConfig
from core.errors import InvalidSignature, ProviderError, ProviderTimeout
from services.payments.base import MOMO, PaymentCallback, PaymentRequest
from services.payments.canonical import momo_keys, normalize_amount
from services.payments.signing import MOMO_SCHEME

logger = logging.getLogger(__name__)

CALLBACK_FIELDS = (
    "partnerCode", "orderId", "requestId", "amount", "orderInfo", "orderType", "transId",
    "resultCode", "message", "payType", "responseTime", "extraData",
)


def encode_extra_data(data: Optional[Dict[str, Any]]) -> str:
    if not data:
        return ""
    return base64.b64encode(json.dumps(data, separators=(",", ":")).encode("utf-8")).decode("ascii")


def decode_extra_data(extra_data: Optional[str]) -> Optional[Dict[str, Any]]:
    if not extra_data:
        return None
    try:
        return json.loads(base64.b64decode(extra_data).decode("utf-8"))
    except (ValueError, UnicodeDecodeError) as exc:
        logger.warning("Failed to decode MoMo extraData: %s", exc)
        return None


class MoMoGateway:
    def __init__(self, config: MoMoConfig, http=None):
        self.config = config
        # anything with a requests-style post(); the module itself by default
        self.http = http or requests

    # --- outbound ----------------------------------------------------------

    def build_payment(
        self,
        order_code: str,
        amount: int,
        order_info: str,
        request_id: str,
        extra: Optional[Dict[str, Any]] = None,
    ) -> PaymentRequest:
        config = self.config.require()
        body = {
            "partnerCode": config.partner_code,
            "partnerName": config.partner_name,
            "storeId": config.partner_code,
            "requestId": request_id,
            "amount": str(normalize_amount(amount)),
            "orderId": order_code,
            "orderInfo": order_info,
            "redirectUrl": config.return_url,
            "ipnUrl": config.notify_url,
            "lang": config.lang,
            "extraData": encode_extra_data(extra),
            "requestType": config.request_type,
            "autoCapture": True,
            "accessKey": config.access_key,
        }
        signature = MOMO_SCHEME.sign(body, momo_keys("create"), config.secret_key)
        body["signature"] = signature
        return PaymentRequest(
            provider=MOMO,
            order_id=order_code,
            amount=normalize_amount(amount),
            order_info=order_info,
            return_url=config.return_url,
            notify_url=config.notify_url,
            request_id=request_id,
            extra_data=body["extraData"],
            signature=signature,
            params=body,
        )

    def _post(self, url: str, body: Dict[str, Any], action: str) -> Dict[str, Any]:
        try:
            resp = self.http.post(url, json=body, timeout=self.config.timeout_seconds)
        except requests.Timeout as exc:
            logger.error("MoMo %s timed out after %ss (requestId %s)", action, self.config.timeout_seconds,
                         body.get("requestId"))
            raise ProviderTimeout(f"MoMo {action} timed out") from exc
        except requests.RequestException as exc:
            logger.error("MoMo %s failed: %s", action, exc)
            raise ProviderError(f"MoMo {action} request failed") from exc

        try:
            data = resp.json()
        except ValueError:
            raise ProviderError(f"MoMo {action} returned a non-JSON response (HTTP {resp.status_code})")

        result_code = data.get("resultCode")
        if not resp.ok or result_code != 0:
            logger.warning("MoMo %s rejected: resultCode=%s message=%s", action, result_code, data.get("message"))
            raise ProviderError(
                data.get("message") or f"MoMo {action} failed (resultCode: {result_code})",
                result_code=result_code,
                response=data,
            )
        return data

    def create_payment(self, request: PaymentRequest) -> Dict[str, Any]:
        return self._post(self.config.require().endpoint, request.params, "payment creation")

    def build_refund(self, request_id: str, refund_order_id: str, amount: int, trans_id: str,
                     description: str) -> Dict[str, Any]:
        config = self.config.require()
        body = {
            "partnerCode": config.partner_code,
            "partnerName": config.partner_name,
            "storeId": config.partner_code,
            "accessKey": config.access_key,
            "requestId": request_id,
            "orderId": refund_order_id,
            "amount": str(normalize_amount(amount)),
            "transId": trans_id,
            "lang": config.lang,
            "description": description,
        }
        body["signature"] = MOMO_SCHEME.sign(body, momo_keys("refund"), config.secret_key)
        return body

    def refund(self, body: Dict[str, Any]) -> Dict[str, Any]:
        return self._post(self.config.require().refund_endpoint, body, "refund")

    # --- inbound -----------------------------------------------------------

    def signature_payload(self, payload: Mapping[str, Any]) -> Dict[str, str]:
        """Signed fields of a callback; missing ones are empty, accessKey defaults to ours."""
        data = {key: "" if payload.get(key) is None else str(payload.get(key)) for key in CALLBACK_FIELDS}
        data["accessKey"] = str(payload.get("accessKey") or self.config.access_key or "")
        return data

    @staticmethod
    def signature_of(payload: Mapping[str, Any]) -> Optional[str]:
        return payload.get("signature") or payload.get("Signature")

    def verify(self, payload: Mapping[str, Any], call_type: str = "callback") -> bool:
        return MOMO_SCHEME.verify(
            self.signature_payload(payload), self.signature_of(payload), momo_keys(call_type), self.config.secret_key
        )

    def parse_callback(self, payload: Mapping[str, Any], source_ip: Optional[str] = None) -> PaymentCallback:
        data = self.signature_payload(payload)
        if data["partnerCode"] != self.config.partner_code:
            raise InvalidSignature("Partner code does not match configured MoMo partner")
        try:
            amount = normalize_amount(data["amount"])
        except ValueError:
            amount = -1
        return PaymentCallback(
            provider=MOMO,
            order_id=data["orderId"],
            trans_id=data["transId"] or None,
            result_code=data["resultCode"],
            amount=amount,
            message=data["message"],
            response_time=data["responseTime"] or None,
            signature=self.signature_of(payload) or "",
            source_ip=source_ip,
            request_id=data["requestId"] or None,
            raw={k: v for k, v in data.items() if k != "accessKey"},
        )
