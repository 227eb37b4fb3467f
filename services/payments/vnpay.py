from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

from core.config import VNPayConfig
from services.payments.base import VNPAY, PaymentCallback, PaymentRequest, parse_txn_ref
from services.payments.canonical import normalize_amount, vnpay_canonical
from services.payments.signing import VNPAY_SCHEME

# VNPay timestamps are Vietnam wall-clock time (no DST)
VN_TZ = timezone(timedelta(hours=7))
DATE_FORMAT = "%Y%m%d%H%M%S"

RESPONSE_MESSAGES = {
    "00": "Giao dịch thành công",
    "07": "Trừ tiền thành công. Giao dịch bị nghi ngờ (liên quan tới lừa đảo, giao dịch bất thường).",
    "09": "Giao dịch không thành công do: Thẻ/Tài khoản của khách hàng chưa đăng ký dịch vụ InternetBanking tại ngân hàng.",
    "10": "Giao dịch không thành công do: Khách hàng xác thực thông tin thẻ/tài khoản không đúng quá 3 lần",
    "11": "Giao dịch không thành công do: Đã hết hạn chờ thanh toán. Xin quý khách vui lòng thực hiện lại giao dịch.",
    "12": "Giao dịch không thành công do: Thẻ/Tài khoản của khách hàng bị khóa.",
    "13": "Giao dịch không thành công do Quý khách nhập sai mật khẩu xác thực giao dịch (OTP).",
    "24": "Giao dịch không thành công do: Khách hàng hủy giao dịch",
    "51": "Giao dịch không thành công do: Tài khoản của quý khách không đủ số dư để thực hiện giao dịch.",
    "65": "Giao dịch không thành công do: Tài khoản của Quý khách đã vượt quá hạn mức giao dịch trong ngày.",
    "75": "Ngân hàng thanh toán đang bảo trì.",
    "79": "Giao dịch không thành công do: KH nhập sai mật khẩu thanh toán quá số lần quy định.",
    "99": "Các lỗi khác (lỗi còn lại, không có trong danh sách mã lỗi đã liệt kê)",
}


def response_message(code: Optional[str]) -> str:
    return RESPONSE_MESSAGES.get(str(code or ""), "Lỗi không xác định")


def format_date(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(VN_TZ).strftime(DATE_FORMAT)


def parse_date(value: Optional[str]) -> Optional[datetime]:
    """Parse ``yyyyMMddHHmmss`` (Vietnam time) into naive UTC."""
    if not value or len(value) != 14 or not value.isdigit():
        return None
    try:
        local = datetime.strptime(value, DATE_FORMAT).replace(tzinfo=VN_TZ)
    except ValueError:
        return None
    return local.astimezone(timezone.utc).replace(tzinfo=None)


def vnpay_params(query: Mapping[str, Any]) -> Dict[str, str]:
    """Keep only the ``vnp_*`` fields; anything else on the URL is not signed."""
    return {str(k): "" if v is None else str(v) for k, v in query.items() if str(k).startswith("vnp_")}


class VNPayGateway:
    def __init__(self, config: VNPayConfig):
        self.config = config

    def build_payment(
        self,
        order_code: str,
        amount: int,
        order_info: str,
        txn_ref: str,
        client_ip: Optional[str],
        now: datetime,
    ) -> PaymentRequest:
        config = self.config.require()
        params = {
            "vnp_Version": config.version,
            "vnp_Command": config.command,
            "vnp_TmnCode": config.tmn_code,
            # VNPay expects the amount multiplied by 100
            "vnp_Amount": str(normalize_amount(amount) * 100),
            "vnp_CurrCode": config.currency,
            "vnp_TxnRef": txn_ref,
            "vnp_OrderInfo": order_info,
            "vnp_OrderType": "other",
            "vnp_Locale": config.locale,
            "vnp_ReturnUrl": config.return_url,
            "vnp_IpAddr": client_ip or "127.0.0.1",
            "vnp_CreateDate": format_date(now),
            "vnp_ExpireDate": format_date(now + timedelta(minutes=config.expiration_minutes)),
        }
        signature = VNPAY_SCHEME.sign(params, None, config.hash_secret)
        signed = {**params, "vnp_SecureHash": signature}
        return PaymentRequest(
            provider=VNPAY,
            order_id=order_code,
            amount=normalize_amount(amount),
            order_info=order_info,
            return_url=config.return_url,
            notify_url=None,
            request_id=txn_ref,
            signature=signature,
            params=signed,
            pay_url=self.payment_url(signed),
        )

    def payment_url(self, signed_params: Mapping[str, Any]) -> str:
        """Redirect URL for a signed parameter set, e.g. one saved on an earlier attempt."""
        params = vnpay_params(signed_params)
        signature = params.pop("vnp_SecureHash", "")
        params.pop("vnp_SecureHashType", None)
        return f"{self.config.api_url}?{vnpay_canonical(params)}&vnp_SecureHash={signature}"

    def verify(self, query: Mapping[str, Any]) -> bool:
        params = vnpay_params(query)
        return VNPAY_SCHEME.verify(params, params.get("vnp_SecureHash"), None, self.config.hash_secret)

    def parse_callback(self, query: Mapping[str, Any], source_ip: Optional[str] = None) -> PaymentCallback:
        params = vnpay_params(query)
        txn_ref = params.get("vnp_TxnRef", "")
        order_code = parse_txn_ref(txn_ref)["order_code"] or txn_ref

        response_code = params.get("vnp_ResponseCode", "")
        # Both codes must report success for the money to have moved
        transaction_status = params.get("vnp_TransactionStatus")
        result_code = response_code
        if response_code == "00" and transaction_status not in (None, "", "00"):
            result_code = transaction_status

        raw_amount = params.get("vnp_Amount") or "0"
        try:
            amount = normalize_amount(Decimal(raw_amount) / 100)
        except (ValueError, ArithmeticError):
            amount = -1

        return PaymentCallback(
            provider=VNPAY,
            order_id=order_code,
            trans_id=params.get("vnp_TransactionNo") or None,
            result_code=result_code,
            amount=amount,
            message=response_message(result_code),
            response_time=params.get("vnp_PayDate"),
            signature=params.get("vnp_SecureHash", ""),
            source_ip=source_ip,
            request_id=txn_ref or None,
            raw={k: v for k, v in params.items() if k not in ("vnp_SecureHash", "vnp_SecureHashType")},
        )
