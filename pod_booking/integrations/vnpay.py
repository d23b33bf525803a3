"""
VNPay protocol helpers: canonical signing, redirect URLs and callback
verification.

Signing, as the gateway does it:
1. sort parameters by their URL-encoded name
2. encode each value like JavaScript's encodeURIComponent, with spaces as '+'
3. join as ``key=value`` pairs with '&'
4. HMAC (SHA-512 unless configured otherwise) over that string, hex digest

Nothing here talks to the network; refund and status-query requests are
built and signed, and sending them is left to an injected transport.
"""
import hashlib
import hmac
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional, Tuple
from urllib.parse import quote, quote_plus

import structlog

from pod_booking.config import Settings, get_settings
from pod_booking.domain.clock import format_gateway_date, utcnow
from pod_booking.domain.errors import InvalidSignatureError

logger = structlog.get_logger(__name__)

SECURE_HASH_FIELD = "vnp_SecureHash"
SECURE_HASH_TYPE_FIELD = "vnp_SecureHashType"
SUCCESS_RESPONSE_CODE = "00"

# Characters encodeURIComponent leaves alone.
_URI_COMPONENT_SAFE = "-_.!~*'()"

RESPONSE_MESSAGES: Dict[str, str] = {
    "00": "Transaction successful",
    "07": "Amount deducted; transaction flagged as suspicious",
    "09": "Card or account is not registered for internet banking",
    "10": "Card or account verification failed more than 3 times",
    "11": "Payment window expired",
    "12": "Card or account is locked",
    "13": "Incorrect one-time password",
    "24": "Customer cancelled the transaction",
    "51": "Insufficient account balance",
    "65": "Account exceeded its daily transaction limit",
    "75": "Issuing bank is under maintenance",
    "79": "Payment password entered incorrectly too many times",
    "99": "Unknown error",
}


def get_response_message(response_code: Optional[str]) -> str:
    """Human-readable text for a gateway ``vnp_ResponseCode``."""
    if response_code is None:
        return RESPONSE_MESSAGES["99"]
    return RESPONSE_MESSAGES.get(response_code, f"Transaction failed (code {response_code})")


def _encode_value(value: Any) -> str:
    return quote_plus(str(value), safe=_URI_COMPONENT_SAFE)


def canonicalize(params: Mapping[str, Any]) -> List[Tuple[str, str]]:
    """Sorted (encoded key, encoded value) pairs, the form that gets signed."""
    encoded = {quote(str(k), safe=_URI_COMPONENT_SAFE): v for k, v in params.items()}
    return [(key, _encode_value(encoded[key])) for key in sorted(encoded)]


def build_sign_data(params: Mapping[str, Any]) -> str:
    return "&".join(f"{k}={v}" for k, v in canonicalize(params))


def create_secure_hash(data: str, secret: str, algorithm: str = "sha512") -> str:
    """Hex HMAC of ``data`` keyed with the shared secret."""
    digest = getattr(hashlib, algorithm)
    return hmac.new(secret.encode("utf-8"), data.encode("utf-8"), digest).hexdigest()


def sign_params(
    params: Mapping[str, Any], settings: Optional[Settings] = None
) -> Tuple[str, str]:
    """
    Sign a parameter set.

    Returns:
        Tuple[str, str]: (canonical query string, secure hash)
    """
    settings = settings or get_settings()
    sign_data = build_sign_data(params)
    secure_hash = create_secure_hash(
        sign_data, settings.vnp_hash_secret, settings.vnp_hash_algorithm
    )
    return sign_data, secure_hash


def verify_params(
    params: Mapping[str, Any], settings: Optional[Settings] = None
) -> Dict[str, str]:
    """
    Verify a callback's signature.

    The hash fields are removed, the rest re-signed and compared exactly.

    Returns:
        Dict[str, str]: The callback params without the hash fields

    Raises:
        InvalidSignatureError: If the hash is missing or does not match
    """
    remaining = {k: str(v) for k, v in params.items()}
    received = remaining.pop(SECURE_HASH_FIELD, None)
    remaining.pop(SECURE_HASH_TYPE_FIELD, None)

    if not received:
        raise InvalidSignatureError(
            "Callback carries no secure hash", order_id=remaining.get("vnp_TxnRef")
        )

    _, expected = sign_params(remaining, settings)
    if not hmac.compare_digest(received, expected):
        logger.warning("vnpay_signature_mismatch", order_id=remaining.get("vnp_TxnRef"))
        raise InvalidSignatureError(
            "Callback signature does not match", order_id=remaining.get("vnp_TxnRef")
        )
    return remaining


def is_success(params: Mapping[str, Any]) -> bool:
    """The gateway reports success only with response code 00."""
    return params.get("vnp_ResponseCode") == SUCCESS_RESPONSE_CODE


def build_payment_params(
    order_id: str,
    amount: int,
    order_info: str,
    ip_addr: str,
    created_at: Optional[datetime] = None,
    bank_code: Optional[str] = None,
    locale: Optional[str] = None,
    order_type: Optional[str] = None,
    settings: Optional[Settings] = None,
) -> Dict[str, Any]:
    """Unsigned redirect parameters for a payment of ``amount`` VND."""
    settings = settings or get_settings()
    created_at = created_at or utcnow()
    expires_at = created_at + timedelta(minutes=settings.payment_expiry_minutes)

    params: Dict[str, Any] = {
        "vnp_Version": settings.vnp_version,
        "vnp_Command": settings.vnp_command,
        "vnp_TmnCode": settings.vnp_tmn_code,
        "vnp_Locale": locale or settings.vnp_locale,
        "vnp_CurrCode": settings.vnp_curr_code,
        "vnp_TxnRef": order_id,
        "vnp_OrderInfo": order_info,
        "vnp_OrderType": order_type or settings.vnp_order_type,
        "vnp_Amount": amount * 100,
        "vnp_ReturnUrl": settings.vnp_return_url,
        "vnp_IpAddr": ip_addr,
        "vnp_CreateDate": format_gateway_date(created_at),
        "vnp_ExpireDate": format_gateway_date(expires_at),
    }
    if bank_code:
        params["vnp_BankCode"] = bank_code
    return params


def build_payment_url(
    order_id: str,
    amount: int,
    order_info: str,
    ip_addr: str,
    created_at: Optional[datetime] = None,
    bank_code: Optional[str] = None,
    locale: Optional[str] = None,
    order_type: Optional[str] = None,
    settings: Optional[Settings] = None,
) -> str:
    """Signed gateway redirect URL; the secure hash is the last parameter."""
    settings = settings or get_settings()
    params = build_payment_params(
        order_id=order_id,
        amount=amount,
        order_info=order_info,
        ip_addr=ip_addr,
        created_at=created_at,
        bank_code=bank_code,
        locale=locale,
        order_type=order_type,
        settings=settings,
    )
    sign_data, secure_hash = sign_params(params, settings)
    return f"{settings.vnp_url}?{sign_data}&{SECURE_HASH_FIELD}={secure_hash}"


def _signed_request(params: Dict[str, Any], settings: Settings) -> Dict[str, Any]:
    _, secure_hash = sign_params(params, settings)
    return {**params, SECURE_HASH_FIELD: secure_hash}


def build_refund_request(
    order_id: str,
    amount: int,
    transaction_date: str,
    ip_addr: str,
    reason: str,
    full_refund: bool,
    transaction_no: Optional[str] = None,
    created_by: str = "system",
    settings: Optional[Settings] = None,
) -> Dict[str, Any]:
    """
    Signed refund request body for the merchant API.

    ``transaction_date`` is the original payment's YYYYMMDD (or full
    yyyyMMddHHmmss) date as the gateway knows it.
    """
    settings = settings or get_settings()
    params: Dict[str, Any] = {
        "vnp_RequestId": uuid.uuid4().hex,
        "vnp_Version": settings.vnp_version,
        "vnp_Command": "refund",
        "vnp_TmnCode": settings.vnp_tmn_code,
        "vnp_TransactionType": "02" if full_refund else "03",
        "vnp_TxnRef": order_id,
        "vnp_Amount": amount * 100,
        "vnp_TransactionDate": transaction_date,
        "vnp_CreateBy": created_by,
        "vnp_CreateDate": format_gateway_date(utcnow()),
        "vnp_IpAddr": ip_addr,
        "vnp_OrderInfo": reason,
    }
    if transaction_no:
        params["vnp_TransactionNo"] = transaction_no
    return _signed_request(params, settings)


def build_query_request(
    order_id: str,
    transaction_date: str,
    ip_addr: str = "127.0.0.1",
    settings: Optional[Settings] = None,
) -> Dict[str, Any]:
    """Signed ``querydr`` (transaction status) request body."""
    settings = settings or get_settings()
    params: Dict[str, Any] = {
        "vnp_RequestId": uuid.uuid4().hex,
        "vnp_Version": settings.vnp_version,
        "vnp_Command": "querydr",
        "vnp_TmnCode": settings.vnp_tmn_code,
        "vnp_TxnRef": order_id,
        "vnp_OrderInfo": f"Query transaction {order_id}",
        "vnp_TransactionDate": transaction_date,
        "vnp_CreateDate": format_gateway_date(utcnow()),
        "vnp_IpAddr": ip_addr,
    }
    return _signed_request(params, settings)
