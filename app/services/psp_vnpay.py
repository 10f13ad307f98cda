"""VNPay gateway adapter.

VNPay sessions are plain signed redirect URLs, so opening one needs no
network round-trip. The browser return and the IPN carry the same ``vnp_*``
parameter set and are verified identically.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Mapping

from app.config import Settings
from app.models import PaymentGateway
from app.services.psp_base import GatewayAdapter, GatewaySession, InboundVerification, parse_reference
from app.services.signatures import CanonicalScheme, canonicalize, secret_fingerprint, sign, verify
from app.utils.errors import GatewayUnavailable
from app.utils.time import gateway_timestamp, utcnow

logger = logging.getLogger(__name__)

SIGNATURE_FIELD = "vnp_SecureHash"
SIGNATURE_FIELDS = frozenset({SIGNATURE_FIELD, "vnp_SecureHashType"})
REQUIRED_INBOUND_FIELDS = (
    "vnp_TmnCode",
    "vnp_TxnRef",
    "vnp_Amount",
    "vnp_ResponseCode",
    "vnp_TransactionStatus",
    SIGNATURE_FIELD,
)
SUCCESS_CODE = "00"

RESULT_MESSAGES = {
    "00": "Transaction successful",
    "07": "Amount debited; transaction flagged as suspicious",
    "09": "Card or account is not registered for internet banking",
    "10": "Card or account verification failed more than 3 times",
    "11": "Payment window expired",
    "12": "Card or account is locked",
    "13": "Incorrect one-time password",
    "24": "Customer cancelled the transaction",
    "51": "Insufficient balance",
    "65": "Daily transaction limit exceeded",
    "75": "Paying bank is under maintenance",
    "79": "Payment password entered incorrectly too many times",
    "99": "Other error",
}
UNKNOWN_RESULT_MESSAGE = "Unknown error"

VNPAY_SCHEME = CanonicalScheme(
    digest="sha512",
    key_prefix="vnp_",
    exclude=SIGNATURE_FIELDS,
    encode_values=True,
)


class VNPayAdapter(GatewayAdapter):
    """Signs redirect URLs and verifies return/IPN parameters with HMAC-SHA512."""

    name = PaymentGateway.VNPAY
    amount_multiplier = 100

    def __init__(self, settings: Settings) -> None:
        self.tmn_code = settings.VNPAY_TMN_CODE
        self._hash_secret = settings.VNPAY_HASH_SECRET
        self.url = settings.VNPAY_URL
        self.return_url = settings.VNPAY_RETURN_URL
        self.version = settings.VNPAY_VERSION
        self.locale = settings.VNPAY_LOCALE
        self.currency = settings.VNPAY_CURRENCY
        self.session_ttl = timedelta(minutes=settings.PAYMENT_SESSION_TIMEOUT_MINUTES)

    def is_configured(self) -> bool:
        return bool(self._hash_secret and self.tmn_code)

    def secret_fingerprints(self) -> dict[str, str | None]:
        return {"vnpay_hash_secret": secret_fingerprint(self._hash_secret)}

    def create_session(
        self,
        *,
        reference: str,
        amount: int,
        description: str,
        client_ip: str,
        bank_code: str | None = None,
        now: datetime | None = None,
    ) -> GatewaySession:
        if not self.is_configured():
            raise GatewayUnavailable("VNPay is not configured.", code="GATEWAY_NOT_CONFIGURED")

        created = now or utcnow()
        params: dict[str, Any] = {
            "vnp_Version": self.version,
            "vnp_Command": "pay",
            "vnp_TmnCode": self.tmn_code,
            "vnp_Locale": self.locale,
            "vnp_CurrCode": self.currency,
            "vnp_TxnRef": reference,
            "vnp_OrderInfo": description,
            "vnp_OrderType": "other",
            "vnp_Amount": str(self.to_gateway_amount(amount)),
            "vnp_ReturnUrl": self.return_url,
            "vnp_IpAddr": client_ip,
            "vnp_CreateDate": gateway_timestamp(created),
            "vnp_ExpireDate": gateway_timestamp(created + self.session_ttl),
        }
        if bank_code:
            params["vnp_BankCode"] = bank_code

        query = canonicalize(params, VNPAY_SCHEME)
        signature = sign(query, self._hash_secret, VNPAY_SCHEME.digest)
        logger.info("VNPay session URL built", extra={"reference": reference, "bank_code": bank_code})
        return GatewaySession(
            session_url=f"{self.url}?{query}&{SIGNATURE_FIELD}={signature}",
            gateway_request_id=reference,
        )

    def verify_inbound_message(self, raw_params: Mapping[str, Any]) -> InboundVerification:
        params = {key: value for key, value in raw_params.items() if isinstance(key, str)}
        missing = [name for name in REQUIRED_INBOUND_FIELDS if not params.get(name)]
        if missing:
            logger.warning("VNPay message missing required fields", extra={"missing": missing})
            return InboundVerification.rejected(params)

        if not verify(params, self._hash_secret, params[SIGNATURE_FIELD], VNPAY_SCHEME):
            logger.warning("VNPay signature mismatch", extra={"reference": str(params.get("vnp_TxnRef"))[:64]})
            return InboundVerification.rejected(params)

        parsed = parse_reference(params["vnp_TxnRef"])
        if params["vnp_TmnCode"] != self.tmn_code or parsed is None:
            logger.warning(
                "VNPay message for unknown merchant or reference",
                extra={"reference": params["vnp_TxnRef"]},
            )
            return InboundVerification.rejected(params)

        response_code = str(params["vnp_ResponseCode"])
        is_success = response_code == SUCCESS_CODE and str(params["vnp_TransactionStatus"]) == SUCCESS_CODE
        transaction_no = str(params.get("vnp_TransactionNo") or "").strip()
        return InboundVerification(
            authentic=True,
            order_id=parsed[0],
            reference=params["vnp_TxnRef"],
            # VNPay reports "0" when no bank transaction was created.
            gateway_transaction_id=transaction_no if transaction_no not in {"", "0"} else None,
            result_code=response_code,
            is_success=is_success,
            message=self.map_result_code(response_code),
            amount=self.from_gateway_amount(params["vnp_Amount"]),
            raw=params,
        )

    def map_result_code(self, code: Any) -> str:
        return RESULT_MESSAGES.get(str(code), UNKNOWN_RESULT_MESSAGE)


__all__ = ["VNPayAdapter", "VNPAY_SCHEME", "RESULT_MESSAGES"]
