"""Momo e-wallet gateway adapter.

Unlike VNPay, Momo opens a session through a server-to-server JSON call and
answers with the pay URL, deeplink and QR code. Every signed message lists its
fields in a fixed, documented order and includes the merchant access key,
which is never sent back by Momo and is therefore injected from configuration.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any, Mapping

import httpx

from app.config import Settings
from app.models import PaymentGateway
from app.services.psp_base import GatewayAdapter, GatewaySession, InboundVerification, parse_reference
from app.services.signatures import CanonicalScheme, secret_fingerprint, sign_params, verify
from app.utils.errors import GatewayUnavailable
from app.utils.time import epoch_millis, utcnow

if TYPE_CHECKING:  # pragma: no cover - hints only
    from app.models import Payment

logger = logging.getLogger(__name__)

CREATE_FIELDS = (
    "accessKey",
    "amount",
    "extraData",
    "ipnUrl",
    "orderId",
    "orderInfo",
    "partnerCode",
    "redirectUrl",
    "requestId",
    "requestType",
)
INBOUND_FIELDS = (
    "accessKey",
    "amount",
    "extraData",
    "message",
    "orderId",
    "orderInfo",
    "orderType",
    "partnerCode",
    "payType",
    "requestId",
    "responseTime",
    "resultCode",
    "transId",
)
QUERY_FIELDS = ("accessKey", "orderId", "partnerCode", "requestId")
REQUIRED_INBOUND_FIELDS = ("partnerCode", "orderId", "requestId", "amount", "resultCode", "signature")

SUCCESS_CODE = "0"
# Query answers for sessions the customer has not finished yet.
PENDING_QUERY_CODES = {"1000", "7000", "7002", "9000"}

RESULT_MESSAGES = {
    "0": "Transaction successful",
    "9000": "Transaction authorized",
    "1000": "Transaction initiated, awaiting user confirmation",
    "1001": "Insufficient wallet balance",
    "1002": "Transaction rejected by the issuer",
    "1003": "Transaction cancelled",
    "1004": "Amount exceeds the payment limit",
    "1005": "Payment URL or QR code expired",
    "1006": "User declined the payment",
    "1007": "Account is inactive or does not exist",
    "2001": "Invalid transaction information",
    "3001": "Account link failed",
    "3002": "Account is not linked",
    "3003": "Account link rejected",
    "3004": "Linked account is locked",
    "4001": "Transaction restricted for this account",
    "4010": "OTP verification failed",
    "4011": "OTP has not been sent or has expired",
    "4100": "User login failed",
    "9999": "Unknown error",
}
UNKNOWN_RESULT_MESSAGE = "Unknown error"


class MomoAdapter(GatewayAdapter):
    """Momo integration over its JSON API, signed with HMAC-SHA256."""

    name = PaymentGateway.MOMO
    supports_query = True
    amount_multiplier = 1

    def __init__(self, settings: Settings, client: httpx.Client) -> None:
        self.partner_code = settings.MOMO_PARTNER_CODE
        self._access_key = settings.MOMO_ACCESS_KEY
        self._secret_key = settings.MOMO_SECRET_KEY
        self.endpoint = settings.MOMO_ENDPOINT
        self.query_endpoint = settings.momo_query_endpoint
        self.redirect_url = settings.MOMO_RETURN_URL
        self.ipn_url = settings.MOMO_IPN_URL
        self.request_type = settings.MOMO_REQUEST_TYPE
        self.lang = settings.MOMO_LANG
        self.partner_name = settings.MOMO_PARTNER_NAME
        self.store_id = settings.MOMO_STORE_ID
        self.timeout = settings.GATEWAY_TIMEOUT_SECONDS
        self._client = client

        static = {"accessKey": self._access_key or ""}
        self.create_scheme = CanonicalScheme(digest="sha256", field_order=CREATE_FIELDS, static_fields=static)
        self.inbound_scheme = CanonicalScheme(digest="sha256", field_order=INBOUND_FIELDS, static_fields=static)
        self.query_scheme = CanonicalScheme(digest="sha256", field_order=QUERY_FIELDS, static_fields=static)

    def is_configured(self) -> bool:
        return bool(self._secret_key and self._access_key and self.partner_code)

    def secret_fingerprints(self) -> dict[str, str | None]:
        return {
            "momo_secret_key": secret_fingerprint(self._secret_key),
            "momo_access_key": secret_fingerprint(self._access_key),
        }

    def _request_id(self, now: datetime | None = None) -> str:
        return f"{self.partner_code}{epoch_millis(now or utcnow())}"

    def _post(self, url: str, body: dict[str, Any]) -> dict[str, Any]:
        try:
            response = self._client.post(url, json=body, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException as exc:
            logger.error("Momo request timed out", extra={"url": url, "order_ref": body.get("orderId")})
            raise GatewayUnavailable("Momo did not answer in time.") from exc
        except httpx.HTTPError as exc:
            logger.error(
                "Momo request failed",
                extra={"url": url, "order_ref": body.get("orderId"), "error": str(exc)},
            )
            raise GatewayUnavailable("Momo request failed.") from exc
        except ValueError as exc:
            logger.error("Momo answered with an unparsable body", extra={"url": url})
            raise GatewayUnavailable("Momo returned an invalid response.") from exc

        if not isinstance(data, dict):
            raise GatewayUnavailable("Momo returned an invalid response.")
        return data

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
            raise GatewayUnavailable("Momo is not configured.", code="GATEWAY_NOT_CONFIGURED")

        request_id = self._request_id(now)
        body: dict[str, Any] = {
            "partnerCode": self.partner_code,
            "partnerName": self.partner_name,
            "storeId": self.store_id,
            "requestId": request_id,
            "amount": self.to_gateway_amount(amount),
            "orderId": reference,
            "orderInfo": description,
            "redirectUrl": self.redirect_url,
            "ipnUrl": self.ipn_url,
            "lang": self.lang,
            "extraData": "",
            "requestType": self.request_type,
            "autoCapture": True,
        }
        body["signature"] = sign_params(body, self._secret_key, self.create_scheme)

        data = self._post(self.endpoint, body)
        result_code = str(data.get("resultCode"))
        if result_code != SUCCESS_CODE:
            message = data.get("message") or self.map_result_code(result_code)
            logger.error(
                "Momo refused the payment session",
                extra={"reference": reference, "result_code": result_code},
            )
            raise GatewayUnavailable(
                f"Momo refused the payment session: {message}",
                details={"result_code": result_code},
            )
        pay_url = data.get("payUrl")
        if not pay_url:
            raise GatewayUnavailable("Momo response did not include a payment URL.")

        logger.info("Momo session created", extra={"reference": reference, "request_id": request_id})
        return GatewaySession(
            session_url=pay_url,
            gateway_request_id=request_id,
            deeplink=data.get("deeplink"),
            qr_url=data.get("qrCodeUrl"),
            raw_response=data,
        )

    def verify_inbound_message(self, raw_params: Mapping[str, Any]) -> InboundVerification:
        params = {key: value for key, value in raw_params.items() if isinstance(key, str)}
        missing = [name for name in REQUIRED_INBOUND_FIELDS if params.get(name) in (None, "")]
        if missing:
            logger.warning("Momo message missing required fields", extra={"missing": missing})
            return InboundVerification.rejected(params)

        if not verify(params, self._secret_key, params["signature"], self.inbound_scheme):
            logger.warning("Momo signature mismatch", extra={"reference": str(params.get("orderId"))[:64]})
            return InboundVerification.rejected(params)

        parsed = parse_reference(params["orderId"])
        if params["partnerCode"] != self.partner_code or parsed is None:
            logger.warning(
                "Momo message for unknown partner or reference",
                extra={"reference": params["orderId"]},
            )
            return InboundVerification.rejected(params)

        result_code = str(params["resultCode"])
        trans_id = str(params.get("transId") or "").strip()
        return InboundVerification(
            authentic=True,
            order_id=parsed[0],
            reference=params["orderId"],
            gateway_transaction_id=trans_id or None,
            result_code=result_code,
            is_success=result_code == SUCCESS_CODE,
            message=self.map_result_code(result_code),
            amount=self.from_gateway_amount(params["amount"]),
            raw=params,
        )

    def query_transaction(self, payment: "Payment") -> InboundVerification | None:
        """Fetch the final state of ``payment`` from Momo's query API."""

        if not self.is_configured() or not payment.reference:
            return None
        parsed = parse_reference(payment.reference)
        if parsed is None:
            return None

        body: dict[str, Any] = {
            "partnerCode": self.partner_code,
            "requestId": payment.gateway_request_id or self._request_id(),
            "orderId": payment.reference,
            "lang": self.lang,
        }
        body["signature"] = sign_params(body, self._secret_key, self.query_scheme)
        data = self._post(self.query_endpoint, body)

        result_code = str(data.get("resultCode"))
        if result_code in PENDING_QUERY_CODES:
            logger.info(
                "Momo transaction still pending",
                extra={"payment_id": payment.id, "result_code": result_code},
            )
            return None
        if data.get("orderId") != payment.reference:
            logger.warning(
                "Momo query answered for a different order",
                extra={"payment_id": payment.id, "reference": payment.reference},
            )
            return None

        trans_id = str(data.get("transId") or "").strip()
        return InboundVerification(
            authentic=True,
            order_id=parsed[0],
            reference=payment.reference,
            gateway_transaction_id=trans_id if trans_id not in {"", "0"} else None,
            result_code=result_code,
            is_success=result_code == SUCCESS_CODE,
            message=self.map_result_code(result_code),
            amount=self.from_gateway_amount(data.get("amount")),
            raw=data,
        )

    def map_result_code(self, code: Any) -> str:
        return RESULT_MESSAGES.get(str(code), UNKNOWN_RESULT_MESSAGE)


__all__ = ["MomoAdapter", "CREATE_FIELDS", "INBOUND_FIELDS", "QUERY_FIELDS", "RESULT_MESSAGES"]
