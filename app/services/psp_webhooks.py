"""Translation between gateway callbacks/IPNs and the reconciliation core.

Gateways expect a fixed answer from their notification endpoints and the
customer's browser expects a redirect, whatever happens inside. Everything in
this module therefore turns results and unexpected errors into those
gateway-mandated shapes.
"""
from __future__ import annotations

import json
import logging
from typing import Any
from urllib.parse import urlencode

from fastapi import Request
from sqlalchemy.orm import Session

from app.models import PaymentGateway
from app.services.payments import PaymentService, ReconcileOutcome, ReconcileResult

logger = logging.getLogger(__name__)

CALLBACK_ERROR_MESSAGE = "Payment could not be processed"

VNPAY_ACKS: dict[ReconcileOutcome, tuple[str, str]] = {
    ReconcileOutcome.CONFIRMED: ("00", "Confirm Success"),
    ReconcileOutcome.FAILED: ("00", "Confirm Success"),
    ReconcileOutcome.PAYMENT_NOT_FOUND: ("01", "Order not found"),
    ReconcileOutcome.AMOUNT_MISMATCH: ("04", "Invalid amount"),
    ReconcileOutcome.VERIFICATION_FAILED: ("97", "Invalid signature"),
    # Not final: VNPay redelivers until the charge is settled by hand.
    ReconcileOutcome.PAID_AFTER_EXPIRY: ("99", "Payment session expired"),
}
VNPAY_RETRY_ACK = {"RspCode": "99", "Message": "Unknown error"}
# Payments that already left the active states answer "02" with the stored outcome.
VNPAY_SETTLED_CODE = "02"
VNPAY_SETTLED_OUTCOMES = frozenset({ReconcileOutcome.ALREADY_PROCESSED, ReconcileOutcome.INVALID_TRANSITION})

MOMO_ACKS: dict[ReconcileOutcome, tuple[int, str]] = {
    ReconcileOutcome.CONFIRMED: (0, "Success"),
    ReconcileOutcome.FAILED: (0, "Success"),
    ReconcileOutcome.ALREADY_PROCESSED: (0, "Success"),
    ReconcileOutcome.INVALID_TRANSITION: (0, "Success"),
    ReconcileOutcome.AMOUNT_MISMATCH: (1, "Invalid amount"),
    ReconcileOutcome.VERIFICATION_FAILED: (1, "Invalid signature"),
    ReconcileOutcome.PAYMENT_NOT_FOUND: (2, "Order not found"),
    ReconcileOutcome.PAID_AFTER_EXPIRY: (99, "Payment session expired"),
}
MOMO_RETRY_ACK = {"resultCode": 99, "message": "Internal error"}


def _stringify(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"), ensure_ascii=False)
    return str(value)


async def extract_inbound_params(request: Request) -> dict[str, str]:
    """Collect gateway parameters from the query string and, for POST, the body."""

    params: dict[str, str] = dict(request.query_params)
    if request.method != "POST":
        return params

    content_type = request.headers.get("content-type", "")
    try:
        if "application/json" in content_type:
            body = await request.json()
            if isinstance(body, dict):
                params.update({str(key): _stringify(value) for key, value in body.items()})
        elif "form" in content_type:
            form = await request.form()
            params.update({key: _stringify(value) for key, value in form.items()})
    except (ValueError, UnicodeDecodeError):
        # An unreadable body leaves only the query string; verification will reject it.
        logger.warning("Unparsable gateway notification body", extra={"path": request.url.path})
    return params


def result_redirect_url(frontend_url: str, result: ReconcileResult | None) -> str:
    """Frontend result page for a callback; ``None`` means processing failed."""

    if result is None:
        query = {"success": "false", "orderId": "", "message": CALLBACK_ERROR_MESSAGE}
    else:
        query = {
            "success": "true" if result.success else "false",
            "orderId": "" if result.order_id is None else str(result.order_id),
            "message": result.message,
        }
    return f"{frontend_url.rstrip('/')}/payment/result?{urlencode(query)}"


def vnpay_ack(result: ReconcileResult) -> dict[str, str]:
    if result.outcome in VNPAY_SETTLED_OUTCOMES:
        message = "Order already confirmed" if result.success else "Order already closed"
        return {"RspCode": VNPAY_SETTLED_CODE, "Message": message}
    code, message = VNPAY_ACKS.get(result.outcome, (VNPAY_RETRY_ACK["RspCode"], VNPAY_RETRY_ACK["Message"]))
    return {"RspCode": code, "Message": message}


def momo_ack(result: ReconcileResult) -> dict[str, Any]:
    code, message = MOMO_ACKS.get(result.outcome, (MOMO_RETRY_ACK["resultCode"], MOMO_RETRY_ACK["message"]))
    return {"resultCode": code, "message": message}


def handle_callback(
    service: PaymentService,
    db: Session,
    gateway: PaymentGateway,
    params: dict[str, str],
    *,
    frontend_url: str,
) -> str:
    """Reconcile a browser return and build the redirect target. Never raises."""

    try:
        result = service.reconcile(db, gateway, params, source="callback")
    except Exception:  # noqa: BLE001
        db.rollback()
        logger.exception("Gateway callback processing failed", extra={"gateway": gateway.value})
        result = None
    return result_redirect_url(frontend_url, result)


def handle_ipn(
    service: PaymentService,
    db: Session,
    gateway: PaymentGateway,
    params: dict[str, str],
) -> dict[str, Any]:
    """Reconcile a server-to-server notification and build the gateway's acknowledgement."""

    try:
        result = service.reconcile(db, gateway, params, source="ipn")
    except Exception:  # noqa: BLE001
        db.rollback()
        logger.exception("Gateway IPN processing failed", extra={"gateway": gateway.value})
        return dict(VNPAY_RETRY_ACK if gateway == PaymentGateway.VNPAY else MOMO_RETRY_ACK)

    ack = vnpay_ack(result) if gateway == PaymentGateway.VNPAY else momo_ack(result)
    logger.info(
        "Gateway IPN acknowledged",
        extra={"gateway": gateway.value, "order_id": result.order_id, "outcome": result.outcome.value, "ack": ack},
    )
    return ack


__all__ = [
    "CALLBACK_ERROR_MESSAGE",
    "MOMO_RETRY_ACK",
    "VNPAY_RETRY_ACK",
    "extract_inbound_params",
    "handle_callback",
    "handle_ipn",
    "momo_ack",
    "result_redirect_url",
    "vnpay_ack",
]
