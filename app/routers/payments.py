"""Payment endpoints: initiation, gateway callbacks/IPNs, status and cancellation."""
from __future__ import annotations

import logging
import math

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from app.config import get_settings
from app.db import get_db
from app.models import Payment, PaymentGateway
from app.schemas.payment import (
    InitiatePaymentRequest,
    InitiatePaymentResponse,
    Pagination,
    PaymentHistoryRead,
    PaymentRead,
)
from app.security import Principal, require_api_key
from app.services import psp_webhooks
from app.services.payments import PaymentService
from app.utils.errors import error_response

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


def get_payment_service(request: Request) -> PaymentService:
    """Return the service built at startup."""

    service = getattr(request.app.state, "payment_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=error_response("SERVICE_UNAVAILABLE", "Payment service is not initialised."),
        )
    return service


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",", 1)[0].strip()
    if request.client is not None:
        return request.client.host
    return "127.0.0.1"


@router.post("/initiate", response_model=InitiatePaymentResponse)
def initiate_payment(
    payload: InitiatePaymentRequest,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_api_key),
    service: PaymentService = Depends(get_payment_service),
) -> InitiatePaymentResponse:
    result = service.initiate(
        db,
        principal,
        order_id=payload.order_id,
        method=payload.payment_method,
        client_ip=_client_ip(request),
        bank_code=payload.bank_code,
    )
    return InitiatePaymentResponse(
        payment_url=result.payment_url,
        deeplink=result.deeplink,
        qr_code_url=result.qr_code_url,
        payment=PaymentRead.model_validate(result.payment),
    )


async def _callback(request: Request, db: Session, service: PaymentService, gateway: PaymentGateway) -> RedirectResponse:
    params = await psp_webhooks.extract_inbound_params(request)
    url = await run_in_threadpool(
        psp_webhooks.handle_callback,
        service,
        db,
        gateway,
        params,
        frontend_url=get_settings().FRONTEND_URL,
    )
    return RedirectResponse(url, status_code=status.HTTP_302_FOUND)


async def _ipn(request: Request, db: Session, service: PaymentService, gateway: PaymentGateway) -> dict:
    params = await psp_webhooks.extract_inbound_params(request)
    return await run_in_threadpool(psp_webhooks.handle_ipn, service, db, gateway, params)


@router.api_route("/vnpay/callback", methods=["GET", "POST"])
async def vnpay_callback(
    request: Request,
    db: Session = Depends(get_db),
    service: PaymentService = Depends(get_payment_service),
) -> RedirectResponse:
    return await _callback(request, db, service, PaymentGateway.VNPAY)


@router.api_route("/momo/callback", methods=["GET", "POST"])
async def momo_callback(
    request: Request,
    db: Session = Depends(get_db),
    service: PaymentService = Depends(get_payment_service),
) -> RedirectResponse:
    return await _callback(request, db, service, PaymentGateway.MOMO)


@router.api_route("/vnpay/ipn", methods=["GET", "POST"])
async def vnpay_ipn(
    request: Request,
    db: Session = Depends(get_db),
    service: PaymentService = Depends(get_payment_service),
) -> dict:
    return await _ipn(request, db, service, PaymentGateway.VNPAY)


@router.post("/momo/ipn")
async def momo_ipn(
    request: Request,
    db: Session = Depends(get_db),
    service: PaymentService = Depends(get_payment_service),
) -> dict:
    return await _ipn(request, db, service, PaymentGateway.MOMO)


@router.get("/status/{order_id}", response_model=PaymentRead)
def payment_status(
    order_id: int,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_api_key),
    service: PaymentService = Depends(get_payment_service),
) -> Payment:
    return service.get_status(db, principal, order_id)


@router.get("/history", response_model=PaymentHistoryRead)
def payment_history(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_api_key),
    service: PaymentService = Depends(get_payment_service),
) -> PaymentHistoryRead:
    items, total = service.get_history(db, principal, page=page, limit=limit)
    return PaymentHistoryRead(
        items=[PaymentRead.model_validate(item) for item in items],
        pagination=Pagination(
            page=page,
            limit=limit,
            total_items=total,
            total_pages=math.ceil(total / limit) if total else 0,
        ),
    )


@router.post("/cancel/{order_id}", response_model=PaymentRead)
def cancel_payment(
    order_id: int,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_api_key),
    service: PaymentService = Depends(get_payment_service),
) -> Payment:
    return service.cancel(db, principal, order_id)


__all__ = ["router", "get_payment_service"]
