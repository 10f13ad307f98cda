"""Periodic reconciliation of payments stuck in an active state."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from app import db as db_module
from app.config import get_settings
from app.core.runtime_state import record_sweep
from app.models import ACTIVE_STATUSES, Payment
from app.services.payments import PaymentService
from app.utils.errors import GatewayUnavailable
from app.utils.time import ensure_aware, utcnow

logger = logging.getLogger(__name__)

SWEEP_BATCH_SIZE = 100


def _stale_payments(db: Session, cutoff: datetime) -> list[Payment]:
    stmt = (
        select(Payment)
        .where(Payment.status.in_(ACTIVE_STATUSES), Payment.created_at <= cutoff)
        .order_by(Payment.id)
        .limit(SWEEP_BATCH_SIZE)
    )
    return list(db.scalars(stmt).all())


def _expire_after_grace(db: Session, service: PaymentService, payment: Payment, expire_cutoff: datetime) -> str:
    if ensure_aware(payment.created_at) > expire_cutoff:
        return "pending"
    return "expired" if service.expire(db, payment) else "skipped"


def _sweep_payment(db: Session, service: PaymentService, payment: Payment, expire_cutoff: datetime) -> str:
    if payment.gateway is None:
        return _expire_after_grace(db, service, payment, expire_cutoff)

    adapter = service.gateways.get(payment.gateway)
    if not adapter.supports_query:
        # No status query: only the session expiry date plus the grace margin settles the payment.
        return _expire_after_grace(db, service, payment, expire_cutoff)

    verification = adapter.query_transaction(payment)
    if verification is None:
        return "pending"
    service.apply_outcome(db, adapter, verification, actor="system:sweep")
    return "resolved"


def sweep_stale_payments_once(
    service: PaymentService,
    *,
    now: datetime | None = None,
    db_session: Session | None = None,
) -> dict[str, int]:
    """Resolve or expire active payments older than the session timeout.

    Payments without a status query are only expired once the grace margin
    after their session expiry has also passed.
    """

    settings = service.settings or get_settings()
    now = now or utcnow()
    cutoff = now - timedelta(minutes=settings.PAYMENT_SESSION_TIMEOUT_MINUTES)
    expire_cutoff = cutoff - timedelta(minutes=settings.PAYMENT_EXPIRY_GRACE_MINUTES)

    db = db_session if db_session is not None else db_module.get_sessionmaker()()
    summary = {"checked": 0, "resolved": 0, "expired": 0, "pending": 0, "skipped": 0, "errors": 0}
    try:
        for payment in _stale_payments(db, cutoff):
            summary["checked"] += 1
            try:
                summary[_sweep_payment(db, service, payment, expire_cutoff)] += 1
            except GatewayUnavailable as exc:
                db.rollback()
                summary["errors"] += 1
                logger.warning(
                    "Gateway status query failed during sweep",
                    extra={"payment_id": payment.id, "error_code": exc.code},
                )
            except Exception:  # noqa: BLE001
                db.rollback()
                summary["errors"] += 1
                logger.exception("Payment sweep failed for payment", extra={"payment_id": payment.id})
    finally:
        if db_session is None:
            db.close()

    record_sweep(utcnow(), summary)
    logger.info("Payment sweep finished", extra=summary)
    return summary


__all__ = ["sweep_stale_payments_once", "SWEEP_BATCH_SIZE"]
