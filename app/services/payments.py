"""Payment initiation and gateway reconciliation services."""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Iterable, Mapping

import httpx
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import Settings
from app.models import (
    ACTIVE_STATUSES,
    Order,
    OrderPaymentStatus,
    OrderStatus,
    Payment,
    PaymentGateway,
    PaymentMethod,
    PaymentStatus,
)
from app.services.notifications import LoggingNotificationSink, NotificationSink
from app.services.psp_base import GatewayAdapter, GatewayRegistry, InboundVerification, build_reference
from app.services.psp_momo import MomoAdapter
from app.services.psp_vnpay import VNPayAdapter
from app.utils.audit import log_audit
from app.utils.errors import Conflict, Forbidden, GatewayUnavailable, InvalidTransition, NotFound
from app.utils.time import utcnow

if TYPE_CHECKING:  # pragma: no cover - hints only
    from app.security import Principal

logger = logging.getLogger(__name__)

# Returned for every rejected inbound message, whatever check failed.
REJECTED_MESSAGE = "Invalid signature"
SESSION_EXPIRED_REASON = "session expired"

ALLOWED_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset(
        {PaymentStatus.PROCESSING, PaymentStatus.SUCCESS, PaymentStatus.FAILED, PaymentStatus.CANCELLED}
    ),
    PaymentStatus.PROCESSING: frozenset({PaymentStatus.SUCCESS, PaymentStatus.FAILED, PaymentStatus.CANCELLED}),
    PaymentStatus.SUCCESS: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.CANCELLED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
}


class ReconcileOutcome(str, enum.Enum):
    CONFIRMED = "confirmed"
    FAILED = "failed"
    ALREADY_PROCESSED = "already_processed"
    VERIFICATION_FAILED = "verification_failed"
    PAYMENT_NOT_FOUND = "payment_not_found"
    AMOUNT_MISMATCH = "amount_mismatch"
    INVALID_TRANSITION = "invalid_transition"
    PAID_AFTER_EXPIRY = "paid_after_expiry"


@dataclass(frozen=True)
class ReconcileResult:
    success: bool
    message: str
    order_id: int | None
    outcome: ReconcileOutcome


@dataclass(frozen=True)
class InitiationResult:
    payment: Payment
    payment_url: str | None
    deeplink: str | None
    qr_code_url: str | None


def ensure_transition(current: PaymentStatus, target: PaymentStatus) -> None:
    """Raise :class:`InvalidTransition` unless ``current -> target`` is allowed."""

    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransition(
            f"Payment cannot move from {current.value} to {target.value}.",
            details={"from": current.value, "to": target.value},
        )


def _compare_and_set(
    db: Session,
    payment_id: int,
    expected: Iterable[PaymentStatus],
    values: dict[str, Any],
) -> bool:
    """Conditionally update one payment; ``True`` only when this call changed it."""

    stmt = (
        update(Payment)
        .where(Payment.id == payment_id, Payment.status.in_(list(expected)))
        .values(**values, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    result = db.execute(stmt)
    return result.rowcount == 1


class PaymentService:
    """Creates payment attempts and applies verified gateway outcomes.

    One instance is built at startup and shared by every request; all
    per-request state (the DB session, the caller) is passed explicitly.
    """

    def __init__(
        self,
        gateways: GatewayRegistry,
        notifier: NotificationSink | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.gateways = gateways
        self.notifier = notifier or LoggingNotificationSink()
        self.settings = settings

    # ------------------------------------------------------------------
    # Initiation
    # ------------------------------------------------------------------
    def _owned_order(self, db: Session, principal: "Principal", order_id: int) -> Order:
        order = db.get(Order, order_id)
        if order is None:
            raise NotFound("Order not found.", code="ORDER_NOT_FOUND")
        if order.user_id != principal.user_id:
            logger.warning(
                "Order access denied",
                extra={"order_id": order_id, "user_id": principal.user_id},
            )
            raise Forbidden("Order does not belong to the caller.", code="ORDER_FORBIDDEN")
        return order

    def initiate(
        self,
        db: Session,
        principal: "Principal",
        *,
        order_id: int,
        method: PaymentMethod | str,
        client_ip: str,
        bank_code: str | None = None,
    ) -> InitiationResult:
        method = PaymentMethod(method)
        adapter = self.gateways.for_method(method)
        order = self._owned_order(db, principal, order_id)

        if order.payment_status == OrderPaymentStatus.PAID:
            raise Conflict("Order is already paid.", code="ORDER_ALREADY_PAID")
        if order.order_status == OrderStatus.CANCELLED:
            raise Conflict("Order is cancelled.", code="ORDER_CANCELLED")

        active = db.scalars(
            select(Payment).where(Payment.order_id == order.id, Payment.status.in_(ACTIVE_STATUSES))
        ).first()
        if active is not None:
            raise Conflict(
                "An active payment already exists for this order.",
                code="ACTIVE_PAYMENT_EXISTS",
                details={"payment_id": active.id},
            )

        if method == PaymentMethod.BANK_CARD and not bank_code and self.settings is not None:
            bank_code = self.settings.VNPAY_DEFAULT_BANK_CODE

        payment = Payment(
            order_id=order.id,
            user_id=principal.user_id,
            amount=order.total_amount,
            method=method,
            status=PaymentStatus.PENDING,
            gateway=adapter.name,
            bank_code=bank_code,
            ip_address=client_ip,
        )
        try:
            db.add(payment)
            db.flush()
            payment.reference = build_reference(order.id, payment.id)
            order.payment_method = method
            order.payment_gateway = adapter.name.value
            log_audit(
                db,
                actor=principal.actor,
                action="PAYMENT_INITIATED",
                entity="Payment",
                entity_id=payment.id,
                data={
                    "order_id": order.id,
                    "amount": payment.amount,
                    "method": method.value,
                    "gateway": adapter.name.value,
                    "reference": payment.reference,
                    "ip_address": client_ip,
                },
            )
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            logger.info("Concurrent initiation rejected", extra={"order_id": order_id})
            raise Conflict(
                "An active payment already exists for this order.",
                code="ACTIVE_PAYMENT_EXISTS",
            ) from exc

        logger.info(
            "Payment initiated",
            extra={
                "payment_id": payment.id,
                "order_id": order.id,
                "gateway": adapter.name.value,
                "reference": payment.reference,
            },
        )

        try:
            session = adapter.create_session(
                reference=payment.reference,
                amount=payment.amount,
                description=f"Payment for order {order.order_number}",
                client_ip=client_ip,
                bank_code=bank_code,
            )
        except GatewayUnavailable as exc:
            self._mark_session_failed(db, payment, exc, actor=principal.actor)
            raise

        swapped = _compare_and_set(
            db,
            payment.id,
            (PaymentStatus.PENDING,),
            {
                "status": PaymentStatus.PROCESSING,
                "payment_url": session.session_url,
                "deeplink": session.deeplink,
                "qr_code_url": session.qr_url,
                "gateway_request_id": session.gateway_request_id,
                "gateway_response": session.raw_response,
            },
        )
        if not swapped:
            db.rollback()
            raise Conflict(
                "Payment changed while the gateway session was being created.",
                code="PAYMENT_STATE_CHANGED",
            )
        db.commit()
        db.refresh(payment)
        logger.info(
            "Payment session created",
            extra={"payment_id": payment.id, "order_id": order.id, "gateway": adapter.name.value},
        )
        return InitiationResult(
            payment=payment,
            payment_url=session.session_url,
            deeplink=session.deeplink,
            qr_code_url=session.qr_url,
        )

    def _mark_session_failed(self, db: Session, payment: Payment, exc: GatewayUnavailable, *, actor: str) -> None:
        logger.error(
            "Gateway session could not be created",
            extra={
                "payment_id": payment.id,
                "order_id": payment.order_id,
                "gateway": payment.gateway.value if payment.gateway else None,
                "error_code": exc.code,
            },
        )
        swapped = _compare_and_set(
            db,
            payment.id,
            (PaymentStatus.PENDING,),
            {"status": PaymentStatus.FAILED, "failure_reason": exc.message[:255]},
        )
        if swapped:
            log_audit(
                db,
                actor=actor,
                action="PAYMENT_SESSION_FAILED",
                entity="Payment",
                entity_id=payment.id,
                data={"order_id": payment.order_id, "error_code": exc.code, "reason": exc.message},
            )
        db.commit()
        db.refresh(payment)

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------
    def reconcile(
        self,
        db: Session,
        gateway: PaymentGateway | str,
        raw_params: Mapping[str, Any],
        *,
        source: str = "callback",
    ) -> ReconcileResult:
        """Verify an inbound gateway message and apply its outcome once.

        Serves both the browser redirect and the server-to-server notification.
        Unexpected errors propagate; the caller maps them to a retry answer.
        """

        adapter = self.gateways.get(gateway)
        verification = adapter.verify_inbound_message(raw_params)
        if not verification.authentic:
            logger.warning(
                "Inbound gateway message rejected",
                extra={"gateway": adapter.name.value, "source": source, **adapter.secret_fingerprints()},
            )
            return ReconcileResult(False, REJECTED_MESSAGE, None, ReconcileOutcome.VERIFICATION_FAILED)
        return self.apply_outcome(db, adapter, verification, actor=f"{adapter.name.value}:{source}")

    def _find_payment(self, db: Session, adapter: GatewayAdapter, verification: InboundVerification) -> Payment | None:
        payment = db.scalars(select(Payment).where(Payment.reference == verification.reference)).first()
        if payment is None or payment.order_id != verification.order_id or payment.gateway != adapter.name:
            return None
        return payment

    def _idempotency_guard(self, payment: Payment, verification: InboundVerification) -> ReconcileResult | None:
        """Answer for payments that already left the active states; ``None`` otherwise."""

        if payment.is_active:
            return None

        status = payment.status
        settled = status == PaymentStatus.SUCCESS
        log_extra = {
            "payment_id": payment.id,
            "order_id": payment.order_id,
            "status": status.value,
            "inbound_success": verification.is_success,
        }
        if verification.is_success and status == PaymentStatus.FAILED and payment.failure_reason == SESSION_EXPIRED_REASON:
            # The customer was charged but the session was already written off.
            logger.error(
                "Gateway reports payment taken after session expiry",
                extra={**log_extra, "transaction_id": verification.gateway_transaction_id, "amount": verification.amount},
            )
            return ReconcileResult(
                False,
                "Payment received after the session expired",
                payment.order_id,
                ReconcileOutcome.PAID_AFTER_EXPIRY,
            )

        # A success after failure, cancellation or refund (or the reverse) is a protocol anomaly.
        if verification.is_success == settled:
            logger.info("Inbound message replay acknowledged", extra=log_extra)
            message = "Payment already confirmed" if settled else "Payment already processed"
            return ReconcileResult(settled, message, payment.order_id, ReconcileOutcome.ALREADY_PROCESSED)

        logger.warning("Inbound outcome contradicts stored payment state", extra=log_extra)
        return ReconcileResult(
            settled,
            f"Payment is already {status.value}",
            payment.order_id,
            ReconcileOutcome.INVALID_TRANSITION,
        )

    def apply_outcome(
        self,
        db: Session,
        adapter: GatewayAdapter,
        verification: InboundVerification,
        *,
        actor: str,
    ) -> ReconcileResult:
        """Apply an authentic gateway outcome to the payment and its order."""

        payment = self._find_payment(db, adapter, verification)
        if payment is None:
            logger.warning(
                "Payment not found for inbound message",
                extra={"gateway": adapter.name.value, "reference": verification.reference},
            )
            return ReconcileResult(False, "Payment not found", verification.order_id, ReconcileOutcome.PAYMENT_NOT_FOUND)

        guarded = self._idempotency_guard(payment, verification)
        if guarded is not None:
            return guarded

        amount_matches = verification.amount == payment.amount
        succeeded = verification.is_success and amount_matches
        target = PaymentStatus.SUCCESS if succeeded else PaymentStatus.FAILED
        ensure_transition(payment.status, target)

        now = utcnow()
        values: dict[str, Any] = {"status": target, "gateway_response": verification.raw}
        if verification.gateway_transaction_id:
            values["transaction_id"] = verification.gateway_transaction_id
        if succeeded:
            values["paid_at"] = now
            action, outcome, message = "PAYMENT_SUCCEEDED", ReconcileOutcome.CONFIRMED, "Payment confirmed"
        elif not amount_matches:
            values["failure_reason"] = "Amount mismatch"
            action, outcome, message = "PAYMENT_AMOUNT_MISMATCH", ReconcileOutcome.AMOUNT_MISMATCH, "Invalid amount"
            logger.error(
                "Authentic gateway message with mismatched amount",
                extra={
                    "payment_id": payment.id,
                    "order_id": payment.order_id,
                    "gateway": adapter.name.value,
                    "expected_amount": payment.amount,
                    "received_amount": verification.amount,
                },
            )
        else:
            values["failure_reason"] = verification.message[:255]
            action, outcome, message = "PAYMENT_FAILED", ReconcileOutcome.FAILED, verification.message

        try:
            swapped = _compare_and_set(db, payment.id, ACTIVE_STATUSES, values)
            if not swapped:
                db.rollback()
                current = db.get(Payment, payment.id, populate_existing=True)
                logger.info(
                    "Payment transitioned concurrently",
                    extra={"payment_id": payment.id, "status": current.status.value if current else None},
                )
                guarded = self._idempotency_guard(current, verification) if current else None
                if guarded is None:
                    raise Conflict("Payment state changed concurrently.", code="PAYMENT_STATE_CHANGED")
                return guarded

            order = db.get(Order, payment.order_id)
            if succeeded:
                order.payment_status = OrderPaymentStatus.PAID
                if order.order_status == OrderStatus.PENDING:
                    order.order_status = OrderStatus.CONFIRMED
                order.paid_at = now
                order.transaction_id = verification.gateway_transaction_id
                order.payment_gateway = adapter.name.value
            elif order.payment_status != OrderPaymentStatus.PAID:
                order.payment_status = OrderPaymentStatus.FAILED

            log_audit(
                db,
                actor=actor,
                action=action,
                entity="Payment",
                entity_id=payment.id,
                data={
                    "order_id": payment.order_id,
                    "gateway": adapter.name.value,
                    "result_code": verification.result_code,
                    "transaction_id": verification.gateway_transaction_id,
                    "expected_amount": payment.amount,
                    "received_amount": verification.amount,
                },
            )
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.error(
                "Gateway transaction id already recorded on another payment",
                extra={
                    "payment_id": payment.id,
                    "order_id": payment.order_id,
                    "transaction_id": verification.gateway_transaction_id,
                },
            )
            return ReconcileResult(
                False,
                "Transaction already recorded",
                payment.order_id,
                ReconcileOutcome.INVALID_TRANSITION,
            )

        db.refresh(payment)
        logger.info(
            "Payment outcome applied",
            extra={
                "payment_id": payment.id,
                "order_id": payment.order_id,
                "gateway": adapter.name.value,
                "status": payment.status.value,
            },
        )
        if succeeded:
            self._notify_confirmed(db, payment)
        return ReconcileResult(succeeded, message, payment.order_id, outcome)

    def _notify_confirmed(self, db: Session, payment: Payment) -> None:
        order = db.get(Order, payment.order_id)
        try:
            self.notifier.payment_confirmed(order, payment)
        except Exception:  # noqa: BLE001
            # The payment is committed; a failed notification must not turn into a gateway retry.
            logger.exception("Order confirmation notification failed", extra={"payment_id": payment.id})

    def expire(self, db: Session, payment: Payment, *, reason: str = SESSION_EXPIRED_REASON) -> bool:
        """Fail an active payment whose gateway session lapsed. ``False`` if it moved meanwhile."""

        swapped = _compare_and_set(
            db,
            payment.id,
            ACTIVE_STATUSES,
            {"status": PaymentStatus.FAILED, "failure_reason": reason},
        )
        if not swapped:
            db.rollback()
            return False
        order = db.get(Order, payment.order_id)
        if order is not None and order.payment_status == OrderPaymentStatus.PENDING:
            order.payment_status = OrderPaymentStatus.FAILED
        log_audit(
            db,
            actor="system:sweep",
            action="PAYMENT_EXPIRED",
            entity="Payment",
            entity_id=payment.id,
            data={"order_id": payment.order_id, "reason": reason},
        )
        db.commit()
        logger.info("Payment expired", extra={"payment_id": payment.id, "order_id": payment.order_id})
        return True

    # ------------------------------------------------------------------
    # Cancellation and read models
    # ------------------------------------------------------------------
    @staticmethod
    def _check_cancellable(payment: Payment) -> None:
        if payment.status == PaymentStatus.SUCCESS:
            raise Conflict("Payment already succeeded and cannot be cancelled.", code="PAYMENT_ALREADY_SUCCEEDED")
        if payment.status == PaymentStatus.CANCELLED:
            raise Conflict("Payment is already cancelled.", code="PAYMENT_ALREADY_CANCELLED")
        ensure_transition(payment.status, PaymentStatus.CANCELLED)

    def _latest_payment(self, db: Session, order_id: int) -> Payment:
        payment = db.scalars(
            select(Payment).where(Payment.order_id == order_id).order_by(Payment.id.desc())
        ).first()
        if payment is None:
            raise NotFound("No payment found for this order.", code="PAYMENT_NOT_FOUND")
        return payment

    def cancel(self, db: Session, principal: "Principal", order_id: int) -> Payment:
        order = self._owned_order(db, principal, order_id)
        payment = self._latest_payment(db, order.id)
        self._check_cancellable(payment)

        swapped = _compare_and_set(
            db,
            payment.id,
            ACTIVE_STATUSES,
            {"status": PaymentStatus.CANCELLED, "cancelled_at": utcnow()},
        )
        if not swapped:
            db.rollback()
            current = db.get(Payment, payment.id, populate_existing=True)
            self._check_cancellable(current)
            raise Conflict("Payment state changed concurrently.", code="PAYMENT_STATE_CHANGED")

        log_audit(
            db,
            actor=principal.actor,
            action="PAYMENT_CANCELLED",
            entity="Payment",
            entity_id=payment.id,
            data={"order_id": order.id, "previous_status": payment.status.value},
        )
        db.commit()
        db.refresh(payment)
        logger.info("Payment cancelled", extra={"payment_id": payment.id, "order_id": order.id})
        return payment

    def get_status(self, db: Session, principal: "Principal", order_id: int) -> Payment:
        order = self._owned_order(db, principal, order_id)
        return self._latest_payment(db, order.id)

    def get_history(
        self,
        db: Session,
        principal: "Principal",
        *,
        page: int = 1,
        limit: int = 10,
    ) -> tuple[list[Payment], int]:
        total = db.scalar(select(func.count(Payment.id)).where(Payment.user_id == principal.user_id)) or 0
        items = db.scalars(
            select(Payment)
            .where(Payment.user_id == principal.user_id)
            .order_by(Payment.created_at.desc(), Payment.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        ).all()
        return list(items), total


def build_gateway_registry(settings: Settings, http_client: httpx.Client) -> GatewayRegistry:
    return GatewayRegistry([VNPayAdapter(settings), MomoAdapter(settings, http_client)])


def build_payment_service(
    settings: Settings,
    http_client: httpx.Client,
    notifier: NotificationSink | None = None,
) -> PaymentService:
    """Wire the adapters and collaborators used by the API process."""

    return PaymentService(build_gateway_registry(settings, http_client), notifier, settings)


__all__ = [
    "ALLOWED_TRANSITIONS",
    "REJECTED_MESSAGE",
    "SESSION_EXPIRED_REASON",
    "InitiationResult",
    "PaymentService",
    "ReconcileOutcome",
    "ReconcileResult",
    "build_gateway_registry",
    "build_payment_service",
    "ensure_transition",
]
