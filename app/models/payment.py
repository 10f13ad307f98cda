"""Payment model definitions."""
import enum
from datetime import datetime

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    String,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, enum_values
from .order import PaymentMethod


class PaymentStatus(str, enum.Enum):
    """Possible statuses for a payment attempt."""

    PENDING = "pending"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class PaymentGateway(str, enum.Enum):
    VNPAY = "vnpay"
    MOMO = "momo"


ACTIVE_STATUSES = (PaymentStatus.PENDING, PaymentStatus.PROCESSING)
TERMINAL_STATUSES = (PaymentStatus.SUCCESS, PaymentStatus.CANCELLED, PaymentStatus.REFUNDED)

_ACTIVE_PREDICATE = text("status IN ('pending', 'processing')")


class Payment(Base):
    """One payment attempt for an order. Never deleted."""

    __tablename__ = "payments"
    __table_args__ = (
        CheckConstraint("amount > 0", name="positive_amount"),
        Index("ix_payments_order_status", "order_id", "status"),
        Index("ix_payments_user_created", "user_id", "created_at"),
        Index("ix_payments_status_created", "status", "created_at"),
        Index(
            "uq_payments_active_order",
            "order_id",
            unique=True,
            sqlite_where=_ACTIVE_PREDICATE,
            postgresql_where=_ACTIVE_PREDICATE,
        ),
    )

    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id"), nullable=False, index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    method: Mapped[PaymentMethod] = mapped_column(
        SqlEnum(PaymentMethod, values_callable=enum_values, native_enum=False, length=16),
        nullable=False,
    )
    status: Mapped[PaymentStatus] = mapped_column(
        SqlEnum(PaymentStatus, values_callable=enum_values, native_enum=False, length=16),
        nullable=False,
        default=PaymentStatus.PENDING,
    )
    gateway: Mapped[PaymentGateway | None] = mapped_column(
        SqlEnum(PaymentGateway, values_callable=enum_values, native_enum=False, length=16),
        nullable=True,
    )
    reference: Mapped[str | None] = mapped_column(String(64), unique=True, nullable=True)
    gateway_request_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    # Sparse uniqueness: NULLs do not collide.
    transaction_id: Mapped[str | None] = mapped_column(String(64), unique=True, nullable=True)
    gateway_response: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    payment_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    deeplink: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    qr_code_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    bank_code: Mapped[str | None] = mapped_column(String(32), nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)

    order = relationship("Order", back_populates="payments")

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
