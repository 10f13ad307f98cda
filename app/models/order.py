"""Order model.

Orders are created and managed by the catalogue/checkout side of the shop.
The payment services only read ownership and the amount owed, and write the
payment-related columns.
"""
import enum
from datetime import datetime

from sqlalchemy import BigInteger, CheckConstraint, DateTime, Enum as SqlEnum, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, enum_values


class PaymentMethod(str, enum.Enum):
    """Canonical payment method vocabulary shared by orders and payments."""

    COD = "cod"
    VNPAY = "vnpay"
    MOMO = "momo"
    BANK_CARD = "bank_card"


class OrderPaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPING = "shipping"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class Order(Base):
    """A customer order. ``total_amount`` is in minor currency units."""

    __tablename__ = "orders"
    __table_args__ = (
        CheckConstraint("total_amount > 0", name="positive_total"),
        Index("ix_orders_user_created", "user_id", "created_at"),
    )

    order_number: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    total_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    payment_method: Mapped[PaymentMethod] = mapped_column(
        SqlEnum(PaymentMethod, values_callable=enum_values, native_enum=False, length=16),
        nullable=False,
        default=PaymentMethod.COD,
    )
    payment_status: Mapped[OrderPaymentStatus] = mapped_column(
        SqlEnum(OrderPaymentStatus, values_callable=enum_values, native_enum=False, length=16),
        nullable=False,
        default=OrderPaymentStatus.PENDING,
    )
    order_status: Mapped[OrderStatus] = mapped_column(
        SqlEnum(OrderStatus, values_callable=enum_values, native_enum=False, length=16),
        nullable=False,
        default=OrderStatus.PENDING,
    )
    payment_gateway: Mapped[str | None] = mapped_column(String(16), nullable=True)
    transaction_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    user = relationship("User", back_populates="orders")
    payments = relationship("Payment", back_populates="order", order_by="Payment.id")
