"""ORM models package."""
from .api_key import ApiKey
from .audit import AuditLog
from .base import Base
from .order import Order, OrderPaymentStatus, OrderStatus, PaymentMethod
from .payment import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    Payment,
    PaymentGateway,
    PaymentStatus,
)
from .scheduler_lock import SchedulerLock
from .user import User

__all__ = [
    "ACTIVE_STATUSES",
    "TERMINAL_STATUSES",
    "ApiKey",
    "AuditLog",
    "Base",
    "Order",
    "OrderPaymentStatus",
    "OrderStatus",
    "Payment",
    "PaymentGateway",
    "PaymentMethod",
    "PaymentStatus",
    "SchedulerLock",
    "User",
]
