"""Schema package exports."""
from .payment import (
    InitiatePaymentRequest,
    InitiatePaymentResponse,
    Pagination,
    PaymentHistoryRead,
    PaymentRead,
)

__all__ = [
    "InitiatePaymentRequest",
    "InitiatePaymentResponse",
    "Pagination",
    "PaymentHistoryRead",
    "PaymentRead",
]
