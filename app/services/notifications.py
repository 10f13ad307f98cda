"""Customer notification collaborators."""
from __future__ import annotations

import logging
from typing import Protocol

from app.models import Order, Payment

logger = logging.getLogger(__name__)


class NotificationSink(Protocol):
    def payment_confirmed(self, order: Order, payment: Payment) -> None:
        """Called once, after commit, when a payment settles an order."""


class LoggingNotificationSink:
    """Default sink: records the confirmation in the application log."""

    def payment_confirmed(self, order: Order, payment: Payment) -> None:
        logger.info(
            "Order confirmation sent",
            extra={
                "order_id": order.id,
                "order_number": order.order_number,
                "user_id": order.user_id,
                "payment_id": payment.id,
                "amount": payment.amount,
            },
        )


__all__ = ["NotificationSink", "LoggingNotificationSink"]
