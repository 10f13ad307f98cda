"""Common contract shared by the payment gateway adapters."""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Iterable, Iterator, Mapping

from app.models import PaymentGateway, PaymentMethod
from app.utils.errors import ValidationError

if TYPE_CHECKING:  # pragma: no cover - hints only
    from app.models import Payment

logger = logging.getLogger(__name__)

METHOD_GATEWAYS: dict[PaymentMethod, PaymentGateway] = {
    PaymentMethod.VNPAY: PaymentGateway.VNPAY,
    PaymentMethod.BANK_CARD: PaymentGateway.VNPAY,
    PaymentMethod.MOMO: PaymentGateway.MOMO,
}


@dataclass(frozen=True)
class GatewaySession:
    """Artifacts of an accepted payment session."""

    session_url: str
    gateway_request_id: str
    deeplink: str | None = None
    qr_url: str | None = None
    raw_response: dict[str, Any] | None = None


@dataclass(frozen=True)
class InboundVerification:
    """Normalized view of a callback, IPN or status-query answer.

    ``amount`` is already converted back to minor currency units; it is
    ``None`` when the gateway figure does not convert exactly.
    """

    authentic: bool
    order_id: int | None = None
    reference: str | None = None
    gateway_transaction_id: str | None = None
    result_code: str | None = None
    is_success: bool = False
    message: str = ""
    amount: int | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def rejected(cls, raw: Mapping[str, Any] | None = None) -> "InboundVerification":
        return cls(authentic=False, message="Invalid signature", raw=dict(raw or {}))


def build_reference(order_id: int, payment_id: int) -> str:
    """Merchant reference sent to gateways; unique per payment attempt."""

    return f"{order_id}-{payment_id}"


def parse_reference(reference: Any) -> tuple[int, int] | None:
    if not isinstance(reference, str):
        return None
    order_part, sep, payment_part = reference.partition("-")
    if not sep or not order_part.isdigit() or not payment_part.isdigit():
        return None
    return int(order_part), int(payment_part)


class GatewayAdapter(ABC):
    """Capability set every gateway integration provides."""

    name: PaymentGateway
    amount_multiplier: int = 1
    supports_query: bool = False

    def to_gateway_amount(self, amount: int) -> int:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValidationError("Amount must be a positive integer in minor units.")
        return amount * self.amount_multiplier

    def from_gateway_amount(self, raw_amount: Any) -> int | None:
        """Reverse :meth:`to_gateway_amount`; ``None`` when not an exact integer."""

        if isinstance(raw_amount, bool):
            return None
        text = str(raw_amount).strip()
        if not text.isdigit():
            return None
        quotient, remainder = divmod(int(text), self.amount_multiplier)
        if remainder:
            return None
        return quotient

    @abstractmethod
    def is_configured(self) -> bool:
        """Return whether the credentials needed to sign messages are present."""

    @abstractmethod
    def create_session(
        self,
        *,
        reference: str,
        amount: int,
        description: str,
        client_ip: str,
        bank_code: str | None = None,
    ) -> GatewaySession:
        """Open a payment session; raise ``GatewayUnavailable`` unless the gateway accepted it."""

    @abstractmethod
    def verify_inbound_message(self, raw_params: Mapping[str, Any]) -> InboundVerification:
        """Authenticate and normalize a callback or IPN. Never raises for untrusted input."""

    @abstractmethod
    def map_result_code(self, code: Any) -> str:
        """Human-readable message for a gateway result code."""

    def secret_fingerprints(self) -> dict[str, str | None]:
        """Non-reversible markers of the configured secrets, safe to log."""

        return {}

    def query_transaction(self, payment: "Payment") -> InboundVerification | None:
        """Ask the gateway for a final outcome; ``None`` when unsupported or still pending."""

        return None


class GatewayRegistry:
    """Adapters available to the payment service, keyed by gateway."""

    def __init__(self, adapters: Iterable[GatewayAdapter]) -> None:
        self._adapters: dict[PaymentGateway, GatewayAdapter] = {adapter.name: adapter for adapter in adapters}

    def __iter__(self) -> Iterator[GatewayAdapter]:
        return iter(self._adapters.values())

    def get(self, gateway: PaymentGateway | str) -> GatewayAdapter:
        try:
            key = PaymentGateway(gateway)
            return self._adapters[key]
        except (ValueError, KeyError):
            raise ValidationError(f"Unsupported payment gateway: {gateway}", code="UNSUPPORTED_GATEWAY") from None

    def for_method(self, method: PaymentMethod) -> GatewayAdapter:
        gateway = METHOD_GATEWAYS.get(method)
        if gateway is None:
            raise ValidationError(
                f"Payment method '{method.value}' does not use an online gateway.",
                code="UNSUPPORTED_PAYMENT_METHOD",
            )
        return self.get(gateway)


__all__ = [
    "METHOD_GATEWAYS",
    "GatewaySession",
    "InboundVerification",
    "GatewayAdapter",
    "GatewayRegistry",
    "build_reference",
    "parse_reference",
]
