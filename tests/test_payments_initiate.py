"""Payment initiation through the service and the API."""
import httpx
import pytest
from sqlalchemy import select

from app.models import AuditLog, OrderPaymentStatus, OrderStatus, Payment, PaymentGateway, PaymentStatus
from app.security import Principal
from app.utils.errors import Conflict, Forbidden, GatewayUnavailable, NotFound, ValidationError


def test_vnpay_initiation_opens_session(db_session, payment_service, customer, principal, make_order):
    order = make_order(customer, total_amount=150000)

    result = payment_service.initiate(
        db_session, principal, order_id=order.id, method="vnpay", client_ip="203.0.113.7"
    )

    payment = result.payment
    assert payment.status == PaymentStatus.PROCESSING
    assert payment.gateway == PaymentGateway.VNPAY
    assert payment.amount == 150000
    assert payment.reference == f"{order.id}-{payment.id}"
    assert payment.gateway_request_id == payment.reference
    assert "vnp_Amount=15000000" in result.payment_url
    assert result.payment_url == payment.payment_url
    assert result.deeplink is None

    db_session.refresh(order)
    assert order.payment_gateway == "vnpay"
    assert order.payment_method.value == "vnpay"
    assert order.payment_status == OrderPaymentStatus.PENDING

    audit = db_session.scalars(select(AuditLog).where(AuditLog.action == "PAYMENT_INITIATED")).one()
    assert audit.entity_id == payment.id
    assert audit.actor == f"user:{customer.id}"
    assert audit.data_json["ip_address"] == "203.0.113.***"


def test_momo_initiation_stores_wallet_artifacts(db_session, payment_service, customer, principal, make_order, momo_stub):
    order = make_order(customer, total_amount=99000)

    result = payment_service.initiate(db_session, principal, order_id=order.id, method="momo", client_ip="10.0.0.1")

    assert result.payment.gateway == PaymentGateway.MOMO
    assert result.payment.status == PaymentStatus.PROCESSING
    assert result.deeplink.startswith("momo://")
    assert result.qr_code_url is not None
    assert result.payment.gateway_request_id == momo_stub.requests[-1]["requestId"]
    assert momo_stub.requests[-1]["amount"] == 99000
    assert momo_stub.requests[-1]["orderId"] == result.payment.reference


def test_bank_card_uses_vnpay_with_default_bank(db_session, payment_service, customer, principal, make_order, settings):
    order = make_order(customer)

    result = payment_service.initiate(db_session, principal, order_id=order.id, method="bank_card", client_ip="10.0.0.1")

    assert result.payment.gateway == PaymentGateway.VNPAY
    assert result.payment.bank_code == settings.VNPAY_DEFAULT_BANK_CODE
    assert f"vnp_BankCode={settings.VNPAY_DEFAULT_BANK_CODE}" in result.payment_url


def test_unknown_order_and_foreign_order(db_session, payment_service, principal, make_user, make_order):
    with pytest.raises(NotFound) as missing:
        payment_service.initiate(db_session, principal, order_id=999, method="vnpay", client_ip="10.0.0.1")
    assert missing.value.code == "ORDER_NOT_FOUND"

    foreign = make_order(make_user("stranger"))
    with pytest.raises(Forbidden):
        payment_service.initiate(db_session, principal, order_id=foreign.id, method="vnpay", client_ip="10.0.0.1")
    assert db_session.scalars(select(Payment)).first() is None


def test_cash_on_delivery_is_not_a_gateway_method(db_session, payment_service, customer, principal, make_order):
    order = make_order(customer)
    with pytest.raises(ValidationError) as excinfo:
        payment_service.initiate(db_session, principal, order_id=order.id, method="cod", client_ip="10.0.0.1")
    assert excinfo.value.code == "UNSUPPORTED_PAYMENT_METHOD"


def test_paid_and_cancelled_orders_are_refused(db_session, payment_service, customer, principal, make_order):
    paid = make_order(customer, payment_status=OrderPaymentStatus.PAID)
    with pytest.raises(Conflict) as already_paid:
        payment_service.initiate(db_session, principal, order_id=paid.id, method="vnpay", client_ip="10.0.0.1")
    assert already_paid.value.code == "ORDER_ALREADY_PAID"

    cancelled = make_order(customer, order_status=OrderStatus.CANCELLED)
    with pytest.raises(Conflict) as cancelled_exc:
        payment_service.initiate(db_session, principal, order_id=cancelled.id, method="vnpay", client_ip="10.0.0.1")
    assert cancelled_exc.value.code == "ORDER_CANCELLED"


def test_second_active_payment_is_refused(db_session, payment_service, principal, processing_payment):
    payment = processing_payment("vnpay")

    with pytest.raises(Conflict) as excinfo:
        payment_service.initiate(db_session, principal, order_id=payment.order_id, method="momo", client_ip="10.0.0.1")
    assert excinfo.value.code == "ACTIVE_PAYMENT_EXISTS"
    assert excinfo.value.details == {"payment_id": payment.id}


def test_retry_allowed_after_failed_attempt(db_session, payment_service, principal, processing_payment):
    first = processing_payment("vnpay")
    assert payment_service.expire(db_session, first)

    retry = payment_service.initiate(db_session, principal, order_id=first.order_id, method="vnpay", client_ip="10.0.0.1")
    assert retry.payment.id != first.id
    assert retry.payment.reference != first.reference


def test_gateway_failure_marks_attempt_failed(db_session, payment_service, customer, principal, make_order, momo_stub):
    def _down(body):
        raise httpx.ConnectError("connection refused")

    momo_stub.create_handler = _down
    order = make_order(customer)

    with pytest.raises(GatewayUnavailable):
        payment_service.initiate(db_session, principal, order_id=order.id, method="momo", client_ip="10.0.0.1")

    payment = db_session.scalars(select(Payment).where(Payment.order_id == order.id)).one()
    assert payment.status == PaymentStatus.FAILED
    assert payment.failure_reason == "Momo request failed."
    assert db_session.scalars(select(AuditLog).where(AuditLog.action == "PAYMENT_SESSION_FAILED")).one()

    # The failed attempt no longer blocks a new one.
    momo_stub.create_handler = momo_stub.accept_create
    retry = payment_service.initiate(db_session, principal, order_id=order.id, method="momo", client_ip="10.0.0.1")
    assert retry.payment.status == PaymentStatus.PROCESSING


@pytest.mark.anyio
async def test_initiate_endpoint(client, auth_headers, customer, make_order):
    order = make_order(customer)

    response = await client.post(
        "/payments/initiate",
        json={"order_id": order.id, "payment_method": "vnpay"},
        headers={**auth_headers, "X-Forwarded-For": "198.51.100.20, 10.0.0.1"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["payment"]["status"] == "processing"
    assert body["payment"]["order_id"] == order.id
    assert body["payment"]["amount"] == 150000
    assert "vnp_IpAddr=198.51.100.20" in body["payment_url"]
    assert body["deeplink"] is None


@pytest.mark.anyio
async def test_initiate_endpoint_errors(client, auth_headers, customer, make_user, make_order, momo_stub):
    foreign = make_order(make_user("stranger"))
    response = await client.post(
        "/payments/initiate", json={"order_id": foreign.id, "payment_method": "vnpay"}, headers=auth_headers
    )
    assert response.status_code == 403
    assert response.json()["error"]["code"] == "ORDER_FORBIDDEN"

    own = make_order(customer)
    response = await client.post(
        "/payments/initiate", json={"order_id": own.id, "payment_method": "cod"}, headers=auth_headers
    )
    assert response.status_code == 422

    momo_stub.create_handler = lambda body: httpx.Response(200, json={"resultCode": 1007, "message": "Inactive"})
    response = await client.post(
        "/payments/initiate", json={"order_id": own.id, "payment_method": "momo"}, headers=auth_headers
    )
    assert response.status_code == 502
    assert response.json()["error"]["code"] == "GATEWAY_UNAVAILABLE"


def test_principal_actor_label():
    assert Principal(user_id=5).actor == "user:5"
