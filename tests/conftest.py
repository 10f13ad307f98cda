"""Test configuration."""
import json
import os
import shutil
import tempfile
import threading
from collections.abc import AsyncIterator, Callable, Iterator
from pathlib import Path
from typing import Any
from uuid import uuid4

from alembic import command
from alembic.config import Config
import httpx
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

# --- Default test environment
TEMPLATE_DIR = Path(tempfile.mkdtemp(prefix="payments-tests-"))
TEMPLATE_DB = TEMPLATE_DIR / "template.db"

os.environ["APP_ENV"] = "test"
os.environ["DATABASE_URL"] = f"sqlite:///{TEMPLATE_DB}"
os.environ.setdefault("DEV_API_KEY", "test-dev-key")
os.environ.setdefault("PROMETHEUS_ENABLED", "false")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("FRONTEND_URL", "http://frontend.test")
os.environ.setdefault("VNPAY_TMN_CODE", "TESTTMN1")
os.environ.setdefault("VNPAY_HASH_SECRET", "test-vnpay-hash-secret")
os.environ.setdefault("MOMO_PARTNER_CODE", "MOMOTEST")
os.environ.setdefault("MOMO_ACCESS_KEY", "test-momo-access-key")
os.environ.setdefault("MOMO_SECRET_KEY", "test-momo-secret-key")

from app import db as db_module  # noqa: E402
from app.config import Settings, get_settings  # noqa: E402
from app.db import build_engine, build_sessionmaker, get_db  # noqa: E402
from app.main import app  # noqa: E402
from app.models import ApiKey, Order, Payment, PaymentMethod, User  # noqa: E402
from app.routers.payments import get_payment_service  # noqa: E402
from app.security import Principal  # noqa: E402
from app.services.payments import PaymentService, build_gateway_registry  # noqa: E402
from app.services.psp_vnpay import VNPAY_SCHEME  # noqa: E402
from app.services.signatures import sign_params  # noqa: E402
from app.utils.apikey import hash_key  # noqa: E402


def _run_migrations() -> None:
    cfg = Config(str(Path(__file__).resolve().parents[1] / "alembic.ini"))
    cfg.attributes["database_url"] = os.environ["DATABASE_URL"]
    cfg.attributes["skip_logging_config"] = True
    command.upgrade(cfg, "head")


# --- Build the schema once via Alembic; every test works on a copy.
_run_migrations()


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def db_engine(tmp_path: Path) -> Iterator[Engine]:
    path = tmp_path / "payments.db"
    shutil.copyfile(TEMPLATE_DB, path)
    engine = build_engine(f"sqlite:///{path}")
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine: Engine, monkeypatch: pytest.MonkeyPatch) -> sessionmaker[Session]:
    factory = build_sessionmaker(db_engine)
    # Code that opens its own sessions (sweep, scheduler lock, health) uses the test DB too.
    monkeypatch.setattr(db_module, "engine", db_engine)
    monkeypatch.setattr(db_module, "SessionLocal", factory)
    return factory


@pytest.fixture
def db_session(session_factory: sessionmaker[Session]) -> Iterator[Session]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def override_db_dependency(session_factory: sessionmaker[Session]) -> Iterator[None]:
    def _get_db() -> Iterator[Session]:
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_db
    yield
    app.dependency_overrides.pop(get_db, None)


class MomoStub:
    """In-process Momo API: records request bodies and answers through ``handler``."""

    def __init__(self) -> None:
        self.requests: list[dict[str, Any]] = []
        self.create_handler: Callable[[dict[str, Any]], httpx.Response] = self.accept_create
        self.query_handler: Callable[[dict[str, Any]], httpx.Response] = self.pending_query

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.requests.append(body)
        if request.url.path.endswith("/query"):
            return self.query_handler(body)
        return self.create_handler(body)

    @staticmethod
    def accept_create(body: dict[str, Any]) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "partnerCode": body["partnerCode"],
                "orderId": body["orderId"],
                "requestId": body["requestId"],
                "amount": body["amount"],
                "responseTime": 1760760000000,
                "message": "Successful.",
                "resultCode": 0,
                "payUrl": f"https://test-payment.momo.vn/v2/gateway/pay?t={body['orderId']}",
                "deeplink": f"momo://app?action=payWithApp&orderId={body['orderId']}",
                "qrCodeUrl": f"momo://app?action=payWithQR&orderId={body['orderId']}",
            },
        )

    @staticmethod
    def pending_query(body: dict[str, Any]) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "partnerCode": body["partnerCode"],
                "orderId": body["orderId"],
                "requestId": body["requestId"],
                "resultCode": 1000,
                "message": "Transaction initiated",
            },
        )


class RecordingNotifier:
    def __init__(self) -> None:
        self.confirmed: list[tuple[int, int]] = []
        self._lock = threading.Lock()

    def payment_confirmed(self, order: Order, payment: Payment) -> None:
        with self._lock:
            self.confirmed.append((order.id, payment.id))


@pytest.fixture
def settings() -> Settings:
    return get_settings()


@pytest.fixture
def momo_stub() -> MomoStub:
    return MomoStub()


@pytest.fixture
def http_client(momo_stub: MomoStub) -> Iterator[httpx.Client]:
    with httpx.Client(transport=httpx.MockTransport(momo_stub)) as client:
        yield client


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def payment_service(
    settings: Settings,
    http_client: httpx.Client,
    notifier: RecordingNotifier,
    monkeypatch: pytest.MonkeyPatch,
) -> Iterator[PaymentService]:
    service = PaymentService(build_gateway_registry(settings, http_client), notifier, settings)
    monkeypatch.setattr(app.state, "payment_service", service, raising=False)
    app.dependency_overrides[get_payment_service] = lambda: service
    yield service
    app.dependency_overrides.pop(get_payment_service, None)


@pytest.fixture
async def client(payment_service: PaymentService) -> AsyncIterator[AsyncClient]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as async_client:
        yield async_client


@pytest.fixture
def make_user(db_session: Session) -> Callable[..., User]:
    def _factory(name: str = "customer", *, is_active: bool = True) -> User:
        suffix = uuid4().hex[:8]
        user = User(username=f"{name}-{suffix}", email=f"{name}-{suffix}@example.com", is_active=is_active)
        db_session.add(user)
        db_session.commit()
        return user

    return _factory


@pytest.fixture
def make_order(db_session: Session) -> Callable[..., Order]:
    def _factory(user: User, *, total_amount: int = 150000, **fields: Any) -> Order:
        order = Order(
            order_number=f"ORD-{uuid4().hex[:10].upper()}",
            user_id=user.id,
            total_amount=total_amount,
            payment_method=fields.pop("payment_method", PaymentMethod.COD),
            **fields,
        )
        db_session.add(order)
        db_session.commit()
        return order

    return _factory


@pytest.fixture
def make_api_key(db_session: Session) -> Callable[..., ApiKey]:
    def _factory(user: User, key: str, *, is_active: bool = True) -> ApiKey:
        api_key = ApiKey(
            name=f"key-{uuid4().hex}",
            prefix=key[:8],
            key_hash=hash_key(key),
            user_id=user.id,
            is_active=is_active,
        )
        db_session.add(api_key)
        db_session.commit()
        db_session.refresh(api_key)
        return api_key

    return _factory


@pytest.fixture
def customer(make_user: Callable[..., User]) -> User:
    return make_user("customer")


@pytest.fixture
def principal(customer: User) -> Principal:
    return Principal(user_id=customer.id)


@pytest.fixture
def headers_for(make_api_key: Callable[..., ApiKey]) -> Callable[[User], dict[str, str]]:
    def _headers(user: User) -> dict[str, str]:
        token = f"pay_test.{uuid4().hex}"
        make_api_key(user, token)
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture
def auth_headers(customer: User, headers_for: Callable[[User], dict[str, str]]) -> dict[str, str]:
    return headers_for(customer)


@pytest.fixture
def vnpay_message(settings: Settings) -> Callable[..., dict[str, str]]:
    """Build a signed VNPay return/IPN parameter set for ``payment``."""

    def _build(
        payment: Payment,
        *,
        response_code: str = "00",
        transaction_status: str | None = None,
        amount: int | None = None,
        transaction_no: str = "14160001",
        secret: str | None = None,
    ) -> dict[str, str]:
        params = {
            "vnp_Amount": str((payment.amount if amount is None else amount) * 100),
            "vnp_BankCode": "NCB",
            "vnp_BankTranNo": "VNP14160001",
            "vnp_CardType": "ATM",
            "vnp_OrderInfo": f"Payment for order {payment.order_id}",
            "vnp_PayDate": "20261018153000",
            "vnp_ResponseCode": response_code,
            "vnp_TmnCode": settings.VNPAY_TMN_CODE,
            "vnp_TransactionNo": transaction_no,
            "vnp_TransactionStatus": transaction_status if transaction_status is not None else response_code,
            "vnp_TxnRef": payment.reference,
        }
        params["vnp_SecureHashType"] = "HmacSHA512"
        params["vnp_SecureHash"] = sign_params(params, secret or settings.VNPAY_HASH_SECRET, VNPAY_SCHEME)
        return params

    return _build


@pytest.fixture
def momo_message(settings: Settings, payment_service: PaymentService) -> Callable[..., dict[str, Any]]:
    """Build a signed Momo redirect/IPN body for ``payment``."""

    scheme = payment_service.gateways.get("momo").inbound_scheme

    def _build(
        payment: Payment,
        *,
        result_code: int = 0,
        amount: int | None = None,
        trans_id: int = 4088878653,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {
            "partnerCode": settings.MOMO_PARTNER_CODE,
            "orderId": payment.reference,
            "requestId": payment.gateway_request_id or f"{settings.MOMO_PARTNER_CODE}1760760000000",
            "amount": payment.amount if amount is None else amount,
            "orderInfo": f"Payment for order {payment.order_id}",
            "orderType": "momo_wallet",
            "transId": trans_id,
            "resultCode": result_code,
            "message": "Successful." if result_code == 0 else "Transaction denied by user.",
            "payType": "qr",
            "responseTime": 1760761800000,
            "extraData": "",
        }
        params["signature"] = sign_params(params, settings.MOMO_SECRET_KEY, scheme)
        return params

    return _build


@pytest.fixture
def processing_payment(
    db_session: Session,
    payment_service: PaymentService,
    customer: User,
    principal: Principal,
    make_order: Callable[..., Order],
) -> Callable[..., Payment]:
    """Create an order for the customer and open a gateway session for it."""

    def _factory(method: str = "vnpay", *, total_amount: int = 150000, user: User | None = None) -> Payment:
        owner = user or customer
        order = make_order(owner, total_amount=total_amount)
        caller = principal if user is None else Principal(user_id=user.id)
        result = payment_service.initiate(
            db_session,
            caller,
            order_id=order.id,
            method=method,
            client_ip="203.0.113.7",
        )
        return result.payment

    return _factory
