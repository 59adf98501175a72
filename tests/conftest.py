import pytest

from coursepay import signature
from coursepay.database import init_db, make_engine, make_sessionmaker
from coursepay.gateway import GatewayClient, GatewayOrder
from coursepay.models import Order, utcnow
from coursepay.service import PaymentService
from coursepay.stores import EntitlementStore, OrderStore

KEY_ID = "rzp_test_key"
KEY_SECRET = "test_key_secret"
WEBHOOK_SECRET = "test_webhook_secret"


@pytest.fixture
def engine(tmp_path):
    # file-backed so several threads see the same database
    engine = make_engine(f"sqlite:///{tmp_path / 'payments.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def sessions(engine):
    return make_sessionmaker(engine)


@pytest.fixture
def orders(sessions):
    return OrderStore(sessions)


@pytest.fixture
def entitlements(sessions):
    return EntitlementStore(sessions)


@pytest.fixture
def gateway(mocker):
    gateway = mocker.Mock(spec=GatewayClient)
    gateway.key_id = KEY_ID
    return gateway


@pytest.fixture
def service(orders, entitlements, gateway):
    return PaymentService(orders, entitlements, gateway,
                          key_secret=KEY_SECRET, webhook_secret=WEBHOOK_SECRET)


def gateway_order(id="order_GW1", amount=499900, currency="INR", status="paid", receipt="ord_1"):
    return GatewayOrder(id=id, amount=amount, currency=currency, status=status, receipt=receipt,
                        notes={"subject_id": "user_1", "resource_id": "course_1"})


def make_order(orders, order_id="ord_1", gateway_order_id="order_GW1", amount=499900,
               currency="INR", subject_id="user_1", resource_id="course_1"):
    now = utcnow()
    return orders.add(Order(
        order_id=order_id,
        gateway_order_id=gateway_order_id,
        amount_minor_units=amount,
        currency=currency,
        status="created",
        order_metadata={"subject_id": subject_id, "resource_id": resource_id},
        created_at=now,
        updated_at=now,
    ))


def sign(gateway_order_id, payment_id, secret=KEY_SECRET):
    return signature.sign(gateway_order_id, payment_id, secret)
