import hashlib
import hmac
import json
from datetime import timedelta

import pytest

from coursepay.errors import (
    GatewayUnavailable,
    GatewayValidationError,
    InvalidSignature,
    OrderNotFound,
    OrderValidationError,
)
from coursepay.models import utcnow
from conftest import WEBHOOK_SECRET, gateway_order, make_order


def test_create_order_registers_with_gateway(service, orders, gateway):
    gateway.create_order.return_value = gateway_order(status="created")

    created = service.create_order("user_1", "course_1", 499900, "inr", notes={"channel": "chat"})

    assert created.order_id.startswith("ord_")
    assert created.gateway_order_id == "order_GW1"
    assert created.amount_minor_units == 499900
    assert created.currency == "INR"
    assert created.status == "created"
    assert created.key_id == "rzp_test_key"

    amount, currency, receipt, notes = gateway.create_order.call_args.args
    assert (amount, currency, receipt) == (499900, "INR", created.order_id)
    assert notes == {"channel": "chat", "subject_id": "user_1", "resource_id": "course_1"}

    stored = orders.get(created.order_id)
    assert stored.gateway_order_id == "order_GW1"
    assert stored.subject_id == "user_1"
    assert stored.resource_id == "course_1"


def test_same_order_id_returns_existing(service, gateway):
    gateway.create_order.return_value = gateway_order(status="created")
    first = service.create_order("user_1", "course_1", 1000, order_id="SAME-ORDER")

    gateway.create_order.side_effect = Exception("Should not be called")
    second = service.create_order("user_1", "course_1", 1000, order_id="SAME-ORDER")

    assert second.order_id == first.order_id == "SAME-ORDER"
    assert second.gateway_order_id == "order_GW1"
    assert gateway.create_order.call_count == 1


@pytest.mark.parametrize("resource_id, amount, currency", [
    ("course_2", 1000, "INR"),
    ("course_1", 2000, "INR"),
    ("course_1", 1000, "USD"),
])
def test_same_order_id_with_different_terms_is_rejected(service, orders, gateway, resource_id, amount, currency):
    gateway.create_order.return_value = gateway_order(status="created")
    service.create_order("user_1", "course_1", 1000, order_id="SAME-ORDER")

    with pytest.raises(OrderValidationError):
        service.create_order("user_1", resource_id, amount, currency=currency, order_id="SAME-ORDER")

    stored = orders.get("SAME-ORDER")
    assert stored.resource_id == "course_1"
    assert stored.amount_minor_units == 1000
    assert gateway.create_order.call_count == 1


def test_same_order_id_for_other_subject_is_rejected(service, gateway):
    gateway.create_order.return_value = gateway_order(status="created")
    service.create_order("user_1", "course_1", 1000, order_id="SAME-ORDER")

    with pytest.raises(OrderValidationError):
        service.create_order("user_2", "course_1", 1000, order_id="SAME-ORDER")


def test_gateway_outage_leaves_order_for_retry(service, orders, gateway):
    gateway.create_order.side_effect = GatewayUnavailable("down")
    with pytest.raises(GatewayUnavailable):
        service.create_order("user_1", "course_1", 1000, order_id="ORDER-RETRY")

    stored = orders.get("ORDER-RETRY")
    assert stored.status == "created"
    assert stored.gateway_order_id is None

    gateway.create_order.side_effect = None
    gateway.create_order.return_value = gateway_order(id="order_GW9", status="created")
    created = service.create_order("user_1", "course_1", 1000, order_id="ORDER-RETRY")
    assert created.gateway_order_id == "order_GW9"


def test_gateway_rejection_fails_order(service, orders, gateway):
    gateway.create_order.side_effect = GatewayValidationError("amount too small")
    with pytest.raises(GatewayValidationError):
        service.create_order("user_1", "course_1", 1, order_id="ORDER-BAD")
    assert orders.get("ORDER-BAD").status == "failed"


@pytest.mark.parametrize("kwargs", [
    dict(subject_id="", resource_id="course_1", amount_minor_units=100),
    dict(subject_id="user_1", resource_id="", amount_minor_units=100),
    dict(subject_id="user_1", resource_id="course_1", amount_minor_units=0),
    dict(subject_id="user_1", resource_id="course_1", amount_minor_units=49.99),
    dict(subject_id="user_1", resource_id="course_1", amount_minor_units=True),
    dict(subject_id="user_1", resource_id="course_1", amount_minor_units=100, currency="RUPEE"),
])
def test_create_order_validation(service, gateway, kwargs):
    with pytest.raises(OrderValidationError):
        service.create_order(**kwargs)
    gateway.create_order.assert_not_called()


def test_get_order_status(service, orders):
    make_order(orders)
    status = service.get_order_status("ord_1")
    assert status.status == "created"
    assert status.amount_minor_units == 499900

    with pytest.raises(OrderNotFound):
        service.get_order_status("ord_missing")


def test_expire_order(service, orders):
    make_order(orders)
    assert service.expire_order("ord_1")
    assert not service.expire_order("ord_1")
    assert service.get_order_status("ord_1").status == "expired"


def test_expire_orders_created_before(service, orders):
    make_order(orders, order_id="ord_a", gateway_order_id="order_A")
    make_order(orders, order_id="ord_b", gateway_order_id="order_B")
    orders.transition("ord_b", "paid")

    assert service.expire_orders_created_before(utcnow() + timedelta(seconds=1)) == 1
    assert orders.get("ord_a").status == "expired"
    assert orders.get("ord_b").status == "paid"


def webhook(event, payment_id="pay_1", gateway_order_id="order_GW1"):
    payload = json.dumps({
        "entity": "event",
        "event": event,
        "payload": {"payment": {"entity": {"id": payment_id, "order_id": gateway_order_id,
                                           "amount": 499900, "currency": "INR"}}},
    }).encode()
    sig = hmac.new(WEBHOOK_SECRET.encode(), payload, hashlib.sha256).hexdigest()
    return payload, sig


def test_webhook_settles_order(service, orders, entitlements, gateway):
    make_order(orders)
    gateway.get_order.return_value = gateway_order()

    result = service.handle_webhook(*webhook("order.paid"))

    assert not result.already_existed
    assert orders.get("ord_1").status == "paid"
    assert service.get_entitlement("user_1", "course_1").order_id == "ord_1"

    # redelivery is harmless
    assert service.handle_webhook(*webhook("payment.captured")).already_existed
    assert len(service.list_entitlements("user_1")) == 1


def test_webhook_with_bad_signature(service, orders, gateway):
    make_order(orders)
    payload, _ = webhook("order.paid")
    with pytest.raises(InvalidSignature):
        service.handle_webhook(payload, "0" * 64)
    gateway.get_order.assert_not_called()


def test_webhook_ignores_other_events(service, orders, gateway):
    make_order(orders)
    assert service.handle_webhook(*webhook("payment.failed")) is None
    assert orders.get("ord_1").status == "created"
    gateway.get_order.assert_not_called()


def test_webhook_with_malformed_payload(service):
    payload = b"not json"
    sig = hmac.new(WEBHOOK_SECRET.encode(), payload, hashlib.sha256).hexdigest()
    with pytest.raises(OrderValidationError):
        service.handle_webhook(payload, sig)
