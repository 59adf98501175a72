"""
Application-facing payment operations.

``PaymentService`` is what the rest of the storefront talks to: it creates
orders, reconciles client confirmations and gateway webhooks, and answers
status and entitlement queries. ``build_service`` wires the database,
stores, gateway client and reconciliation engine from ``Settings``; the
returned service owns those handles until ``close()``.
"""

import json
import logging
import uuid
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy.exc import IntegrityError

from coursepay import signature
from coursepay.config import Settings
from coursepay.database import init_db, make_engine, make_sessionmaker
from coursepay.errors import (
    GatewayUnauthorized,
    GatewayValidationError,
    InvalidSignature,
    OrderNotFound,
    OrderValidationError,
)
from coursepay.gateway import GatewayClient
from coursepay.models import (
    ORDER_CREATED,
    ORDER_EXPIRED,
    ORDER_FAILED,
    RESOURCE_KEY,
    SUBJECT_KEY,
    Entitlement,
    Order,
    utcnow,
)
from coursepay.reconciliation import ReconcileResult, ReconciliationEngine
from coursepay.schemas import ConfirmationClaim, CreatedOrder, OrderStatus
from coursepay.stores import EntitlementStore, OrderStore

log = logging.getLogger(__name__)

# webhook events that mean money was taken for an order
SETTLEMENT_EVENTS = ("order.paid", "payment.captured")


class PaymentService:
    def __init__(self, orders: OrderStore, entitlements: EntitlementStore,
                 gateway: GatewayClient, key_secret: str, webhook_secret: str = "",
                 engine=None):
        self.orders = orders
        self.entitlements = entitlements
        self.gateway = gateway
        self.reconciler = ReconciliationEngine(orders, entitlements, gateway, key_secret)
        self._webhook_secret = webhook_secret
        self._db_engine = engine

    def close(self):
        self.gateway.close()
        if self._db_engine is not None:
            self._db_engine.dispose()

    # --- orders ---

    def create_order(self, subject_id: str, resource_id: str, amount_minor_units: int,
                     currency: str = "INR", notes: Optional[Dict[str, str]] = None,
                     order_id: Optional[str] = None) -> CreatedOrder:
        """
        Creates a local order and registers it with the gateway.

        Passing an ``order_id`` that already exists returns that order
        instead of creating a second one, provided the subject, resource
        and amount match; a mismatch raises ``OrderValidationError``. If an earlier attempt never
        reached the gateway, registration is retried.
        """
        if not subject_id or not resource_id:
            raise OrderValidationError("subject_id and resource_id are required")
        if isinstance(amount_minor_units, bool) or not isinstance(amount_minor_units, int) \
                or amount_minor_units <= 0:
            raise OrderValidationError("amount_minor_units must be a positive integer")
        if not isinstance(currency, str) or len(currency) != 3 or not currency.isalpha():
            raise OrderValidationError("currency must be a 3-letter ISO code")
        currency = currency.upper()

        if order_id:
            existing = self.orders.get(order_id)
            if existing is not None:
                return self._resume(existing, subject_id, resource_id, amount_minor_units, currency)

        metadata = {str(k): str(v) for k, v in (notes or {}).items()}
        metadata[SUBJECT_KEY] = subject_id
        metadata[RESOURCE_KEY] = resource_id

        now = utcnow()
        order = Order(
            order_id=order_id or f"ord_{uuid.uuid4().hex}",
            amount_minor_units=amount_minor_units,
            currency=currency,
            status=ORDER_CREATED,
            order_metadata=metadata,
            created_at=now,
            updated_at=now,
        )
        try:
            self.orders.add(order)
        except IntegrityError:
            # same order_id created concurrently
            existing = self.orders.get(order.order_id)
            if existing is None:
                raise
            return self._resume(existing, subject_id, resource_id, amount_minor_units, currency)

        log.info(f"[Order: {order.order_id}] Created for {subject_id} -> {resource_id} "
                 f"({amount_minor_units} {currency}).")
        return self._register_with_gateway(order)

    def _resume(self, order: Order, subject_id: str, resource_id: str,
                amount_minor_units: int, currency: str) -> CreatedOrder:
        if order.subject_id != subject_id:
            raise OrderValidationError(f"Order {order.order_id} belongs to another subject")
        if (order.resource_id != resource_id or order.amount_minor_units != amount_minor_units
                or order.currency.upper() != currency):
            log.warning(f"[Order: {order.order_id}] Reused order id with different resource, amount or currency.")
            raise OrderValidationError(f"Order {order.order_id} already exists with different terms")
        if order.status == ORDER_CREATED and not order.gateway_order_id:
            return self._register_with_gateway(order)
        return self._created_order(order)

    def _register_with_gateway(self, order: Order) -> CreatedOrder:
        notes = dict(order.order_metadata)
        try:
            remote = self.gateway.create_order(
                order.amount_minor_units, order.currency, order.order_id, notes,
            )
        except GatewayValidationError:
            # the gateway will never accept this order
            self.orders.transition(order.order_id, ORDER_FAILED)
            raise

        self.orders.attach_gateway_order(order.order_id, remote.id)
        return self._created_order(self.orders.get(order.order_id))

    def _created_order(self, order: Order) -> CreatedOrder:
        return CreatedOrder(
            order_id=order.order_id,
            gateway_order_id=order.gateway_order_id,
            amount_minor_units=order.amount_minor_units,
            currency=order.currency,
            status=order.status,
            key_id=self.gateway.key_id,
        )

    def get_order(self, order_id: str) -> Order:
        order = self.orders.get(order_id)
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found", order_id=order_id)
        return order

    def get_order_status(self, order_id: str) -> OrderStatus:
        return OrderStatus.model_validate(self.get_order(order_id))

    def expire_order(self, order_id: str) -> bool:
        self.get_order(order_id)
        return self.orders.transition(order_id, ORDER_EXPIRED)

    def expire_orders_created_before(self, cutoff: datetime) -> int:
        """Expires every unpaid order created before ``cutoff`` (UTC). The TTL is the caller's policy."""
        expired = 0
        for order in self.orders.list_created_before(cutoff):
            if self.orders.transition(order.order_id, ORDER_EXPIRED):
                expired += 1
        if expired:
            log.info(f"Expired {expired} unpaid orders created before {cutoff.isoformat()}.")
        return expired

    # --- reconciliation ---

    def reconcile(self, claim: ConfirmationClaim) -> ReconcileResult:
        return self.reconciler.reconcile(claim)

    def handle_webhook(self, payload: bytes, webhook_signature: Optional[str]) -> Optional[ReconcileResult]:
        """
        Processes a signed gateway webhook.

        Returns the reconcile result for settlement events and None for
        events that need no action.
        """
        if not self._webhook_secret:
            raise GatewayUnauthorized("Webhook secret not configured")
        if not signature.verify_webhook(payload, webhook_signature, self._webhook_secret):
            log.warning("Rejected webhook with invalid signature.")
            raise InvalidSignature("Invalid webhook signature")

        try:
            event = json.loads(payload.decode("utf-8"))
            kind = event["event"]
        except (UnicodeDecodeError, ValueError, KeyError, TypeError) as e:
            raise OrderValidationError("Malformed webhook payload") from e

        if kind not in SETTLEMENT_EVENTS:
            log.info(f"Ignoring webhook event {kind!r}.")
            return None

        try:
            payment = event["payload"]["payment"]["entity"]
            gateway_order_id = payment["order_id"]
            payment_id = payment["id"]
        except (KeyError, TypeError) as e:
            raise OrderValidationError(f"Webhook {kind!r} lacks payment details") from e

        log.info(f"[Gateway order: {gateway_order_id}] Webhook {kind!r} for payment {payment_id}.")
        return self.reconciler.reconcile_notification(gateway_order_id, payment_id)

    # --- entitlements ---

    def get_entitlement(self, subject_id: str, resource_id: str) -> Optional[Entitlement]:
        return self.entitlements.get(subject_id, resource_id)

    def list_entitlements(self, subject_id: str) -> List[Entitlement]:
        return self.entitlements.list_for_subject(subject_id)


def build_service(settings: Settings, transport=None) -> PaymentService:
    gateway = GatewayClient(
        settings.gateway_base_url,
        settings.gateway_key_id,
        settings.gateway_key_secret,
        timeout=settings.gateway_timeout_seconds,
        transport=transport,
    )

    engine = make_engine(settings.database_url)
    init_db(engine)
    sessions = make_sessionmaker(engine)
    return PaymentService(
        OrderStore(sessions),
        EntitlementStore(sessions),
        gateway,
        key_secret=settings.gateway_key_secret,
        webhook_secret=settings.gateway_webhook_secret,
        engine=engine,
    )
