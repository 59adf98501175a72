"""
Converts verified payments into entitlements.

A payment confirmation submitted by the client is untrusted. The engine:

1. Looks up the local order.
2. Checks the confirmation signature against the integration secret.
3. Re-fetches the authoritative order from the gateway.
4. Compares status, amount and currency with the local order.
5. Marks the order paid (conditional update) and grants the entitlement
   (insert-if-absent), in that order.

No lock is held across the gateway call and nothing is retried here: a
transient gateway failure surfaces as ``RetryableVerificationError`` with
the order untouched, and the caller decides when to try again. Every write
is conditional, so duplicate or concurrent confirmations converge on one
entitlement.
"""

import logging
from dataclasses import dataclass

from coursepay import signature
from coursepay.errors import (
    AmountMismatch,
    GatewayUnavailable,
    GatewayValidationError,
    InvalidSignature,
    OrderNotFound,
    PaymentNotCompleted,
    RetryableVerificationError,
    VerificationFailed,
)
from coursepay.models import ORDER_FAILED, ORDER_PAID, Entitlement, Order
from coursepay.schemas import ConfirmationClaim

log = logging.getLogger(__name__)

GATEWAY_PAID = "paid"
# gateway states after which the order can no longer be paid
GATEWAY_TERMINAL_FAILURES = frozenset({"failed", "cancelled", "canceled", "expired"})


@dataclass
class ReconcileResult:
    entitlement: Entitlement
    already_existed: bool


class ReconciliationEngine:
    def __init__(self, orders, entitlements, gateway, key_secret: str):
        self.orders = orders
        self.entitlements = entitlements
        self.gateway = gateway
        self._key_secret = key_secret

    def reconcile(self, claim: ConfirmationClaim) -> ReconcileResult:
        log_prefix = f"[Order: {claim.order_id}]"

        order = self.orders.get(claim.order_id)
        if order is None:
            log.warning(f"{log_prefix} Confirmation for unknown order.")
            raise OrderNotFound(f"Order {claim.order_id} not found", order_id=claim.order_id)

        if not signature.verify(order.gateway_order_id, claim.gateway_payment_id,
                                claim.signature, self._key_secret):
            # order stays untouched: the real payment may still succeed
            log.warning(f"{log_prefix} Invalid confirmation signature (payment {claim.gateway_payment_id}).")
            raise InvalidSignature(order_id=order.order_id)

        if claim.claimed_amount is not None and claim.claimed_amount != order.amount_minor_units:
            log.warning(
                f"{log_prefix} Client claimed {claim.claimed_amount}, order is "
                f"{order.amount_minor_units}. Ignoring claimed amount."
            )

        return self._settle(order, claim.gateway_payment_id)

    def reconcile_notification(self, gateway_order_id: str, gateway_payment_id: str) -> ReconcileResult:
        """
        Settles an order from a gateway notification whose transport signature
        was already verified. Runs the same authoritative checks as ``reconcile``.
        """
        order = self.orders.get_by_gateway_id(gateway_order_id)
        if order is None:
            log.warning(f"[Gateway order: {gateway_order_id}] Notification for unknown order.")
            raise OrderNotFound(f"No order for gateway order {gateway_order_id}")
        return self._settle(order, gateway_payment_id)

    def _settle(self, order: Order, gateway_payment_id: str) -> ReconcileResult:
        log_prefix = f"[Order: {order.order_id}]"

        subject_id, resource_id = order.subject_id, order.resource_id
        if not subject_id or not resource_id:
            log.error(f"{log_prefix} Order metadata lacks subject or resource id.")
            raise VerificationFailed("Order metadata is incomplete", order_id=order.order_id)

        if not order.gateway_order_id:
            log.error(f"{log_prefix} Order was never registered with the gateway.")
            raise VerificationFailed("Order has no gateway order", order_id=order.order_id)

        try:
            remote = self.gateway.get_order(order.gateway_order_id)
        except GatewayUnavailable as e:
            log.warning(f"{log_prefix} Gateway lookup failed transiently: {e}")
            raise RetryableVerificationError(str(e), order_id=order.order_id) from e
        except GatewayValidationError as e:
            log.error(f"{log_prefix} Gateway lookup failed permanently: {e}")
            raise VerificationFailed(str(e), order_id=order.order_id) from e

        if remote.id != order.gateway_order_id:
            log.error(f"{log_prefix} Gateway returned order {remote.id}, expected {order.gateway_order_id}.")
            raise VerificationFailed("Gateway returned a different order", order_id=order.order_id)

        if remote.status != GATEWAY_PAID:
            if remote.status in GATEWAY_TERMINAL_FAILURES:
                self.orders.transition(order.order_id, ORDER_FAILED)
            log.info(f"{log_prefix} Gateway reports status {remote.status!r}, not paid.")
            raise PaymentNotCompleted(
                f"Gateway status is {remote.status!r}", order_id=order.order_id
            )

        if remote.amount != order.amount_minor_units or remote.currency.upper() != order.currency.upper():
            log.error(
                f"{log_prefix} Amount mismatch: gateway {remote.amount} {remote.currency}, "
                f"order {order.amount_minor_units} {order.currency}."
            )
            raise AmountMismatch(order_id=order.order_id)

        if not self.orders.transition(order.order_id, ORDER_PAID, gateway_payment_id=gateway_payment_id):
            current = self.orders.get(order.order_id)
            if current is not None and current.status != ORDER_PAID:
                log.warning(
                    f"{log_prefix} Gateway reports paid but local status is "
                    f"{current.status!r}. Granting without changing status."
                )

        entitlement, created = self.entitlements.insert_if_absent(
            subject_id=subject_id,
            resource_id=resource_id,
            order_id=order.order_id,
            amount_paid_minor_units=remote.amount,
            gateway_payment_id=gateway_payment_id,
        )
        if created:
            log.info(f"{log_prefix} Entitlement granted: {subject_id} -> {resource_id}.")
        else:
            log.info(f"{log_prefix} Entitlement already granted, nothing to do.")
        return ReconcileResult(entitlement=entitlement, already_existed=not created)
