"""
Durable persistence for orders and entitlements.

Both stores take an explicitly constructed sessionmaker and open one short
session per operation. Writes that must be safe under concurrent duplicate
confirmations are single conditional statements:

- order status moves with ``UPDATE ... WHERE status = 'created'``
- entitlements are inserted against a unique constraint and an
  ``IntegrityError`` means another writer got there first
"""

import logging
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from coursepay.models import (
    ORDER_CREATED,
    TERMINAL_STATUSES,
    Entitlement,
    Order,
    utcnow,
)

log = logging.getLogger(__name__)


class OrderStore:
    def __init__(self, sessionmaker):
        self.sessionmaker = sessionmaker

    def add(self, order: Order) -> Order:
        with self.sessionmaker() as db:
            db.add(order)
            db.commit()
        return order

    def get(self, order_id: str) -> Optional[Order]:
        with self.sessionmaker() as db:
            return db.get(Order, order_id)

    def get_by_gateway_id(self, gateway_order_id: str) -> Optional[Order]:
        with self.sessionmaker() as db:
            return db.execute(
                select(Order).where(Order.gateway_order_id == gateway_order_id)
            ).scalar_one_or_none()

    def attach_gateway_order(self, order_id: str, gateway_order_id: str) -> bool:
        """Records the gateway id, only if none has been recorded yet."""
        with self.sessionmaker() as db:
            result = db.execute(
                update(Order)
                .where(Order.order_id == order_id, Order.gateway_order_id.is_(None))
                .values(gateway_order_id=gateway_order_id, updated_at=utcnow())
            )
            db.commit()
            return result.rowcount == 1

    def transition(self, order_id: str, to_status: str,
                   gateway_payment_id: Optional[str] = None) -> bool:
        """
        Moves an order out of ``created``.

        Returns True only for the caller that performed the transition;
        an order already in a terminal state is left untouched.
        """
        if to_status not in TERMINAL_STATUSES:
            raise ValueError(f"Cannot transition an order to {to_status!r}")

        values = {"status": to_status, "updated_at": utcnow()}
        if gateway_payment_id is not None:
            values["gateway_payment_id"] = gateway_payment_id

        with self.sessionmaker() as db:
            result = db.execute(
                update(Order)
                .where(Order.order_id == order_id, Order.status == ORDER_CREATED)
                .values(**values)
            )
            db.commit()

        moved = result.rowcount == 1
        if moved:
            log.info(f"[Order: {order_id}] Status: {ORDER_CREATED} -> {to_status}")
        return moved

    def list_created_before(self, cutoff: datetime) -> List[Order]:
        with self.sessionmaker() as db:
            return list(db.execute(
                select(Order)
                .where(Order.status == ORDER_CREATED, Order.created_at < cutoff)
                .order_by(Order.created_at)
            ).scalars())


class EntitlementStore:
    def __init__(self, sessionmaker):
        self.sessionmaker = sessionmaker

    def insert_if_absent(self, subject_id: str, resource_id: str, order_id: str,
                         amount_paid_minor_units: int,
                         gateway_payment_id: Optional[str] = None) -> Tuple[Entitlement, bool]:
        """
        Grants an entitlement once per (subject, resource, order).

        Returns:
            (Entitlement, created): ``created`` is False when the grant
            already existed, either from an earlier call or a concurrent one.
        """
        entitlement = Entitlement(
            subject_id=subject_id,
            resource_id=resource_id,
            order_id=order_id,
            amount_paid_minor_units=amount_paid_minor_units,
            gateway_payment_id=gateway_payment_id,
            granted_at=utcnow(),
        )
        with self.sessionmaker() as db:
            try:
                db.add(entitlement)
                db.commit()
                return entitlement, True
            except IntegrityError:
                # a duplicate confirmation won the race
                db.rollback()

            existing = db.execute(
                select(Entitlement).where(
                    Entitlement.subject_id == subject_id,
                    Entitlement.resource_id == resource_id,
                    Entitlement.order_id == order_id,
                )
            ).scalar_one()
            return existing, False

    def get(self, subject_id: str, resource_id: str) -> Optional[Entitlement]:
        with self.sessionmaker() as db:
            return db.execute(
                select(Entitlement)
                .where(Entitlement.subject_id == subject_id,
                       Entitlement.resource_id == resource_id)
                .order_by(Entitlement.granted_at.desc(), Entitlement.id.desc())
                .limit(1)
            ).scalar_one_or_none()

    def list_for_subject(self, subject_id: str) -> List[Entitlement]:
        with self.sessionmaker() as db:
            return list(db.execute(
                select(Entitlement)
                .where(Entitlement.subject_id == subject_id)
                .order_by(Entitlement.granted_at.desc(), Entitlement.id.desc())
            ).scalars())
