from datetime import datetime, timezone

from sqlalchemy import Column, String, Integer, DateTime, JSON, UniqueConstraint
from coursepay.database import Base

ORDER_CREATED = "created"
ORDER_PAID = "paid"
ORDER_FAILED = "failed"
ORDER_EXPIRED = "expired"

TERMINAL_STATUSES = (ORDER_PAID, ORDER_FAILED, ORDER_EXPIRED)

SUBJECT_KEY = "subject_id"
RESOURCE_KEY = "resource_id"


def utcnow():
    return datetime.now(timezone.utc)


class Order(Base):
    __tablename__ = "orders"

    order_id = Column(String, primary_key=True)
    gateway_order_id = Column(String, unique=True, index=True, nullable=True)
    amount_minor_units = Column(Integer, nullable=False)   # paise, cents, ...
    currency = Column(String(3), nullable=False)
    status = Column(String, nullable=False, default=ORDER_CREATED)  # created | paid | failed | expired
    order_metadata = Column("metadata", JSON, nullable=False, default=dict)
    gateway_payment_id = Column(String, nullable=True)   # set when paid
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    @property
    def subject_id(self):
        return (self.order_metadata or {}).get(SUBJECT_KEY)

    @property
    def resource_id(self):
        return (self.order_metadata or {}).get(RESOURCE_KEY)

    def __repr__(self):
        return f"<Order {self.order_id} {self.status} {self.amount_minor_units} {self.currency}>"


class Entitlement(Base):
    __tablename__ = "entitlements"
    __table_args__ = (
        UniqueConstraint("subject_id", "resource_id", "order_id", name="uq_entitlement_grant"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    subject_id = Column(String, nullable=False, index=True)
    resource_id = Column(String, nullable=False)
    order_id = Column(String, nullable=False, index=True)
    amount_paid_minor_units = Column(Integer, nullable=False)
    gateway_payment_id = Column(String, nullable=True)
    granted_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    def __repr__(self):
        return f"<Entitlement {self.subject_id} -> {self.resource_id} (order {self.order_id})>"
