from datetime import datetime
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictInt, StrictStr, field_validator


class ConfirmationClaim(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True, frozen=True)

    order_id: StrictStr = Field(..., min_length=1, max_length=128)
    gateway_payment_id: StrictStr = Field(..., min_length=1, max_length=128)
    signature: StrictStr = Field(..., min_length=1, max_length=256)
    # advisory only, never used to authorise anything
    claimed_amount: Optional[StrictInt] = Field(default=None, ge=0)


class CreateOrderRequest(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    resource_id: StrictStr = Field(..., min_length=1, max_length=128)
    amount_minor_units: StrictInt = Field(..., gt=0)
    currency: str = Field(default="INR", pattern=r"^[A-Za-z]{3}$")
    notes: Dict[str, str] = Field(default_factory=dict)
    order_id: Optional[StrictStr] = Field(default=None, min_length=1, max_length=64)

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v):
        return v.upper()


class CreatedOrder(BaseModel):
    order_id: str
    gateway_order_id: Optional[str]
    amount_minor_units: int
    currency: str
    status: str
    key_id: Optional[str] = None   # public key for the checkout widget


class OrderStatus(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    order_id: str
    gateway_order_id: Optional[str]
    amount_minor_units: int
    currency: str
    status: str
    created_at: datetime
    updated_at: datetime


class EntitlementOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    subject_id: str
    resource_id: str
    order_id: str
    amount_paid_minor_units: int
    granted_at: datetime


class ReconcileResponse(BaseModel):
    entitlement: EntitlementOut
    already_existed: bool
