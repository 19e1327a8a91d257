"""Pydantic schemas for the payments API.

Request schemas validate and normalize incoming payloads before they are
mapped to domain DTOs; read schemas shape responses (``model_dump`` with
``mode="json"`` renders Decimals as strings and datetimes as ISO 8601).
"""

import re
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .domain import CaptureContext, CheckoutSpec


EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
CURRENCIES = {"USD", "EUR"}


def _normalize_currency(v: str) -> str:
    v2 = v.upper()
    if v2 not in CURRENCIES:
        raise ValueError("Unsupported currency")
    return v2


def _normalize_email(v: str) -> str:
    v2 = v.strip()
    if not EMAIL_RE.match(v2):
        raise ValueError("Invalid email")
    return v2


class CreateOrderDTO(BaseModel):
    """Checkout request sent when the buyer clicks "buy".

    Attributes:
        product_id: Product being purchased.
        product_name: Display name, sent to PayPal as the item name.
        product_price: Positive price with at most two decimals.
        currency: 3-letter ISO code, normalized to uppercase and validated
            against the supported set.
        buyer_email: Payer email passed to PayPal.
    """

    product_id: str = Field(min_length=1, max_length=128)
    product_name: str = Field(min_length=1, max_length=300)
    product_price: Decimal = Field(gt=0, max_digits=12, decimal_places=2)
    currency: str = Field(min_length=3, max_length=3)
    buyer_email: str = Field(min_length=3, max_length=254)

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        return _normalize_currency(v)

    @field_validator("buyer_email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        return _normalize_email(v)

    def to_spec(self) -> CheckoutSpec:
        return CheckoutSpec(**self.model_dump())


class CaptureOrderDTO(BaseModel):
    """Approval callback payload: the remote order id plus checkout snapshot."""

    remote_order_id: str = Field(min_length=1, max_length=64)
    product_id: str = Field(min_length=1, max_length=128)
    product_name: str = Field(default="", max_length=300)
    product_price: Decimal = Field(gt=0, max_digits=12, decimal_places=2)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    buyer_id: str = Field(min_length=1, max_length=128)
    buyer_email: str = Field(default="", max_length=254)
    creator_id: str = Field(min_length=1, max_length=128)
    creator_name: str = Field(default="", max_length=200)
    creator_email: str = Field(default="", max_length=254)

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        return _normalize_currency(v)

    def to_context(self) -> CaptureContext:
        return CaptureContext(**self.model_dump(exclude={"remote_order_id"}))


class RefundOrderDTO(BaseModel):
    reason: str = Field(default="", max_length=2000)


class DispatchPayoutDTO(BaseModel):
    """Operator request to pay a seller.

    ``amount`` may be omitted when ``payout_ids`` lists the payouts to
    send; it then defaults to their total.
    """

    seller_id: str = Field(min_length=1, max_length=128)
    email: str = Field(min_length=3, max_length=254)
    amount: Optional[Decimal] = Field(default=None, max_digits=12, decimal_places=2)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    payout_ids: Optional[list[str]] = None

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        return _normalize_currency(v)

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        return _normalize_email(v)


class OrderReadDTO(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    remote_order_id: str
    buyer_id: str
    buyer_email: str
    creator_id: str
    creator_name: str
    product_id: str
    product_name: str
    product_price: Decimal
    currency: str
    total_amount: Decimal
    platform_fee: Decimal
    seller_amount: Decimal
    status: str
    paypal_status: str
    refund_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    captured_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None

    @field_validator("status", mode="before")
    @classmethod
    def status_value(cls, v):
        return getattr(v, "value", v)


class PayoutReadDTO(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    order_id: str
    seller_id: str
    seller_email: str
    amount: Decimal
    currency: str
    status: str
    paypal_payout_id: str
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @field_validator("status", mode="before")
    @classmethod
    def status_value(cls, v):
        return getattr(v, "value", v)
