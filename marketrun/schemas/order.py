"""Order API schemas."""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from marketrun.models.order import OrderStatus


class OrderItemPayload(BaseModel):
    """Single checkout line."""

    product_id: int
    quantity: int = Field(default=1, ge=1)
    substitution_note: str | None = None


class OrderCreate(BaseModel):
    """Checkout selections passed explicitly by the buyer client."""

    items: list[OrderItemPayload] = Field(min_length=1)
    delivery_address: str = Field(min_length=1)
    payment_method: str | None = Field(default=None, max_length=16)


class TransitionRequest(BaseModel):
    """Desired next status; the current status is always read from storage."""

    target_status: OrderStatus


class OrderItemResponse(BaseModel):
    """Serialized order item."""

    id: int
    product_id: int
    seller_id: int
    quantity: int
    unit_price: Decimal
    subtotal: Decimal
    substitution_note: str | None = None
    seller_confirmed: bool
    seller_ready: bool
    runner_collected: bool
    handover_verified: bool

    model_config = ConfigDict(from_attributes=True)


class OrderResponse(BaseModel):
    """Serialized order."""

    id: int
    buyer_id: int
    runner_id: int | None = None
    courier_id: int | None = None
    status: OrderStatus
    status_label: str
    status_description: str
    items_total: Decimal
    runner_fee: Decimal
    delivery_fee: Decimal
    platform_fee: Decimal
    total_amount: Decimal
    delivery_address: str
    payment_method: str | None = None
    created_at: datetime
    confirmed_at: datetime | None = None
    delivered_at: datetime | None = None
    cancelled_at: datetime | None = None
    runner_verified: bool
    handover_courier_id: int | None = None
    items: list[OrderItemResponse]


class OrderActionResponse(BaseModel):
    """One transition the caller may take now."""

    status: OrderStatus
    action: str
    description: str
