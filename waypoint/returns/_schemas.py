"""
Wire schemas — request body of a return request, order projection.
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from waypoint.returns._domain import ReturnLine, ReturnShipping


# ═══════════════════════════════════════════════════════════════════════════════
# Request
# ═══════════════════════════════════════════════════════════════════════════════


class ReturnItemIn(BaseModel):
    item_id: str = Field(min_length=1)
    quantity: int = Field(ge=1)
    reason_id: str | None = None
    note: str | None = None

    def to_line(self) -> ReturnLine:
        return ReturnLine(
            item_id=self.item_id,
            quantity=self.quantity,
            reason_id=self.reason_id,
            note=self.note,
        )


class ReturnShippingIn(BaseModel):
    option_id: str | None = None
    price: int | None = Field(default=None, ge=0)

    def to_shipping(self) -> ReturnShipping:
        return ReturnShipping(option_id=self.option_id, price=self.price)


class RequestReturnBody(BaseModel):
    """
    Body of POST /orders/{id}/returns.

    refund: override of the computed refund; negative is clamped to 0.
    no_notification: falls back to the order's flag when omitted.
    """

    items: list[ReturnItemIn]
    return_shipping: ReturnShippingIn | None = None
    note: str | None = None
    receive_now: bool = False
    no_notification: bool | None = None
    refund: int | None = None

    def lines(self) -> tuple[ReturnLine, ...]:
        return tuple(item.to_line() for item in self.items)


# ═══════════════════════════════════════════════════════════════════════════════
# Order Projection
# ═══════════════════════════════════════════════════════════════════════════════


class LineItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    title: str
    unit_price: int
    quantity: int
    returned_quantity: int


class ReturnItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    item_id: str
    quantity: int
    received_quantity: int | None
    reason_id: str | None
    note: str | None


class ReturnOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    status: str
    refund_amount: int | None
    no_notification: bool
    note: str | None
    shipping_option_id: str | None
    shipping_price: int | None
    shipping_fulfilled_at: datetime | None
    received_at: datetime | None
    created_at: datetime
    items: list[ReturnItemOut]


class OrderOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str | None
    no_notification: bool
    created_at: datetime
    items: list[LineItemOut]
    returns: list[ReturnOut]


__all__ = (
    "ReturnItemIn",
    "ReturnShippingIn",
    "RequestReturnBody",
    "LineItemOut",
    "ReturnItemOut",
    "ReturnOut",
    "OrderOut",
)
