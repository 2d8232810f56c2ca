"""
Returns — the idempotent return-request operation on orders.

    requests = R.ReturnRequests(
        keys,
        R.SQLAlchemyOrderService(),
        R.SQLAlchemyReturnService(),
        R.SQLAlchemyEventBus(),
    )
    result = await requests.request_return(header_key, order_id, body)
"""

from waypoint.returns._domain import (
    RETURN_REQUESTED,
    RETURN_REQUESTED_EVENT,
    ReturnStatus,
    ReturnLine,
    ReturnShipping,
    ReturnDraft,
    clamp_refund,
    resolve_no_notification,
    ReturnsError,
    NotFound,
    InvalidData,
    InvalidState,
)
from waypoint.returns._schemas import (
    ReturnItemIn,
    ReturnShippingIn,
    RequestReturnBody,
    LineItemOut,
    ReturnItemOut,
    ReturnOut,
    OrderOut,
)
from waypoint.returns._ports import (
    OrderService,
    ReturnService,
    EventBus,
)
from waypoint.returns._services import (
    ORDER_RELATIONS,
    SQLAlchemyOrderService,
    SQLAlchemyReturnService,
    SQLAlchemyEventBus,
)
from waypoint.returns._workflow import (
    ReturnRequest,
    ReturnRequests,
    returns_path,
)

__all__ = (
    # Domain
    "RETURN_REQUESTED",
    "RETURN_REQUESTED_EVENT",
    "ReturnStatus",
    "ReturnLine",
    "ReturnShipping",
    "ReturnDraft",
    "clamp_refund",
    "resolve_no_notification",
    "ReturnsError",
    "NotFound",
    "InvalidData",
    "InvalidState",
    # Schemas
    "ReturnItemIn",
    "ReturnShippingIn",
    "RequestReturnBody",
    "LineItemOut",
    "ReturnItemOut",
    "ReturnOut",
    "OrderOut",
    # Ports
    "OrderService",
    "ReturnService",
    "EventBus",
    # SQLAlchemy
    "ORDER_RELATIONS",
    "SQLAlchemyOrderService",
    "SQLAlchemyReturnService",
    "SQLAlchemyEventBus",
    # Workflow
    "ReturnRequest",
    "ReturnRequests",
    "returns_path",
)
