"""
SQLAlchemy collaborators — orders, returns and the event outbox.

All of them work on the AsyncSession handed in by the stage and never
commit: the stage transaction does.
"""

import logging
import uuid
from datetime import datetime
from typing import Any
from collections.abc import Callable, Collection, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from waypoint.db import (
    EventTable,
    LineItemTable,
    OrderTable,
    ReturnItemTable,
    ReturnTable,
)
from waypoint.returns._domain import (
    ReturnDraft,
    ReturnLine,
    ReturnStatus,
    InvalidData,
    InvalidState,
    NotFound,
    clamp_refund,
)

logger = logging.getLogger(__name__)


def _return_id() -> str:
    return f"ret_{uuid.uuid4().hex[:12]}"


# ═══════════════════════════════════════════════════════════════════════════════
# Orders
# ═══════════════════════════════════════════════════════════════════════════════


ORDER_RELATIONS = ("items", "returns")
"""Relations of the public order projection."""

_ORDER_LOADERS = {
    "items": selectinload(OrderTable.items),
    "returns": selectinload(OrderTable.returns).selectinload(ReturnTable.items),
}


class SQLAlchemyOrderService:
    async def retrieve(
        self,
        tx: AsyncSession,
        order_id: str,
        relations: Collection[str] = ORDER_RELATIONS,
    ) -> OrderTable:
        """
        Load an order with the given relations eagerly loaded.

        Relations left out are not loaded and must not be touched.
        """
        unknown = set(relations) - _ORDER_LOADERS.keys()
        if unknown:
            raise ValueError(f"Unknown order relations: {sorted(unknown)}")

        stmt = (
            select(OrderTable)
            .where(OrderTable.id == order_id)
            .options(*(_ORDER_LOADERS[name] for name in relations))
            .execution_options(populate_existing=True)
        )
        order = (await tx.execute(stmt)).scalar_one_or_none()
        if order is None:
            raise NotFound("Order", order_id)
        return order


# ═══════════════════════════════════════════════════════════════════════════════
# Returns
# ═══════════════════════════════════════════════════════════════════════════════


class SQLAlchemyReturnService:
    """
    Return lifecycle: requested → received.

    Note: Without a refund override the refund is the price of the returned
    units minus the return shipping price, floored at 0.
    """

    def __init__(
        self,
        orders: SQLAlchemyOrderService | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._orders = orders if orders is not None else SQLAlchemyOrderService()
        self._clock = clock

    async def create(self, tx: AsyncSession, draft: ReturnDraft) -> ReturnTable:
        if not draft.items:
            raise InvalidData("A return must contain at least one item")

        line_items = await self._line_items(tx, order_id=draft.order_id)
        seen: set[str] = set()
        total = 0
        for line in draft.items:
            if line.item_id in seen:
                raise InvalidData(f"Item {line.item_id} is listed more than once")
            seen.add(line.item_id)

            item = line_items.get(line.item_id)
            if item is None:
                raise InvalidData(
                    f"Item {line.item_id} is not part of order {draft.order_id}"
                )
            returnable = item.quantity - item.returned_quantity
            if line.quantity > returnable:
                raise InvalidData(
                    f"Cannot return {line.quantity} of item {line.item_id}, "
                    f"{returnable} returnable"
                )
            total += item.unit_price * line.quantity

        shipping = draft.shipping
        shipping_price = shipping.price if shipping is not None else None
        if draft.refund_amount is not None:
            refund_amount = draft.refund_amount
        else:
            refund_amount = max(total - (shipping_price or 0), 0)

        created = ReturnTable(
            id=_return_id(),
            order_id=draft.order_id,
            idempotency_key=draft.idempotency_key,
            status=ReturnStatus.REQUESTED.value,
            refund_amount=refund_amount,
            no_notification=draft.no_notification,
            note=draft.note,
            shipping_option_id=shipping.option_id if shipping is not None else None,
            shipping_price=shipping_price,
            created_at=self._clock(),
            items=[
                ReturnItemTable(
                    item_id=line.item_id,
                    quantity=line.quantity,
                    reason_id=line.reason_id,
                    note=line.note,
                )
                for line in draft.items
            ],
        )
        tx.add(created)
        await tx.flush()
        logger.debug("Created return %s for order %s", created.id, draft.order_id)
        return created

    async def fulfill(self, tx: AsyncSession, return_id: str) -> ReturnTable:
        """Mark the return shipping as dispatched."""
        ret = await self._get(tx, return_id)
        if ret.shipping_option_id is None:
            raise InvalidState(f"Return {return_id} has no shipping method")
        if ret.shipping_fulfilled_at is not None:
            raise InvalidState(f"Return {return_id} shipping is already fulfilled")
        ret.shipping_fulfilled_at = self._clock()
        await tx.flush()
        return ret

    async def list(
        self, tx: AsyncSession, *, idempotency_key: str
    ) -> Sequence[ReturnTable]:
        stmt = (
            select(ReturnTable)
            .where(ReturnTable.idempotency_key == idempotency_key)
            .order_by(ReturnTable.created_at, ReturnTable.id)
        )
        return (await tx.execute(stmt)).scalars().all()

    async def receive(
        self,
        tx: AsyncSession,
        return_id: str,
        items: Sequence[ReturnLine],
        refund: int | None = None,
    ) -> OrderTable:
        """
        Record the return as received and put the units back on the order.

        Returns the reloaded order.
        """
        ret = await self._get(tx, return_id)
        if ret.status != ReturnStatus.REQUESTED.value:
            raise InvalidState(f"Return {return_id} is {ret.status}, cannot receive")

        requested = {item.item_id: item for item in ret.items}
        line_items = await self._line_items(tx, order_id=ret.order_id)
        for line in items:
            return_item = requested.get(line.item_id)
            if return_item is None:
                raise InvalidData(f"Item {line.item_id} is not part of return {return_id}")
            item = line_items[line.item_id]
            if item.returned_quantity + line.quantity > item.quantity:
                raise InvalidData(
                    f"Cannot receive {line.quantity} of item {line.item_id}, "
                    f"only {item.quantity - item.returned_quantity} outstanding"
                )
            return_item.received_quantity = line.quantity
            item.returned_quantity += line.quantity

        override = clamp_refund(refund)
        if override is not None:
            ret.refund_amount = override
        ret.status = ReturnStatus.RECEIVED.value
        ret.received_at = self._clock()
        await tx.flush()

        logger.debug("Received return %s", return_id)
        return await self._orders.retrieve(tx, ret.order_id)

    async def _get(self, tx: AsyncSession, return_id: str) -> ReturnTable:
        stmt = (
            select(ReturnTable)
            .where(ReturnTable.id == return_id)
            .options(selectinload(ReturnTable.items))
            .execution_options(populate_existing=True)
        )
        ret = (await tx.execute(stmt)).scalar_one_or_none()
        if ret is None:
            raise NotFound("Return", return_id)
        return ret

    async def _line_items(
        self, tx: AsyncSession, *, order_id: str
    ) -> dict[str, LineItemTable]:
        stmt = select(LineItemTable).where(LineItemTable.order_id == order_id)
        rows = (await tx.execute(stmt)).scalars().all()
        return {row.id: row for row in rows}


# ═══════════════════════════════════════════════════════════════════════════════
# Events
# ═══════════════════════════════════════════════════════════════════════════════


class SQLAlchemyEventBus:
    """Transactional outbox: an event exists iff the emitting stage committed."""

    def __init__(self, clock: Callable[[], datetime] = datetime.now) -> None:
        self._clock = clock

    async def emit(self, tx: AsyncSession, name: str, payload: dict[str, Any]) -> None:
        tx.add(EventTable(name=name, payload=dict(payload), created_at=self._clock()))
        await tx.flush()
        logger.debug("Queued event %s", name)


__all__ = (
    "ORDER_RELATIONS",
    "SQLAlchemyOrderService",
    "SQLAlchemyReturnService",
    "SQLAlchemyEventBus",
)
