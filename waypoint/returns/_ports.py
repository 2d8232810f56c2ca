"""
Collaborator protocols.

Every call takes the stage transaction first, so the collaborator's writes
commit or roll back together with the recovery-point advance.
"""

from typing import Any, Protocol
from collections.abc import Collection, Sequence

from waypoint.db import OrderTable, ReturnTable
from waypoint.returns._domain import ReturnDraft, ReturnLine


class OrderService[TX](Protocol):
    async def retrieve(
        self, tx: TX, order_id: str, relations: Collection[str] = ...
    ) -> OrderTable:
        """Order with the named relations loaded; raises NotFound.

        The default loads line items and returns with their items.
        """
        ...


class ReturnService[TX](Protocol):
    async def create(self, tx: TX, draft: ReturnDraft) -> ReturnTable: ...

    async def fulfill(self, tx: TX, return_id: str) -> ReturnTable: ...

    async def list(self, tx: TX, *, idempotency_key: str) -> Sequence[ReturnTable]: ...

    async def receive(
        self,
        tx: TX,
        return_id: str,
        items: Sequence[ReturnLine],
        refund: int | None = None,
    ) -> OrderTable: ...


class EventBus[TX](Protocol):
    async def emit(self, tx: TX, name: str, payload: dict[str, Any]) -> None: ...


__all__ = ("OrderService", "ReturnService", "EventBus")
