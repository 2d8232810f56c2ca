"""
Return request — a two-stage idempotent operation.

    started ──create return, emit event──▶ return_requested
            ──receive (optional), project order──▶ finished (200 {order})

The return record and its event commit with the first advance. A retry after
that commit resumes at return_requested and never creates a second return.
"""

from dataclasses import dataclass
from typing import Any

from kungfu import Result, Ok, Error, LazyCoroResult

from waypoint import idempotency as I
from waypoint import workflow as W
from waypoint.returns._domain import (
    RETURN_REQUESTED,
    RETURN_REQUESTED_EVENT,
    ReturnDraft,
    NotFound,
    clamp_refund,
    resolve_no_notification,
)
from waypoint.returns._ports import EventBus, OrderService, ReturnService
from waypoint.returns._schemas import OrderOut, RequestReturnBody


@dataclass(frozen=True, slots=True)
class ReturnRequest:
    """Payload shared by every stage of one request."""

    order_id: str
    body: RequestReturnBody


def returns_path(order_id: str) -> str:
    return f"/orders/{order_id}/returns"


class ReturnRequests:
    """
    Executes POST /orders/{id}/returns under an idempotency key.

    Example:
        requests = ReturnRequests(keys, orders, returns, events)

        match await requests.request_return(header_key, "order_1", body):
            case Ok(result):
                return result.response_code, result.response_body
            case Error(err):
                ...
    """

    METHOD = "POST"

    def __init__(
        self,
        keys: I.IdempotencyKeyService,
        orders: OrderService[Any],
        returns: ReturnService[Any],
        events: EventBus[Any],
    ) -> None:
        self._keys = keys
        self._orders = orders
        self._returns = returns
        self._events = events
        self._flow: W.Workflow[ReturnRequest] = (
            W.workflow("order.request_return")
            .stage(I.STARTED, self._request)
            .stage(RETURN_REQUESTED, self._respond)
            .build()
        )
        self._executor = W.WorkflowExecutor(self._flow, keys)

    @property
    def keys(self) -> I.IdempotencyKeyService:
        return self._keys

    @property
    def flow(self) -> W.Workflow[ReturnRequest]:
        return self._flow

    async def initialize(
        self, token_hint: str, order_id: str
    ) -> Result[I.IdempotencyKey, I.IdempotencyError]:
        return await self._keys.initialize_request(
            token_hint,
            self.METHOD,
            {"id": order_id},
            returns_path(order_id),
        )

    def run(
        self, key: I.IdempotencyKey | str, order_id: str, body: RequestReturnBody
    ) -> LazyCoroResult[W.WorkflowResult, I.IdempotencyError]:
        return self._executor.run(key, ReturnRequest(order_id=order_id, body=body))

    async def request_return(
        self, token_hint: str, order_id: str, body: RequestReturnBody
    ) -> Result[W.WorkflowResult, I.IdempotencyError]:
        """Initialize the key and drive it to its cached response."""
        initialized = await self.initialize(token_hint, order_id)
        match initialized:
            case Ok(key):
                return await self.run(key, order_id, body)
            case Error(err):
                return Error(err)

    # ───────────────────────────────────────────────────────────────────────────
    # Stages
    # ───────────────────────────────────────────────────────────────────────────

    async def _request(self, ctx: W.StageContext[ReturnRequest]) -> I.StageOutcome:
        order_id = ctx.payload.order_id
        body = ctx.payload.body

        order = await self._orders.retrieve(ctx.tx, order_id, relations=())
        no_notification = resolve_no_notification(body.no_notification, order.no_notification)

        draft = ReturnDraft(
            order_id=order_id,
            idempotency_key=ctx.token,
            items=body.lines(),
            no_notification=no_notification,
            shipping=body.return_shipping.to_shipping() if body.return_shipping else None,
            refund_amount=clamp_refund(body.refund),
            note=body.note,
        )
        created = await self._returns.create(ctx.tx, draft)
        if body.return_shipping is not None:
            await self._returns.fulfill(ctx.tx, created.id)

        await self._events.emit(
            ctx.tx,
            RETURN_REQUESTED_EVENT,
            {
                "id": order_id,
                "return_id": created.id,
                "no_notification": no_notification,
            },
        )
        return I.Advance(RETURN_REQUESTED)

    async def _respond(self, ctx: W.StageContext[ReturnRequest]) -> I.StageOutcome:
        order_id = ctx.payload.order_id
        body = ctx.payload.body

        if body.receive_now:
            created = await self._returns.list(ctx.tx, idempotency_key=ctx.token)
            if not created:
                # The first stage committed its advance, so its return must exist.
                raise NotFound("Return", ctx.token)
            await self._returns.receive(ctx.tx, created[0].id, body.lines(), body.refund)

        order = await self._orders.retrieve(ctx.tx, order_id)
        return I.Respond(
            response_code=200,
            response_body={"order": OrderOut.model_validate(order).model_dump(mode="json")},
        )


__all__ = ("ReturnRequest", "ReturnRequests", "returns_path")
