"""
Idempotent Return Request Example

Run: uv run python examples/request_return.py
"""

import asyncio
import uuid
from datetime import datetime

from kungfu import Ok, Error
from sqlalchemy import func, select

from waypoint import idempotency as I
from waypoint import returns as R
from waypoint.db import EventTable, LineItemTable, OrderTable, ReturnTable, create_database
from waypoint.http import build_return_requests


def banner(title: str) -> None:
    print(f"\n{'═' * 60}\n  {title}\n{'═' * 60}\n")


def show(result) -> None:
    match result:
        case Ok(done):
            returns = done.response_body["order"]["returns"]
            cached = " (cached)" if done.from_cache else ""
            print(f"   {done.response_code}{cached}: {len(returns)} return(s), "
                  f"last is {returns[-1]['status']}")
        case Error(e):
            print(f"   Error: {e.kind.name} {e.message}")


async def count(session_factory, model) -> int:
    async with session_factory() as session:
        return (await session.execute(select(func.count()).select_from(model))).scalar_one()


async def main() -> None:
    banner("Idempotent Return Request")

    # SQLite allows one writer; a single pooled connection queues the concurrent calls
    session_factory, engine = await create_database(
        "sqlite+aiosqlite:///./example.db", pool_size=1, max_overflow=0
    )
    order_id = f"order_{uuid.uuid4().hex[:8]}"
    item_id = f"li_{uuid.uuid4().hex[:8]}"
    async with session_factory() as session, session.begin():
        session.add(
            OrderTable(
                id=order_id,
                no_notification=False,
                created_at=datetime.now(),
                items=[
                    LineItemTable(
                        id=item_id, title="Shirt", unit_price=2500, quantity=3, returned_quantity=0
                    ),
                ],
            )
        )

    requests = build_return_requests(session_factory, I.Policy())
    body = R.RequestReturnBody.model_validate(
        {"items": [{"item_id": item_id, "quantity": 1}], "receive_now": True}
    )

    try:
        # 1. First request
        print("1. First request:")
        token = uuid.uuid4().hex
        show(await requests.request_return(token, order_id, body))

        # 2. Retry with the same token
        print("2. Retry (same token):")
        show(await requests.request_return(token, order_id, body))

        # 3. Concurrent (5 requests, one token): one drives the stages,
        #    the others see LOCKED or replay the cached response
        print("3. Concurrent (5 requests, one token):")
        token = uuid.uuid4().hex
        match await requests.initialize(token, order_id):
            case Error(e):
                print(f"   Error: {e.kind.name} {e.message}")
                return
            case Ok(_):
                pass
        results = await asyncio.gather(
            *(requests.request_return(token, order_id, body) for _ in range(5))
        )
        for result in results:
            show(result)

        returns = await count(session_factory, ReturnTable)
        events = await count(session_factory, EventTable)
        print(f"\nSummary: {returns} returns, {events} events for 7 requests")

    finally:
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
