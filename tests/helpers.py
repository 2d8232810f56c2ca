from datetime import datetime, timedelta
from typing import Any

import pytest
from sqlalchemy import func, select
from kungfu import Result, Ok, Error

from waypoint.db import LineItemTable, OrderTable


def ok[T](result: Result[T, Any]) -> T:
    match result:
        case Ok(value):
            return value
        case Error(err):
            pytest.fail(f"expected Ok, got Error({err!r})")


def err[E](result: Result[Any, E]) -> E:
    match result:
        case Error(error):
            return error
        case Ok(value):
            pytest.fail(f"expected Error, got Ok({value!r})")


class Clock:
    """Manually advanced clock."""

    def __init__(self, now: datetime = datetime(2024, 1, 1, 12, 0, 0)) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


async def count_rows(session_factory: Any, model: Any) -> int:
    async with session_factory() as session:
        return (await session.execute(select(func.count()).select_from(model))).scalar_one()


async def seed_order(session_factory: Any) -> None:
    """order_1: li_1 (2 x 2500), li_2 (1 x 1000)."""
    async with session_factory() as session, session.begin():
        session.add(
            OrderTable(
                id="order_1",
                email="customer@example.com",
                no_notification=False,
                created_at=datetime(2024, 1, 1, 9, 0, 0),
                items=[
                    LineItemTable(
                        id="li_1", title="Shirt", unit_price=2500, quantity=2, returned_quantity=0
                    ),
                    LineItemTable(
                        id="li_2", title="Socks", unit_price=1000, quantity=1, returned_quantity=0
                    ),
                ],
            )
        )
