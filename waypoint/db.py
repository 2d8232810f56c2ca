"""
Database layer — SQLAlchemy tables for idempotency keys and the return flow.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from waypoint.idempotency import IdempotencyKeyMixin


# ═══════════════════════════════════════════════════════════════════════════════
# Base
# ═══════════════════════════════════════════════════════════════════════════════


class Base(DeclarativeBase):
    pass


# ═══════════════════════════════════════════════════════════════════════════════
# Idempotency Keys
# ═══════════════════════════════════════════════════════════════════════════════


class IdempotencyKeyTable(Base, IdempotencyKeyMixin):
    __tablename__ = "idempotency_keys"


# ═══════════════════════════════════════════════════════════════════════════════
# Orders
# ═══════════════════════════════════════════════════════════════════════════════


class OrderTable(Base):
    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(50), primary_key=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    no_notification: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    items: Mapped[list["LineItemTable"]] = relationship(
        back_populates="order",
        order_by="LineItemTable.id",
    )
    returns: Mapped[list["ReturnTable"]] = relationship(
        back_populates="order",
        order_by=lambda: [ReturnTable.created_at, ReturnTable.id],
    )


class LineItemTable(Base):
    """
    Ordered line.

    Note: returned_quantity counts units already received back.
    """

    __tablename__ = "line_items"

    id: Mapped[str] = mapped_column(String(50), primary_key=True)
    order_id: Mapped[str] = mapped_column(ForeignKey("orders.id"), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    unit_price: Mapped[int] = mapped_column(Integer, nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    returned_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    order: Mapped[OrderTable] = relationship(back_populates="items")


# ═══════════════════════════════════════════════════════════════════════════════
# Returns
# ═══════════════════════════════════════════════════════════════════════════════


class ReturnTable(Base):
    __tablename__ = "returns"

    id: Mapped[str] = mapped_column(String(50), primary_key=True)
    order_id: Mapped[str] = mapped_column(ForeignKey("orders.id"), nullable=False, index=True)
    idempotency_key: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    refund_amount: Mapped[int | None] = mapped_column(Integer, nullable=True)
    no_notification: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)

    shipping_option_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    shipping_price: Mapped[int | None] = mapped_column(Integer, nullable=True)
    shipping_fulfilled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    received_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    order: Mapped[OrderTable] = relationship(back_populates="returns")
    items: Mapped[list["ReturnItemTable"]] = relationship(
        back_populates="return_",
        order_by="ReturnItemTable.item_id",
    )


class ReturnItemTable(Base):
    __tablename__ = "return_items"

    return_id: Mapped[str] = mapped_column(ForeignKey("returns.id"), primary_key=True)
    item_id: Mapped[str] = mapped_column(ForeignKey("line_items.id"), primary_key=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    received_quantity: Mapped[int | None] = mapped_column(Integer, nullable=True)
    reason_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)

    return_: Mapped[ReturnTable] = relationship(back_populates="items")


# ═══════════════════════════════════════════════════════════════════════════════
# Events — transactional outbox
# ═══════════════════════════════════════════════════════════════════════════════


class EventTable(Base):
    """Events are written in the emitting transaction; a relay ships them later."""

    __tablename__ = "events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


# ═══════════════════════════════════════════════════════════════════════════════
# Database Setup
# ═══════════════════════════════════════════════════════════════════════════════


async def create_tables(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def create_database(
    url: str = "sqlite+aiosqlite:///:memory:",
    create: bool = True,
    **engine_options: Any,
) -> tuple[async_sessionmaker[AsyncSession], AsyncEngine]:
    """Create database and return (session_factory, engine)."""
    engine = create_async_engine(url, echo=False, **engine_options)

    if create:
        await create_tables(engine)

    return async_sessionmaker(engine, expire_on_commit=False), engine


__all__ = (
    "Base",
    "IdempotencyKeyTable",
    "OrderTable",
    "LineItemTable",
    "ReturnTable",
    "ReturnItemTable",
    "EventTable",
    "create_tables",
    "create_database",
)
