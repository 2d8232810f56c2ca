"""
SQLAlchemy integration — idempotency record store for any model.

Usage:
    1. Add IdempotencyKeyMixin to a model:

        class IdempotencyKeyTable(Base, IdempotencyKeyMixin):
            __tablename__ = "idempotency_keys"

    2. Create store:

        store = SQLAlchemyStore(session_factory, model=IdempotencyKeyTable)

    3. Stages receive the AsyncSession of the stage transaction:

        async def create_return(session: AsyncSession) -> I.StageOutcome:
            session.add(ReturnTable(...))
            return I.Advance("return_requested")
"""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Protocol, Generic, TypeVar, cast
from collections.abc import AsyncIterator

from sqlalchemy import JSON, DateTime, Integer, String, or_, select, update
from sqlalchemy.engine import CursorResult
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import Mapped, mapped_column

from kungfu import Result, Ok, Error

from waypoint._types import JSON as JSONObject, RecoveryPoint
from waypoint.idempotency._types import (
    STARTED,
    FINISHED,
    IdempotencyKey,
    KeyPatch,
    RequestSignature,
)
from waypoint.idempotency._store import StoreError, StoreFailure


# ═══════════════════════════════════════════════════════════════════════════════
# Idempotency Key Mixin — add to your SQLAlchemy model
# ═══════════════════════════════════════════════════════════════════════════════


class IdempotencyKeyMixin:
    """
    Columns of an idempotency key table.

    - idempotency_key: token, primary key
    - request_method / request_path / request_params: request signature
    - recovery_point: next stage to run
    - response_code / response_body: cached response once finished
    - locked_at: set while a stage runs
    """

    idempotency_key: Mapped[str] = mapped_column(String(255), primary_key=True)

    request_method: Mapped[str] = mapped_column(String(10), nullable=False)
    request_path: Mapped[str] = mapped_column(String(500), nullable=False)
    request_params: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    recovery_point: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        default=STARTED,
    )

    response_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    response_body: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    locked_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class IdempotencyKeyModel(Protocol):
    """Protocol for models with IdempotencyKeyMixin."""

    idempotency_key: str
    request_method: str
    request_path: str
    request_params: dict[str, Any]
    recovery_point: str
    response_code: int | None
    response_body: dict[str, Any] | None
    locked_at: datetime | None
    created_at: datetime


M = TypeVar("M")


# ═══════════════════════════════════════════════════════════════════════════════
# SQLAlchemy Store
# ═══════════════════════════════════════════════════════════════════════════════


class SQLAlchemyStore(Generic[M]):
    """
    Idempotency record store over an async SQLAlchemy session factory.

    Note: The transaction handle is the AsyncSession. Stages and
    collaborators write through it; compare_and_advance issues its
    conditional UPDATE on the same session, so both commit together.

    Lock acquisition, release and updates run in their own short
    transactions.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        model: type[M],
    ) -> None:
        self._session_factory = session_factory
        self._model = cast(Any, model)

    async def get(self, token: str) -> Result[IdempotencyKey | None, StoreError]:
        try:
            async with self._session_factory() as session:
                row = await self._select(session, token)
                return Ok(self._to_key(row) if row is not None else None)
        except SQLAlchemyError as e:
            return Error(StoreError(f"Failed to get: {e}", e))

    async def create_if_absent(
        self,
        token: str,
        signature: RequestSignature,
        now: datetime,
    ) -> Result[bool, StoreError]:
        try:
            async with self._session_factory() as session, session.begin():
                session.add(
                    self._model(
                        idempotency_key=token,
                        request_method=signature.method,
                        request_path=signature.path,
                        request_params=dict(signature.params),
                        recovery_point=STARTED,
                        created_at=now,
                    )
                )
            return Ok(True)
        except IntegrityError:
            return Ok(False)
        except SQLAlchemyError as e:
            return Error(StoreError(f"Failed to create: {e}", e))

    async def acquire_lock(
        self,
        token: str,
        now: datetime,
        stale_before: datetime,
    ) -> Result[IdempotencyKey | None, StoreError]:
        model = self._model
        stmt = (
            update(model)
            .where(model.idempotency_key == token)
            .where(model.recovery_point != FINISHED)
            .where(or_(model.locked_at.is_(None), model.locked_at < stale_before))
            .values(locked_at=now)
            .execution_options(synchronize_session=False)
        )
        try:
            async with self._session_factory() as session, session.begin():
                cursor = cast(CursorResult[Any], await session.execute(stmt))
                if cursor.rowcount == 0:
                    return Ok(None)
                row = await self._select(session, token)
                return Ok(self._to_key(row) if row is not None else None)
        except SQLAlchemyError as e:
            return Error(StoreError(f"Failed to lock: {e}", e))

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        async with self._session_factory() as session:
            try:
                yield session
            except BaseException:
                await session.rollback()
                raise
            try:
                await session.commit()
            except SQLAlchemyError as e:
                raise StoreFailure(StoreError(f"Failed to commit: {e}", e)) from e

    async def compare_and_advance(
        self,
        tx: AsyncSession,
        token: str,
        expected: RecoveryPoint,
        lock: datetime,
        new_point: RecoveryPoint,
        response_code: int | None = None,
        response_body: JSONObject | None = None,
    ) -> Result[IdempotencyKey | None, StoreError]:
        model = self._model
        stmt = (
            update(model)
            .where(model.idempotency_key == token)
            .where(model.recovery_point == expected)
            .where(model.locked_at == lock)
            .values(
                recovery_point=new_point,
                response_code=response_code,
                response_body=dict(response_body) if response_body is not None else None,
                locked_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        try:
            cursor = cast(CursorResult[Any], await tx.execute(stmt))
            if cursor.rowcount == 0:
                return Ok(None)
            row = await self._select(tx, token, refresh=True)
            return Ok(self._to_key(row) if row is not None else None)
        except SQLAlchemyError as e:
            return Error(StoreError(f"Failed to advance: {e}", e))

    async def release_lock(self, token: str, lock: datetime) -> Result[None, StoreError]:
        model = self._model
        stmt = (
            update(model)
            .where(model.idempotency_key == token)
            .where(model.locked_at == lock)
            .values(locked_at=None)
            .execution_options(synchronize_session=False)
        )
        try:
            async with self._session_factory() as session, session.begin():
                await session.execute(stmt)
            return Ok(None)
        except SQLAlchemyError as e:
            return Error(StoreError(f"Failed to release lock: {e}", e))

    async def update(
        self, token: str, patch: KeyPatch
    ) -> Result[IdempotencyKey | None, StoreError]:
        model = self._model
        values = patch.values()
        if patch.recovery_point == FINISHED:
            values["locked_at"] = None
        if not values:
            return await self.get(token)

        stmt = (
            update(model)
            .where(model.idempotency_key == token)
            .where(model.recovery_point != FINISHED)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        try:
            async with self._session_factory() as session, session.begin():
                cursor = cast(CursorResult[Any], await session.execute(stmt))
                if cursor.rowcount == 0:
                    return Ok(None)
                row = await self._select(session, token)
                return Ok(self._to_key(row) if row is not None else None)
        except SQLAlchemyError as e:
            return Error(StoreError(f"Failed to update: {e}", e))

    async def _select(
        self, session: AsyncSession, token: str, refresh: bool = False
    ) -> IdempotencyKeyModel | None:
        stmt = select(self._model).where(self._model.idempotency_key == token)
        if refresh:
            stmt = stmt.execution_options(populate_existing=True)
        result = await session.execute(stmt)
        return cast(IdempotencyKeyModel | None, result.scalar_one_or_none())

    def _to_key(self, row: IdempotencyKeyModel) -> IdempotencyKey:
        return IdempotencyKey(
            token=row.idempotency_key,
            signature=RequestSignature(
                method=row.request_method,
                path=row.request_path,
                params=dict(row.request_params or {}),
            ),
            recovery_point=row.recovery_point,
            response_code=row.response_code,
            response_body=row.response_body,
            locked_at=row.locked_at,
            created_at=row.created_at,
        )


__all__ = (
    "IdempotencyKeyMixin",
    "IdempotencyKeyModel",
    "SQLAlchemyStore",
)
