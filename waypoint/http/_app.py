"""
Application factory.

    app = create_app(Settings())
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from waypoint import idempotency as I
from waypoint.config import Settings
from waypoint.db import Base, IdempotencyKeyTable
from waypoint.http._routes import router
from waypoint.returns import (
    ReturnRequests,
    SQLAlchemyEventBus,
    SQLAlchemyOrderService,
    SQLAlchemyReturnService,
)

logger = logging.getLogger(__name__)


def build_return_requests(
    session_factory: async_sessionmaker[AsyncSession],
    policy: I.Policy,
) -> ReturnRequests:
    store = I.SQLAlchemyStore(session_factory, model=IdempotencyKeyTable)
    orders = SQLAlchemyOrderService()
    return ReturnRequests(
        keys=I.IdempotencyKeyService(store, policy),
        orders=orders,
        returns=SQLAlchemyReturnService(orders),
        events=SQLAlchemyEventBus(),
    )


def create_app(
    settings: Settings | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> FastAPI:
    """
    Wire the return request endpoint.

    Without ``session_factory`` an engine is created from DATABASE_DSN and
    disposed on shutdown.
    """
    settings = settings if settings is not None else Settings()
    logging.getLogger("waypoint").setLevel(settings.LOG_LEVEL.upper())

    engine = None
    if session_factory is None:
        engine = create_async_engine(settings.DATABASE_DSN, echo=False)
        session_factory = async_sessionmaker(engine, expire_on_commit=False)
    sessions = session_factory

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if settings.CREATE_TABLES:
            async with sessions() as session, session.begin():
                await session.run_sync(
                    lambda sync: Base.metadata.create_all(bind=sync.connection())
                )
            logger.info("Database tables ready")
        yield
        if engine is not None:
            await engine.dispose()

    app = FastAPI(title="waypoint", lifespan=lifespan)
    app.state.return_requests = build_return_requests(sessions, settings.policy())
    app.include_router(router)
    return app


__all__ = ("build_return_requests", "create_app")
