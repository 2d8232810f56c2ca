"""
Idempotency key service — token lifecycle and exclusive stage execution.

    keys = I.IdempotencyKeyService(I.MemoryStore(), I.Policy().with_on_locked(I.WAIT))

    key = await keys.initialize_request("", "POST", {"id": "order_1"}, "/orders/order_1/returns")
    key = await keys.work_stage(token, lambda tx: create_return(tx), expected=I.STARTED)
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Any
from collections.abc import Awaitable, Callable, Mapping

from combinators import lift as L
from kungfu import Result, Ok, Error

from waypoint._types import RecoveryPoint
from waypoint.idempotency._types import (
    FINISHED,
    Advance,
    Respond,
    StageOutcome,
    IdempotencyKey,
    IdempotencyError,
    IdempotencyErrorKind,
    KeyPatch,
    RequestSignature,
)
from waypoint.idempotency._store import CommitConflict, StoreAny, StoreError, StoreFailure
from waypoint.idempotency._policy import Policy, OnLocked
from waypoint.idempotency._graph import InitRequest, resolve_key

logger = logging.getLogger(__name__)


type StageFn = Callable[[Any], Awaitable[StageOutcome]]
"""Stage body: receives the transaction handle, returns Advance or Respond."""


# ═══════════════════════════════════════════════════════════════════════════════
# Internal signals — raised inside the transaction to force rollback
# ═══════════════════════════════════════════════════════════════════════════════


class _AdvanceRejected(Exception):
    """compare_and_advance found the key moved or the lock lost."""


def _store_error(err: StoreError) -> IdempotencyError:
    return IdempotencyError(
        kind=IdempotencyErrorKind.STORE_ERROR,
        message=err.message,
        original_error=err.cause,
    )


def _classify(token: str, point: RecoveryPoint) -> Callable[[Exception], IdempotencyError]:
    def classify(e: Exception) -> IdempotencyError:
        match e:
            case _AdvanceRejected() | CommitConflict():
                return IdempotencyError(
                    kind=IdempotencyErrorKind.CONFLICT,
                    message=f"Idempotency key {token} was modified concurrently at {point}",
                )
            case StoreFailure(error=err):
                return _store_error(err)
            case _:
                return IdempotencyError(
                    kind=IdempotencyErrorKind.STAGE_FAILURE,
                    message=str(e) or type(e).__name__,
                    original_error=e,
                )

    return classify


# ═══════════════════════════════════════════════════════════════════════════════
# Idempotency Key Service
# ═══════════════════════════════════════════════════════════════════════════════


class IdempotencyKeyService:
    """
    Owns the lifecycle of idempotency tokens.

    Note: Every public method returns Result; stage exceptions never escape.
    """

    def __init__(
        self,
        store: StoreAny,
        policy: Policy | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._store = store
        self._policy = policy if policy is not None else Policy()
        self._clock = clock

    @property
    def policy(self) -> Policy:
        return self._policy

    async def initialize_request(
        self,
        token_hint: str,
        method: str,
        params: Mapping[str, str],
        path: str,
    ) -> Result[IdempotencyKey, IdempotencyError]:
        """
        Look up or create the key for a request.

        Empty ``token_hint`` mints a fresh token.
        """
        token = token_hint or uuid.uuid4().hex
        signature = RequestSignature(method=method.upper(), path=path, params=dict(params))
        request = InitRequest(
            token=token,
            signature=signature,
            store=self._store,
            now=self._clock(),
        )
        return await resolve_key(request)

    async def retrieve(self, token: str) -> Result[IdempotencyKey, IdempotencyError]:
        fetched = await self._store.get(token)
        match fetched:
            case Error(err):
                return Error(_store_error(err))
            case Ok(None):
                return Error(self._not_found(token))
            case Ok(key):
                return Ok(key)

    async def work_stage(
        self,
        token: str,
        stage_fn: StageFn,
        expected: RecoveryPoint | None = None,
    ) -> Result[IdempotencyKey, IdempotencyError]:
        """
        Run one stage exclusively and advance the recovery point.

        The stage runs in a fresh transaction. On success its writes and the
        advance commit together and the lock is released. On failure the
        transaction rolls back, the lock is released, the recovery point stays
        and the error is returned.

        If ``expected`` is given and the durable recovery point differs,
        the stage is skipped and the durable key is returned.
        """
        locked = await self._acquire(token)
        match locked:
            case Error(err):
                return Error(err)
            case Ok(IdempotencyKey(locked_at=datetime() as lock) as key) if not key.is_finished:
                pass
            case Ok(key):
                return Ok(key)

        point = key.recovery_point

        if expected is not None and point != expected:
            logger.info(
                "Idempotency key %s already moved from %s to %s; skipping stage",
                token,
                expected,
                point,
            )
            await self._release(token, lock)
            return Ok(replace(key, locked_at=None))

        async def attempt() -> IdempotencyKey:
            async with self._store.transaction() as tx:
                outcome = await stage_fn(tx)
                match outcome:
                    case Advance(recovery_point=next_point):
                        code, body = None, None
                    case Respond(response_code=code, response_body=body):
                        next_point = FINISHED
                    case _:
                        raise TypeError(f"Stage returned {outcome!r}, expected Advance or Respond")

                advanced = await self._store.compare_and_advance(
                    tx, token, point, lock, next_point, code, body
                )
                match advanced:
                    case Error(err):
                        raise StoreFailure(err)
                    case Ok(None):
                        raise _AdvanceRejected()
                    case Ok(new_key):
                        return new_key

        result = await L.catching_async(attempt, on_error=_classify(token, point))

        match result:
            case Ok(new_key):
                logger.debug(
                    "Idempotency key %s advanced %s -> %s",
                    token,
                    point,
                    new_key.recovery_point,
                )
                return Ok(new_key)
            case Error(err):
                if err.kind is IdempotencyErrorKind.STAGE_FAILURE:
                    logger.error(
                        "Stage %s failed for idempotency key %s: %s",
                        point,
                        token,
                        err.message,
                    )
                else:
                    logger.warning(
                        "Stage %s for idempotency key %s not committed: %s",
                        point,
                        token,
                        err.message,
                    )
                await self._release(token, lock)
                return Error(err)

    async def update(
        self, token: str, patch: KeyPatch
    ) -> Result[IdempotencyKey, IdempotencyError]:
        """
        Administrative overwrite.

        A finished key is returned unchanged; its response is immutable.
        """
        updated = await self._store.update(token, patch)
        match updated:
            case Error(err):
                return Error(_store_error(err))
            case Ok(None):
                return await self.retrieve(token)
            case Ok(key):
                return Ok(key)

    # ───────────────────────────────────────────────────────────────────────────
    # Locking
    # ───────────────────────────────────────────────────────────────────────────

    async def _acquire(self, token: str) -> Result[IdempotencyKey, IdempotencyError]:
        """
        Lock the key.

        Returns the locked key, or an unlocked finished key when there is
        nothing left to run.
        """
        policy = self._policy
        loop = asyncio.get_running_loop()
        deadline = loop.time() + policy.lock_wait_timeout.total_seconds()
        interval = policy.poll_interval.total_seconds()

        while True:
            now = self._clock()
            acquired = await self._store.acquire_lock(
                token, now, now - policy.stale_lock_after
            )
            match acquired:
                case Error(err):
                    return Error(_store_error(err))
                case Ok(IdempotencyKey() as key):
                    return Ok(key)
                case Ok(_):
                    pass

            current = await self.retrieve(token)
            match current:
                case Error(err):
                    return Error(err)
                case Ok(key) if key.is_finished:
                    return Ok(key)
                case Ok(key):
                    pass

            if policy.on_locked is OnLocked.FAIL or loop.time() >= deadline:
                logger.warning(
                    "Idempotency key %s is locked since %s", token, key.locked_at
                )
                return Error(
                    IdempotencyError(
                        kind=IdempotencyErrorKind.LOCKED,
                        message=f"Idempotency key {token} is being processed",
                    )
                )

            await asyncio.sleep(min(interval, max(deadline - loop.time(), 0)))

    async def _release(self, token: str, lock: datetime) -> None:
        released = await self._store.release_lock(token, lock)
        match released:
            case Error(err):
                logger.warning(
                    "Failed to release lock on idempotency key %s: %s; "
                    "it will be reclaimed once stale",
                    token,
                    err.message,
                )
            case Ok(_):
                pass

    @staticmethod
    def _not_found(token: str) -> IdempotencyError:
        return IdempotencyError(
            kind=IdempotencyErrorKind.NOT_FOUND,
            message=f"Idempotency key {token} not found",
        )


__all__ = ("StageFn", "IdempotencyKeyService")
