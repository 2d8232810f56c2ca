"""
Idempotency record store — typed storage protocol.

Store[TX] — persists one IdempotencyKey per token; TX is the transaction
handle handed to stages. All methods return Result for explicit error
handling.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol, Any, TypeVar
from collections.abc import AsyncIterator, Callable

from kungfu import Result, Ok

from waypoint._types import JSON, RecoveryPoint
from waypoint.idempotency._types import (
    STARTED,
    FINISHED,
    IdempotencyKey,
    KeyPatch,
    RequestSignature,
)

logger = logging.getLogger(__name__)


TX = TypeVar("TX")


# ═══════════════════════════════════════════════════════════════════════════════
# Store Error
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class StoreError:
    """Storage operation error."""

    message: str
    cause: Exception | None = None


class CommitConflict(Exception):
    """A transaction's compare-and-advance no longer holds at commit time."""


class StoreFailure(Exception):
    """Raised inside a stage transaction when the store itself failed."""

    def __init__(self, error: StoreError) -> None:
        super().__init__(error.message)
        self.error = error


# ═══════════════════════════════════════════════════════════════════════════════
# Store Protocol — Typed, Result-based
# ═══════════════════════════════════════════════════════════════════════════════


class Store(Protocol[TX]):
    """
    Typed idempotency record store protocol.

    Note: Lock acquisition and recovery-point advance are both
    compare-and-swap writes. acquire_lock reads the current recovery point
    in the same atomic step that stamps the lock; compare_and_advance runs
    inside the stage transaction so the stage's writes and the advance
    commit together.
    """

    async def get(self, token: str) -> Result[IdempotencyKey | None, StoreError]:
        """Get key. Returns Ok(None) if not found."""
        ...

    async def create_if_absent(
        self,
        token: str,
        signature: RequestSignature,
        now: datetime,
    ) -> Result[bool, StoreError]:
        """
        Create key at STARTED.

        Returns Ok(True) if created, Ok(False) if the token already exists.
        """
        ...

    async def acquire_lock(
        self,
        token: str,
        now: datetime,
        stale_before: datetime,
    ) -> Result[IdempotencyKey | None, StoreError]:
        """
        Stamp locked_at = now if unlocked (or locked before stale_before).

        Finished keys are never locked. Returns Ok(None) if not acquired.
        """
        ...

    def transaction(self) -> AbstractAsyncContextManager[TX]:
        """
        Transactional scope: commit on clean exit, rollback on raise.

        A failed commit raises StoreFailure.
        """
        ...

    async def compare_and_advance(
        self,
        tx: TX,
        token: str,
        expected: RecoveryPoint,
        lock: datetime,
        new_point: RecoveryPoint,
        response_code: int | None = None,
        response_body: JSON | None = None,
    ) -> Result[IdempotencyKey | None, StoreError]:
        """
        Advance within ``tx`` and release the lock in the same write.

        Returns Ok(None) if the key moved away from ``expected`` or
        no longer holds ``lock``.
        """
        ...

    async def release_lock(self, token: str, lock: datetime) -> Result[None, StoreError]:
        """Clear the lock if it is still the one stamped at ``lock``."""
        ...

    async def update(
        self, token: str, patch: KeyPatch
    ) -> Result[IdempotencyKey | None, StoreError]:
        """Overwrite a non-finished key. Returns Ok(None) if nothing changed."""
        ...


type StoreAny = Store[Any]


# ═══════════════════════════════════════════════════════════════════════════════
# Memory Store — For Testing
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass
class _StoredKey:
    """Internal mutable record for MemoryStore."""

    token: str
    signature: RequestSignature
    recovery_point: RecoveryPoint
    response_code: int | None
    response_body: JSON | None
    locked_at: datetime | None
    created_at: datetime

    def to_key(self) -> IdempotencyKey:
        return IdempotencyKey(
            token=self.token,
            signature=self.signature,
            recovery_point=self.recovery_point,
            response_code=self.response_code,
            response_body=copy.deepcopy(self.response_body),
            locked_at=self.locked_at,
            created_at=self.created_at,
        )


class MemoryTransaction:
    """
    Transaction handle of MemoryStore.

    Collaborators stage their writes; nothing is applied until commit.
    after_commit hooks run once the writes are applied.
    """

    def __init__(self) -> None:
        self._checks: list[Callable[[], bool]] = []
        self._writes: list[Callable[[], None]] = []
        self._after_commit: list[Callable[[], None]] = []

    def stage(self, write: Callable[[], None]) -> None:
        self._writes.append(write)

    def after_commit(self, hook: Callable[[], None]) -> None:
        self._after_commit.append(hook)

    def require(self, check: Callable[[], bool]) -> None:
        """Precondition re-evaluated at commit."""
        self._checks.append(check)


class MemoryStore:
    """
    In-memory idempotency record store.

    Note: Only for single-process use / tests.
    Transactions are serialized, so stages for distinct tokens
    do not overlap here.
    """

    def __init__(self) -> None:
        self._keys: dict[str, _StoredKey] = {}
        self._lock = asyncio.Lock()
        self._tx_lock = asyncio.Lock()

    async def get(self, token: str) -> Result[IdempotencyKey | None, StoreError]:
        async with self._lock:
            stored = self._keys.get(token)
            return Ok(stored.to_key() if stored is not None else None)

    async def create_if_absent(
        self,
        token: str,
        signature: RequestSignature,
        now: datetime,
    ) -> Result[bool, StoreError]:
        async with self._lock:
            if token in self._keys:
                return Ok(False)

            self._keys[token] = _StoredKey(
                token=token,
                signature=signature,
                recovery_point=STARTED,
                response_code=None,
                response_body=None,
                locked_at=None,
                created_at=now,
            )
            return Ok(True)

    async def acquire_lock(
        self,
        token: str,
        now: datetime,
        stale_before: datetime,
    ) -> Result[IdempotencyKey | None, StoreError]:
        async with self._lock:
            stored = self._keys.get(token)
            if stored is None or stored.recovery_point == FINISHED:
                return Ok(None)
            if stored.locked_at is not None and stored.locked_at >= stale_before:
                return Ok(None)

            stored.locked_at = now
            return Ok(stored.to_key())

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[MemoryTransaction]:
        async with self._tx_lock:
            tx = MemoryTransaction()
            yield tx

            async with self._lock:
                if not all(check() for check in tx._checks):
                    raise CommitConflict("Idempotency key changed before commit")
                for write in tx._writes:
                    write()

            for hook in tx._after_commit:
                try:
                    hook()
                except Exception:
                    logger.exception("after_commit hook failed; the transaction is committed")

    async def compare_and_advance(
        self,
        tx: MemoryTransaction,
        token: str,
        expected: RecoveryPoint,
        lock: datetime,
        new_point: RecoveryPoint,
        response_code: int | None = None,
        response_body: JSON | None = None,
    ) -> Result[IdempotencyKey | None, StoreError]:
        def still_held() -> bool:
            stored = self._keys.get(token)
            return (
                stored is not None
                and stored.recovery_point == expected
                and stored.locked_at == lock
            )

        body = copy.deepcopy(response_body)

        def advance() -> None:
            stored = self._keys[token]
            stored.recovery_point = new_point
            stored.response_code = response_code
            stored.response_body = body
            stored.locked_at = None

        async with self._lock:
            if not still_held():
                return Ok(None)
            stored = self._keys[token]
            advanced = IdempotencyKey(
                token=token,
                signature=stored.signature,
                recovery_point=new_point,
                response_code=response_code,
                response_body=copy.deepcopy(body),
                locked_at=None,
                created_at=stored.created_at,
            )

        tx.require(still_held)
        tx.stage(advance)
        return Ok(advanced)

    async def release_lock(self, token: str, lock: datetime) -> Result[None, StoreError]:
        async with self._lock:
            stored = self._keys.get(token)
            if stored is not None and stored.locked_at == lock:
                stored.locked_at = None
            return Ok(None)

    async def update(
        self, token: str, patch: KeyPatch
    ) -> Result[IdempotencyKey | None, StoreError]:
        async with self._lock:
            stored = self._keys.get(token)
            if stored is None or stored.recovery_point == FINISHED:
                return Ok(None)

            for name, value in patch.values().items():
                setattr(stored, name, copy.deepcopy(value))
            if stored.recovery_point == FINISHED:
                stored.locked_at = None
            return Ok(stored.to_key())


# ═══════════════════════════════════════════════════════════════════════════════
# Exports
# ═══════════════════════════════════════════════════════════════════════════════

__all__ = (
    "StoreError",
    "CommitConflict",
    "StoreFailure",
    "Store",
    "StoreAny",
    "MemoryTransaction",
    "MemoryStore",
)
