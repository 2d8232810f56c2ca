"""
Idempotency — token lifecycle and exclusive, resumable stage execution.

    from waypoint import idempotency as I

    keys = I.IdempotencyKeyService(
        I.MemoryStore(),
        I.Policy().with_stale_lock_after(seconds=60),
    )

    match await keys.initialize_request(header_key, "POST", params, path):
        case Ok(key):
            result = await keys.work_stage(key.token, stage_fn, expected=key.recovery_point)
        case Error(err):
            ...

Every token maps to one IdempotencyKey:

    started ──stage──▶ <point> ──stage──▶ ... ──stage──▶ finished
                                                         (cached response)

A stage's writes and the recovery-point advance commit in one transaction.
A failed stage rolls back and leaves the point where it was, so a retry with
the same token re-runs exactly that stage.
"""

from waypoint.idempotency._types import (
    STARTED,
    FINISHED,
    RequestSignature,
    IdempotencyKey,
    KeyPatch,
    Advance,
    Respond,
    StageOutcome,
    IdempotencyError,
    IdempotencyErrorKind,
)
from waypoint.idempotency._store import (
    Store,
    StoreAny,
    StoreError,
    CommitConflict,
    StoreFailure,
    MemoryStore,
    MemoryTransaction,
)
from waypoint.idempotency._policy import (
    Policy,
    OnLocked,
    WAIT,
    FAIL,
)
from waypoint.idempotency._graph import (
    InitRequest,
    KeyResolution,
    ResolvedKeyNode,
    resolve_key,
)
from waypoint.idempotency._service import (
    StageFn,
    IdempotencyKeyService,
)
from waypoint.idempotency._sqlalchemy import (
    IdempotencyKeyMixin,
    IdempotencyKeyModel,
    SQLAlchemyStore,
)

__all__ = (
    # Types
    "STARTED",
    "FINISHED",
    "RequestSignature",
    "IdempotencyKey",
    "KeyPatch",
    "Advance",
    "Respond",
    "StageOutcome",
    "IdempotencyError",
    "IdempotencyErrorKind",
    # Store
    "Store",
    "StoreAny",
    "StoreError",
    "CommitConflict",
    "StoreFailure",
    "MemoryStore",
    "MemoryTransaction",
    # Policy
    "Policy",
    "OnLocked",
    "WAIT",
    "FAIL",
    # Graph
    "InitRequest",
    "KeyResolution",
    "ResolvedKeyNode",
    "resolve_key",
    # Service
    "StageFn",
    "IdempotencyKeyService",
    # SQLAlchemy
    "IdempotencyKeyMixin",
    "IdempotencyKeyModel",
    "SQLAlchemyStore",
)
