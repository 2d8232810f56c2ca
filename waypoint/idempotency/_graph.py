"""
Request initialization graph — resolves a token to its IdempotencyKey.

Architecture:
    InitRequest (injected)
         │
         ▼
    InitNode → FetchKeyNode
                    │
         ┌──────────┼──────────────┬───────────────┐
         ▼          ▼              ▼               ▼
    MatchingKey  MismatchedKey  MissingKey    StoreErrorNode
         │          │              │               │
         └──────────┴──────┬───────┴───────────────┘
                           ▼
                 KeyResolution (@polymorphic)
                           │
                           ▼
                  ResolvedKeyNode

Note: No 'from __future__ import annotations' here.
nodnod reads type hints at runtime to resolve dependencies.
"""

import logging
from dataclasses import dataclass
from datetime import datetime

from nodnod import NodeError, polymorphic, case

from kungfu import Result, Ok, Error

from waypoint import _graph as G
from waypoint.idempotency._types import (
    IdempotencyKey,
    IdempotencyError,
    IdempotencyErrorKind,
    RequestSignature,
)
from waypoint.idempotency._store import StoreError, StoreAny

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════════
# Input — Request (injected)
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class InitRequest:
    """Token to resolve and the signature of the request presenting it."""

    token: str
    signature: RequestSignature
    store: StoreAny
    now: datetime


@G.node
class InitNode:
    """Wraps InitRequest for graph."""

    def __init__(self, request: InitRequest) -> None:
        self.request = request

    @classmethod
    def __compose__(cls, request: InitRequest) -> "InitNode":
        return cls(request)


# ═══════════════════════════════════════════════════════════════════════════════
# Fetch Key
# ═══════════════════════════════════════════════════════════════════════════════


@G.node
class FetchKeyNode:
    """Fetches existing key from store."""

    def __init__(
        self,
        key: IdempotencyKey | None,
        request: InitRequest,
        store_error: StoreError | None = None,
    ) -> None:
        self.key = key
        self.request = request
        self.store_error = store_error

    @classmethod
    async def __compose__(cls, init: InitNode) -> "FetchKeyNode":
        request = init.request
        result = await request.store.get(request.token)

        match result:
            case Ok(key):
                return cls(key, request)
            case Error(err):
                return cls(None, request, store_error=err)


# ═══════════════════════════════════════════════════════════════════════════════
# State Nodes — Each validates one situation
# ═══════════════════════════════════════════════════════════════════════════════


@G.node
class MatchingKeyNode:
    """Validates: key exists and was minted for the same request."""

    def __init__(self, key: IdempotencyKey) -> None:
        self.key = key

    @classmethod
    def __compose__(cls, fetch: FetchKeyNode) -> "MatchingKeyNode":
        key = fetch.key
        if key is None:
            raise NodeError("No key")
        if not key.signature.matches(fetch.request.signature):
            raise NodeError("Signature differs")
        return cls(key)


@G.node
class MismatchedKeyNode:
    """Validates: key exists but was minted for another request."""

    def __init__(self, key: IdempotencyKey, request: InitRequest) -> None:
        self.key = key
        self.request = request

    @classmethod
    def __compose__(cls, fetch: FetchKeyNode) -> "MismatchedKeyNode":
        key = fetch.key
        if key is None:
            raise NodeError("No key")
        if key.signature.matches(fetch.request.signature):
            raise NodeError("Signature matches")
        return cls(key, fetch.request)


@G.node
class MissingKeyNode:
    """Validates: no key and no store error."""

    def __init__(self, request: InitRequest) -> None:
        self.request = request

    @classmethod
    def __compose__(cls, fetch: FetchKeyNode) -> "MissingKeyNode":
        if fetch.store_error is not None:
            raise NodeError("Store error")
        if fetch.key is not None:
            raise NodeError("Key exists")
        return cls(fetch.request)


@G.node
class StoreErrorNode:
    """Validates: store returned error."""

    def __init__(self, error: StoreError) -> None:
        self.error = error

    @classmethod
    def __compose__(cls, fetch: FetchKeyNode) -> "StoreErrorNode":
        if fetch.store_error is None:
            raise NodeError("No store error")
        return cls(fetch.store_error)


# ═══════════════════════════════════════════════════════════════════════════════
# Resolution Types
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class KeyAccepted:
    key: IdempotencyKey


@dataclass(frozen=True)
class KeyRejected:
    error: IdempotencyError


type Resolution = KeyAccepted | KeyRejected


def _store_failure(err: StoreError) -> KeyRejected:
    return KeyRejected(
        IdempotencyError(
            kind=IdempotencyErrorKind.STORE_ERROR,
            message=err.message,
            original_error=err.cause,
        )
    )


# ═══════════════════════════════════════════════════════════════════════════════
# Polymorphic Resolution
# ═══════════════════════════════════════════════════════════════════════════════


@polymorphic[Resolution]
class KeyResolution:
    """Routes to exactly one case; state nodes already did the checks."""

    @case
    def reuse(cls, node: MatchingKeyNode) -> Resolution:
        """Known token, same request — continue where it left off."""
        logger.info(
            "Resuming idempotency key %s at %s",
            node.key.token,
            node.key.recovery_point,
        )
        return KeyAccepted(node.key)

    @case
    def mismatch(cls, node: MismatchedKeyNode) -> Resolution:
        """MISMATCHED_REQUEST — token belongs to a different request."""
        stored = node.key.signature
        incoming = node.request.signature
        logger.warning(
            "Idempotency key %s reused: minted for %s %s, presented with %s %s",
            node.key.token,
            stored.method,
            stored.path,
            incoming.method,
            incoming.path,
        )
        return KeyRejected(
            IdempotencyError(
                kind=IdempotencyErrorKind.MISMATCHED_REQUEST,
                message=f"Idempotency key {node.key.token} was used for a different request",
            )
        )

    @case
    async def create(cls, node: MissingKeyNode) -> Resolution:
        """First sight of the token — create it at STARTED."""
        request = node.request
        created = await request.store.create_if_absent(
            request.token, request.signature, request.now
        )

        match created:
            case Error(err):
                return _store_failure(err)
            case Ok(False):
                return KeyRejected(
                    IdempotencyError(
                        kind=IdempotencyErrorKind.CONFLICT,
                        message=f"Idempotency key {request.token} was created concurrently",
                    )
                )
            case Ok(_):
                pass

        fetched = await request.store.get(request.token)
        match fetched:
            case Ok(IdempotencyKey() as key):
                return KeyAccepted(key)
            case Ok(_):
                return KeyRejected(
                    IdempotencyError(
                        kind=IdempotencyErrorKind.CONFLICT,
                        message=f"Idempotency key {request.token} disappeared after creation",
                    )
                )
            case Error(err):
                return _store_failure(err)

    @case
    def store_error(cls, node: StoreErrorNode) -> Resolution:
        """STORE_ERROR — storage operation failed."""
        return _store_failure(node.error)


# ═══════════════════════════════════════════════════════════════════════════════
# Final Node
# ═══════════════════════════════════════════════════════════════════════════════


@G.node
class ResolvedKeyNode:
    """Converts Resolution to typed Result."""

    def __init__(self, resolution: Resolution) -> None:
        self.resolution = resolution

    @classmethod
    def __compose__(cls, resolution: KeyResolution) -> "ResolvedKeyNode":
        return cls(resolution.value)

    def to_result(self) -> Result[IdempotencyKey, IdempotencyError]:
        match self.resolution:
            case KeyAccepted(key=key):
                return Ok(key)
            case KeyRejected(error=error):
                return Error(error)


async def resolve_key(request: InitRequest) -> Result[IdempotencyKey, IdempotencyError]:
    """Resolve token to key via graph."""
    node = await G.run(ResolvedKeyNode).inject(request)
    return node.to_result()


__all__ = (
    "InitRequest",
    "InitNode",
    "FetchKeyNode",
    "MatchingKeyNode",
    "MismatchedKeyNode",
    "MissingKeyNode",
    "StoreErrorNode",
    "KeyAccepted",
    "KeyRejected",
    "Resolution",
    "KeyResolution",
    "ResolvedKeyNode",
    "resolve_key",
)
