"""
Idempotency types — core data structures.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, auto
from typing import Any
from collections.abc import Mapping

from waypoint._types import JSON, RecoveryPoint


# ═══════════════════════════════════════════════════════════════════════════════
# Recovery Points — Well-known Stages
# ═══════════════════════════════════════════════════════════════════════════════

STARTED: RecoveryPoint = "started"
FINISHED: RecoveryPoint = "finished"


# ═══════════════════════════════════════════════════════════════════════════════
# Request Signature — What a Token Was Minted For
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True, slots=True)
class RequestSignature:
    """
    Method + path + path params of the request that created a token.

    Note: The body is not part of the signature.
    A client may retry with a corrected body under the same token and gets
    the cached response of the first attempt.
    """

    method: str
    path: str
    params: Mapping[str, str] = field(default_factory=dict)

    def matches(self, other: RequestSignature) -> bool:
        return (
            self.method.upper() == other.method.upper()
            and self.path == other.path
            and dict(self.params) == dict(other.params)
        )


# ═══════════════════════════════════════════════════════════════════════════════
# Idempotency Key — Stored State
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True, slots=True)
class IdempotencyKey:
    """
    Progress of one logical operation, keyed by token.

    Lifecycle:
        started → <operation points> → finished

    response_code / response_body are set only once finished.
    locked_at is set while a stage runs under this token.
    """

    token: str
    signature: RequestSignature
    recovery_point: RecoveryPoint
    response_code: int | None
    response_body: JSON | None
    locked_at: datetime | None
    created_at: datetime

    @property
    def is_finished(self) -> bool:
        return self.recovery_point == FINISHED

    @property
    def is_locked(self) -> bool:
        return self.locked_at is not None

    def lock_is_stale(self, stale_before: datetime) -> bool:
        """Lock was taken before ``stale_before`` and may be reclaimed."""
        return self.locked_at is not None and self.locked_at < stale_before


@dataclass(frozen=True, slots=True)
class KeyPatch:
    """Fields overwritten by an administrative update. None means keep."""

    recovery_point: RecoveryPoint | None = None
    response_code: int | None = None
    response_body: JSON | None = None

    def values(self) -> dict[str, Any]:
        return {
            name: value
            for name, value in (
                ("recovery_point", self.recovery_point),
                ("response_code", self.response_code),
                ("response_body", self.response_body),
            )
            if value is not None
        }


# ═══════════════════════════════════════════════════════════════════════════════
# Stage Outcomes
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True, slots=True)
class Advance:
    """Stage succeeded; continue at ``recovery_point``."""

    recovery_point: RecoveryPoint


@dataclass(frozen=True, slots=True)
class Respond:
    """Stage succeeded and is terminal; the key becomes finished."""

    response_code: int
    response_body: JSON


type StageOutcome = Advance | Respond


# ═══════════════════════════════════════════════════════════════════════════════
# Errors
# ═══════════════════════════════════════════════════════════════════════════════


class IdempotencyErrorKind(Enum):
    """Kinds of idempotency errors."""

    CONFLICT = auto()  # Creation race or compare-and-advance race
    MISMATCHED_REQUEST = auto()  # Token reused for a different request
    LOCKED = auto()  # Stage already running under this token
    STAGE_FAILURE = auto()  # Stage raised; rolled back, point unchanged
    UNKNOWN_RECOVERY_POINT = auto()  # Persisted point matches no stage
    NOT_FOUND = auto()  # No key for token
    STORE_ERROR = auto()  # Storage backend error


_RETRYABLE = frozenset(
    {
        IdempotencyErrorKind.CONFLICT,
        IdempotencyErrorKind.LOCKED,
        IdempotencyErrorKind.STAGE_FAILURE,
        IdempotencyErrorKind.STORE_ERROR,
    }
)


@dataclass(frozen=True, slots=True)
class IdempotencyError:
    """
    Idempotency operation error.

    Note: original_error holds the exception raised by a stage (STAGE_FAILURE)
    or by the store (STORE_ERROR).
    """

    kind: IdempotencyErrorKind
    message: str
    original_error: Any | None = None

    @property
    def is_retryable(self) -> bool:
        """Whether the client may retry with the same token."""
        return self.kind in _RETRYABLE


# ═══════════════════════════════════════════════════════════════════════════════
# Exports
# ═══════════════════════════════════════════════════════════════════════════════

__all__ = (
    "STARTED",
    "FINISHED",
    "RequestSignature",
    "IdempotencyKey",
    "KeyPatch",
    "Advance",
    "Respond",
    "StageOutcome",
    "IdempotencyErrorKind",
    "IdempotencyError",
)
