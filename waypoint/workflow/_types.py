"""
Workflow types — stage handlers, context, results.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any
from collections.abc import Awaitable, Callable

from waypoint._types import JSON, RecoveryPoint
from waypoint.idempotency import IdempotencyKey, StageOutcome


# ═══════════════════════════════════════════════════════════════════════════════
# Stage Context — What a Stage Sees
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True, slots=True)
class StageContext[P]:
    """
    Input of one stage run.

    tx: transaction handle; pass it to every collaborator call.
    payload: the original request payload, identical on every retry.
    key: the idempotency key as it was when the stage was dispatched.
    """

    tx: Any
    payload: P
    key: IdempotencyKey

    @property
    def token(self) -> str:
        return self.key.token


type StageHandler[P] = Callable[[StageContext[P]], Awaitable[StageOutcome]]
"""Stage body: does domain work through ctx.tx, returns Advance or Respond."""


# ═══════════════════════════════════════════════════════════════════════════════
# Errors raised inside a stage
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(eq=False)
class InvalidTransition(Exception):
    """Stage advanced to an undeclared or earlier recovery point."""

    workflow: str
    source: RecoveryPoint
    target: RecoveryPoint

    def __str__(self) -> str:
        return (
            f"{self.workflow}: stage {self.source} cannot advance to {self.target}"
        )


# ═══════════════════════════════════════════════════════════════════════════════
# Result Types
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True, slots=True)
class WorkflowResult:
    """
    Final cached response of a workflow run.

    Note: stages_run counts stages executed by this call only.
    A replay of a finished token runs none.
    """

    token: str
    response_code: int
    response_body: JSON
    stages_run: int

    @property
    def from_cache(self) -> bool:
        return self.stages_run == 0


__all__ = (
    "StageContext",
    "StageHandler",
    "InvalidTransition",
    "WorkflowResult",
)
