"""
Workflow builder — fluent declaration of a closed stage table.
"""

from __future__ import annotations

from dataclasses import dataclass
from collections.abc import Mapping

from waypoint._types import RecoveryPoint
from waypoint.idempotency import STARTED, FINISHED, Advance, StageOutcome
from waypoint.workflow._types import StageHandler, InvalidTransition


# ═══════════════════════════════════════════════════════════════════════════════
# Workflow — Compiled Stage Table
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(slots=True, frozen=True)
class Workflow[P]:
    """
    Ordered stage table of one operation.

    Declaration order is the only order recovery points may advance in;
    a stage may skip ahead but never go back.
    """

    name: str
    points: tuple[RecoveryPoint, ...]
    handlers: Mapping[RecoveryPoint, StageHandler[P]]

    def handler(self, point: RecoveryPoint) -> StageHandler[P] | None:
        return self.handlers.get(point)

    def guard(self, point: RecoveryPoint, outcome: StageOutcome) -> StageOutcome:
        """Reject an Advance that leaves the declared chain or regresses."""
        match outcome:
            case Advance(recovery_point=target):
                if target == FINISHED:
                    raise InvalidTransition(self.name, point, target)
                if target not in self.handlers:
                    raise InvalidTransition(self.name, point, target)
                if self.points.index(target) <= self.points.index(point):
                    raise InvalidTransition(self.name, point, target)
        return outcome


# ═══════════════════════════════════════════════════════════════════════════════
# Builder
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(slots=True, frozen=True)
class WorkflowBuilder[P]:
    """
    Fluent workflow builder.
    """

    _name: str
    _stages: tuple[tuple[RecoveryPoint, StageHandler[P]], ...]

    def stage(self, point: RecoveryPoint, handler: StageHandler[P]) -> WorkflowBuilder[P]:
        """Declare the handler run while the key is at ``point``."""
        return WorkflowBuilder(
            _name=self._name,
            _stages=(*self._stages, (point, handler)),
        )

    def build(self) -> Workflow[P]:
        """Validate and compile."""
        if not self._stages:
            raise ValueError(f"{self._name}: at least one stage is required")

        points = tuple(point for point, _ in self._stages)
        if points[0] != STARTED:
            raise ValueError(f"{self._name}: first stage must be {STARTED!r}, got {points[0]!r}")
        if FINISHED in points:
            raise ValueError(f"{self._name}: {FINISHED!r} is terminal and cannot have a stage")
        if len(set(points)) != len(points):
            duplicates = sorted({p for p in points if points.count(p) > 1})
            raise ValueError(f"{self._name}: duplicate stages {duplicates}")

        return Workflow(
            name=self._name,
            points=points,
            handlers=dict(self._stages),
        )


def workflow[P](name: str) -> WorkflowBuilder[P]:
    """
    Start declaring a workflow.

    Example:
        flow = (
            W.workflow("order.request_return")
            .stage(I.STARTED, request_return)
            .stage("return_requested", receive_and_respond)
            .build()
        )
    """
    return WorkflowBuilder(_name=name, _stages=())


__all__ = (
    "Workflow",
    "WorkflowBuilder",
    "workflow",
)
