"""
Workflow execution — the stage loop.

Dispatches on the durable recovery point until the key is finished.
Each iteration is one work_stage call: one transaction, one advance.
"""

from __future__ import annotations

import logging
from typing import Any

from kungfu import Result, Ok, Error, LazyCoroResult

from waypoint.idempotency import (
    FINISHED,
    IdempotencyKey,
    IdempotencyKeyService,
    IdempotencyError,
    IdempotencyErrorKind,
    KeyPatch,
    StageOutcome,
)
from waypoint.workflow._builder import Workflow
from waypoint.workflow._types import StageContext, WorkflowResult

logger = logging.getLogger(__name__)

UNKNOWN_RECOVERY_POINT_RESPONSE = {"message": "Unknown recovery point"}


class WorkflowExecutor[P]:
    """
    Runs a workflow under an idempotency key.

    Example:
        executor = WorkflowExecutor(flow, keys)

        result = await executor.run(key, payload)
        match result:
            case Ok(r):
                return r.response_code, r.response_body
            case Error(e):
                ...
    """

    def __init__(self, workflow: Workflow[P], keys: IdempotencyKeyService) -> None:
        self._workflow = workflow
        self._keys = keys

    @property
    def workflow(self) -> Workflow[P]:
        return self._workflow

    def run(
        self, key: IdempotencyKey | str, payload: P
    ) -> LazyCoroResult[WorkflowResult, IdempotencyError]:
        """Resume ``key`` wherever it stands and drive it to finished."""

        async def execute() -> Result[WorkflowResult, IdempotencyError]:
            match key:
                case IdempotencyKey():
                    current = key
                case str(token):
                    retrieved = await self._keys.retrieve(token)
                    match retrieved:
                        case Ok(found):
                            current = found
                        case Error(err):
                            return Error(err)
            return await self._loop(current, payload)

        return LazyCoroResult(execute)

    async def _loop(
        self, key: IdempotencyKey, payload: P
    ) -> Result[WorkflowResult, IdempotencyError]:
        stages_run = 0

        while key.recovery_point != FINISHED:
            point = key.recovery_point
            handler = self._workflow.handler(point)

            if handler is None:
                logger.error(
                    "%s: unknown recovery point %r for idempotency key %s",
                    self._workflow.name,
                    point,
                    key.token,
                )
                forced = await self._keys.update(
                    key.token,
                    KeyPatch(
                        recovery_point=FINISHED,
                        response_code=500,
                        response_body=UNKNOWN_RECOVERY_POINT_RESPONSE,
                    ),
                )
                match forced:
                    case Ok(finished):
                        key = finished
                        continue
                    case Error(err):
                        return Error(err)

            ran = False
            dispatched = key
            bound = handler

            async def stage(tx: Any) -> StageOutcome:
                nonlocal ran
                outcome = await bound(
                    StageContext(tx=tx, payload=payload, key=dispatched)
                )
                ran = True
                return self._workflow.guard(point, outcome)

            worked = await self._keys.work_stage(key.token, stage, expected=point)
            match worked:
                case Error(err):
                    return Error(err)
                case Ok(next_key):
                    if ran:
                        stages_run += 1
                    key = next_key

        return self._finish(key, stages_run)

    def _finish(
        self, key: IdempotencyKey, stages_run: int
    ) -> Result[WorkflowResult, IdempotencyError]:
        if key.response_code is None or key.response_body is None:
            return Error(
                IdempotencyError(
                    kind=IdempotencyErrorKind.UNKNOWN_RECOVERY_POINT,
                    message=f"Idempotency key {key.token} is finished without a response",
                )
            )
        if stages_run == 0:
            logger.info("Replaying cached response for idempotency key %s", key.token)
        return Ok(
            WorkflowResult(
                token=key.token,
                response_code=key.response_code,
                response_body=key.response_body,
                stages_run=stages_run,
            )
        )


__all__ = ("WorkflowExecutor", "UNKNOWN_RECOVERY_POINT_RESPONSE")
