"""
Workflow — resumable multi-stage operations over an idempotency key.

    from waypoint import workflow as W

    flow = (
        W.workflow("order.request_return")
        .stage(I.STARTED, create_return)
        .stage("return_requested", receive_and_respond)
        .build()
    )

    result = await W.WorkflowExecutor(flow, keys).run(key, payload)

The executor dispatches on the durable recovery point, runs exactly one stage
per transaction and stops at the first error. Calling it again with the same
token resumes where the last committed stage left off.
"""

from waypoint.workflow._types import (
    StageContext,
    StageHandler,
    InvalidTransition,
    WorkflowResult,
)
from waypoint.workflow._builder import (
    Workflow,
    WorkflowBuilder,
    workflow,
)
from waypoint.workflow._run import (
    WorkflowExecutor,
    UNKNOWN_RECOVERY_POINT_RESPONSE,
)

__all__ = (
    # Types
    "StageContext",
    "StageHandler",
    "InvalidTransition",
    "WorkflowResult",
    # Builder
    "Workflow",
    "WorkflowBuilder",
    "workflow",
    # Execution
    "WorkflowExecutor",
    "UNKNOWN_RECOVERY_POINT_RESPONSE",
)
