"""
waypoint — idempotent, resumable multi-stage operations.

    from waypoint import idempotency as I  # Keys, locking, stage execution
    from waypoint import workflow as W     # Stage tables and the stage loop
    from waypoint import returns as R      # Return requests on orders
"""

from waypoint import idempotency
from waypoint import workflow
from waypoint import returns
from waypoint._types import (
    Lazy,
    RecoveryPoint,
    JSON,
)

__version__ = "0.1.0"

__all__ = (
    "idempotency",
    "workflow",
    "returns",
    "Lazy",
    "RecoveryPoint",
    "JSON",
)
