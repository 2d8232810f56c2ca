"""
Core types for waypoint.

Re-exports from kungfu + custom type aliases.
"""

from __future__ import annotations

from typing import Any
from collections.abc import Mapping

# Re-export from kungfu
from kungfu import Result, Ok, Error, LazyCoroResult

# ═══════════════════════════════════════════════════════════════════════════════
# Aliases
# ═══════════════════════════════════════════════════════════════════════════════

type Lazy[T, E] = LazyCoroResult[T, E]
"""Lazy async computation that may fail."""

type RecoveryPoint = str
"""Name of the next stage to execute for a token."""

type JSON = Mapping[str, Any]
"""JSON object as cached in a finished idempotency key."""

# ═══════════════════════════════════════════════════════════════════════════════
# Exports
# ═══════════════════════════════════════════════════════════════════════════════

__all__ = (
    # Re-exports from kungfu
    "Result",
    "Ok",
    "Error",
    "LazyCoroResult",
    # Type aliases
    "Lazy",
    "RecoveryPoint",
    "JSON",
)
