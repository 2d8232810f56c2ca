"""
Idempotency policy — lock behavior configuration.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import timedelta
from enum import Enum, auto


# ═══════════════════════════════════════════════════════════════════════════════
# On Locked — Contention Strategy
# ═══════════════════════════════════════════════════════════════════════════════


class OnLocked(Enum):
    """
    What to do when a stage is already running under the same token.

    WAIT: Poll until the lock is released, then continue from whatever
          recovery point is durably stored.
          Use when: The same client retries after a timeout.

    FAIL: Immediately return LOCKED; the client backs off and retries.
          Use when: Independent concurrent requests should fail fast.
    """

    WAIT = auto()
    FAIL = auto()


WAIT = OnLocked.WAIT
FAIL = OnLocked.FAIL


# ═══════════════════════════════════════════════════════════════════════════════
# Policy — Full Configuration
# ═══════════════════════════════════════════════════════════════════════════════


def _delta(seconds: float | None, delta: timedelta | None, default: float) -> timedelta:
    if delta is not None:
        return delta
    return timedelta(seconds=seconds if seconds is not None else default)


@dataclass(frozen=True, slots=True)
class Policy:
    """
    Idempotency key service policy.

    Example:
        policy = (
            Policy()
            .with_stale_lock_after(seconds=60)
            .with_on_locked(WAIT)
            .with_wait_timeout(seconds=15)
        )

    Note: stale_lock_after must exceed the worst-case stage duration.
    A lock older than that is reclaimed, and a slow holder would then run
    its stage twice.
    """

    stale_lock_after: timedelta = timedelta(seconds=30)
    on_locked: OnLocked = OnLocked.FAIL
    lock_wait_timeout: timedelta = timedelta(seconds=10)
    poll_interval: timedelta = timedelta(milliseconds=100)

    def with_stale_lock_after(
        self,
        *,
        seconds: float | None = None,
        delta: timedelta | None = None,
    ) -> Policy:
        """
        Set age after which a held lock is considered abandoned.

        Example:
            .with_stale_lock_after(seconds=60)
        """
        return replace(self, stale_lock_after=_delta(seconds, delta, 30))

    def with_on_locked(self, strategy: OnLocked) -> Policy:
        """
        Set contention strategy.

        Example:
            .with_on_locked(I.WAIT)
        """
        return replace(self, on_locked=strategy)

    def with_wait_timeout(
        self,
        *,
        seconds: float | None = None,
        delta: timedelta | None = None,
    ) -> Policy:
        """Set how long WAIT polls before giving up with LOCKED."""
        return replace(self, lock_wait_timeout=_delta(seconds, delta, 10))

    def with_poll_interval(
        self,
        *,
        seconds: float | None = None,
        delta: timedelta | None = None,
    ) -> Policy:
        return replace(self, poll_interval=_delta(seconds, delta, 0.1))


# ═══════════════════════════════════════════════════════════════════════════════
# Exports
# ═══════════════════════════════════════════════════════════════════════════════

__all__ = (
    "OnLocked",
    "WAIT",
    "FAIL",
    "Policy",
)
