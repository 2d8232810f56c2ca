"""Return domain — value types, pure rules, errors."""

from dataclasses import dataclass
from enum import Enum


RETURN_REQUESTED = "return_requested"
"""Recovery point after the return record is committed."""

RETURN_REQUESTED_EVENT = "order.return_requested"


class ReturnStatus(Enum):
    REQUESTED = "requested"
    RECEIVED = "received"


# ═══════════════════════════════════════════════════════════════════════════════
# Draft — what the first stage creates
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True, slots=True)
class ReturnLine:
    item_id: str
    quantity: int
    reason_id: str | None = None
    note: str | None = None


@dataclass(frozen=True, slots=True)
class ReturnShipping:
    option_id: str | None = None
    price: int | None = None


@dataclass(frozen=True, slots=True)
class ReturnDraft:
    order_id: str
    idempotency_key: str
    items: tuple[ReturnLine, ...]
    no_notification: bool
    shipping: ReturnShipping | None = None
    refund_amount: int | None = None
    note: str | None = None


# ═══════════════════════════════════════════════════════════════════════════════
# Rules
# ═══════════════════════════════════════════════════════════════════════════════


def clamp_refund(refund: int | None) -> int | None:
    """
    Refund override as stored on the return.

    Negative clamps to 0. Omitted and 0 mean no override.
    """
    if refund is None:
        return None
    if refund < 0:
        return 0
    return refund or None


def resolve_no_notification(override: bool | None, order_default: bool) -> bool:
    return order_default if override is None else override


# ═══════════════════════════════════════════════════════════════════════════════
# Errors
# ═══════════════════════════════════════════════════════════════════════════════


class ReturnsError(Exception):
    """Base of errors raised by return collaborators inside a stage."""


@dataclass(eq=False)
class NotFound(ReturnsError):
    entity: str
    id: str

    def __str__(self) -> str:
        return f"{self.entity} {self.id} was not found"


@dataclass(eq=False)
class InvalidData(ReturnsError):
    message: str

    def __str__(self) -> str:
        return self.message


@dataclass(eq=False)
class InvalidState(ReturnsError):
    message: str

    def __str__(self) -> str:
        return self.message


__all__ = (
    "RETURN_REQUESTED",
    "RETURN_REQUESTED_EVENT",
    "ReturnStatus",
    "ReturnLine",
    "ReturnShipping",
    "ReturnDraft",
    "clamp_refund",
    "resolve_no_notification",
    "ReturnsError",
    "NotFound",
    "InvalidData",
    "InvalidState",
)
