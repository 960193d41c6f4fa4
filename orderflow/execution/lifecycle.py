from __future__ import annotations

from orderflow.errors import PermanentJobError
from orderflow.orders.models import OrderStatus

# Forward order of pipeline stages. FAILED sits outside the sequence.
STAGE_SEQUENCE: tuple[OrderStatus, ...] = (
    OrderStatus.PENDING,
    OrderStatus.ROUTING,
    OrderStatus.BUILDING,
    OrderStatus.SUBMITTED,
    OrderStatus.CONFIRMED,
)

STAGE_PROGRESS: dict[OrderStatus, int] = {
    OrderStatus.ROUTING: 20,
    OrderStatus.BUILDING: 40,
    OrderStatus.SUBMITTED: 60,
    OrderStatus.CONFIRMED: 100,
}

FAILURE_PROGRESS = 0

TERMINAL_STATES: frozenset[OrderStatus] = frozenset({OrderStatus.CONFIRMED, OrderStatus.FAILED})

_STATUS_MESSAGES: dict[OrderStatus, str] = {
    OrderStatus.PENDING: "Order is pending",
    OrderStatus.ROUTING: "Finding best venue route...",
    OrderStatus.BUILDING: "Building transaction...",
    OrderStatus.SUBMITTED: "Transaction submitted for settlement",
    OrderStatus.CONFIRMED: "Transaction confirmed",
    OrderStatus.FAILED: "Order failed",
}


def status_message(status: OrderStatus) -> str:
    """Human-readable message for a status; shared by store logging and broadcasts."""
    return _STATUS_MESSAGES[status]


def stage_index(status: OrderStatus) -> int:
    return STAGE_SEQUENCE.index(status)


def validate_transition(*, prev: OrderStatus, nxt: OrderStatus) -> bool:
    """
    Allowed moves: self (idempotent rewrite), one step forward, or any
    non-terminal state to FAILED. Nothing leaves a terminal state.
    """
    if prev == nxt:
        return True
    if prev in TERMINAL_STATES:
        return False
    if nxt == OrderStatus.FAILED:
        return True
    return stage_index(nxt) == stage_index(prev) + 1


def resolve_stage_status(*, recorded: OrderStatus, stage: OrderStatus) -> OrderStatus:
    """
    Status to persist when `stage` runs against an order already at `recorded`.

    A retried delivery re-runs stages from the top; a stage behind the recorded
    status keeps the recorded one so stored status never moves backwards.
    """
    if recorded == OrderStatus.FAILED:
        return stage
    if stage_index(stage) < stage_index(recorded):
        return recorded
    return stage


class OrderLifecycleError(PermanentJobError):
    """A stage tried to move an order along an edge the lifecycle does not allow."""
