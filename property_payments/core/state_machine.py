"""Transaction state machine transitions enforced by the orchestrator."""
from typing import Dict, FrozenSet

from .enums import TransactionStatus
from .exceptions import InvalidState

ALLOWED_TRANSITIONS: Dict[TransactionStatus, FrozenSet[TransactionStatus]] = {
    TransactionStatus.PENDING: frozenset(
        {TransactionStatus.PROCESSING, TransactionStatus.FAILED}
    ),
    TransactionStatus.PROCESSING: frozenset(
        {TransactionStatus.COMPLETED, TransactionStatus.FAILED}
    ),
    TransactionStatus.FAILED: frozenset({TransactionStatus.PENDING}),
    TransactionStatus.COMPLETED: frozenset({TransactionStatus.REFUNDED}),
    TransactionStatus.REFUNDED: frozenset(),
}

TERMINAL_STATES = frozenset({TransactionStatus.COMPLETED, TransactionStatus.REFUNDED})


def can_transition(current: TransactionStatus, new: TransactionStatus) -> bool:
    return new in ALLOWED_TRANSITIONS.get(TransactionStatus(current), frozenset())


def validate_transition(
    current: TransactionStatus, new: TransactionStatus, operation: str = "transition"
) -> None:
    """Raise InvalidState when a transition is not allowed by the state machine."""

    current = TransactionStatus(current)
    new = TransactionStatus(new)
    if not can_transition(current, new):
        raise InvalidState(
            f"Cannot {operation} a transaction that is {current.value}",
            current_status=current.value,
            operation=operation,
        )


def require_status(
    current: TransactionStatus, expected: TransactionStatus, operation: str
) -> None:
    """Raise InvalidState unless the transaction is in the expected status."""

    current = TransactionStatus(current)
    if current != expected:
        raise InvalidState(
            f"Cannot {operation} a transaction that is {current.value}; "
            f"it must be {expected.value}",
            current_status=current.value,
            operation=operation,
        )
