from __future__ import annotations

from typing import Dict, FrozenSet

from core.errors import DomainError

from .models import Order

Status = Order.Status


class InvalidTransition(DomainError):
    kind = "invalid_transition"
    default_message = "Invalid order status transition"


class OrderStateMachine:
    """Legal order status transitions.

    Re-applying the current status is always accepted. Side effects are the
    caller's job and belong in the same atomic block as the status write.
    """

    TRANSITIONS: Dict[str, FrozenSet[str]] = {
        Status.PENDING: frozenset({Status.PREPARING, Status.CANCELLED}),
        Status.PREPARING: frozenset({Status.READY_FOR_PICKUP, Status.OUT_FOR_DELIVERY, Status.CANCELLED}),
        Status.READY_FOR_PICKUP: frozenset({Status.RIDER_ACCEPTED, Status.OUT_FOR_DELIVERY, Status.CANCELLED}),
        # READY_FOR_PICKUP here is a rider handing the order back to the pool
        Status.RIDER_ACCEPTED: frozenset({Status.OUT_FOR_DELIVERY, Status.READY_FOR_PICKUP, Status.CANCELLED}),
        Status.OUT_FOR_DELIVERY: frozenset({Status.DELIVERED, Status.CANCELLED}),
        Status.DELIVERED: frozenset(),
        Status.CANCELLED: frozenset(),
    }

    @classmethod
    def allowed_transitions(cls, status: str) -> FrozenSet[str]:
        return cls.TRANSITIONS.get(status, frozenset())

    @classmethod
    def can_transition(cls, current: str, target: str) -> bool:
        if current not in cls.TRANSITIONS or target not in cls.TRANSITIONS:
            return False
        return current == target or target in cls.TRANSITIONS[current]

    @classmethod
    def validate_transition(cls, current: str, target: str) -> None:
        if cls.can_transition(current, target):
            return
        allowed = ", ".join(sorted(cls.allowed_transitions(current))) or "None"
        raise InvalidTransition(
            f"Cannot move order from {current} to {target}. Allowed transitions: [{allowed}]"
        )

    @classmethod
    def is_terminal(cls, status: str) -> bool:
        return not cls.TRANSITIONS[status]
