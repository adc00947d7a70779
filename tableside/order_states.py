"""
Order lifecycle rules.

Every status change, whether it arrives over HTTP or through the realtime
bridge, is checked here.

    placed -> preparing -> ready -> delivered
    placed -> cancelled

delivered and cancelled are terminal.
"""

from .errors import Forbidden, InvalidState
from .models import OrderStatus, Role

TERMINAL_STATUSES = frozenset({OrderStatus.delivered, OrderStatus.cancelled})

# Legal single forward steps
TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.placed: frozenset({OrderStatus.preparing, OrderStatus.cancelled}),
    OrderStatus.preparing: frozenset({OrderStatus.ready}),
    OrderStatus.ready: frozenset({OrderStatus.delivered}),
    OrderStatus.delivered: frozenset(),
    OrderStatus.cancelled: frozenset(),
}

# Target statuses each role may set through a status update.
# Customers cancel through the dedicated cancel operation instead.
ROLE_TARGETS: dict[Role, frozenset[OrderStatus]] = {
    Role.kitchen: frozenset({OrderStatus.preparing, OrderStatus.ready}),
    Role.runner: frozenset({OrderStatus.delivered}),
    Role.admin: frozenset(OrderStatus),
    Role.customer: frozenset(),
}

# Orders each staff role works on in its list view; admin sees everything
ROLE_LIST_FILTERS: dict[Role, frozenset[OrderStatus]] = {
    Role.kitchen: frozenset({OrderStatus.placed, OrderStatus.preparing}),
    Role.runner: frozenset({OrderStatus.ready}),
}

# Timestamp column stamped when an order enters a status
STATUS_TIMESTAMPS: dict[OrderStatus, str] = {
    OrderStatus.preparing: "prepared_at",
    OrderStatus.ready: "ready_at",
    OrderStatus.delivered: "delivered_at",
    OrderStatus.cancelled: "cancelled_at",
}

# Entering these statuses releases the table
FREES_TABLE = frozenset({OrderStatus.delivered, OrderStatus.cancelled})


def can_set(role: Role, target: OrderStatus) -> bool:
    return target in ROLE_TARGETS.get(role, frozenset())


def is_forward_step(current: OrderStatus, target: OrderStatus) -> bool:
    return target in TRANSITIONS[current]


def authorize_transition(role: Role, target: OrderStatus) -> None:
    if not can_set(role, target):
        allowed = ", ".join(sorted(s.value for s in ROLE_TARGETS.get(role, frozenset())))
        if allowed:
            raise Forbidden(f"Role '{role.value}' can only set status to {allowed}")
        raise Forbidden(f"Role '{role.value}' cannot update order status")


def check_transition(current: OrderStatus, target: OrderStatus) -> None:
    if current in TERMINAL_STATUSES:
        raise InvalidState(f"Order is already {current.value}")
    if not is_forward_step(current, target):
        raise InvalidState(f"Cannot move order from {current.value} to {target.value}")
