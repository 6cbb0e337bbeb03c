"""
Order lifecycle state machine. Valid transitions enforce business rules.
"""
from collections import deque

from orderflow.models import OrderStatus

S = OrderStatus

# Current status -> allowed next statuses. Forward-only, except DELIVERED -> RETURNED.
VALID_TRANSITIONS: dict[OrderStatus, list[OrderStatus]] = {
    S.NEW: [S.RESERVED, S.CANCELLED, S.FAILED],
    S.RESERVED: [S.READY_TO_SHIP, S.CANCELLED, S.FAILED],
    S.READY_TO_SHIP: [S.LABEL_CREATED, S.CANCELLED, S.FAILED],
    S.LABEL_CREATED: [S.PICKED_UP, S.CANCELLED, S.FAILED],
    S.PICKED_UP: [S.IN_TRANSIT, S.CANCELLED, S.FAILED],
    S.IN_TRANSIT: [S.OUT_FOR_DELIVERY, S.DELIVERED, S.CANCELLED, S.FAILED],
    S.OUT_FOR_DELIVERY: [S.DELIVERED, S.CANCELLED, S.FAILED],
    S.DELIVERED: [S.RETURNED],  # terminal apart from returns
    S.CANCELLED: [],  # terminal
    S.RETURNED: [],  # terminal
    S.FAILED: [],  # terminal
}

TERMINAL_STATUSES = frozenset({S.DELIVERED, S.CANCELLED, S.RETURNED, S.FAILED})

RESERVE_ON_ENTER = frozenset({S.NEW, S.RESERVED})
RELEASE_ON_ENTER = frozenset({S.CANCELLED, S.RETURNED})
# Statuses where stock may be reserved or released directly, outside a transition.
# Shipping statuses must move the order instead (e.g. to CANCELLED).
MANUAL_RESERVE_STATUSES = RESERVE_ON_ENTER
MANUAL_RELEASE_STATUSES = frozenset({S.NEW, S.CANCELLED, S.RETURNED, S.FAILED})

# Status -> milestone timestamp field on Order
MILESTONE_FIELDS: dict[OrderStatus, str] = {
    S.NEW: "imported_at",
    S.RESERVED: "reserved_at",
    S.READY_TO_SHIP: "ready_to_ship_at",
    S.LABEL_CREATED: "label_created_at",
    S.PICKED_UP: "shipped_at",
    S.IN_TRANSIT: "shipped_at",
    S.OUT_FOR_DELIVERY: "shipped_at",
    S.DELIVERED: "delivered_at",
    S.CANCELLED: "cancelled_at",
    S.RETURNED: "returned_at",
    S.FAILED: "failed_at",
}

# Never used as stepping stones when walking an order forward
_DETOURS = frozenset({S.CANCELLED, S.FAILED, S.RETURNED})

DELETABLE_STATUSES = frozenset({S.NEW, S.CANCELLED})


def is_valid_transition(current: OrderStatus, target: OrderStatus) -> bool:
    """True if target is allowed after current."""
    return target in VALID_TRANSITIONS.get(current, [])


def is_terminal(status: OrderStatus) -> bool:
    return status in TERMINAL_STATUSES


def should_reserve(status: OrderStatus) -> bool:
    return status in RESERVE_ON_ENTER


def should_release(status: OrderStatus) -> bool:
    return status in RELEASE_ON_ENTER


def valid_next_statuses(current: OrderStatus) -> list[OrderStatus]:
    return list(VALID_TRANSITIONS.get(current, []))


def forward_path(current: OrderStatus, target: OrderStatus) -> list[OrderStatus] | None:
    """
    Shortest chain of permitted transitions leading from current to target,
    excluding current itself. [] when already there, None when unreachable.
    Cancel/fail/return states are only allowed as the final hop.
    """
    if current == target:
        return []
    previous: dict[OrderStatus, OrderStatus] = {}
    seen = {current}
    todo = deque([current])
    while todo:
        status = todo.popleft()
        for nxt in VALID_TRANSITIONS.get(status, []):
            if nxt in seen:
                continue
            if nxt in _DETOURS and nxt != target:
                continue
            previous[nxt] = status
            if nxt == target:
                path = [nxt]
                while path[-1] in previous and previous[path[-1]] != current:
                    path.append(previous[path[-1]])
                return list(reversed(path))
            seen.add(nxt)
            todo.append(nxt)
    return None


def is_valid_path(statuses: list[OrderStatus]) -> bool:
    """True if the statuses form a chain of permitted transitions starting at NEW."""
    if not statuses or statuses[0] != S.NEW:
        return False
    return all(is_valid_transition(a, b) for a, b in zip(statuses, statuses[1:]))
