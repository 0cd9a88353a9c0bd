"""Order status transition table and role grants."""

from __future__ import annotations

from datetime import datetime

from marketrun.models.order import Order, OrderStatus
from marketrun.models.user import Role

Edge = tuple[OrderStatus, OrderStatus]

ORDER_STATUSES: list[OrderStatus] = list(OrderStatus)
TERMINAL_STATUSES: frozenset[OrderStatus] = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED})

_FORWARD_PATH: list[OrderStatus] = [
    OrderStatus.PENDING,
    OrderStatus.SELLER_CONFIRMED,
    OrderStatus.RUNNER_ACCEPTED,
    OrderStatus.SHOPPING,
    OrderStatus.READY_FOR_PICKUP,
    OrderStatus.IN_TRANSIT,
    OrderStatus.DELIVERED,
]

EDGES: frozenset[Edge] = frozenset(
    {(current, following) for current, following in zip(_FORWARD_PATH, _FORWARD_PATH[1:])}
    | {(status, OrderStatus.CANCELLED) for status in _FORWARD_PATH if status not in TERMINAL_STATUSES}
)

ALLOWED_TRANSITIONS: dict[OrderStatus, set[OrderStatus]] = {
    status: {target for source, target in EDGES if source == status} for status in OrderStatus
}

ROLE_GRANTS: frozenset[tuple[Role, Edge]] = frozenset(
    {
        (Role.SELLER, (OrderStatus.PENDING, OrderStatus.SELLER_CONFIRMED)),
        (Role.RUNNER, (OrderStatus.SELLER_CONFIRMED, OrderStatus.RUNNER_ACCEPTED)),
        (Role.RUNNER, (OrderStatus.RUNNER_ACCEPTED, OrderStatus.SHOPPING)),
        (Role.RUNNER, (OrderStatus.SHOPPING, OrderStatus.READY_FOR_PICKUP)),
        (Role.COURIER, (OrderStatus.READY_FOR_PICKUP, OrderStatus.IN_TRANSIT)),
        (Role.COURIER, (OrderStatus.IN_TRANSIT, OrderStatus.DELIVERED)),
        (Role.BUYER, (OrderStatus.PENDING, OrderStatus.CANCELLED)),
        (Role.BUYER, (OrderStatus.SELLER_CONFIRMED, OrderStatus.CANCELLED)),
    }
)

# Edges that bind a previously empty slot, mapped to the Order attribute they fill.
FIRST_CLAIM_EDGES: dict[Edge, str] = {
    (OrderStatus.SELLER_CONFIRMED, OrderStatus.RUNNER_ACCEPTED): "runner_id",
    (OrderStatus.READY_FOR_PICKUP, OrderStatus.IN_TRANSIT): "courier_id",
}

CLAIM_EDGE_BY_ROLE: dict[Role, Edge] = {
    Role.RUNNER: (OrderStatus.SELLER_CONFIRMED, OrderStatus.RUNNER_ACCEPTED),
    Role.COURIER: (OrderStatus.READY_FOR_PICKUP, OrderStatus.IN_TRANSIT),
}

STATUS_LABELS: dict[OrderStatus, str] = {
    OrderStatus.PENDING: "Pending Confirmation",
    OrderStatus.SELLER_CONFIRMED: "Confirmed by Seller",
    OrderStatus.RUNNER_ACCEPTED: "Runner Assigned",
    OrderStatus.SHOPPING: "Shopping in Progress",
    OrderStatus.READY_FOR_PICKUP: "Ready for Pickup",
    OrderStatus.IN_TRANSIT: "Out for Delivery",
    OrderStatus.DELIVERED: "Delivered",
    OrderStatus.CANCELLED: "Cancelled",
}

STATUS_DESCRIPTIONS: dict[OrderStatus, str] = {
    OrderStatus.PENDING: "Waiting for seller to confirm order items",
    OrderStatus.SELLER_CONFIRMED: "All items confirmed, waiting for a runner",
    OrderStatus.RUNNER_ACCEPTED: "Runner assigned, preparing to shop",
    OrderStatus.SHOPPING: "Runner is collecting your items",
    OrderStatus.READY_FOR_PICKUP: "Items collected, waiting for courier pickup",
    OrderStatus.IN_TRANSIT: "Order is on the way to you",
    OrderStatus.DELIVERED: "Order has been delivered",
    OrderStatus.CANCELLED: "Order has been cancelled",
}

ACTIONS: dict[OrderStatus, tuple[str, str]] = {
    OrderStatus.SELLER_CONFIRMED: ("confirm", "Confirm all order items"),
    OrderStatus.RUNNER_ACCEPTED: ("accept", "Accept this order"),
    OrderStatus.SHOPPING: ("start_shopping", "Start shopping for items"),
    OrderStatus.READY_FOR_PICKUP: ("ready_for_pickup", "Mark order as ready for pickup"),
    OrderStatus.IN_TRANSIT: ("pickup", "Pick up and start delivery"),
    OrderStatus.DELIVERED: ("deliver", "Mark as delivered"),
    OrderStatus.CANCELLED: ("cancel", "Cancel this order"),
}

EVENT_TYPES: dict[OrderStatus, str] = {
    OrderStatus.SELLER_CONFIRMED: "ORDER_SELLER_CONFIRMED",
    OrderStatus.RUNNER_ACCEPTED: "ORDER_RUNNER_ACCEPTED",
    OrderStatus.SHOPPING: "ORDER_SHOPPING_STARTED",
    OrderStatus.READY_FOR_PICKUP: "ORDER_READY_FOR_PICKUP",
    OrderStatus.IN_TRANSIT: "ORDER_IN_TRANSIT",
    OrderStatus.DELIVERED: "ORDER_DELIVERED",
    OrderStatus.CANCELLED: "ORDER_CANCELLED",
}


def can_transition(current: OrderStatus, new: OrderStatus) -> bool:
    """Return whether the table has an edge from current to new."""
    return (current, new) in EDGES


def role_has_grant(role: Role, current: OrderStatus, new: OrderStatus) -> bool:
    """Return whether role may use the edge at all, ignoring ownership."""
    return (role, (current, new)) in ROLE_GRANTS


def next_statuses(current: OrderStatus) -> list[OrderStatus]:
    """Return the table's successors of current in lifecycle order."""
    allowed = ALLOWED_TRANSITIONS.get(current, set())
    return [status for status in ORDER_STATUSES if status in allowed]


def is_terminal(status: OrderStatus) -> bool:
    return status in TERMINAL_STATUSES


def status_label(status: OrderStatus) -> str:
    return STATUS_LABELS.get(status, status.value)


def status_description(status: OrderStatus) -> str:
    return STATUS_DESCRIPTIONS.get(status, "Unknown status")


def status_timestamps(new_status: OrderStatus, now: datetime) -> dict[str, datetime]:
    """Return the Order columns stamped when entering new_status."""
    values: dict[str, datetime] = {"status_updated_at": now}
    if new_status == OrderStatus.SELLER_CONFIRMED:
        values["confirmed_at"] = now
    elif new_status == OrderStatus.DELIVERED:
        values["delivered_at"] = now
    elif new_status == OrderStatus.CANCELLED:
        values["cancelled_at"] = now
    return values


def order_status(order: Order) -> OrderStatus:
    """Return the persisted status of order as an enum member."""
    return OrderStatus(order.status)
