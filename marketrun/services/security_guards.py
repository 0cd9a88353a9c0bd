"""Centralized role, ownership and visibility guards for order operations."""

from __future__ import annotations

from marketrun.models import Order, OrderStatus, Role
from marketrun.services.errors import AlreadyClaimed, InvalidTransition, OrderNotFound, Unauthorized
from marketrun.services.order_status import FIRST_CLAIM_EDGES, can_transition, role_has_grant

_SLOT_BY_ROLE: dict[Role, str] = {
    Role.BUYER: "buyer_id",
    Role.RUNNER: "runner_id",
    Role.COURIER: "courier_id",
}


def ensure_role(role: Role, allowed_roles: set[Role]) -> None:
    """Ensure role is one of allowed roles."""
    if role not in allowed_roles:
        raise Unauthorized(f"Role {role.value} cannot perform this action")


def order_seller_ids(order: Order) -> set[int]:
    return {item.seller_id for item in order.items}


def ensure_edge_allowed(current: OrderStatus, target: OrderStatus, role: Role) -> None:
    """Two-part table check: the edge exists and the role holds a grant for it."""
    if not can_transition(current, target):
        raise InvalidTransition(f"Invalid transition from {current.value} to {target.value}")
    if not role_has_grant(role, current, target):
        raise Unauthorized(f"Role {role.value} cannot transition order from {current.value} to {target.value}")


def ensure_owner(order: Order, current: OrderStatus, target: OrderStatus, caller_id: int, role: Role) -> None:
    """Decide whether this specific actor may take the edge.

    First-claim edges pass only while the slot is empty; every other edge
    requires the caller to already hold the slot for their role.
    """
    slot = FIRST_CLAIM_EDGES.get((current, target))
    if slot is not None:
        holder = getattr(order, slot)
        if holder is not None:
            raise AlreadyClaimed(f"Order {order.id} is already assigned to another {role.value}")
        if slot == "courier_id" and order.handover_courier_id != caller_id:
            raise Unauthorized(f"Runner has not verified a handover code from courier {caller_id}")
        return

    if role == Role.SELLER:
        if caller_id not in order_seller_ids(order):
            raise Unauthorized("You don't have items in this order")
        return

    slot_name = _SLOT_BY_ROLE.get(role)
    if slot_name is None or getattr(order, slot_name) != caller_id:
        raise Unauthorized(f"Order {order.id} is not assigned to you")


def check_transition(order: Order, target: OrderStatus, caller_id: int, role: Role) -> OrderStatus:
    """Run table and ownership checks against the persisted status; return it."""
    current = OrderStatus(order.status)
    ensure_edge_allowed(current, target, role)
    ensure_owner(order, current, target, caller_id, role)
    return current


def can_perform(order: Order, target: OrderStatus, caller_id: int, role: Role) -> bool:
    try:
        check_transition(order, target, caller_id, role)
    except (InvalidTransition, Unauthorized, AlreadyClaimed):
        return False
    return True


def is_party(order: Order, user_id: int) -> bool:
    return user_id in {order.buyer_id, order.runner_id, order.courier_id} or user_id in order_seller_ids(order)


def ensure_can_access_order(order: Order, user_id: int, role: Role) -> None:
    """Apply IDOR-safe visibility checks; report not found to avoid leaking."""
    if role == Role.ADMIN:
        return
    if is_party(order, user_id):
        return
    # Unclaimed orders are visible to the role that may claim them next.
    if role == Role.RUNNER and order.status == OrderStatus.SELLER_CONFIRMED.value and order.runner_id is None:
        return
    if role == Role.COURIER and order.status == OrderStatus.READY_FOR_PICKUP.value and order.courier_id is None:
        return
    raise OrderNotFound("Order not found")
