"""Order item staging and collection flags."""

from __future__ import annotations

import logging

from sqlalchemy import update
from sqlalchemy.orm import Session

from marketrun.models import OrderItem, OrderStatus, Role
from marketrun.services.audit_service import log_action
from marketrun.services.errors import InvalidTransition, OrderNotFound, Unauthorized
from marketrun.services.event_fanout import emit_order_event
from marketrun.services.order_service import get_order
from marketrun.services.security_guards import ensure_role

logger = logging.getLogger(__name__)

READY_STATUSES: frozenset[OrderStatus] = frozenset(
    {OrderStatus.PENDING, OrderStatus.SELLER_CONFIRMED, OrderStatus.RUNNER_ACCEPTED, OrderStatus.SHOPPING}
)


def _get_item(db: Session, order_id: int, item_id: int) -> OrderItem:
    item: OrderItem | None = db.get(OrderItem, item_id)
    if item is None or item.order_id != order_id:
        raise OrderNotFound(f"Order item {item_id} not found in order {order_id}")
    return item


def mark_item_ready(db: Session, order_id: int, item_id: int, caller_id: int, caller_role: Role) -> OrderItem:
    """Seller stages one of their own items for handover to the runner."""
    ensure_role(caller_role, {Role.SELLER})
    order = get_order(db, order_id)
    item = _get_item(db, order_id, item_id)
    if item.seller_id != caller_id:
        raise Unauthorized("You can only stage your own order items")
    status = OrderStatus(order.status)
    if status not in READY_STATUSES:
        raise InvalidTransition(f"Items cannot be staged while order is {status.value}")
    if item.seller_ready:
        return item

    result = db.execute(
        update(OrderItem)
        .where(OrderItem.id == item.id, OrderItem.seller_ready.is_(False))
        .values(seller_ready=True)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 1:
        log_action(
            db,
            actor_id=caller_id,
            actor_role=caller_role.value,
            action_type="item_ready",
            order_id=order_id,
            after_snapshot={"item_id": item.id, "seller_ready": True},
        )
    db.commit()
    db.refresh(item)
    logger.info("[LIFECYCLE] order_id=%s item_id=%s staged by seller_id=%s", order_id, item.id, caller_id)
    return item


def mark_item_collected(db: Session, order_id: int, item_id: int, caller_id: int, caller_role: Role) -> OrderItem:
    """Bound runner records that they physically took one item."""
    ensure_role(caller_role, {Role.RUNNER})
    order = get_order(db, order_id)
    item = _get_item(db, order_id, item_id)
    if order.runner_id != caller_id:
        raise Unauthorized(f"Order {order_id} is not assigned to you")
    status = OrderStatus(order.status)
    if status != OrderStatus.SHOPPING:
        raise InvalidTransition(f"Items can only be collected while shopping, order is {status.value}")
    if not item.seller_ready:
        raise InvalidTransition(f"Item {item.id} has not been staged by its seller")
    if not item.handover_verified:
        raise InvalidTransition(f"Seller of item {item.id} has not verified your pickup code")
    if item.runner_collected:
        return item

    db.execute(
        update(OrderItem)
        .where(OrderItem.id == item.id)
        .values(runner_collected=True)
        .execution_options(synchronize_session=False)
    )
    log_action(
        db,
        actor_id=caller_id,
        actor_role=caller_role.value,
        action_type="item_collected",
        order_id=order_id,
        after_snapshot={"item_id": item.id, "runner_collected": True},
    )
    db.commit()
    db.refresh(item)
    db.refresh(order)
    logger.info("[LIFECYCLE] order_id=%s item_id=%s collected by runner_id=%s", order_id, item.id, caller_id)
    if all(line.runner_collected for line in order.items):
        emit_order_event(order, "ORDER_ITEMS_COLLECTED")
    return item
