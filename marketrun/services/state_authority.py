"""Single write path for order status.

Every status change is committed with a conditional UPDATE on the status the
guards were evaluated against, so a stale read can never be replayed. A
rejected request rolls back and leaves the order row untouched; the event is
published only after the commit succeeded.
"""

from __future__ import annotations

import logging
from typing import Any, NoReturn

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from marketrun.models import Order, OrderItem, OrderStatus, Role
from marketrun.services import assignment_claimer
from marketrun.services.audit_service import log_action, order_snapshot
from marketrun.services.errors import InvalidTransition
from marketrun.services.event_fanout import emit_order_event
from marketrun.services.order_service import get_order
from marketrun.services.order_status import EVENT_TYPES, FIRST_CLAIM_EDGES, status_timestamps
from marketrun.services.security_guards import check_transition, ensure_edge_allowed
from marketrun.utils.time import utcnow

logger = logging.getLogger(__name__)


def ensure_ready_for_pickup(order: Order) -> None:
    """Gate for shopping -> ready_for_pickup: every item staged and collected."""
    if order.runner_verified_at is None:
        raise InvalidTransition("No seller has verified the runner's pickup code yet")
    pending_items = [item.id for item in order.items if not (item.seller_ready and item.runner_collected)]
    if pending_items:
        raise InvalidTransition(f"All items must be ready and collected before pickup (pending: {pending_items})")


def record_seller_confirmation(db: Session, order: Order, caller_id: int, caller_role: Role) -> tuple[int, bool]:
    """Confirm the caller's items of a pending order.

    Returns how many items this call confirmed and whether every item of the
    order is now confirmed. The order row is locked first so concurrent
    sellers serialize and the last one sees all earlier confirmations.
    """
    locked = db.execute(
        select(Order.id).where(Order.id == order.id, Order.status == OrderStatus.PENDING.value).with_for_update()
    ).first()
    if locked is None:
        db.rollback()
        _raise_for_lost_write(db, order.id, caller_id, caller_role, OrderStatus.SELLER_CONFIRMED)

    result = db.execute(
        update(OrderItem)
        .where(
            OrderItem.order_id == order.id,
            OrderItem.seller_id == caller_id,
            OrderItem.seller_confirmed.is_(False),
        )
        .values(seller_confirmed=True)
        .execution_options(synchronize_session=False)
    )
    confirmed = result.rowcount
    if confirmed:
        log_action(
            db,
            actor_id=caller_id,
            actor_role=caller_role.value,
            action_type="items_confirmed",
            order_id=order.id,
            after_snapshot={"seller_id": caller_id, "items_confirmed": confirmed},
        )
    remaining = db.scalar(
        select(func.count())
        .select_from(OrderItem)
        .where(OrderItem.order_id == order.id, OrderItem.seller_confirmed.is_(False))
    )
    return confirmed, remaining == 0


def request_transition(
    db: Session,
    order_id: int,
    caller_id: int,
    caller_role: Role,
    target_status: OrderStatus,
) -> Order:
    """Validate and commit one status change requested by caller."""
    order = get_order(db, order_id)
    current = OrderStatus(order.status)
    if (current, target_status) in FIRST_CLAIM_EDGES:
        ensure_edge_allowed(current, target_status, caller_role)
        return assignment_claimer.claim_order(db, order_id, caller_id, caller_role)

    check_transition(order, target_status, caller_id, caller_role)
    if target_status == OrderStatus.READY_FOR_PICKUP:
        ensure_ready_for_pickup(order)
    if target_status == OrderStatus.SELLER_CONFIRMED:
        confirmed, complete = record_seller_confirmation(db, order, caller_id, caller_role)
        if not complete:
            db.commit()
            db.refresh(order)
            logger.info(
                "[LIFECYCLE] order_id=%s items confirmed by seller_id=%s; waiting on other sellers",
                order.id,
                caller_id,
            )
            if confirmed:
                emit_order_event(order, "ORDER_ITEMS_CONFIRMED")
            return order

    before = order_snapshot(order)
    values: dict[str, Any] = {"status": target_status.value, **status_timestamps(target_status, utcnow())}
    result = db.execute(
        update(Order)
        .where(Order.id == order.id, Order.status == current.value)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        _raise_for_lost_write(db, order_id, caller_id, caller_role, target_status)

    log_action(
        db,
        actor_id=caller_id,
        actor_role=caller_role.value,
        action_type="status_transition",
        order_id=order.id,
        before_snapshot=before,
        after_snapshot={**before, "status": target_status.value},
    )
    db.commit()
    db.refresh(order)
    logger.info(
        "[LIFECYCLE] order_id=%s %s -> %s by %s_id=%s",
        order.id,
        current.value,
        target_status.value,
        caller_role.value,
        caller_id,
    )
    emit_order_event(order, EVENT_TYPES[target_status])
    return order


def _raise_for_lost_write(
    db: Session,
    order_id: int,
    caller_id: int,
    caller_role: Role,
    target_status: OrderStatus,
) -> NoReturn:
    """Re-read after a zero-row conditional write and raise the precise error."""
    fresh = get_order(db, order_id)
    check_transition(fresh, target_status, caller_id, caller_role)
    raise InvalidTransition(f"Order {order_id} changed concurrently; re-read and retry")
