"""First-claim resolution for runner and courier slots.

A claim is one conditional UPDATE that sets the slot and advances the status
only while the slot is still empty. Exactly one concurrent caller can see one
affected row; everybody else sees zero, re-reads the order and is told why.
"""

from __future__ import annotations

import logging

from sqlalchemy import update
from sqlalchemy.orm import Session

from marketrun.models import Order, Role
from marketrun.services.audit_service import log_action, order_snapshot
from marketrun.services.errors import AlreadyClaimed, InvalidTransition
from marketrun.services.event_fanout import emit_order_event
from marketrun.services.order_service import get_order
from marketrun.services.order_status import CLAIM_EDGE_BY_ROLE, EVENT_TYPES, FIRST_CLAIM_EDGES, status_timestamps
from marketrun.services.security_guards import check_transition, ensure_role
from marketrun.utils.time import utcnow

logger = logging.getLogger(__name__)


def claim_order(db: Session, order_id: int, caller_id: int, caller_role: Role) -> Order:
    """Bind caller to the order's empty runner or courier slot, or raise."""
    ensure_role(caller_role, set(CLAIM_EDGE_BY_ROLE))
    current, target = CLAIM_EDGE_BY_ROLE[caller_role]
    slot = FIRST_CLAIM_EDGES[(current, target)]
    slot_column = getattr(Order, slot)

    order = get_order(db, order_id)
    before = order_snapshot(order)

    conditions = [Order.id == order_id, Order.status == current.value, slot_column.is_(None)]
    if slot == "courier_id":
        conditions.append(Order.handover_courier_id == caller_id)

    result = db.execute(
        update(Order)
        .where(*conditions)
        .values({slot: caller_id, "status": target.value, **status_timestamps(target, utcnow())})
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        logger.info("[CLAIM] order_id=%s lost by %s_id=%s", order_id, caller_role.value, caller_id)
        fresh = get_order(db, order_id)
        if getattr(fresh, slot) is not None:
            raise AlreadyClaimed(f"Order {order_id} is already assigned to another {caller_role.value}")
        check_transition(fresh, target, caller_id, caller_role)
        raise InvalidTransition(f"Order {order_id} changed concurrently; re-read and retry")

    log_action(
        db,
        actor_id=caller_id,
        actor_role=caller_role.value,
        action_type="order_claimed",
        order_id=order_id,
        before_snapshot=before,
        after_snapshot={**before, slot: caller_id, "status": target.value},
    )
    db.commit()
    db.refresh(order)
    logger.info("[CLAIM] order_id=%s won by %s_id=%s -> %s", order_id, caller_role.value, caller_id, target.value)
    emit_order_event(order, EVENT_TYPES[target])
    return order
