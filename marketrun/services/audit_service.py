"""Audit log helpers."""

from __future__ import annotations

from typing import Any

from sqlalchemy.orm import Session

from marketrun.models import AuditLog, Order


def order_snapshot(order: Order) -> dict[str, Any]:
    """Return the mutable lifecycle fields of order as JSON-safe values."""
    return {
        "status": order.status,
        "runner_id": order.runner_id,
        "courier_id": order.courier_id,
        "handover_courier_id": order.handover_courier_id,
        "runner_verified": order.runner_verified_at is not None,
    }


def log_action(
    db: Session,
    *,
    actor_id: int | None,
    actor_role: str | None,
    action_type: str,
    order_id: int | None = None,
    before_snapshot: dict[str, Any] | None = None,
    after_snapshot: dict[str, Any] | None = None,
) -> None:
    db.add(
        AuditLog(
            actor_user_id=actor_id,
            actor_role=actor_role,
            action_type=action_type,
            order_id=order_id,
            before_snapshot=before_snapshot,
            after_snapshot=after_snapshot,
        )
    )
