"""Lifecycle event fan-out to the parties of an order."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import datetime

from pydantic import BaseModel, Field

from marketrun.models import Order
from marketrun.utils.time import utcnow

logger = logging.getLogger(__name__)


class OrderEvent(BaseModel):
    """One committed change, addressed to the parties of the order."""

    order_id: int
    event_type: str
    status: str
    stage: str | None = None
    recipients: list[int]
    occurred_at: datetime = Field(default_factory=utcnow)


OrderEventHandler = Callable[[OrderEvent], None]


def recipients_for(order: Order) -> list[int]:
    """Return {buyer, runner, courier} minus empty slots, in that order."""
    recipients: list[int] = []
    for user_id in (order.buyer_id, order.runner_id, order.courier_id):
        if user_id is not None and user_id not in recipients:
            recipients.append(user_id)
    return recipients


class EventFanout:
    """In-process publisher of OrderEvents.

    Delivery is at-most-once and best effort: a failing handler is logged and
    the remaining handlers still run. Callers publish only after commit.
    """

    def __init__(self) -> None:
        self._handlers: list[OrderEventHandler] = []
        self._lock = threading.Lock()

    def subscribe(self, handler: OrderEventHandler) -> None:
        with self._lock:
            if handler not in self._handlers:
                self._handlers.append(handler)

    def unsubscribe(self, handler: OrderEventHandler) -> None:
        with self._lock:
            if handler in self._handlers:
                self._handlers.remove(handler)

    def publish(self, event: OrderEvent) -> None:
        with self._lock:
            handlers = list(self._handlers)
        logger.info(
            "[FANOUT] order_id=%s event=%s recipients=%s",
            event.order_id,
            event.event_type,
            event.recipients,
        )
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception("[FANOUT] Handler %r failed for order_id=%s", handler, event.order_id)


fanout: EventFanout = EventFanout()


def emit_order_event(order: Order, event_type: str, stage: str | None = None) -> OrderEvent:
    """Build and publish the event for a committed change to order."""
    event = OrderEvent(
        order_id=order.id,
        event_type=event_type,
        status=order.status,
        stage=stage,
        recipients=recipients_for(order),
    )
    fanout.publish(event)
    return event
