"""Order lookups, checkout and caller-facing queries."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from marketrun.core.config import settings
from marketrun.models import Order, OrderItem, OrderStatus, Product, Role, User
from marketrun.services.audit_service import log_action, order_snapshot
from marketrun.services.errors import OrderNotFound, Unauthorized
from marketrun.services.event_fanout import emit_order_event
from marketrun.services.order_status import ACTIONS, is_terminal, next_statuses
from marketrun.services.security_guards import can_perform, ensure_role

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


class CheckoutError(Exception):
    """Raised when a checkout payload cannot be turned into an order."""


@dataclass(frozen=True)
class CheckoutLine:
    product_id: int
    quantity: int
    substitution_note: str | None = None


@dataclass(frozen=True)
class AvailableAction:
    status: OrderStatus
    action: str
    description: str


def get_order(db: Session, order_id: int) -> Order:
    order: Order | None = db.get(Order, order_id)
    if order is None:
        raise OrderNotFound(f"Order {order_id} not found")
    return order


def resolve_seller(db: Session, product_id: int) -> Product:
    """Catalog lookup: return the available product so its seller can be attributed."""
    product: Product | None = db.get(Product, product_id)
    if product is None:
        raise CheckoutError(f"Product {product_id} not found")
    if not product.is_available:
        raise CheckoutError(f"Product {product_id} is not available")
    return product


def create_order(
    db: Session,
    *,
    buyer: User,
    lines: list[CheckoutLine],
    delivery_address: str,
    payment_method: str | None = None,
) -> Order:
    """Create a pending order with one item per line, priced from the catalog.

    All checkout selections are passed in explicitly; nothing is read from
    ambient client state.
    """
    ensure_role(Role(buyer.role), {Role.BUYER})
    if not lines:
        raise CheckoutError("Order must contain at least one item")
    if not delivery_address.strip():
        raise CheckoutError("Delivery address is required")

    order = Order(
        buyer_id=buyer.id,
        status=OrderStatus.PENDING.value,
        delivery_address=delivery_address.strip(),
        payment_method=payment_method,
    )
    items_total = Decimal("0.00")
    for line in lines:
        if line.quantity < 1:
            raise CheckoutError("Quantity must be >= 1")
        product = resolve_seller(db, line.product_id)
        subtotal = (Decimal(product.unit_price) * line.quantity).quantize(CENTS)
        items_total += subtotal
        order.items.append(
            OrderItem(
                product_id=product.id,
                seller_id=product.seller_id,
                quantity=line.quantity,
                unit_price=product.unit_price,
                subtotal=subtotal,
                substitution_note=line.substitution_note,
            )
        )

    order.items_total = items_total
    order.runner_fee = settings.default_runner_fee
    order.delivery_fee = settings.default_delivery_fee
    order.platform_fee = (items_total * settings.platform_fee_rate).quantize(CENTS, rounding=ROUND_HALF_UP)
    order.total_amount = items_total + order.runner_fee + order.delivery_fee + order.platform_fee

    db.add(order)
    db.flush()
    log_action(
        db,
        actor_id=buyer.id,
        actor_role=buyer.role,
        action_type="order_created",
        order_id=order.id,
        after_snapshot=order_snapshot(order),
    )
    db.commit()
    db.refresh(order)
    logger.info("[LIFECYCLE] order_id=%s created by buyer_id=%s items=%s", order.id, buyer.id, len(lines))
    emit_order_event(order, "ORDER_CREATED")
    return order


def list_orders_for_user(db: Session, user_id: int, role: Role) -> list[Order]:
    """Return the orders the caller is a party to, newest first. Admins see every order."""
    query = select(Order)
    if role == Role.BUYER:
        query = query.where(Order.buyer_id == user_id)
    elif role == Role.SELLER:
        query = query.where(Order.id.in_(select(OrderItem.order_id).where(OrderItem.seller_id == user_id)))
    elif role == Role.RUNNER:
        query = query.where(Order.runner_id == user_id)
    elif role == Role.COURIER:
        query = query.where(Order.courier_id == user_id)
    elif role != Role.ADMIN:
        raise Unauthorized(f"Role {role.value} cannot list orders")
    return list(db.scalars(query.order_by(Order.created_at.desc(), Order.id.desc())).all())


def list_available_orders(db: Session, role: Role) -> list[Order]:
    """Return unclaimed orders the role may claim next, oldest first."""
    if role == Role.RUNNER:
        condition = (Order.status == OrderStatus.SELLER_CONFIRMED.value) & Order.runner_id.is_(None)
    elif role == Role.COURIER:
        condition = (Order.status == OrderStatus.READY_FOR_PICKUP.value) & Order.courier_id.is_(None)
    else:
        raise Unauthorized(f"Role {role.value} cannot claim orders")
    return list(db.scalars(select(Order).where(condition).order_by(Order.created_at.asc(), Order.id.asc())).all())


def _seller_has_confirmed(order: Order, seller_id: int) -> bool:
    return all(item.seller_confirmed for item in order.items if item.seller_id == seller_id)


def available_actions(order: Order, user_id: int, role: Role) -> list[AvailableAction]:
    """Return the edges the caller could take right now, with UI action slugs."""
    current = OrderStatus(order.status)
    if is_terminal(current):
        return []
    actions: list[AvailableAction] = []
    for target in next_statuses(current):
        if not can_perform(order, target, user_id, role):
            continue
        if target == OrderStatus.SELLER_CONFIRMED and role == Role.SELLER and _seller_has_confirmed(order, user_id):
            continue
        action, description = ACTIONS[target]
        actions.append(AvailableAction(status=target, action=action, description=description))
    return actions
