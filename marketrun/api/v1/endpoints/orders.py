"""Order lifecycle endpoints."""

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from marketrun.api.v1.errors import http_error
from marketrun.core.security import get_current_user, require_roles
from marketrun.db.session import get_db
from marketrun.models import Order, OrderItem, OrderStatus, Role, User
from marketrun.schemas.order import (
    OrderActionResponse,
    OrderCreate,
    OrderItemResponse,
    OrderResponse,
    TransitionRequest,
)
from marketrun.services import assignment_claimer, item_service, state_authority
from marketrun.services.errors import LifecycleError
from marketrun.services.order_service import (
    CheckoutError,
    CheckoutLine,
    available_actions,
    create_order,
    get_order,
    list_available_orders,
    list_orders_for_user,
)
from marketrun.services.order_status import status_description, status_label
from marketrun.services.security_guards import ensure_can_access_order

router: APIRouter = APIRouter()


def serialize_order(order: Order) -> OrderResponse:
    current = OrderStatus(order.status)
    return OrderResponse(
        id=order.id,
        buyer_id=order.buyer_id,
        runner_id=order.runner_id,
        courier_id=order.courier_id,
        status=current,
        status_label=status_label(current),
        status_description=status_description(current),
        items_total=order.items_total,
        runner_fee=order.runner_fee,
        delivery_fee=order.delivery_fee,
        platform_fee=order.platform_fee,
        total_amount=order.total_amount,
        delivery_address=order.delivery_address,
        payment_method=order.payment_method,
        created_at=order.created_at,
        confirmed_at=order.confirmed_at,
        delivered_at=order.delivered_at,
        cancelled_at=order.cancelled_at,
        runner_verified=order.runner_verified_at is not None,
        handover_courier_id=order.handover_courier_id,
        items=[OrderItemResponse.model_validate(item) for item in order.items],
    )


@router.post("", response_model=OrderResponse, status_code=status.HTTP_201_CREATED)
def checkout(
    payload: OrderCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_roles(Role.BUYER)),
) -> OrderResponse:
    """Create a pending order from explicit checkout selections."""
    lines = [
        CheckoutLine(product_id=item.product_id, quantity=item.quantity, substitution_note=item.substitution_note)
        for item in payload.items
    ]
    try:
        order = create_order(
            db,
            buyer=current_user,
            lines=lines,
            delivery_address=payload.delivery_address,
            payment_method=payload.payment_method,
        )
    except CheckoutError as exc:
        db.rollback()
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return serialize_order(order)


@router.get("", response_model=list[OrderResponse])
def list_my_orders(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> list[OrderResponse]:
    """Return the orders the caller is a party to, newest first."""
    try:
        orders = list_orders_for_user(db, current_user.id, Role(current_user.role))
    except LifecycleError as exc:
        raise http_error(exc) from exc
    return [serialize_order(order) for order in orders]


@router.get("/available", response_model=list[OrderResponse])
def get_available_orders(
    db: Session = Depends(get_db),
    current_user: User = Depends(require_roles(Role.RUNNER, Role.COURIER)),
) -> list[OrderResponse]:
    """Return unclaimed orders the caller's role may claim next."""
    return [serialize_order(order) for order in list_available_orders(db, Role(current_user.role))]


@router.get("/{order_id}", response_model=OrderResponse)
def read_order(
    order_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> OrderResponse:
    try:
        order = get_order(db, order_id)
        ensure_can_access_order(order, current_user.id, Role(current_user.role))
    except LifecycleError as exc:
        raise http_error(exc) from exc
    return serialize_order(order)


@router.get("/{order_id}/actions", response_model=list[OrderActionResponse])
def read_available_actions(
    order_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> list[OrderActionResponse]:
    """List the transitions the caller could take on the order right now."""
    role = Role(current_user.role)
    try:
        order = get_order(db, order_id)
        ensure_can_access_order(order, current_user.id, role)
    except LifecycleError as exc:
        raise http_error(exc) from exc
    return [
        OrderActionResponse(status=action.status, action=action.action, description=action.description)
        for action in available_actions(order, current_user.id, role)
    ]


@router.post("/{order_id}/transitions", response_model=OrderResponse)
def request_transition(
    order_id: int,
    payload: TransitionRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> OrderResponse:
    """Move the order to target_status if the caller may take that edge."""
    try:
        order = state_authority.request_transition(
            db, order_id, current_user.id, Role(current_user.role), payload.target_status
        )
    except LifecycleError as exc:
        db.rollback()
        raise http_error(exc) from exc
    return serialize_order(order)


@router.post("/{order_id}/claim", response_model=OrderResponse)
def claim_order(
    order_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> OrderResponse:
    """Take the order's empty runner or courier slot."""
    try:
        order = assignment_claimer.claim_order(db, order_id, current_user.id, Role(current_user.role))
    except LifecycleError as exc:
        db.rollback()
        raise http_error(exc) from exc
    return serialize_order(order)


@router.post("/{order_id}/items/{item_id}/ready", response_model=OrderItemResponse)
def mark_item_ready(
    order_id: int,
    item_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> OrderItem:
    try:
        return item_service.mark_item_ready(db, order_id, item_id, current_user.id, Role(current_user.role))
    except LifecycleError as exc:
        db.rollback()
        raise http_error(exc) from exc


@router.post("/{order_id}/items/{item_id}/collected", response_model=OrderItemResponse)
def mark_item_collected(
    order_id: int,
    item_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> OrderItem:
    try:
        return item_service.mark_item_collected(db, order_id, item_id, current_user.id, Role(current_user.role))
    except LifecycleError as exc:
        db.rollback()
        raise http_error(exc) from exc
