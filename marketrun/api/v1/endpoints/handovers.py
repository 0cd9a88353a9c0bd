"""Handover code endpoints."""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from marketrun.api.v1.errors import http_error
from marketrun.core.security import get_current_user
from marketrun.db.session import get_db
from marketrun.models import HandoverStage, OrderStatus, Role, User
from marketrun.schemas.handover import HandoverCodeResponse, HandoverVerifyRequest, HandoverVerifyResponse
from marketrun.services.errors import LifecycleError
from marketrun.services.handover_service import issue_handover_challenge, verify_handover_challenge

router: APIRouter = APIRouter()


@router.post("/{order_id}/handovers/{stage}/code", response_model=HandoverCodeResponse)
def show_handover_code(
    order_id: int,
    stage: HandoverStage,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> HandoverCodeResponse:
    """Return the caller's code to display; repeated calls return the same live code."""
    try:
        issued = issue_handover_challenge(db, order_id, stage, current_user.id, Role(current_user.role))
    except LifecycleError as exc:
        db.rollback()
        raise http_error(exc) from exc
    return HandoverCodeResponse(order_id=order_id, stage=stage, code=issued.code, expires_at=issued.expires_at)


@router.post("/{order_id}/handovers/{stage}/verify", response_model=HandoverVerifyResponse)
def verify_handover_code(
    order_id: int,
    stage: HandoverStage,
    payload: HandoverVerifyRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> HandoverVerifyResponse:
    """Submit the code the counterparty is displaying."""
    try:
        result = verify_handover_challenge(
            db, order_id, stage, payload.code, current_user.id, Role(current_user.role)
        )
    except LifecycleError as exc:
        db.rollback()
        raise http_error(exc) from exc
    return HandoverVerifyResponse(
        order_id=order_id,
        stage=stage,
        issuer_id=result.issuer_id,
        status=OrderStatus(result.order.status),
    )
