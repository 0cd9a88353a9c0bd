"""Handover verification codes for physical custody transfers.

The party about to take custody asks for a code, shows it in person, and the
counterparty submits it. There is one challenge row per (order, stage):

* issuing while a usable code exists for the same requester returns that
  code unchanged, so reopening a screen never invalidates a displayed code;
* an expired, exhausted or consumed challenge is rewritten with a fresh code
  under a version check;
* verification consumes the row with a single conditional UPDATE that
  re-checks code, expiry and attempt budget at commit time.
"""

from __future__ import annotations

import hmac
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from marketrun.core.config import settings
from marketrun.models import HandoverChallenge, HandoverStage, Order, OrderItem, OrderStatus, Role
from marketrun.services.audit_service import log_action, order_snapshot
from marketrun.services.errors import (
    AlreadyClaimed,
    ChallengeExpired,
    InvalidTransition,
    NoChallengeIssued,
    Unauthorized,
    VerificationFailed,
)
from marketrun.services.event_fanout import emit_order_event
from marketrun.services.order_service import get_order
from marketrun.services.security_guards import ensure_role, order_seller_ids
from marketrun.utils.time import as_utc, utcnow

logger = logging.getLogger(__name__)

SELLER_PICKUP_STATUSES: frozenset[OrderStatus] = frozenset({OrderStatus.RUNNER_ACCEPTED, OrderStatus.SHOPPING})


@dataclass(frozen=True)
class HandoverCode:
    code: str
    expires_at: datetime


@dataclass(frozen=True)
class HandoverResult:
    order: Order
    stage: HandoverStage
    issuer_id: int


def generate_code(length: int | None = None, avoid: str | None = None) -> str:
    """Return a fixed-length numeric code, different from ``avoid``."""
    length = length or settings.handover_code_length
    while True:
        code = f"{secrets.randbelow(10 ** length):0{length}d}"
        if code != avoid:
            return code


def is_usable(challenge: HandoverChallenge, now: datetime) -> bool:
    return (
        challenge.consumed_at is None
        and as_utc(challenge.expires_at) > now
        and challenge.attempts < settings.handover_max_attempts
    )


def _get_challenge(db: Session, order_id: int, stage: HandoverStage) -> HandoverChallenge | None:
    return db.scalar(
        select(HandoverChallenge)
        .where(HandoverChallenge.order_id == order_id, HandoverChallenge.stage == stage.value)
        .limit(1)
    )


def _ensure_may_issue(order: Order, stage: HandoverStage, requester_id: int, requester_role: Role) -> None:
    status = OrderStatus(order.status)
    if stage == HandoverStage.SELLER_TO_RUNNER:
        ensure_role(requester_role, {Role.RUNNER})
        if order.runner_id != requester_id:
            raise Unauthorized(f"Order {order.id} is not assigned to you")
        if status not in SELLER_PICKUP_STATUSES:
            raise InvalidTransition(f"Seller pickup codes are not available while order is {status.value}")
        return
    ensure_role(requester_role, {Role.COURIER})
    if status != OrderStatus.READY_FOR_PICKUP:
        raise InvalidTransition(f"Courier pickup codes are not available while order is {status.value}")
    if order.courier_id is not None:
        raise AlreadyClaimed(f"Order {order.id} is already assigned to another courier")


def issue_handover_challenge(
    db: Session,
    order_id: int,
    stage: HandoverStage,
    requester_id: int,
    requester_role: Role,
) -> HandoverCode:
    """Return the requester's code for this stage, minting one if needed."""
    order = get_order(db, order_id)
    _ensure_may_issue(order, stage, requester_id, requester_role)

    ttl = timedelta(minutes=settings.handover_code_ttl_minutes)
    while True:
        now = utcnow()
        challenge = _get_challenge(db, order_id, stage)
        if challenge is None:
            challenge = HandoverChallenge(
                order_id=order_id,
                stage=stage.value,
                code=generate_code(),
                issuer_id=requester_id,
                issued_at=now,
                expires_at=now + ttl,
            )
            db.add(challenge)
            try:
                db.commit()
            except IntegrityError:
                # Another request created the row first; read it back.
                db.rollback()
                continue
            logger.info("[HANDOVER] order_id=%s stage=%s code issued to user_id=%s", order_id, stage.value, requester_id)
            return HandoverCode(code=challenge.code, expires_at=as_utc(challenge.expires_at))

        if is_usable(challenge, now):
            if challenge.issuer_id != requester_id:
                raise AlreadyClaimed(f"Another party holds the {stage.value} handover for order {order_id}")
            return HandoverCode(code=challenge.code, expires_at=as_utc(challenge.expires_at))

        new_code = generate_code(avoid=challenge.code)
        result = db.execute(
            update(HandoverChallenge)
            .where(HandoverChallenge.id == challenge.id, HandoverChallenge.version == challenge.version)
            .values(
                code=new_code,
                issuer_id=requester_id,
                issued_at=now,
                expires_at=now + ttl,
                attempts=0,
                consumed_at=None,
                consumed_by=None,
                version=challenge.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.rollback()
            continue
        db.commit()
        logger.info("[HANDOVER] order_id=%s stage=%s code reissued to user_id=%s", order_id, stage.value, requester_id)
        return HandoverCode(code=new_code, expires_at=now + ttl)


def _ensure_may_verify(order: Order, stage: HandoverStage, verifier_id: int, verifier_role: Role) -> list[OrderItem]:
    """Check the verifier's part in this stage; return the seller's items when relevant."""
    status = OrderStatus(order.status)
    if stage == HandoverStage.SELLER_TO_RUNNER:
        ensure_role(verifier_role, {Role.SELLER})
        if verifier_id not in order_seller_ids(order):
            raise Unauthorized("You don't have items in this order")
        if status not in SELLER_PICKUP_STATUSES:
            raise InvalidTransition(f"Seller handover is not possible while order is {status.value}")
        seller_items = [item for item in order.items if item.seller_id == verifier_id]
        if not all(item.seller_ready for item in seller_items):
            raise InvalidTransition("All of your items must be ready before verifying the runner")
        return seller_items
    ensure_role(verifier_role, {Role.RUNNER})
    if order.runner_id != verifier_id:
        raise Unauthorized(f"Order {order.id} is not assigned to you")
    if status != OrderStatus.READY_FOR_PICKUP:
        raise InvalidTransition(f"Courier handover is not possible while order is {status.value}")
    return []


def verify_handover_challenge(
    db: Session,
    order_id: int,
    stage: HandoverStage,
    submitted_code: str,
    verifier_id: int,
    verifier_role: Role,
) -> HandoverResult:
    """Consume the stage's challenge if submitted_code matches, else raise."""
    order = get_order(db, order_id)
    seller_items = _ensure_may_verify(order, stage, verifier_id, verifier_role)

    now = utcnow()
    challenge = _get_challenge(db, order_id, stage)
    if challenge is None or challenge.consumed_at is not None:
        raise NoChallengeIssued(f"No {stage.value} code is outstanding for order {order_id}")
    if as_utc(challenge.expires_at) <= now or challenge.attempts >= settings.handover_max_attempts:
        raise ChallengeExpired("Handover code expired; ask for a fresh code")

    submitted = (submitted_code or "").strip()
    if not hmac.compare_digest(submitted.encode("utf-8"), challenge.code.encode("utf-8")):
        attempt = challenge.attempts + 1
        db.execute(
            update(HandoverChallenge)
            .where(HandoverChallenge.id == challenge.id, HandoverChallenge.version == challenge.version)
            .values(attempts=HandoverChallenge.attempts + 1)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        logger.warning(
            "[HANDOVER] order_id=%s stage=%s wrong code from user_id=%s (attempt %s)",
            order_id,
            stage.value,
            verifier_id,
            attempt,
        )
        raise VerificationFailed("Invalid verification code")

    consumed = db.execute(
        update(HandoverChallenge)
        .where(
            HandoverChallenge.id == challenge.id,
            HandoverChallenge.version == challenge.version,
            HandoverChallenge.code == challenge.code,
            HandoverChallenge.consumed_at.is_(None),
            HandoverChallenge.expires_at > now,
            HandoverChallenge.attempts < settings.handover_max_attempts,
        )
        .values(consumed_at=now, consumed_by=verifier_id)
        .execution_options(synchronize_session=False)
    )
    if consumed.rowcount != 1:
        db.rollback()
        raise NoChallengeIssued(f"The {stage.value} code for order {order_id} is no longer outstanding")

    before = order_snapshot(order)
    issuer_id = challenge.issuer_id
    if stage == HandoverStage.SELLER_TO_RUNNER:
        db.execute(
            update(Order)
            .where(Order.id == order_id, Order.runner_verified_at.is_(None))
            .values(runner_verified_at=now)
            .execution_options(synchronize_session=False)
        )
        db.execute(
            update(OrderItem)
            .where(OrderItem.id.in_([item.id for item in seller_items]))
            .values(handover_verified=True)
            .execution_options(synchronize_session=False)
        )
        event_type = "HANDOVER_RUNNER_VERIFIED"
    else:
        bound = db.execute(
            update(Order)
            .where(
                Order.id == order_id,
                Order.status == OrderStatus.READY_FOR_PICKUP.value,
                Order.courier_id.is_(None),
            )
            .values(handover_courier_id=issuer_id)
            .execution_options(synchronize_session=False)
        )
        if bound.rowcount != 1:
            db.rollback()
            raise AlreadyClaimed(f"Order {order_id} is already assigned to another courier")
        event_type = "HANDOVER_COURIER_VERIFIED"

    log_action(
        db,
        actor_id=verifier_id,
        actor_role=verifier_role.value,
        action_type=f"handover_{stage.value}",
        order_id=order_id,
        before_snapshot=before,
        after_snapshot={"issuer_id": issuer_id, "verified_at": now.isoformat()},
    )
    db.commit()
    db.refresh(order)
    logger.info("[HANDOVER] order_id=%s stage=%s verified by user_id=%s", order_id, stage.value, verifier_id)
    emit_order_event(order, event_type, stage=stage.value)
    return HandoverResult(order=order, stage=stage, issuer_id=issuer_id)
