"""Service-level tests for transitions, claims, item staging and handover codes."""

from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from decimal import Decimal
from pathlib import Path
from threading import Barrier

import pytest
from sqlalchemy import create_engine, select, update
from sqlalchemy.orm import sessionmaker

from marketrun.core.config import settings
from marketrun.db.base import Base
from marketrun.models import AuditLog, HandoverChallenge, HandoverStage, Order, OrderStatus, Product, Role, User
from marketrun.services import assignment_claimer, item_service, state_authority
from marketrun.services.errors import (
    AlreadyClaimed,
    ChallengeExpired,
    InvalidTransition,
    LifecycleError,
    NoChallengeIssued,
    OrderNotFound,
    Unauthorized,
    VerificationFailed,
)
from marketrun.services.event_fanout import OrderEvent, fanout
from marketrun.services.handover_service import issue_handover_challenge, verify_handover_challenge
from marketrun.services.order_service import (
    CheckoutError,
    CheckoutLine,
    available_actions,
    create_order,
    list_available_orders,
    list_orders_for_user,
)
from marketrun.utils.time import utcnow


def _prepare_db(tmp_path: Path, name: str = "lifecycle.db"):
    engine = create_engine(f"sqlite:///{tmp_path / name}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def _seed(session_local) -> dict[str, int]:
    """Create one user per role plus a second seller, runner and courier, and two products."""
    with session_local() as db:
        users = {
            "buyer": User(username="buyer", password_hash="x", role=Role.BUYER.value),
            "seller": User(username="seller", password_hash="x", role=Role.SELLER.value),
            "seller2": User(username="seller2", password_hash="x", role=Role.SELLER.value),
            "runner": User(username="runner", password_hash="x", role=Role.RUNNER.value),
            "runner2": User(username="runner2", password_hash="x", role=Role.RUNNER.value),
            "courier": User(username="courier", password_hash="x", role=Role.COURIER.value),
            "courier2": User(username="courier2", password_hash="x", role=Role.COURIER.value),
        }
        db.add_all(users.values())
        db.flush()
        tomatoes = Product(seller_id=users["seller"].id, name="Tomatoes", unit_price=Decimal("12.50"))
        yams = Product(seller_id=users["seller2"].id, name="Yams", unit_price=Decimal("8.00"))
        db.add_all([tomatoes, yams])
        db.commit()
        ids = {key: user.id for key, user in users.items()}
        ids["tomatoes"] = tomatoes.id
        ids["yams"] = yams.id
        return ids


def _create_order(session_local, ids: dict[str, int], *, two_sellers: bool = False) -> int:
    lines = [CheckoutLine(product_id=ids["tomatoes"], quantity=2)]
    if two_sellers:
        lines.append(CheckoutLine(product_id=ids["yams"], quantity=1))
    with session_local() as db:
        buyer = db.get(User, ids["buyer"])
        order = create_order(db, buyer=buyer, lines=lines, delivery_address="12 Makola Road")
        return order.id


def _transition(session_local, order_id: int, user_id: int, role: Role, target: OrderStatus) -> Order:
    with session_local() as db:
        order = state_authority.request_transition(db, order_id, user_id, role, target)
        db.expunge(order)
        return order


def _claim(session_local, order_id: int, user_id: int, role: Role) -> Order:
    with session_local() as db:
        order = assignment_claimer.claim_order(db, order_id, user_id, role)
        db.expunge(order)
        return order


def _issue(session_local, order_id: int, stage: HandoverStage, user_id: int, role: Role) -> str:
    with session_local() as db:
        return issue_handover_challenge(db, order_id, stage, user_id, role).code


def _verify(session_local, order_id: int, stage: HandoverStage, code: str, user_id: int, role: Role) -> int:
    with session_local() as db:
        return verify_handover_challenge(db, order_id, stage, code, user_id, role).issuer_id


def _item_ids(session_local, order_id: int) -> dict[int, int]:
    """Map seller id to item id for the order."""
    with session_local() as db:
        order = db.get(Order, order_id)
        return {item.seller_id: item.id for item in order.items}


def _runner_accepted(session_local, ids: dict[str, int], *, two_sellers: bool = False) -> int:
    order_id = _create_order(session_local, ids, two_sellers=two_sellers)
    _transition(session_local, order_id, ids["seller"], Role.SELLER, OrderStatus.SELLER_CONFIRMED)
    if two_sellers:
        _transition(session_local, order_id, ids["seller2"], Role.SELLER, OrderStatus.SELLER_CONFIRMED)
    _claim(session_local, order_id, ids["runner"], Role.RUNNER)
    return order_id


def _ready_for_pickup(session_local, ids: dict[str, int]) -> int:
    order_id = _runner_accepted(session_local, ids)
    item_id = _item_ids(session_local, order_id)[ids["seller"]]
    with session_local() as db:
        item_service.mark_item_ready(db, order_id, item_id, ids["seller"], Role.SELLER)
    code = _issue(session_local, order_id, HandoverStage.SELLER_TO_RUNNER, ids["runner"], Role.RUNNER)
    _verify(session_local, order_id, HandoverStage.SELLER_TO_RUNNER, code, ids["seller"], Role.SELLER)
    _transition(session_local, order_id, ids["runner"], Role.RUNNER, OrderStatus.SHOPPING)
    with session_local() as db:
        item_service.mark_item_collected(db, order_id, item_id, ids["runner"], Role.RUNNER)
    _transition(session_local, order_id, ids["runner"], Role.RUNNER, OrderStatus.READY_FOR_PICKUP)
    return order_id


def test_checkout_prices_items_and_fees(tmp_path: Path) -> None:
    session_local = _prepare_db(tmp_path)
    ids = _seed(session_local)

    order_id = _create_order(session_local, ids, two_sellers=True)

    with session_local() as db:
        order = db.get(Order, order_id)
        assert order.status == OrderStatus.PENDING.value
        assert order.items_total == Decimal("33.00")
        assert order.platform_fee == Decimal("1.65")
        assert order.total_amount == Decimal("33.00") + settings.default_runner_fee + settings.default_delivery_fee + Decimal("1.65")
        assert {item.seller_id for item in order.items} == {ids["seller"], ids["seller2"]}
        actions = db.scalars(select(AuditLog.action_type).where(AuditLog.order_id == order_id)).all()
        assert actions == ["order_created"]


def test_checkout_rejects_unavailable_product(tmp_path: Path) -> None:
    session_local = _prepare_db(tmp_path)
    ids = _seed(session_local)
    with session_local() as db:
        db.execute(update(Product).where(Product.id == ids["yams"]).values(is_available=False))
        db.commit()

    with session_local() as db:
        buyer = db.get(User, ids["buyer"])
        with pytest.raises(CheckoutError):
            create_order(
                db,
                buyer=buyer,
                lines=[CheckoutLine(product_id=ids["yams"], quantity=1)],
                delivery_address="12 Makola Road",
            )


def test_unknown_order_raises_not_found(tmp_path: Path) -> None:
    session_local = _prepare_db(tmp_path)
    ids = _seed(session_local)

    with pytest.raises(OrderNotFound):
        _transition(session_local, 404, ids["seller"], Role.SELLER, OrderStatus.SELLER_CONFIRMED)


def test_rejected_transition_leaves_order_untouched(tmp_path: Path) -> None:
    session_local = _prepare_db(tmp_path)
    ids = _seed(session_local)
    order_id = _create_order(session_local, ids)

    with pytest.raises(InvalidTransition):
        _transition(session_local, order_id, ids["runner"], Role.RUNNER, OrderStatus.SHOPPING)
    with pytest.raises(Unauthorized):
        _transition(session_local, order_id, ids["seller2"], Role.SELLER, OrderStatus.SELLER_CONFIRMED)

    with session_local() as db:
        order = db.get(Order, order_id)
        assert order.status == OrderStatus.PENDING.value
        assert order.status_updated_at is None
        assert db.scalar(select(AuditLog).where(AuditLog.action_type == "status_transition")) is None


def test_seller_confirmation_stamps_and_audits(tmp_path: Path) -> None:
    session_local = _prepare_db(tmp_path)
    ids = _seed(session_local)
    order_id = _create_order(session_local, ids)

    order = _transition(session_local, order_id, ids["seller"], Role.SELLER, OrderStatus.SELLER_CONFIRMED)

    assert order.status == OrderStatus.SELLER_CONFIRMED.value
    assert order.confirmed_at is not None
    with session_local() as db:
        entry = db.scalar(select(AuditLog).where(AuditLog.action_type == "status_transition"))
        assert entry.before_snapshot["status"] == "pending"
        assert entry.after_snapshot["status"] == "seller_confirmed"
        assert entry.actor_user_id == ids["seller"]


def test_stale_second_confirmation_is_invalid(tmp_path: Path) -> None:
    session_local = _prepare_db(tmp_path)
    ids = _seed(session_local)
    order_id = _create_order(session_local, ids)

    _transition(session_local, order_id, ids["seller"], Role.SELLER, OrderStatus.SELLER_CONFIRMED)
    with pytest.raises(InvalidTransition):
        _transition(session_local, order_id, ids["seller"], Role.SELLER, OrderStatus.SELLER_CONFIRMED)


def test_runner_claim_binds_slot_and_second_claim_loses(tmp_path: Path) -> None:
    session_local = _prepare_db(tmp_path)
    ids = _seed(session_local)
    order_id = _create_order(session_local, ids)
    _transition(session_local, order_id, ids["seller"], Role.SELLER, OrderStatus.SELLER_CONFIRMED)

    with session_local() as db:
        assert [order.id for order in list_available_orders(db, Role.RUNNER)] == [order_id]

    order = _claim(session_local, order_id, ids["runner"], Role.RUNNER)
    assert order.runner_id == ids["runner"]
    assert order.status == OrderStatus.RUNNER_ACCEPTED.value

    with pytest.raises(AlreadyClaimed):
        _claim(session_local, order_id, ids["runner2"], Role.RUNNER)
    with session_local() as db:
        assert list_available_orders(db, Role.RUNNER) == []
        assert db.get(Order, order_id).runner_id == ids["runner"]


def test_runner_cannot_claim_before_seller_confirms(tmp_path: Path) -> None:
    session_local = _prepare_db(tmp_path)
    ids = _seed(session_local)
    order_id = _create_order(session_local, ids)

    with pytest.raises(InvalidTransition):
        _claim(session_local, order_id, ids["runner"], Role.RUNNER)
    with pytest.raises(Unauthorized):
        _claim(session_local, order_id, ids["buyer"], Role.BUYER)


def test_concurrent_runner_claims_have_exactly_one_winner(tmp_path: Path) -> None:
    session_local = _prepare_db(tmp_path, "race.db")
    ids = _seed(session_local)
    with session_local() as db:
        runners = [User(username=f"racer{index}", password_hash="x", role=Role.RUNNER.value) for index in range(8)]
        db.add_all(runners)
        db.commit()
        runner_ids = [runner.id for runner in runners]
    order_id = _create_order(session_local, ids)
    _transition(session_local, order_id, ids["seller"], Role.SELLER, OrderStatus.SELLER_CONFIRMED)

    barrier = Barrier(len(runner_ids))

    def attempt(runner_id: int) -> str:
        barrier.wait()
        try:
            _claim(session_local, order_id, runner_id, Role.RUNNER)
        except LifecycleError as exc:
            return exc.code
        return "WON"

    with ThreadPoolExecutor(max_workers=len(runner_ids)) as pool:
        outcomes = list(pool.map(attempt, runner_ids))

    assert outcomes.count("WON") == 1
    assert outcomes.count("ALREADY_CLAIMED") == len(runner_ids) - 1
    winner_id = runner_ids[outcomes.index("WON")]
    with session_local() as db:
        order = db.get(Order, order_id)
        assert order.runner_id == winner_id
        assert order.status == OrderStatus.RUNNER_ACCEPTED.value
        claims = db.scalars(select(AuditLog).where(AuditLog.action_type == "order_claimed")).all()
        assert len(claims) == 1


def test_buyer_cancels_pending_but_not_after_runner_accepts(tmp_path: Path) -> None:
    session_local = _prepare_db(tmp_path)
    ids = _seed(session_local)
    cancellable = _create_order(session_local, ids)
    order = _transition(session_local, cancellable, ids["buyer"], Role.BUYER, OrderStatus.CANCELLED)
    assert order.status == OrderStatus.CANCELLED.value
    assert order.cancelled_at is not None

    with pytest.raises(InvalidTransition):
        _transition(session_local, cancellable, ids["buyer"], Role.BUYER, OrderStatus.CANCELLED)

    accepted = _runner_accepted(session_local, ids)
    with pytest.raises(Unauthorized):
        _transition(session_local, accepted, ids["buyer"], Role.BUYER, OrderStatus.CANCELLED)


def test_item_staging_requires_own_item(tmp_path: Path) -> None:
    session_local = _prepare_db(tmp_path)
    ids = _seed(session_local)
    order_id = _create_order(session_local, ids, two_sellers=True)
    items = _item_ids(session_local, order_id)

    with session_local() as db:
        with pytest.raises(Unauthorized):
            item_service.mark_item_ready(db, order_id, items[ids["seller2"]], ids["seller"], Role.SELLER)
    with session_local() as db:
        item = item_service.mark_item_ready(db, order_id, items[ids["seller"]], ids["seller"], Role.SELLER)
        assert item.seller_ready is True
    with session_local() as db:
        again = item_service.mark_item_ready(db, order_id, items[ids["seller"]], ids["seller"], Role.SELLER)
        assert again.seller_ready is True
        ready_rows = db.scalars(select(AuditLog).where(AuditLog.action_type == "item_ready")).all()
        assert len(ready_rows) == 1


def test_seller_handover_code_is_idempotent_and_single_use(tmp_path: Path) -> None:
    session_local = _prepare_db(tmp_path)
    ids = _seed(session_local)
    order_id = _runner_accepted(session_local, ids)
    item_id = _item_ids(session_local, order_id)[ids["seller"]]

    first = _issue(session_local, order_id, HandoverStage.SELLER_TO_RUNNER, ids["runner"], Role.RUNNER)
    second = _issue(session_local, order_id, HandoverStage.SELLER_TO_RUNNER, ids["runner"], Role.RUNNER)
    assert first == second
    assert len(first) == settings.handover_code_length
    assert first.isdigit()

    with pytest.raises(InvalidTransition):
        _verify(session_local, order_id, HandoverStage.SELLER_TO_RUNNER, first, ids["seller"], Role.SELLER)

    with session_local() as db:
        item_service.mark_item_ready(db, order_id, item_id, ids["seller"], Role.SELLER)
    issuer = _verify(session_local, order_id, HandoverStage.SELLER_TO_RUNNER, first, ids["seller"], Role.SELLER)
    assert issuer == ids["runner"]

    with pytest.raises(NoChallengeIssued):
        _verify(session_local, order_id, HandoverStage.SELLER_TO_RUNNER, first, ids["seller"], Role.SELLER)

    with session_local() as db:
        order = db.get(Order, order_id)
        assert order.runner_verified_at is not None
        assert all(item.handover_verified for item in order.items)

    fresh = _issue(session_local, order_id, HandoverStage.SELLER_TO_RUNNER, ids["runner"], Role.RUNNER)
    assert fresh != first


def test_only_bound_runner_may_request_seller_code(tmp_path: Path) -> None:
    session_local = _prepare_db(tmp_path)
    ids = _seed(session_local)
    order_id = _runner_accepted(session_local, ids)

    with pytest.raises(Unauthorized):
        _issue(session_local, order_id, HandoverStage.SELLER_TO_RUNNER, ids["runner2"], Role.RUNNER)
    with pytest.raises(Unauthorized):
        _issue(session_local, order_id, HandoverStage.SELLER_TO_RUNNER, ids["seller"], Role.SELLER)


def test_verify_without_code_raises_no_challenge(tmp_path: Path) -> None:
    session_local = _prepare_db(tmp_path)
    ids = _seed(session_local)
    order_id = _runner_accepted(session_local, ids)
    item_id = _item_ids(session_local, order_id)[ids["seller"]]
    with session_local() as db:
        item_service.mark_item_ready(db, order_id, item_id, ids["seller"], Role.SELLER)

    with pytest.raises(NoChallengeIssued):
        _verify(session_local, order_id, HandoverStage.SELLER_TO_RUNNER, "123456", ids["seller"], Role.SELLER)


def test_expired_code_is_rejected_and_reissued(tmp_path: Path) -> None:
    session_local = _prepare_db(tmp_path)
    ids = _seed(session_local)
    order_id = _runner_accepted(session_local, ids)
    item_id = _item_ids(session_local, order_id)[ids["seller"]]
    with session_local() as db:
        item_service.mark_item_ready(db, order_id, item_id, ids["seller"], Role.SELLER)

    stale = _issue(session_local, order_id, HandoverStage.SELLER_TO_RUNNER, ids["runner"], Role.RUNNER)
    with session_local() as db:
        db.execute(update(HandoverChallenge).values(expires_at=utcnow() - timedelta(minutes=1)))
        db.commit()

    with pytest.raises(ChallengeExpired):
        _verify(session_local, order_id, HandoverStage.SELLER_TO_RUNNER, stale, ids["seller"], Role.SELLER)

    fresh = _issue(session_local, order_id, HandoverStage.SELLER_TO_RUNNER, ids["runner"], Role.RUNNER)
    assert fresh != stale
    assert _verify(session_local, order_id, HandoverStage.SELLER_TO_RUNNER, fresh, ids["seller"], Role.SELLER) == ids["runner"]


def test_attempt_budget_exhausts_code(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setattr(settings, "handover_max_attempts", 2)
    session_local = _prepare_db(tmp_path)
    ids = _seed(session_local)
    order_id = _runner_accepted(session_local, ids)
    item_id = _item_ids(session_local, order_id)[ids["seller"]]
    with session_local() as db:
        item_service.mark_item_ready(db, order_id, item_id, ids["seller"], Role.SELLER)
    code = _issue(session_local, order_id, HandoverStage.SELLER_TO_RUNNER, ids["runner"], Role.RUNNER)
    wrong = "000000" if code != "000000" else "111111"

    for _ in range(2):
        with pytest.raises(VerificationFailed):
            _verify(session_local, order_id, HandoverStage.SELLER_TO_RUNNER, wrong, ids["seller"], Role.SELLER)
    with pytest.raises(ChallengeExpired):
        _verify(session_local, order_id, HandoverStage.SELLER_TO_RUNNER, code, ids["seller"], Role.SELLER)

    with session_local() as db:
        challenge = db.scalar(select(HandoverChallenge))
        assert challenge.attempts == 2
        assert challenge.consumed_at is None


def test_each_seller_verifies_their_own_items(tmp_path: Path) -> None:
    session_local = _prepare_db(tmp_path)
    ids = _seed(session_local)
    order_id = _runner_accepted(session_local, ids, two_sellers=True)
    items = _item_ids(session_local, order_id)
    for seller_key in ("seller", "seller2"):
        with session_local() as db:
            item_service.mark_item_ready(db, order_id, items[ids[seller_key]], ids[seller_key], Role.SELLER)

    code = _issue(session_local, order_id, HandoverStage.SELLER_TO_RUNNER, ids["runner"], Role.RUNNER)
    _verify(session_local, order_id, HandoverStage.SELLER_TO_RUNNER, code, ids["seller"], Role.SELLER)
    _transition(session_local, order_id, ids["runner"], Role.RUNNER, OrderStatus.SHOPPING)

    with session_local() as db:
        item_service.mark_item_collected(db, order_id, items[ids["seller"]], ids["runner"], Role.RUNNER)
    with session_local() as db:
        with pytest.raises(InvalidTransition):
            item_service.mark_item_collected(db, order_id, items[ids["seller2"]], ids["runner"], Role.RUNNER)
    with pytest.raises(InvalidTransition):
        _transition(session_local, order_id, ids["runner"], Role.RUNNER, OrderStatus.READY_FOR_PICKUP)

    second_code = _issue(session_local, order_id, HandoverStage.SELLER_TO_RUNNER, ids["runner"], Role.RUNNER)
    _verify(session_local, order_id, HandoverStage.SELLER_TO_RUNNER, second_code, ids["seller2"], Role.SELLER)
    with session_local() as db:
        item_service.mark_item_collected(db, order_id, items[ids["seller2"]], ids["runner"], Role.RUNNER)

    order = _transition(session_local, order_id, ids["runner"], Role.RUNNER, OrderStatus.READY_FOR_PICKUP)
    assert order.status == OrderStatus.READY_FOR_PICKUP.value


def test_ready_for_pickup_requires_collected_items(tmp_path: Path) -> None:
    session_local = _prepare_db(tmp_path)
    ids = _seed(session_local)
    order_id = _runner_accepted(session_local, ids)
    _transition(session_local, order_id, ids["runner"], Role.RUNNER, OrderStatus.SHOPPING)

    with pytest.raises(InvalidTransition):
        _transition(session_local, order_id, ids["runner"], Role.RUNNER, OrderStatus.READY_FOR_PICKUP)


def test_courier_flow_requires_runner_verification(tmp_path: Path) -> None:
    session_local = _prepare_db(tmp_path)
    ids = _seed(session_local)
    order_id = _ready_for_pickup(session_local, ids)

    with session_local() as db:
        assert [order.id for order in list_available_orders(db, Role.COURIER)] == [order_id]

    with pytest.raises(Unauthorized):
        _claim(session_local, order_id, ids["courier"], Role.COURIER)

    code = _issue(session_local, order_id, HandoverStage.RUNNER_TO_COURIER, ids["courier"], Role.COURIER)
    with pytest.raises(AlreadyClaimed):
        _issue(session_local, order_id, HandoverStage.RUNNER_TO_COURIER, ids["courier2"], Role.COURIER)
    with pytest.raises(Unauthorized):
        _verify(session_local, order_id, HandoverStage.RUNNER_TO_COURIER, code, ids["runner2"], Role.RUNNER)

    issuer = _verify(session_local, order_id, HandoverStage.RUNNER_TO_COURIER, code, ids["runner"], Role.RUNNER)
    assert issuer == ids["courier"]

    with pytest.raises(Unauthorized):
        _claim(session_local, order_id, ids["courier2"], Role.COURIER)
    order = _transition(session_local, order_id, ids["courier"], Role.COURIER, OrderStatus.IN_TRANSIT)
    assert order.courier_id == ids["courier"]
    assert order.status == OrderStatus.IN_TRANSIT.value

    with pytest.raises(InvalidTransition):
        _issue(session_local, order_id, HandoverStage.RUNNER_TO_COURIER, ids["courier2"], Role.COURIER)
    with pytest.raises(Unauthorized):
        _transition(session_local, order_id, ids["courier2"], Role.COURIER, OrderStatus.DELIVERED)

    delivered = _transition(session_local, order_id, ids["courier"], Role.COURIER, OrderStatus.DELIVERED)
    assert delivered.status == OrderStatus.DELIVERED.value
    assert delivered.delivered_at is not None
    with pytest.raises(InvalidTransition):
        _transition(session_local, order_id, ids["courier"], Role.COURIER, OrderStatus.CANCELLED)


def test_multi_seller_order_waits_for_every_seller_to_confirm(tmp_path: Path) -> None:
    session_local = _prepare_db(tmp_path)
    ids = _seed(session_local)
    order_id = _create_order(session_local, ids, two_sellers=True)
    events: list[OrderEvent] = []
    fanout.subscribe(events.append)

    try:
        first = _transition(session_local, order_id, ids["seller"], Role.SELLER, OrderStatus.SELLER_CONFIRMED)
        assert first.status == OrderStatus.PENDING.value
        assert first.confirmed_at is None

        with session_local() as db:
            order = db.get(Order, order_id)
            assert {item.seller_id: item.seller_confirmed for item in order.items} == {
                ids["seller"]: True,
                ids["seller2"]: False,
            }
            assert available_actions(order, ids["seller"], Role.SELLER) == []
            assert [action.action for action in available_actions(order, ids["seller2"], Role.SELLER)] == ["confirm"]
            assert list_available_orders(db, Role.RUNNER) == []
        with pytest.raises(InvalidTransition):
            _claim(session_local, order_id, ids["runner"], Role.RUNNER)

        repeat = _transition(session_local, order_id, ids["seller"], Role.SELLER, OrderStatus.SELLER_CONFIRMED)
        assert repeat.status == OrderStatus.PENDING.value

        second = _transition(session_local, order_id, ids["seller2"], Role.SELLER, OrderStatus.SELLER_CONFIRMED)
        assert second.status == OrderStatus.SELLER_CONFIRMED.value
        assert second.confirmed_at is not None
    finally:
        fanout.unsubscribe(events.append)

    assert [event.event_type for event in events] == ["ORDER_ITEMS_CONFIRMED", "ORDER_SELLER_CONFIRMED"]
    with session_local() as db:
        actions = db.scalars(select(AuditLog.action_type).where(AuditLog.order_id == order_id)).all()
        assert actions.count("items_confirmed") == 2
        assert actions.count("status_transition") == 1
        assert [order.id for order in list_available_orders(db, Role.RUNNER)] == [order_id]


def test_orders_are_listed_per_party(tmp_path: Path) -> None:
    session_local = _prepare_db(tmp_path)
    ids = _seed(session_local)
    solo = _create_order(session_local, ids)
    shared = _runner_accepted(session_local, ids, two_sellers=True)
    shipped = _ready_for_pickup(session_local, ids)
    code = _issue(session_local, shipped, HandoverStage.RUNNER_TO_COURIER, ids["courier"], Role.COURIER)
    _verify(session_local, shipped, HandoverStage.RUNNER_TO_COURIER, code, ids["runner"], Role.RUNNER)
    _claim(session_local, shipped, ids["courier"], Role.COURIER)

    with session_local() as db:

        def listed(user_id: int, role: Role) -> list[int]:
            return [order.id for order in list_orders_for_user(db, user_id, role)]

        assert listed(ids["buyer"], Role.BUYER) == [shipped, shared, solo]
        assert listed(ids["seller"], Role.SELLER) == [shipped, shared, solo]
        assert listed(ids["seller2"], Role.SELLER) == [shared]
        assert listed(ids["runner"], Role.RUNNER) == [shipped, shared]
        assert listed(ids["runner2"], Role.RUNNER) == []
        assert listed(ids["courier"], Role.COURIER) == [shipped]
        assert listed(ids["courier2"], Role.COURIER) == []
        assert listed(ids["buyer"], Role.ADMIN) == [shipped, shared, solo]


def test_concurrent_sellers_consume_one_code_once(tmp_path: Path) -> None:
    session_local = _prepare_db(tmp_path, "verify_race.db")
    ids = _seed(session_local)
    order_id = _runner_accepted(session_local, ids, two_sellers=True)
    items = _item_ids(session_local, order_id)
    for seller_key in ("seller", "seller2"):
        with session_local() as db:
            item_service.mark_item_ready(db, order_id, items[ids[seller_key]], ids[seller_key], Role.SELLER)
    code = _issue(session_local, order_id, HandoverStage.SELLER_TO_RUNNER, ids["runner"], Role.RUNNER)

    barrier = Barrier(2)

    def attempt(seller_id: int) -> str:
        barrier.wait()
        try:
            _verify(session_local, order_id, HandoverStage.SELLER_TO_RUNNER, code, seller_id, Role.SELLER)
        except LifecycleError as exc:
            return exc.code
        return "OK"

    seller_ids = [ids["seller"], ids["seller2"]]
    with ThreadPoolExecutor(max_workers=2) as pool:
        outcomes = list(pool.map(attempt, seller_ids))

    assert sorted(outcomes) == ["NO_CHALLENGE_ISSUED", "OK"]
    winner_id = seller_ids[outcomes.index("OK")]
    with session_local() as db:
        challenge = db.scalar(select(HandoverChallenge))
        assert challenge.consumed_by == winner_id
        order = db.get(Order, order_id)
        assert {item.seller_id for item in order.items if item.handover_verified} == {winner_id}
        handovers = db.scalars(select(AuditLog).where(AuditLog.action_type == "handover_seller_to_runner")).all()
        assert len(handovers) == 1


def test_concurrent_code_requests_share_one_challenge(tmp_path: Path) -> None:
    session_local = _prepare_db(tmp_path, "issue_race.db")
    ids = _seed(session_local)
    order_id = _runner_accepted(session_local, ids)

    barrier = Barrier(2)

    def request(_: int) -> str:
        barrier.wait()
        return _issue(session_local, order_id, HandoverStage.SELLER_TO_RUNNER, ids["runner"], Role.RUNNER)

    with ThreadPoolExecutor(max_workers=2) as pool:
        codes = list(pool.map(request, range(2)))

    assert codes[0] == codes[1]
    with session_local() as db:
        challenges = db.scalars(select(HandoverChallenge)).all()
        assert len(challenges) == 1
        assert challenges[0].code == codes[0]
        assert challenges[0].version == 1
