import datetime as dt

import pytest

from surplus_market.config import PICKUP_CODE_TTL_SECONDS
from surplus_market.code_rotation import rotate_due_codes
from surplus_market.crud import orders, ratings
from surplus_market.crud.orders import CodeNotMatchedError
from surplus_market.errors import (
    AuthorizationError,
    ConflictError,
    ExpiredResourceError,
    InvalidStateError,
    ValidationError,
)
from surplus_market.models import Food, Package
from surplus_market.pickup_codes import as_utc

from tests.factories import make_company, make_customer, make_food, make_package

TTL = dt.timedelta(seconds=PICKUP_CODE_TTL_SECONDS)


@pytest.fixture()
def placed(db, now):
    company = make_company(db)
    package = make_package(db, company, stock=5)
    customer = make_customer(db)
    order, code = orders.commit_order(db, customer.id, [{"package_id": package.id, "quantity": 1}], now=now)
    return order, code, company, customer, package


def _other_code(code):
    return "0" * 6 if code != "0" * 6 else "1" * 6


def test_redeem_marks_order_picked_once(db, placed, now):
    order, code, company, _, _ = placed

    picked = orders.redeem_code(db, company.id, code, now=now + dt.timedelta(seconds=2))
    assert picked.id == order.id
    assert picked.status == "picked"
    assert as_utc(picked.picked_at) == now + dt.timedelta(seconds=2)
    assert picked.pickup_code_plain is None

    with pytest.raises(CodeNotMatchedError):
        orders.redeem_code(db, company.id, code, now=now + dt.timedelta(seconds=3))


def test_redeem_from_ready(db, placed, now):
    order, code, company, _, _ = placed
    orders.mark_ready(db, order)
    assert orders.redeem_code(db, company.id, code, now=now).status == "picked"


def test_wrong_code_does_not_match(db, placed, now):
    _, code, company, _, _ = placed
    with pytest.raises(CodeNotMatchedError):
        orders.redeem_code(db, company.id, _other_code(code), now=now)


def test_other_company_cannot_redeem(db, placed, now):
    _, code, _, _, _ = placed
    stranger = make_company(db)
    with pytest.raises(CodeNotMatchedError):
        orders.redeem_code(db, stranger.id, code, now=now)


def test_blank_code_is_invalid(db, placed, now):
    _, _, company, _, _ = placed
    with pytest.raises(ValidationError):
        orders.redeem_code(db, company.id, "  ", now=now)


def test_expired_code_never_verifies_again(db, placed, now):
    order, code, company, _, _ = placed
    later = now + TTL + dt.timedelta(seconds=1)

    with pytest.raises(CodeNotMatchedError):
        orders.redeem_code(db, company.id, code, now=later)
    with pytest.raises(ExpiredResourceError):
        orders.verify_order_code(db, order, code, now=later)

    rotate_due_codes(db, now=later)
    db.refresh(order)
    fresh = order.pickup_code_plain
    assert orders.redeem_code(db, company.id, fresh, now=later + dt.timedelta(seconds=1)).status == "picked"


def test_verify_order_code(db, placed, now):
    order, code, _, _, _ = placed
    with pytest.raises(ValidationError):
        orders.verify_order_code(db, order, _other_code(code), now=now)

    assert orders.verify_order_code(db, order, code, now=now).status == "picked"
    with pytest.raises(InvalidStateError):
        orders.verify_order_code(db, order, code, now=now)


def test_current_code_is_reused_inside_window(db, placed, now):
    order, code, _, _, _ = placed
    shown, generated_at, seconds_left = orders.current_pickup_code(db, order, now=now + dt.timedelta(seconds=5))
    assert shown == code
    assert as_utc(generated_at) == now
    assert seconds_left == PICKUP_CODE_TTL_SECONDS - 5


def test_current_code_rotates_on_demand(db, placed, now):
    order, code, company, _, _ = placed
    later = now + TTL + dt.timedelta(seconds=5)
    shown, generated_at, seconds_left = orders.current_pickup_code(db, order, now=later)

    assert as_utc(generated_at) == later
    assert seconds_left == PICKUP_CODE_TTL_SECONDS
    assert orders.redeem_code(db, company.id, shown, now=later).status == "picked"


def test_no_code_for_picked_order(db, placed, now):
    order, code, company, _, _ = placed
    orders.redeem_code(db, company.id, code, now=now)
    with pytest.raises(InvalidStateError):
        orders.current_pickup_code(db, order, now=now)


def test_feedback_requires_pickup(db, placed, now):
    order, _, _, customer, _ = placed
    with pytest.raises(InvalidStateError):
        ratings.submit_feedback(db, order, customer.id, 5, now=now)


def test_feedback_completes_order_and_updates_aggregates(db, placed, now):
    order, code, company, customer, package = placed
    orders.redeem_code(db, company.id, code, now=now)

    rating = ratings.submit_feedback(db, order, customer.id, 4, "  tasty  ", now=now + dt.timedelta(hours=1))
    assert rating.comment == "tasty"
    db.refresh(order)
    assert order.status == "completed"
    db.expire_all()
    assert db.get(Package, package.id).average_rating == 4.0
    assert db.get(Package, package.id).rating_count == 1

    second_customer = make_customer(db)
    order2, code2 = orders.commit_order(db, second_customer.id, [{"package_id": package.id, "quantity": 1}], now=now)
    orders.redeem_code(db, company.id, code2, now=now)
    ratings.submit_feedback(db, order2, second_customer.id, 5, now=now)

    db.expire_all()
    refreshed = db.get(Package, package.id)
    assert refreshed.average_rating == 4.5
    assert refreshed.rating_count == 2


def test_rating_average_rounds_to_one_decimal(db, now):
    company = make_company(db)
    food = make_food(db, company)
    for score in (5, 4, 4):
        customer = make_customer(db)
        order, code = orders.commit_order(db, customer.id, [{"food_id": food.id, "quantity": 1}], now=now)
        orders.redeem_code(db, company.id, code, now=now)
        ratings.submit_feedback(db, order, customer.id, score, now=now)

    db.expire_all()
    assert db.get(Food, food.id).average_rating == 4.3
    assert len(ratings.get_food_ratings(db, food.id)) == 3


def test_second_feedback_is_rejected(db, placed, now):
    order, code, company, customer, _ = placed
    orders.redeem_code(db, company.id, code, now=now)
    ratings.submit_feedback(db, order, customer.id, 3, now=now)

    with pytest.raises(ConflictError):
        ratings.submit_feedback(db, order, customer.id, 5, now=now)


def test_feedback_after_grace_window_is_rejected(db, placed, now):
    order, code, company, customer, _ = placed
    orders.redeem_code(db, company.id, code, now=now)

    with pytest.raises(ExpiredResourceError):
        ratings.submit_feedback(db, order, customer.id, 5, now=now + dt.timedelta(days=8))


def test_only_the_buyer_can_rate(db, placed, now):
    order, code, company, _, _ = placed
    orders.redeem_code(db, company.id, code, now=now)
    with pytest.raises(AuthorizationError):
        ratings.submit_feedback(db, order, make_customer(db).id, 5, now=now)


def test_company_replies_once(db, placed, now):
    order, code, company, customer, _ = placed
    orders.redeem_code(db, company.id, code, now=now)
    rating = ratings.submit_feedback(db, order, customer.id, 2, "cold", now=now)

    with pytest.raises(ValidationError):
        ratings.reply_to_feedback(db, rating, company.id, "   ")

    replied = ratings.reply_to_feedback(db, rating, company.id, "Sorry about that", now=now)
    assert replied.company_reply == "Sorry about that"
    assert replied.replied_at is not None

    with pytest.raises(ConflictError):
        ratings.reply_to_feedback(db, rating, company.id, "Again")
