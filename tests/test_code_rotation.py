import datetime as dt
import threading

import pytest

from surplus_market.code_rotation import CodeRotationWorker, rotate_due_codes
from surplus_market.config import PICKUP_CODE_TTL_SECONDS
from surplus_market.crud import orders
from surplus_market.errors import InvalidStateError
from surplus_market.models import Order
from surplus_market.pickup_codes import as_utc, verify_code

from tests.factories import make_company, make_customer, make_package

TTL = dt.timedelta(seconds=PICKUP_CODE_TTL_SECONDS)


def _order(db, now):
    company = make_company(db)
    package = make_package(db, company, stock=5)
    return orders.commit_order(db, make_customer(db).id, [{"package_id": package.id, "quantity": 1}], now=now)


def test_codes_inside_their_window_are_left_alone(db, now):
    order, code = _order(db, now)
    old_hash = order.pickup_code_hash

    assert rotate_due_codes(db, now=now + dt.timedelta(seconds=5)) == 0
    db.refresh(order)
    assert order.pickup_code_hash == old_hash


def test_expired_code_is_rotated(db, now):
    order, old_code = _order(db, now)
    later = now + TTL + dt.timedelta(seconds=1)

    assert rotate_due_codes(db, now=later) == 1
    db.refresh(order)
    assert as_utc(order.code_generated_at) == later
    assert verify_code(order.pickup_code_plain, order.pickup_code_hash)


def test_order_without_code_gets_one(db, now):
    order, _ = _order(db, now)
    order.pickup_code_hash = None
    order.pickup_code_plain = None
    order.code_generated_at = None
    db.commit()

    assert rotate_due_codes(db, now=now) == 1
    db.refresh(order)
    assert verify_code(order.pickup_code_plain, order.pickup_code_hash)


def test_finished_orders_are_not_rotated(db, now):
    order, code = _order(db, now)
    orders.redeem_code(db, order.company_id, code, now=now)

    assert rotate_due_codes(db, now=now + TTL * 3) == 0


def _interleave(monkeypatch, action):
    """Run ``action`` in its own session right before the next code is generated."""
    real = orders.generate_code
    calls = []

    def generate_after_action():
        calls.append(1)
        if len(calls) == 1:
            action()
        return real()

    monkeypatch.setattr(orders, "generate_code", generate_after_action)
    return calls


def test_rotation_skips_order_picked_after_the_query(db, session_factory, now, monkeypatch):
    order, code = _order(db, now)
    later = now + TTL + dt.timedelta(seconds=1)

    def pick_up():
        other = session_factory()
        try:
            orders.redeem_code(other, order.company_id, code, now=now + dt.timedelta(seconds=1))
        finally:
            other.close()

    calls = _interleave(monkeypatch, pick_up)

    assert rotate_due_codes(db, now=later) == 0
    assert calls == [1]
    db.refresh(order)
    assert order.status == "picked"
    assert order.pickup_code_plain is None


def test_rotation_skips_order_cancelled_after_the_query(db, session_factory, now, monkeypatch):
    order, _ = _order(db, now)
    later = now + TTL + dt.timedelta(seconds=1)

    def cancel():
        other = session_factory()
        try:
            orders.cancel_order(other, other.get(Order, order.id))
        finally:
            other.close()

    _interleave(monkeypatch, cancel)

    assert rotate_due_codes(db, now=later) == 0
    db.refresh(order)
    assert order.status == "cancelled"
    assert order.pickup_code_hash is None
    assert order.pickup_code_plain is None
    assert order.code_generated_at is None


def test_on_demand_rotation_refuses_order_cancelled_meanwhile(db, session_factory, now, monkeypatch):
    order, _ = _order(db, now)
    later = now + TTL + dt.timedelta(seconds=1)

    def cancel():
        other = session_factory()
        try:
            orders.cancel_order(other, other.get(Order, order.id))
        finally:
            other.close()

    _interleave(monkeypatch, cancel)

    with pytest.raises(InvalidStateError):
        orders.current_pickup_code(db, order, now=later)
    db.refresh(order)
    assert order.status == "cancelled"
    assert order.pickup_code_hash is None


def test_ready_orders_keep_rotating(db, now):
    order, _ = _order(db, now)
    orders.mark_ready(db, order)

    assert rotate_due_codes(db, now=now + TTL * 2) == 1


def test_worker_tick_rotates_stale_codes(session_factory, db):
    stale = dt.datetime.now(dt.timezone.utc) - TTL * 3
    _order(db, stale)

    worker = CodeRotationWorker(session_factory, interval=1)
    assert worker.tick() == 1
    assert worker.tick() == 0


def test_worker_interval_is_clamped_to_ttl(session_factory):
    worker = CodeRotationWorker(session_factory, interval=PICKUP_CODE_TTL_SECONDS * 10)
    assert worker.interval == PICKUP_CODE_TTL_SECONDS


def test_worker_survives_failing_ticks():
    second_call = threading.Event()
    calls = []

    def broken_factory():
        calls.append(1)
        if len(calls) >= 2:
            second_call.set()
        raise RuntimeError("store down")

    worker = CodeRotationWorker(broken_factory, interval=1)
    worker.start()
    try:
        assert second_call.wait(10)
        assert worker.running
    finally:
        worker.stop()
    assert not worker.running


def test_worker_start_and_stop(session_factory, db):
    worker = CodeRotationWorker(session_factory, interval=1)
    worker.start()
    worker.start()  # second start is a no-op
    assert worker.running
    worker.stop()
    assert not worker.running
    assert db.query(Order).count() == 0
