"""
Order commit, pickup and cancellation.

commit_order() is the only place where Package.stock goes down. It takes no
lock: every line is an atomic ``UPDATE ... SET stock = stock - q WHERE stock >= q``
committed on its own, and if any line loses a race the lines already applied are
put back with compensating increments before the order fails as a conflict.
"""
import datetime as dt
import hmac
import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import or_, update
from sqlalchemy.orm import Session, joinedload

from ..errors import (
    ConflictError,
    ExpiredResourceError,
    InsufficientStockError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from ..models import Order, OrderItem, Package
from ..pickup_codes import code_is_expired, code_seconds_left, generate_code, verify_code
from ..schemas import OrderStatus
from . import reservations
from .foods import get_foods_by_ids
from .packages import get_packages_by_ids

logger = logging.getLogger(__name__)

AWAITING_PICKUP = (OrderStatus.PENDING.value, OrderStatus.CONFIRMED.value, OrderStatus.READY.value)
REDEEMABLE = (OrderStatus.CONFIRMED.value, OrderStatus.READY.value)
CANCELLABLE = AWAITING_PICKUP

CENT = Decimal("0.01")


class CodeNotMatchedError(NotFoundError):
    error_code = "code_not_matched"


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def _merge_lines(items: Iterable[dict]) -> Tuple[Dict[int, int], Dict[int, int]]:
    """Collapse cart items into {package_id: qty} and {food_id: qty}."""
    package_lines: Dict[int, int] = {}
    food_lines: Dict[int, int] = {}
    for item in items:
        package_id = item.get("package_id")
        food_id = item.get("food_id")
        qty = int(item.get("quantity") or 0)
        if qty < 1:
            raise ValidationError("Quantity must be at least 1", item=item)
        if (package_id is None) == (food_id is None):
            raise ValidationError("Each item needs exactly one of package_id or food_id", item=item)
        if package_id is not None:
            package_lines[int(package_id)] = package_lines.get(int(package_id), 0) + qty
        else:
            food_lines[int(food_id)] = food_lines.get(int(food_id), 0) + qty
    return package_lines, food_lines


def issue_code(order: Order, *, now: Optional[dt.datetime] = None) -> str:
    """Put a fresh code on ``order`` (not committed) and return its plaintext."""
    plain, hashed = generate_code()
    order.pickup_code_hash = hashed
    order.pickup_code_plain = plain
    order.code_generated_at = now or _utcnow()
    return plain


def rotate_code(
    db: Session,
    order_id: int,
    *,
    now: dt.datetime,
    statuses: Iterable[str] = AWAITING_PICKUP,
    stale_before: Optional[dt.datetime] = None,
) -> Optional[str]:
    """Write a fresh code onto a stored order, conditional on its current row.

    The write only lands while the order is still in ``statuses`` and, with
    ``stale_before``, while its code is missing or older than that instant.
    Returns the plaintext, or None when the row no longer qualifies. Does not commit.
    """
    conditions = [Order.id == order_id, Order.status.in_(tuple(statuses))]
    if stale_before is not None:
        conditions.append(or_(Order.code_generated_at.is_(None), Order.code_generated_at < stale_before))

    plain, hashed = generate_code()
    result = db.execute(
        update(Order)
        .where(*conditions)
        .values(pickup_code_hash=hashed, pickup_code_plain=plain, code_generated_at=now)
        .execution_options(synchronize_session=False)
    )
    return plain if result.rowcount == 1 else None


def _decrement_stock(db: Session, package_id: int, quantity: int) -> bool:
    result = db.execute(
        update(Package)
        .where(Package.id == package_id, Package.stock >= quantity)
        .values(stock=Package.stock - quantity)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def _restore_stock(db: Session, applied: List[Tuple[int, int]]) -> None:
    for package_id, quantity in applied:
        db.execute(
            update(Package)
            .where(Package.id == package_id)
            .values(stock=Package.stock + quantity)
            .execution_options(synchronize_session=False)
        )
    db.commit()


def commit_order(
    db: Session,
    customer_id: int,
    items: List[dict],
    *,
    now: Optional[dt.datetime] = None,
) -> Tuple[Order, str]:
    """Turn a cart into a confirmed order.

    items: [{"package_id": int, "quantity": int} | {"food_id": int, "quantity": int}, ...]
    Returns (order, plaintext pickup code). The plaintext is meant to be shown once.
    """
    if not items:
        raise ValidationError("Order must contain at least one item")

    now = now or _utcnow()
    package_lines, food_lines = _merge_lines(items)

    packages = {p.id: p for p in get_packages_by_ids(db, package_lines)}
    foods = {f.id: f for f in get_foods_by_ids(db, food_lines)}
    missing_packages = sorted(set(package_lines) - set(packages))
    missing_foods = sorted(set(food_lines) - set(foods))
    if missing_packages or missing_foods:
        raise NotFoundError(
            "Some items could not be found",
            package_ids=missing_packages,
            food_ids=missing_foods,
        )

    company_ids = {p.company_id for p in packages.values()} | {f.company_id for f in foods.values()}
    if len(company_ids) != 1:
        raise ValidationError(
            "All items in an order must come from the same company",
            company_ids=sorted(company_ids),
        )
    company_id = company_ids.pop()

    unavailable = [p.id for p in packages.values() if not p.is_available]
    unavailable_foods = [f.id for f in foods.values() if not f.is_available]
    if unavailable or unavailable_foods:
        raise ValidationError(
            "Some items are not available",
            package_ids=sorted(unavailable),
            food_ids=sorted(unavailable_foods),
        )

    for package_id, qty in package_lines.items():
        package = packages[package_id]
        available = reservations.available_for_customer(db, package, customer_id, now=now)
        if available < qty:
            raise InsufficientStockError(
                f"Insufficient stock for package '{package.name}'",
                package_id=package_id,
                available=max(0, available),
                requested=qty,
            )

    # snapshot names/prices now: committing the decrements expires the loaded rows
    lines = [
        dict(package_id=pid, name=packages[pid].name, unit_price=Decimal(str(packages[pid].discounted_price)), quantity=qty)
        for pid, qty in package_lines.items()
    ] + [
        dict(food_id=fid, name=foods[fid].name, unit_price=Decimal(str(foods[fid].price)), quantity=qty)
        for fid, qty in food_lines.items()
    ]
    total_amount = sum((line["unit_price"] * line["quantity"] for line in lines), Decimal("0"))
    total_amount = total_amount.quantize(CENT, rounding=ROUND_HALF_UP)

    applied: List[Tuple[int, int]] = []
    try:
        # decrement in id order
        for package_id in sorted(package_lines):
            qty = package_lines[package_id]
            if not _decrement_stock(db, package_id, qty):
                raise ConflictError(
                    "Stock changed while placing the order, please try again",
                    package_id=package_id,
                    requested=qty,
                    available=reservations.availability(db, db.get(Package, package_id), now=now),
                )
            applied.append((package_id, qty))

        db_order = Order(
            customer_id=customer_id,
            company_id=company_id,
            total_amount=total_amount,
            status=OrderStatus.CONFIRMED.value,
            created_at=now,
        )
        plain = issue_code(db_order, now=now)
        for line in lines:
            db_order.items.append(OrderItem(**line))
        db.add(db_order)
        reservations.clear_reservations(db, customer_id, package_lines)
        db.commit()
    except Exception:
        db.rollback()
        if applied:
            logger.warning("order commit failed for customer=%s, restoring stock %s", customer_id, applied)
            _restore_stock(db, applied)
        raise

    db.refresh(db_order)
    logger.info(
        "order committed id=%s customer=%s company=%s total=%s",
        db_order.id, customer_id, company_id, total_amount,
    )
    return db_order, plain


def get_order(db: Session, order_id: int) -> Optional[Order]:
    return (
        db.query(Order)
        .options(joinedload(Order.items))
        .filter(Order.id == order_id)
        .first()
    )


def get_orders_for_customer(db: Session, customer_id: int, status: Optional[str] = None) -> List[Order]:
    query = db.query(Order).options(joinedload(Order.items)).filter(Order.customer_id == customer_id)
    if status:
        query = query.filter(Order.status == status)
    return query.order_by(Order.created_at.desc(), Order.id.desc()).all()


def get_orders_for_company(db: Session, company_id: int, status: Optional[str] = None) -> List[Order]:
    query = db.query(Order).options(joinedload(Order.items)).filter(Order.company_id == company_id)
    if status:
        query = query.filter(Order.status == status)
    return query.order_by(Order.created_at.desc(), Order.id.desc()).all()


def current_pickup_code(
    db: Session,
    order: Order,
    *,
    now: Optional[dt.datetime] = None,
) -> Tuple[str, dt.datetime, int]:
    """Plaintext code of the current window, rotating on demand when it lapsed.

    Returns (code, generated_at, seconds_left).
    """
    if order.status not in REDEEMABLE:
        raise InvalidStateError(
            "This order has no active pickup code",
            order_id=order.id,
            status=order.status,
        )

    now = now or _utcnow()
    if code_is_expired(order.code_generated_at, now=now) or not order.pickup_code_plain:
        plain = rotate_code(db, order.id, now=now, statuses=REDEEMABLE)
        db.commit()
        db.refresh(order)
        if plain is None:
            raise InvalidStateError(
                "This order has no active pickup code",
                order_id=order.id,
                status=order.status,
            )
        logger.debug("pickup code rotated on demand for order=%s", order.id)

    return (
        order.pickup_code_plain,
        order.code_generated_at,
        code_seconds_left(order.code_generated_at, now=now),
    )


def _mark_picked(db: Session, order: Order, now: dt.datetime) -> Order:
    # conditional on status so that two racing redemptions pick up exactly once
    result = db.execute(
        update(Order)
        .where(Order.id == order.id, Order.status.in_(REDEEMABLE))
        .values(status=OrderStatus.PICKED.value, picked_at=now, pickup_code_plain=None)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount != 1:
        raise InvalidStateError("Order is no longer awaiting pickup", order_id=order.id)
    db.refresh(order)
    logger.info("order picked id=%s company=%s", order.id, order.company_id)
    return order


def _plain_matches(order: Order, candidate: str) -> bool:
    if not order.pickup_code_plain:
        return False
    return hmac.compare_digest(order.pickup_code_plain.encode(), candidate.encode())


def redeem_code(
    db: Session,
    company_id: int,
    code: str,
    *,
    now: Optional[dt.datetime] = None,
) -> Order:
    """Find the company's open order carrying ``code`` and mark it picked."""
    candidate = (code or "").strip()
    if not candidate:
        raise ValidationError("Code required")

    now = now or _utcnow()
    open_orders = (
        db.query(Order)
        .filter(
            Order.company_id == company_id,
            Order.status.in_(REDEEMABLE),
            Order.pickup_code_hash.isnot(None),
        )
        .order_by(Order.code_generated_at.desc())
        .all()
    )
    for order in open_orders:
        if code_is_expired(order.code_generated_at, now=now):
            continue
        if verify_code(candidate, order.pickup_code_hash) or _plain_matches(order, candidate):
            return _mark_picked(db, order, now)

    raise CodeNotMatchedError("No open order matches this code")


def verify_order_code(
    db: Session,
    order: Order,
    code: str,
    *,
    now: Optional[dt.datetime] = None,
) -> Order:
    """Check ``code`` against a single order and mark it picked."""
    candidate = (code or "").strip()
    if not candidate:
        raise ValidationError("Code required")
    if order.status not in REDEEMABLE:
        raise InvalidStateError("Order is not awaiting pickup", order_id=order.id, status=order.status)

    now = now or _utcnow()
    if code_is_expired(order.code_generated_at, now=now):
        raise ExpiredResourceError("Code expired. Wait for next rotation.", order_id=order.id)
    if not verify_code(candidate, order.pickup_code_hash):
        raise ValidationError("Invalid code", order_id=order.id)
    return _mark_picked(db, order, now)


def mark_ready(db: Session, order: Order) -> Order:
    result = db.execute(
        update(Order)
        .where(Order.id == order.id, Order.status == OrderStatus.CONFIRMED.value)
        .values(status=OrderStatus.READY.value)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount != 1:
        raise InvalidStateError("Only confirmed orders can be marked ready", order_id=order.id)
    db.refresh(order)
    return order


def cancel_order(db: Session, order: Order) -> Order:
    """Cancel an order that has not been picked up and give its stock back."""
    result = db.execute(
        update(Order)
        .where(Order.id == order.id, Order.status.in_(CANCELLABLE))
        .values(
            status=OrderStatus.CANCELLED.value,
            pickup_code_hash=None,
            pickup_code_plain=None,
            code_generated_at=None,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        raise InvalidStateError("Order can no longer be cancelled", order_id=order.id, status=order.status)

    for item in order.items:
        if item.package_id is not None:
            db.execute(
                update(Package)
                .where(Package.id == item.package_id)
                .values(stock=Package.stock + item.quantity)
                .execution_options(synchronize_session=False)
            )
    db.commit()
    db.refresh(order)
    logger.info("order cancelled id=%s", order.id)
    return order
