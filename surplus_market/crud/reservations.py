"""
Soft holds on package stock.

Holds never touch Package.stock. They only shape the "available now" figure shown
while browsing and checked before commit:

    availability(package) = max(0, stock - sum(active holds of all customers))

and, for the customer asking, their own hold is handed back:

    available_for_customer(package, c) = stock - (total_held - held_by(c))

Expiry is lazy: every aggregate filters on ``expires_at > now``. The final
guarantee against overselling is the conditional decrement in crud.orders.
"""
import datetime as dt
import logging
from typing import Dict, Iterable, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import RESERVATION_WINDOW_MINUTES
from ..errors import InsufficientStockError, ValidationError
from ..models import Package, Reservation

logger = logging.getLogger(__name__)


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def reserved_quantity(
    db: Session,
    package_id: int,
    *,
    now: dt.datetime,
    exclude_customer_id: Optional[int] = None,
) -> int:
    q = db.query(func.coalesce(func.sum(Reservation.quantity), 0)).filter(
        Reservation.package_id == package_id,
        Reservation.expires_at > now,
    )
    if exclude_customer_id is not None:
        q = q.filter(Reservation.customer_id != exclude_customer_id)
    return int(q.scalar() or 0)


def reservation_maps(
    db: Session,
    package_ids: Iterable[int],
    *,
    now: Optional[dt.datetime] = None,
) -> Tuple[Dict[int, int], Dict[int, Dict[int, int]]]:
    """Active hold totals per package, and per (package, customer)."""
    ids = list(package_ids)
    totals: Dict[int, int] = {}
    by_customer: Dict[int, Dict[int, int]] = {}
    if not ids:
        return totals, by_customer

    now = now or _utcnow()
    rows = (
        db.query(Reservation.package_id, Reservation.customer_id, func.sum(Reservation.quantity))
        .filter(Reservation.package_id.in_(ids), Reservation.expires_at > now)
        .group_by(Reservation.package_id, Reservation.customer_id)
        .all()
    )
    for package_id, customer_id, qty in rows:
        qty = int(qty or 0)
        totals[package_id] = totals.get(package_id, 0) + qty
        by_customer.setdefault(package_id, {})[customer_id] = qty
    return totals, by_customer


def availability(db: Session, package: Package, *, now: Optional[dt.datetime] = None) -> int:
    now = now or _utcnow()
    return max(0, int(package.stock) - reserved_quantity(db, package.id, now=now))


def available_for_customer(
    db: Session,
    package: Package,
    customer_id: int,
    *,
    now: Optional[dt.datetime] = None,
) -> int:
    """Stock minus everyone else's active holds. May be negative after a stock cut."""
    now = now or _utcnow()
    held_by_others = reserved_quantity(db, package.id, now=now, exclude_customer_id=customer_id)
    return int(package.stock) - held_by_others


def get_reservation(db: Session, package_id: int, customer_id: int) -> Optional[Reservation]:
    return (
        db.query(Reservation)
        .filter(Reservation.package_id == package_id, Reservation.customer_id == customer_id)
        .first()
    )


def set_reservation(
    db: Session,
    package: Package,
    customer_id: int,
    quantity: int,
    *,
    now: Optional[dt.datetime] = None,
) -> Optional[Reservation]:
    """Create, refresh or (quantity == 0) drop the customer's hold on ``package``.

    Returns the hold, or None when it was released.
    """
    if quantity < 0:
        raise ValidationError("Quantity must be a non-negative number", quantity=quantity)

    now = now or _utcnow()

    if quantity == 0:
        deleted = (
            db.query(Reservation)
            .filter(Reservation.package_id == package.id, Reservation.customer_id == customer_id)
            .delete(synchronize_session=False)
        )
        db.commit()
        if deleted:
            logger.info("reservation released package=%s customer=%s", package.id, customer_id)
        return None

    if not package.is_available:
        raise ValidationError("This package is not available for reservation", package_id=package.id)

    available = available_for_customer(db, package, customer_id, now=now)
    if available < quantity:
        raise InsufficientStockError(
            "Insufficient stock available for reservation",
            package_id=package.id,
            available=max(0, available),
            requested=quantity,
        )

    expires_at = now + dt.timedelta(minutes=RESERVATION_WINDOW_MINUTES)
    reservation = _upsert(db, package.id, customer_id, quantity, expires_at)
    logger.info(
        "reservation held package=%s customer=%s quantity=%s until=%s",
        package.id, customer_id, quantity, expires_at.isoformat(),
    )
    return reservation


def _upsert(db: Session, package_id: int, customer_id: int, quantity: int, expires_at: dt.datetime) -> Reservation:
    # An expired row for the same pair is simply overwritten.
    reservation = get_reservation(db, package_id, customer_id)
    if reservation is None:
        reservation = Reservation(
            package_id=package_id,
            customer_id=customer_id,
            quantity=quantity,
            expires_at=expires_at,
        )
        db.add(reservation)
        try:
            db.commit()
        except IntegrityError:
            # concurrent insert for the same (package, customer) won; update theirs
            db.rollback()
            reservation = get_reservation(db, package_id, customer_id)
            reservation.quantity = quantity
            reservation.expires_at = expires_at
            db.commit()
    else:
        reservation.quantity = quantity
        reservation.expires_at = expires_at
        db.commit()
    db.refresh(reservation)
    return reservation


def clear_reservations(db: Session, customer_id: int, package_ids: Iterable[int]) -> int:
    """Drop the customer's holds on ``package_ids``. Does not commit."""
    ids = list(package_ids)
    if not ids:
        return 0
    deleted = (
        db.query(Reservation)
        .filter(Reservation.customer_id == customer_id, Reservation.package_id.in_(ids))
        .delete(synchronize_session=False)
    )
    return int(deleted or 0)


def purge_expired_reservations(db: Session, *, now: Optional[dt.datetime] = None) -> int:
    """Delete expired reservations and return deleted rows count."""
    now = now or _utcnow()
    deleted = (
        db.query(Reservation)
        .filter(Reservation.expires_at <= now)
        .delete(synchronize_session=False)
    )
    db.commit()
    return int(deleted or 0)
