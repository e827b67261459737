import datetime as dt
import logging
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import FEEDBACK_GRACE_DAYS
from ..errors import AuthorizationError, ConflictError, ExpiredResourceError, InvalidStateError, ValidationError
from ..models import Food, Order, OrderItem, Package, Rating
from ..pickup_codes import as_utc
from ..schemas import OrderStatus

logger = logging.getLogger(__name__)


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def get_rating_for_order(db: Session, order_id: int) -> Optional[Rating]:
    return db.query(Rating).filter(Rating.order_id == order_id).first()


def get_package_ratings(db: Session, package_id: int, limit: int = 20) -> List[Rating]:
    return (
        db.query(Rating)
        .join(OrderItem, OrderItem.order_id == Rating.order_id)
        .filter(OrderItem.package_id == package_id)
        .order_by(Rating.created_at.desc(), Rating.id.desc())
        .limit(limit)
        .all()
    )


def get_food_ratings(db: Session, food_id: int, limit: int = 20) -> List[Rating]:
    return (
        db.query(Rating)
        .join(OrderItem, OrderItem.order_id == Rating.order_id)
        .filter(OrderItem.food_id == food_id)
        .order_by(Rating.created_at.desc(), Rating.id.desc())
        .limit(limit)
        .all()
    )


def _aggregate(db: Session, column, item_id: int):
    avg, count = (
        db.query(func.avg(Rating.rating), func.count(Rating.id))
        .join(OrderItem, OrderItem.order_id == Rating.order_id)
        .filter(column == item_id)
        .one()
    )
    return round(float(avg or 0), 1), int(count or 0)


def recompute_item_ratings(db: Session, order: Order) -> None:
    """Refresh average_rating / rating_count of everything in ``order``. Does not commit."""
    for item in order.items:
        if item.package_id is not None:
            target = db.get(Package, item.package_id)
            column = OrderItem.package_id
            item_id = item.package_id
        elif item.food_id is not None:
            target = db.get(Food, item.food_id)
            column = OrderItem.food_id
            item_id = item.food_id
        else:
            # listing was deleted after the order was placed
            continue
        if target is None:
            continue
        target.average_rating, target.rating_count = _aggregate(db, column, item_id)


def submit_feedback(
    db: Session,
    order: Order,
    customer_id: int,
    rating: int,
    comment: Optional[str] = None,
    *,
    now: Optional[dt.datetime] = None,
) -> Rating:
    if order.customer_id != customer_id:
        raise AuthorizationError("You can only rate your own orders", order_id=order.id)
    if get_rating_for_order(db, order.id) is not None:
        raise ConflictError("Feedback already submitted for this order", order_id=order.id)
    if order.status != OrderStatus.PICKED.value:
        raise InvalidStateError(
            "Feedback is only possible once the order has been picked up",
            order_id=order.id,
            status=order.status,
        )

    now = now or _utcnow()
    picked_at = as_utc(order.picked_at)
    if picked_at is not None and now > picked_at + dt.timedelta(days=FEEDBACK_GRACE_DAYS):
        raise ExpiredResourceError("The feedback window for this order has closed", order_id=order.id)

    db_rating = Rating(
        order_id=order.id,
        customer_id=customer_id,
        company_id=order.company_id,
        rating=rating,
        comment=(comment or "").strip() or None,
        created_at=now,
    )
    db.add(db_rating)
    order.status = OrderStatus.COMPLETED.value
    try:
        db.flush()
        recompute_item_ratings(db, order)
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ConflictError("Feedback already submitted for this order", order_id=order.id)

    db.refresh(db_rating)
    logger.info("feedback stored order=%s rating=%s", order.id, rating)
    return db_rating


def reply_to_feedback(
    db: Session,
    db_rating: Rating,
    company_id: int,
    reply: str,
    *,
    now: Optional[dt.datetime] = None,
) -> Rating:
    if db_rating.company_id != company_id:
        raise AuthorizationError("You can only reply to feedback on your own orders")
    if db_rating.company_reply:
        raise ConflictError("A reply has already been posted", rating_id=db_rating.id)

    reply = (reply or "").strip()
    if not reply:
        raise ValidationError("Reply cannot be empty")

    db_rating.company_reply = reply
    db_rating.replied_at = now or _utcnow()
    db.commit()
    db.refresh(db_rating)
    return db_rating
