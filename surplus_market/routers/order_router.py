import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from ..auth import get_current_user, require_company, require_customer, require_ownership
from ..crud import orders as order_crud
from ..crud.ratings import get_rating_for_order, reply_to_feedback, submit_feedback
from ..database import get_db
from ..errors import NotFoundError
from ..messaging import emit_order_event
from ..models import Order
from ..pickup_codes import code_expires_at
from ..schemas import (
    BuyerSummary,
    FeedbackCreate,
    OrderCreate,
    OrderCreated,
    OrderOut,
    OrderStatus,
    PickupCodeOut,
    RatingOut,
    RedeemRequest,
    RedemptionOut,
    ReplyCreate,
    Role,
    UserOut,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/orders", tags=["orders"])


def _load_order(db: Session, order_id: int) -> Order:
    order = order_crud.get_order(db, order_id)
    if order is None:
        raise NotFoundError("Order not found", order_id=order_id)
    return order


def _require_party(order: Order, user: UserOut) -> None:
    owner_id = order.company_id if user.role == Role.COMPANY else order.customer_id
    require_ownership(owner_id, user, "order")


@router.post("/", response_model=OrderCreated, status_code=status.HTTP_201_CREATED)
def create_order(
    body: OrderCreate,
    current_user: UserOut = Depends(require_customer),
    db: Session = Depends(get_db),
):
    """Place an order for the cart; all items must come from one company.

    The response carries the pickup code of the current window. Later windows are
    available through GET /orders/{id}/code.
    """
    order, plain = order_crud.commit_order(
        db,
        current_user.id,
        [item.model_dump() for item in body.items],
    )
    emit_order_event("confirmed", order, total_amount=str(order.total_amount))
    return {
        "order_id": order.id,
        "pickup_code": plain,
        "created_at": order.created_at,
        "total_amount": order.total_amount,
        "code_expires_at": code_expires_at(order.code_generated_at),
    }


@router.get("/my", response_model=List[OrderOut])
def my_orders(
    status_filter: Optional[OrderStatus] = Query(None, alias="status"),
    current_user: UserOut = Depends(require_customer),
    db: Session = Depends(get_db),
):
    return order_crud.get_orders_for_customer(
        db, current_user.id, status_filter.value if status_filter else None
    )


@router.get("/company", response_model=List[OrderOut])
def company_orders(
    status_filter: Optional[OrderStatus] = Query(None, alias="status"),
    current_user: UserOut = Depends(require_company),
    db: Session = Depends(get_db),
):
    return order_crud.get_orders_for_company(
        db, current_user.id, status_filter.value if status_filter else None
    )


@router.post("/redeem", response_model=RedemptionOut)
def redeem(
    body: RedeemRequest,
    current_user: UserOut = Depends(require_company),
    db: Session = Depends(get_db),
):
    order = order_crud.redeem_code(db, current_user.id, body.code)
    emit_order_event("picked", order)
    return {
        "order": OrderOut.model_validate(order),
        "buyer": BuyerSummary.model_validate(order.customer),
    }


@router.get("/{order_id}", response_model=OrderOut)
def read_order(
    order_id: int,
    current_user: UserOut = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    order = _load_order(db, order_id)
    _require_party(order, current_user)
    return order


@router.get("/{order_id}/code", response_model=PickupCodeOut)
def read_pickup_code(
    order_id: int,
    current_user: UserOut = Depends(require_customer),
    db: Session = Depends(get_db),
):
    order = _load_order(db, order_id)
    require_ownership(order.customer_id, current_user, "order")
    code, generated_at, seconds_left = order_crud.current_pickup_code(db, order)
    return {
        "order_id": order.id,
        "pickup_code": code,
        "code_generated_at": generated_at,
        "expires_at": code_expires_at(generated_at),
        "seconds_left": seconds_left,
    }


@router.post("/{order_id}/verify-code", response_model=RedemptionOut)
def verify_code_for_order(
    order_id: int,
    body: RedeemRequest,
    current_user: UserOut = Depends(require_company),
    db: Session = Depends(get_db),
):
    order = _load_order(db, order_id)
    require_ownership(order.company_id, current_user, "order")
    order = order_crud.verify_order_code(db, order, body.code)
    emit_order_event("picked", order)
    return {
        "order": OrderOut.model_validate(order),
        "buyer": BuyerSummary.model_validate(order.customer),
    }


@router.post("/{order_id}/ready", response_model=OrderOut)
def mark_order_ready(
    order_id: int,
    current_user: UserOut = Depends(require_company),
    db: Session = Depends(get_db),
):
    order = _load_order(db, order_id)
    require_ownership(order.company_id, current_user, "order")
    return order_crud.mark_ready(db, order)


@router.post("/{order_id}/cancel", response_model=OrderOut)
def cancel(
    order_id: int,
    current_user: UserOut = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    order = _load_order(db, order_id)
    _require_party(order, current_user)
    order = order_crud.cancel_order(db, order)
    emit_order_event("cancelled", order, cancelled_by=current_user.role.value)
    return order


@router.post("/{order_id}/feedback", response_model=RatingOut, status_code=status.HTTP_201_CREATED)
def leave_feedback(
    order_id: int,
    body: FeedbackCreate,
    current_user: UserOut = Depends(require_customer),
    db: Session = Depends(get_db),
):
    order = _load_order(db, order_id)
    require_ownership(order.customer_id, current_user, "order")
    rating = submit_feedback(db, order, current_user.id, body.rating, body.comment)
    emit_order_event("completed", order, rating=rating.rating)
    return rating


@router.post("/{order_id}/reply", response_model=RatingOut)
def reply(
    order_id: int,
    body: ReplyCreate,
    current_user: UserOut = Depends(require_company),
    db: Session = Depends(get_db),
):
    order = _load_order(db, order_id)
    require_ownership(order.company_id, current_user, "order")
    rating = get_rating_for_order(db, order.id)
    if rating is None:
        raise NotFoundError("This order has no feedback yet", order_id=order.id)
    return reply_to_feedback(db, rating, current_user.id, body.reply)
