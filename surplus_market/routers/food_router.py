import math
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, Form, Query, status
from sqlalchemy.orm import Session

from ..auth import get_current_user, require_company, require_ownership
from ..crud.foods import create_food, delete_food, get_company_foods, get_food, search_foods, update_food
from ..crud.ratings import get_food_ratings
from ..database import get_db
from ..errors import NotFoundError
from ..external_services import upload_image
from ..geo import sort_by_distance
from ..models import Food
from ..schemas import FoodCategory, FoodListResponse, FoodOut, RatingOut, UserOut

router = APIRouter(prefix="/foods", tags=["foods"])


def _split_csv(value: Optional[str]) -> Optional[List[str]]:
    if value is None:
        return None
    return [part.strip() for part in value.split(",") if part.strip()]


def _load_food(db: Session, food_id: int) -> Food:
    food = get_food(db, food_id)
    if food is None:
        raise NotFoundError("Food not found", food_id=food_id)
    return food


@router.get("/", response_model=FoodListResponse)
def list_foods(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    company: Optional[int] = Query(None, gt=0),
    search: Optional[str] = Query(None, description="**Search** in name, description or category"),
    lat: Optional[float] = Query(None, ge=-90, le=90),
    lon: Optional[float] = Query(None, ge=-180, le=180),
    current_user: UserOut = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    foods, total = search_foods(db, skip=(page - 1) * limit, limit=limit, company_id=company, search=search)
    items = [FoodOut.model_validate(f) for f in foods]

    if lat is not None and lon is not None:
        companies = {f.id: f.company for f in foods}
        ranked = sort_by_distance(
            items,
            (lat, lon),
            lambda out: (companies[out.id].latitude, companies[out.id].longitude) if companies[out.id] else None,
        )
        items = [out.model_copy(update={"distance_km": km}) for out, km in ranked]

    return {
        "foods": items,
        "current_page": page,
        "total": total,
        "total_pages": math.ceil(total / limit) if total else 0,
    }


@router.get("/company", response_model=List[FoodOut])
def list_company_foods(
    current_user: UserOut = Depends(require_company),
    db: Session = Depends(get_db),
):
    return get_company_foods(db, current_user.id)


@router.get("/{food_id}", response_model=FoodOut)
def read_food(
    food_id: int,
    current_user: UserOut = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return _load_food(db, food_id)


@router.get("/{food_id}/ratings", response_model=List[RatingOut])
def read_food_ratings(
    food_id: int,
    limit: int = Query(20, ge=1, le=100),
    current_user: UserOut = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    _load_food(db, food_id)
    return get_food_ratings(db, food_id, limit=limit)


@router.post("/", response_model=FoodOut, status_code=status.HTTP_201_CREATED)
def add_food(
    name: str = Form(..., description="**Food name** (required)", examples=[""]),
    description: str = Form(..., description="**Description** (required)", examples=[""]),
    price: Decimal = Form(..., gt=0, description="**Price** (> 0)", examples=[""]),
    category: FoodCategory = Form(..., description="**Category**"),
    ingredients: Optional[str] = Form(None, description="Comma-separated ingredients", examples=[""]),
    allergens: Optional[str] = Form(None, description="Comma-separated allergens", examples=[""]),
    is_mystery: bool = Form(False, description="Mystery bag"),
    image: Optional[str] = Form(None, description="Image URL or data URI", examples=[""]),
    current_user: UserOut = Depends(require_company),
    db: Session = Depends(get_db),
):
    food_data = {
        "name": name,
        "description": description,
        "price": price,
        "category": category.value,
        "ingredients": _split_csv(ingredients) or [],
        "allergens": _split_csv(allergens) or [],
        "is_mystery": is_mystery,
        "image": upload_image(image),
    }
    return create_food(db, current_user.id, food_data)


@router.put("/{food_id}", response_model=FoodOut)
def edit_food(
    food_id: int,
    name: Optional[str] = Form(None, examples=[""]),
    description: Optional[str] = Form(None, examples=[""]),
    price: Optional[Decimal] = Form(None, gt=0),
    category: Optional[FoodCategory] = Form(None),
    ingredients: Optional[str] = Form(None, examples=[""]),
    allergens: Optional[str] = Form(None, examples=[""]),
    is_mystery: Optional[bool] = Form(None),
    is_available: Optional[bool] = Form(None),
    image: Optional[str] = Form(None, examples=[""]),
    current_user: UserOut = Depends(require_company),
    db: Session = Depends(get_db),
):
    food = _load_food(db, food_id)
    require_ownership(food.company_id, current_user, "food item")

    update_data = {
        "name": name,
        "description": description,
        "price": price,
        "category": category.value if category else None,
        "ingredients": _split_csv(ingredients),
        "allergens": _split_csv(allergens),
        "is_mystery": is_mystery,
        "is_available": is_available,
        "image": upload_image(image) if image else None,
    }
    update_data = {k: v for k, v in update_data.items() if v is not None}
    return update_food(db, food, update_data)


@router.delete("/{food_id}")
def remove_food(
    food_id: int,
    current_user: UserOut = Depends(require_company),
    db: Session = Depends(get_db),
):
    food = _load_food(db, food_id)
    require_ownership(food.company_id, current_user, "food item")
    delete_food(db, food)
    return {"message": "Food deleted", "food_id": food_id}
