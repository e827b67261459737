from typing import List, Optional, Tuple

from sqlalchemy import or_
from sqlalchemy.orm import Session, joinedload

from ..errors import ValidationError
from ..models import Food


def create_food(db: Session, company_id: int, food_data: dict) -> Food:
    name = (food_data.get("name") or "").strip()
    if not name:
        raise ValidationError("Food name is required")

    db_food = Food(**{**food_data, "name": name, "company_id": company_id})
    db.add(db_food)
    db.commit()
    db.refresh(db_food)
    return db_food


def get_food(db: Session, food_id: int) -> Optional[Food]:
    return (
        db.query(Food)
        .options(joinedload(Food.company))
        .filter(Food.id == food_id)
        .first()
    )


def get_available_foods(db: Session) -> List[Food]:
    return (
        db.query(Food)
        .options(joinedload(Food.company))
        .filter(Food.is_available.is_(True))
        .order_by(Food.company_id, Food.name)
        .all()
    )


def get_foods_by_ids(db: Session, food_ids) -> List[Food]:
    ids = list(food_ids)
    if not ids:
        return []
    return db.query(Food).filter(Food.id.in_(ids)).all()


def search_foods(
    db: Session,
    *,
    skip: int = 0,
    limit: int = 10,
    company_id: Optional[int] = None,
    search: Optional[str] = None,
) -> Tuple[List[Food], int]:
    query = db.query(Food).filter(Food.is_available.is_(True))
    if company_id is not None:
        query = query.filter(Food.company_id == company_id)
    if search:
        pattern = f"%{search.strip()}%"
        query = query.filter(
            or_(
                Food.name.ilike(pattern),
                Food.description.ilike(pattern),
                Food.category.ilike(pattern),
            )
        )

    total = query.count()
    foods = (
        query.options(joinedload(Food.company))
        .order_by(Food.average_rating.desc(), Food.created_at.desc(), Food.id.desc())
        .offset(skip)
        .limit(limit)
        .all()
    )
    return foods, total


def get_company_foods(db: Session, company_id: int) -> List[Food]:
    return (
        db.query(Food)
        .filter(Food.company_id == company_id)
        .order_by(Food.created_at.desc(), Food.id.desc())
        .all()
    )


def update_food(db: Session, db_food: Food, update_data: dict) -> Food:
    if "name" in update_data:
        new_name = str(update_data["name"]).strip()
        if not new_name:
            raise ValidationError("Food name is required")
        update_data["name"] = new_name

    for key, value in update_data.items():
        if value is not None:
            setattr(db_food, key, value)
    db.commit()
    db.refresh(db_food)
    return db_food


def delete_food(db: Session, db_food: Food) -> None:
    db.delete(db_food)
    db.commit()
