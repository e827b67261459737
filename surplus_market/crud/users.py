from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..errors import NotFoundError
from ..models import User


def create_user(db: Session, user_data: dict) -> User:
    from ..auth import get_password_hash

    data = dict(user_data)
    password = data.pop("password")
    db_user = User(**data, hashed_password=get_password_hash(password))
    db.add(db_user)
    db.commit()
    db.refresh(db_user)
    return db_user


def get_user_by_id(db: Session, user_id: int) -> Optional[User]:
    return db.query(User).filter(User.id == user_id).first()


def get_user_by_email(db: Session, email: str) -> Optional[User]:
    normalized = (email or "").strip().lower()
    return db.query(User).filter(func.lower(User.email) == normalized).first()


def get_user_by_username(db: Session, username: str) -> Optional[User]:
    return db.query(User).filter(User.username == username).first()


def update_current_location(db: Session, user: User, latitude: float, longitude: float) -> User:
    user.current_latitude = latitude
    user.current_longitude = longitude
    db.commit()
    db.refresh(user)
    return user


def get_favorite_companies(customer: User) -> List[User]:
    return list(customer.favorite_companies)


def toggle_favorite_company(db: Session, customer: User, company_id: int) -> List[User]:
    """Add the company to the customer's favourites, or remove it when already there."""
    company = get_user_by_id(db, company_id)
    if company is None or company.role != "company":
        raise NotFoundError("Restaurant not found", company_id=company_id)

    if company in customer.favorite_companies:
        customer.favorite_companies.remove(company)
    else:
        customer.favorite_companies.append(company)
    db.commit()
    db.refresh(customer)
    return list(customer.favorite_companies)
