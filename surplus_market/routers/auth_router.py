import logging
from typing import Optional

from fastapi import APIRouter, Depends, Form, status
from pydantic import EmailStr
from sqlalchemy.orm import Session

from ..auth import create_access_token, get_current_user, require_customer, verify_password
from ..crud.users import (
    create_user,
    get_favorite_companies,
    get_user_by_email,
    get_user_by_id,
    get_user_by_username,
    toggle_favorite_company,
    update_current_location,
)
from ..database import get_db
from ..errors import AuthenticationError, ConflictError, ValidationError
from ..external_services import upload_image
from ..schemas import FavoritesOut, FavoriteToggle, LocationUpdate, Role, Token, UserOut

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/register", response_model=Token, status_code=status.HTTP_201_CREATED)
def register(
    username: str = Form(..., min_length=3, max_length=50, description="**Unique username**", examples=[""]),
    email: EmailStr = Form(..., description="**Valid email address**", examples=[""]),
    password: str = Form(..., min_length=8, description="**Password (minimum 8 characters)**", examples=[""]),
    role: Role = Form(Role.CUSTOMER, description="**customer** or **company**"),
    company_name: Optional[str] = Form(None, description="**Company name** (companies only)", examples=[""]),
    company_address: Optional[str] = Form(None, description="**Company address** (companies only)", examples=[""]),
    latitude: Optional[float] = Form(None, ge=-90, le=90, description="Company latitude"),
    longitude: Optional[float] = Form(None, ge=-180, le=180, description="Company longitude"),
    profile_image: Optional[str] = Form(None, description="Image URL or data URI", examples=[""]),
    db: Session = Depends(get_db),
):
    # bcrypt only looks at the first 72 bytes
    if len(password.encode("utf-8")) > 72:
        raise ValidationError("Password is too long, use at most 72 bytes")

    email = email.strip().lower()
    if get_user_by_email(db, email):
        raise ConflictError("This email is already registered")
    if get_user_by_username(db, username.strip()):
        raise ConflictError("This username is already registered")

    user_data = {
        "username": username.strip(),
        "email": email,
        "password": password,
        "role": role.value,
        "profile_image": upload_image(profile_image),
    }
    if role == Role.COMPANY:
        if not (company_name or "").strip() or not (company_address or "").strip():
            raise ValidationError("Company name and address are required for company accounts")
        user_data.update(
            company_name=company_name.strip(),
            company_address=company_address.strip(),
            latitude=latitude,
            longitude=longitude,
        )

    user = create_user(db, user_data)
    logger.info("user registered id=%s role=%s", user.id, user.role)
    return {
        "access_token": create_access_token(user.id, user.role),
        "token_type": "bearer",
        "user": UserOut.model_validate(user),
    }


@router.post("/login", response_model=Token)
def login(
    email: str = Form(..., description="**Email you registered with**", examples=[""]),
    password: str = Form(..., description="**Password**", examples=[""]),
    db: Session = Depends(get_db),
):
    user = get_user_by_email(db, email)
    if not user or not verify_password(password, user.hashed_password):
        raise AuthenticationError("Incorrect email or password")
    return {
        "access_token": create_access_token(user.id, user.role),
        "token_type": "bearer",
        "user": UserOut.model_validate(user),
    }


@router.get("/me", response_model=UserOut)
def read_users_me(current_user: UserOut = Depends(get_current_user)):
    return current_user


@router.patch("/me/location", response_model=UserOut)
def update_location(
    location: LocationUpdate,
    current_user: UserOut = Depends(require_customer),
    db: Session = Depends(get_db),
):
    user = get_user_by_id(db, current_user.id)
    user = update_current_location(db, user, location.latitude, location.longitude)
    return UserOut.model_validate(user)


@router.get("/favorites", response_model=FavoritesOut)
def read_favorites(
    current_user: UserOut = Depends(require_customer),
    db: Session = Depends(get_db),
):
    user = get_user_by_id(db, current_user.id)
    return {"favorite_companies": get_favorite_companies(user)}


@router.post("/favorites", response_model=FavoritesOut)
def toggle_favorite(
    body: FavoriteToggle,
    current_user: UserOut = Depends(require_customer),
    db: Session = Depends(get_db),
):
    """Add the restaurant to the favourites, or remove it if it is already one."""
    user = get_user_by_id(db, current_user.id)
    return {"favorite_companies": toggle_favorite_company(db, user, body.company_id)}
