from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, model_validator


class Role(str, Enum):
    CUSTOMER = "customer"
    COMPANY = "company"


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    READY = "ready"
    PICKED = "picked"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class MealType(str, Enum):
    BREAKFAST = "breakfast"
    LUNCH = "lunch"
    DINNER = "dinner"
    DESSERT = "dessert"


class FoodCategory(str, Enum):
    APPETIZER = "appetizer"
    MAIN_COURSE = "main-course"
    DESSERT = "dessert"
    BEVERAGE = "beverage"
    SALAD = "salad"
    SOUP = "soup"
    PIZZA = "pizza"
    BURGER = "burger"
    PASTA = "pasta"
    OTHER = "other"


# Users

class UserOut(BaseModel):
    id: int
    username: str
    email: EmailStr
    role: Role
    profile_image: Optional[str] = None
    company_name: Optional[str] = None
    company_address: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    current_latitude: Optional[float] = None
    current_longitude: Optional[float] = None

    model_config = ConfigDict(from_attributes=True)


class Token(BaseModel):
    access_token: str
    token_type: str
    user: UserOut


class LocationUpdate(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


class CompanySummary(BaseModel):
    id: int
    username: str
    company_name: Optional[str] = None
    company_address: Optional[str] = None
    profile_image: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class FavoriteToggle(BaseModel):
    company_id: int = Field(..., gt=0)


class FavoritesOut(BaseModel):
    favorite_companies: List[CompanySummary]


class BuyerSummary(BaseModel):
    id: int
    username: str
    email: EmailStr

    model_config = ConfigDict(from_attributes=True)


# Ratings

class RatingOut(BaseModel):
    id: int
    order_id: int
    customer_id: int
    rating: int
    comment: Optional[str] = None
    company_reply: Optional[str] = None
    replied_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class FeedbackCreate(BaseModel):
    rating: int = Field(..., ge=1, le=5, description="Score between 1 and 5")
    comment: Optional[str] = Field(None, max_length=500)


class ReplyCreate(BaseModel):
    reply: str = Field(..., min_length=1, max_length=1000)


# Packages and foods

class PackageOut(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    image: Optional[str] = None
    meal_type: MealType
    original_price: Decimal
    discounted_price: Decimal
    stock: int
    allergens: List[str] = []
    company_id: int
    average_rating: float
    rating_count: int
    is_available: bool
    created_at: Optional[datetime] = None
    company: Optional[CompanySummary] = None

    available_stock: Optional[int] = None
    reserved_stock: Optional[int] = None
    distance_km: Optional[float] = None

    model_config = ConfigDict(from_attributes=True)


class PackageDetail(PackageOut):
    reserved_by_current_user: int = 0
    ratings: List[RatingOut] = []


class PackageListResponse(BaseModel):
    packages: List[PackageOut]
    current_page: int
    total: int
    total_pages: int


class FoodOut(BaseModel):
    id: int
    name: str
    description: str
    image: Optional[str] = None
    price: Decimal
    category: FoodCategory
    ingredients: List[str] = []
    allergens: List[str] = []
    is_available: bool
    is_mystery: bool
    company_id: int
    average_rating: float
    rating_count: int
    created_at: Optional[datetime] = None
    company: Optional[CompanySummary] = None
    distance_km: Optional[float] = None

    model_config = ConfigDict(from_attributes=True)


class AllergenInfo(BaseModel):
    id: int
    name: str
    description: str = ""
    allergens: List[str] = []
    company: Optional[CompanySummary] = None

    model_config = ConfigDict(from_attributes=True)


class FoodListResponse(BaseModel):
    foods: List[FoodOut]
    current_page: int
    total: int
    total_pages: int


# Reservations

class ReservationRequest(BaseModel):
    quantity: int = Field(..., ge=0, description="0 releases the hold")


class ReservationOut(BaseModel):
    package_id: int
    quantity: int
    available_stock: int
    expires_at: Optional[datetime] = None


# Orders

class OrderItemCreate(BaseModel):
    package_id: Optional[int] = Field(None, gt=0, description="Package ID")
    food_id: Optional[int] = Field(None, gt=0, description="Food ID")
    quantity: int = Field(..., gt=0, description="Quantity")

    @model_validator(mode="after")
    def _exactly_one_reference(self):
        if (self.package_id is None) == (self.food_id is None):
            raise ValueError("each item needs exactly one of package_id or food_id")
        return self


class OrderCreate(BaseModel):
    items: List[OrderItemCreate] = Field(..., description="Cart items; all from one company")


class OrderCreated(BaseModel):
    order_id: int
    pickup_code: str
    created_at: datetime
    total_amount: Decimal
    code_expires_at: Optional[datetime] = None


class OrderItemOut(BaseModel):
    id: int
    package_id: Optional[int] = None
    food_id: Optional[int] = None
    name: str
    unit_price: Decimal
    quantity: int

    model_config = ConfigDict(from_attributes=True)


class OrderOut(BaseModel):
    id: int
    customer_id: int
    company_id: int
    total_amount: Decimal
    status: OrderStatus
    code_generated_at: Optional[datetime] = None
    picked_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    items: List[OrderItemOut] = []

    model_config = ConfigDict(from_attributes=True)


class PickupCodeOut(BaseModel):
    order_id: int
    pickup_code: str
    code_generated_at: datetime
    expires_at: datetime
    seconds_left: int


class RedeemRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=12)


class RedemptionOut(BaseModel):
    order: OrderOut
    buyer: BuyerSummary
