from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

Base = declarative_base()

# customer -> company
favorites = Table(
    "favorites",
    Base.metadata,
    Column("customer_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("company_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True, index=True),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
)


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(50), unique=True, index=True, nullable=False)
    email = Column(String(255), unique=True, index=True, nullable=False)
    hashed_password = Column(String(255), nullable=False)
    role = Column(String(20), nullable=False, default="customer", index=True)
    profile_image = Column(String(500), default="")

    # company accounts only
    company_name = Column(String(150))
    company_address = Column(String(255))
    latitude = Column(Float)
    longitude = Column(Float)

    # customer's last known position, used for distance sorting
    current_latitude = Column(Float)
    current_longitude = Column(Float)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    favorite_companies = relationship(
        "User",
        secondary=favorites,
        primaryjoin=lambda: User.id == favorites.c.customer_id,
        secondaryjoin=lambda: User.id == favorites.c.company_id,
    )


class Package(Base):
    __tablename__ = "packages"
    __table_args__ = (CheckConstraint("stock >= 0", name="ck_packages_stock_nonnegative"),)

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    description = Column(Text, default="")
    image = Column(String(500), default="")
    meal_type = Column(String(20), nullable=False, default="lunch")
    original_price = Column(Numeric(10, 2), nullable=False)
    discounted_price = Column(Numeric(10, 2), nullable=False)
    stock = Column(Integer, nullable=False, default=0)
    allergens = Column(JSON, default=list)
    company_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    average_rating = Column(Float, nullable=False, default=0)
    rating_count = Column(Integer, nullable=False, default=0)
    is_available = Column(Boolean, nullable=False, default=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    company = relationship("User")


class Food(Base):
    __tablename__ = "foods"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=False)
    image = Column(String(500), default="")
    price = Column(Numeric(10, 2), nullable=False)
    category = Column(String(30), nullable=False, index=True)
    ingredients = Column(JSON, default=list)
    allergens = Column(JSON, default=list)
    is_available = Column(Boolean, nullable=False, default=True, index=True)
    is_mystery = Column(Boolean, nullable=False, default=False)
    company_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    average_rating = Column(Float, nullable=False, default=0)
    rating_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    company = relationship("User")


class Reservation(Base):
    """A customer's soft hold on package stock.

    Stock is NOT decremented when reserving; availability is computed as
    package.stock - sum(active reservations). Expired rows are ignored by every
    aggregate and removed lazily (next overwrite or purge_expired_reservations).
    """

    __tablename__ = "reservations"
    __table_args__ = (
        UniqueConstraint("package_id", "customer_id", name="uq_reservations_package_customer"),
        CheckConstraint("quantity >= 1", name="ck_reservations_quantity_positive"),
    )

    id = Column(Integer, primary_key=True, index=True)
    package_id = Column(Integer, ForeignKey("packages.id", ondelete="CASCADE"), nullable=False, index=True)
    customer_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    quantity = Column(Integer, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    customer_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    company_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    total_amount = Column(Numeric(10, 2), nullable=False)
    status = Column(String(20), nullable=False, default="pending", index=True)

    pickup_code_hash = Column(String(100))
    # only the code of the current validity window; overwritten on rotation
    pickup_code_plain = Column(String(12))
    code_generated_at = Column(DateTime(timezone=True), index=True)

    picked_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")
    customer = relationship("User", foreign_keys=[customer_id])
    company = relationship("User", foreign_keys=[company_id])


class OrderItem(Base):
    __tablename__ = "order_items"
    __table_args__ = (CheckConstraint("quantity >= 1", name="ck_order_items_quantity_positive"),)

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    package_id = Column(Integer, ForeignKey("packages.id", ondelete="SET NULL"), index=True)
    food_id = Column(Integer, ForeignKey("foods.id", ondelete="SET NULL"), index=True)
    name = Column(String(100), nullable=False)
    unit_price = Column(Numeric(10, 2), nullable=False)
    quantity = Column(Integer, nullable=False)

    order = relationship("Order", back_populates="items")


class Rating(Base):
    __tablename__ = "ratings"
    __table_args__ = (
        UniqueConstraint("order_id", "customer_id", name="uq_ratings_order_customer"),
        CheckConstraint("rating >= 1 AND rating <= 5", name="ck_ratings_range"),
    )

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    customer_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    company_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    rating = Column(Integer, nullable=False)
    comment = Column(String(500))
    company_reply = Column(Text)
    replied_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    customer = relationship("User", foreign_keys=[customer_id])
