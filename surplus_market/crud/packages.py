from typing import List, Optional, Tuple

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session, joinedload

from ..errors import ConflictError, ValidationError
from ..models import Package, Reservation, User


def _check_prices(original_price, discounted_price) -> None:
    if original_price is not None and discounted_price is not None and discounted_price > original_price:
        raise ValidationError(
            "Discounted price cannot exceed the original price",
            original_price=str(original_price),
            discounted_price=str(discounted_price),
        )


def create_package(db: Session, company_id: int, package_data: dict) -> Package:
    name = (package_data.get("name") or "").strip()
    if not name:
        raise ValidationError("Package name is required")
    _check_prices(package_data.get("original_price"), package_data.get("discounted_price"))

    db_package = Package(**{**package_data, "name": name, "company_id": company_id})
    db.add(db_package)
    db.commit()
    db.refresh(db_package)
    return db_package


def get_package(db: Session, package_id: int) -> Optional[Package]:
    return (
        db.query(Package)
        .options(joinedload(Package.company))
        .filter(Package.id == package_id)
        .first()
    )


def get_packages_by_ids(db: Session, package_ids) -> List[Package]:
    ids = list(package_ids)
    if not ids:
        return []
    return db.query(Package).filter(Package.id.in_(ids)).all()


def search_packages(
    db: Session,
    *,
    skip: int = 0,
    limit: int = 10,
    company_id: Optional[int] = None,
    search: Optional[str] = None,
) -> Tuple[List[Package], int]:
    """Available packages, best rated and newest first, plus the unpaged total."""
    query = db.query(Package).filter(Package.is_available.is_(True))
    if company_id is not None:
        query = query.filter(Package.company_id == company_id)
    if search:
        pattern = f"%{search.strip()}%"
        matching_companies = select(User.id).where(
            User.role == "company",
            or_(
                User.company_name.ilike(pattern),
                User.username.ilike(pattern),
                User.company_address.ilike(pattern),
            ),
        )
        query = query.filter(
            or_(
                Package.name.ilike(pattern),
                Package.description.ilike(pattern),
                Package.company_id.in_(matching_companies),
            )
        )

    total = query.count()
    packages = (
        query.options(joinedload(Package.company))
        .order_by(Package.average_rating.desc(), Package.created_at.desc(), Package.id.desc())
        .offset(skip)
        .limit(limit)
        .all()
    )
    return packages, total


def get_company_packages(db: Session, company_id: int) -> List[Package]:
    return (
        db.query(Package)
        .filter(Package.company_id == company_id)
        .order_by(Package.created_at.desc(), Package.id.desc())
        .all()
    )


def update_package(db: Session, db_package: Package, update_data: dict) -> Package:
    if "name" in update_data:
        new_name = str(update_data["name"]).strip()
        if not new_name:
            raise ValidationError("Package name is required")
        update_data["name"] = new_name
    if update_data.get("stock") is not None and update_data["stock"] < 0:
        raise ValidationError("Stock cannot be negative", stock=update_data["stock"])

    _check_prices(
        update_data.get("original_price", db_package.original_price),
        update_data.get("discounted_price", db_package.discounted_price),
    )

    stock = update_data.pop("stock", None)
    for key, value in update_data.items():
        if value is not None:
            setattr(db_package, key, value)

    if stock is not None and stock != db_package.stock:
        # applied as a delta so units sold since the package was loaded stay sold
        delta = stock - db_package.stock
        result = db.execute(
            update(Package)
            .where(Package.id == db_package.id, Package.stock + delta >= 0)
            .values(stock=Package.stock + delta)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.rollback()
            raise ConflictError(
                "Stock changed while editing the package, please try again",
                package_id=db_package.id,
                requested=stock,
            )
    db.commit()
    db.refresh(db_package)
    return db_package


def delete_package(db: Session, db_package: Package) -> None:
    db.query(Reservation).filter(Reservation.package_id == db_package.id).delete(synchronize_session=False)
    db.delete(db_package)
    db.commit()
