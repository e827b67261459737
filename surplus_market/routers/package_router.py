import math
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, Form, Query, status
from sqlalchemy.orm import Session

from ..auth import get_current_user, require_company, require_customer, require_ownership
from ..crud import reservations
from ..crud.packages import (
    create_package,
    delete_package,
    get_company_packages,
    get_package,
    search_packages,
    update_package,
)
from ..crud.foods import get_available_foods
from ..crud.ratings import get_package_ratings
from ..database import get_db
from ..errors import NotFoundError
from ..external_services import upload_image
from ..geo import sort_by_distance
from ..models import Package
from ..schemas import (
    AllergenInfo,
    MealType,
    PackageDetail,
    PackageListResponse,
    PackageOut,
    RatingOut,
    ReservationOut,
    ReservationRequest,
    UserOut,
)

router = APIRouter(prefix="/packages", tags=["packages"])


def _split_csv(value: Optional[str]) -> Optional[List[str]]:
    if value is None:
        return None
    return [part.strip() for part in value.split(",") if part.strip()]


def _with_stock(package: Package, reserved: int, **extra) -> PackageOut:
    out = PackageOut.model_validate(package)
    return out.model_copy(
        update={
            "reserved_stock": reserved,
            "available_stock": max(0, int(package.stock) - reserved),
            **extra,
        }
    )


def _load_package(db: Session, package_id: int) -> Package:
    package = get_package(db, package_id)
    if package is None:
        raise NotFoundError("Package not found", package_id=package_id)
    return package


@router.get("/", response_model=PackageListResponse)
def list_packages(
    page: int = Query(1, ge=1, description="**Page** number"),
    limit: int = Query(10, ge=1, le=100, description="**Limit** per page"),
    company: Optional[int] = Query(None, gt=0, description="Only this company's packages"),
    search: Optional[str] = Query(None, description="**Search** in name, description or company"),
    lat: Optional[float] = Query(None, ge=-90, le=90, description="Sort the page by distance from here"),
    lon: Optional[float] = Query(None, ge=-180, le=180),
    current_user: UserOut = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    packages, total = search_packages(
        db,
        skip=(page - 1) * limit,
        limit=limit,
        company_id=company,
        search=search,
    )
    totals, _ = reservations.reservation_maps(db, [p.id for p in packages])
    items = [_with_stock(p, totals.get(p.id, 0)) for p in packages]

    if lat is not None and lon is not None:
        by_id = {p.id: p for p in packages}
        ranked = sort_by_distance(
            items,
            (lat, lon),
            lambda out: (by_id[out.id].company.latitude, by_id[out.id].company.longitude)
            if by_id[out.id].company
            else None,
        )
        items = [out.model_copy(update={"distance_km": km}) for out, km in ranked]

    return {
        "packages": items,
        "current_page": page,
        "total": total,
        "total_pages": math.ceil(total / limit) if total else 0,
    }


@router.get("/company", response_model=List[PackageOut])
def list_company_packages(
    current_user: UserOut = Depends(require_company),
    db: Session = Depends(get_db),
):
    packages = get_company_packages(db, current_user.id)
    totals, _ = reservations.reservation_maps(db, [p.id for p in packages])
    return [_with_stock(p, totals.get(p.id, 0)) for p in packages]


@router.get("/allergens", response_model=List[AllergenInfo])
def list_allergens(
    current_user: UserOut = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Allergens of every food item currently on offer."""
    return get_available_foods(db)


@router.get("/{package_id}", response_model=PackageDetail)
def read_package(
    package_id: int,
    current_user: UserOut = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    package = _load_package(db, package_id)
    totals, by_customer = reservations.reservation_maps(db, [package.id])
    base = _with_stock(package, totals.get(package.id, 0))
    return PackageDetail(
        **base.model_dump(),
        reserved_by_current_user=by_customer.get(package.id, {}).get(current_user.id, 0),
        ratings=[RatingOut.model_validate(r) for r in get_package_ratings(db, package.id)],
    )


@router.get("/{package_id}/ratings", response_model=List[RatingOut])
def read_package_ratings(
    package_id: int,
    limit: int = Query(20, ge=1, le=100),
    current_user: UserOut = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    _load_package(db, package_id)
    return get_package_ratings(db, package_id, limit=limit)


@router.post("/", response_model=PackageOut, status_code=status.HTTP_201_CREATED)
def add_package(
    name: str = Form(..., description="**Package name** (required)", examples=[""]),
    description: Optional[str] = Form("", description="**Description** (optional)", examples=[""]),
    meal_type: MealType = Form(MealType.LUNCH, description="**Meal type**"),
    original_price: Decimal = Form(..., gt=0, description="**Original price** (> 0)", examples=[""]),
    discounted_price: Decimal = Form(..., gt=0, description="**Discounted price** (<= original)", examples=[""]),
    stock: int = Form(..., ge=0, description="**Stock quantity** (>= 0)", examples=[""]),
    allergens: Optional[str] = Form(None, description="Comma-separated allergens", examples=[""]),
    image: Optional[str] = Form(None, description="Image URL or data URI", examples=[""]),
    current_user: UserOut = Depends(require_company),
    db: Session = Depends(get_db),
):
    package_data = {
        "name": name,
        "description": description or "",
        "meal_type": meal_type.value,
        "original_price": original_price,
        "discounted_price": discounted_price,
        "stock": stock,
        "allergens": _split_csv(allergens) or [],
        "image": upload_image(image),
    }
    package = create_package(db, current_user.id, package_data)
    return _with_stock(package, 0)


@router.put("/{package_id}", response_model=PackageOut)
def edit_package(
    package_id: int,
    name: Optional[str] = Form(None, description="**New name** (optional)", examples=[""]),
    description: Optional[str] = Form(None, description="**New description** (optional)", examples=[""]),
    meal_type: Optional[MealType] = Form(None, description="**New meal type** (optional)"),
    original_price: Optional[Decimal] = Form(None, gt=0, description="**New original price** (optional)"),
    discounted_price: Optional[Decimal] = Form(None, gt=0, description="**New discounted price** (optional)"),
    stock: Optional[int] = Form(None, description="**New stock** (optional, >= 0)"),
    allergens: Optional[str] = Form(None, description="Comma-separated allergens", examples=[""]),
    image: Optional[str] = Form(None, description="Image URL or data URI", examples=[""]),
    is_available: Optional[bool] = Form(None, description="Show or hide the package"),
    current_user: UserOut = Depends(require_company),
    db: Session = Depends(get_db),
):
    package = _load_package(db, package_id)
    require_ownership(package.company_id, current_user, "package")

    update_data = {
        "name": name,
        "description": description,
        "meal_type": meal_type.value if meal_type else None,
        "original_price": original_price,
        "discounted_price": discounted_price,
        "stock": stock,
        "allergens": _split_csv(allergens),
        "image": upload_image(image) if image else None,
        "is_available": is_available,
    }
    update_data = {k: v for k, v in update_data.items() if v is not None}
    package = update_package(db, package, update_data)

    totals, _ = reservations.reservation_maps(db, [package.id])
    return _with_stock(package, totals.get(package.id, 0))


@router.delete("/{package_id}")
def remove_package(
    package_id: int,
    current_user: UserOut = Depends(require_company),
    db: Session = Depends(get_db),
):
    package = _load_package(db, package_id)
    require_ownership(package.company_id, current_user, "package")
    delete_package(db, package)
    return {"message": "Package deleted", "package_id": package_id}


@router.put("/{package_id}/reserve", response_model=ReservationOut)
def reserve_package(
    package_id: int,
    body: ReservationRequest,
    current_user: UserOut = Depends(require_customer),
    db: Session = Depends(get_db),
):
    package = _load_package(db, package_id)
    held = reservations.set_reservation(db, package, current_user.id, body.quantity)
    return {
        "package_id": package.id,
        "quantity": held.quantity if held else 0,
        "available_stock": reservations.availability(db, package),
        "expires_at": held.expires_at if held else None,
    }
