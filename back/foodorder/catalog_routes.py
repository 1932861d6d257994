from datetime import datetime, timezone
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status
from sqlmodel import Session, select

from . import models
from .db import get_session
from .errors import Conflict, ValidationError
from .order_service import get_shop
from .permissions import Permissions
from .security import PermissionChecker

router = APIRouter()


def serialize_food_item(item: models.FoodItem) -> dict:
    return {
        "id": item.id,
        "name": item.name,
        "description": item.description,
        "price": str(item.price),
        "image": item.image,
        "category_id": item.category_id,
        "category": item.category.name if item.category else None,
        "is_available": item.is_available,
    }


def serialize_shop(shop: models.Shop) -> dict:
    return {
        "name": shop.name,
        "tax_rate": str(shop.tax_rate),
        "delivery_enabled": shop.delivery_enabled,
        "delivery_charge": str(shop.delivery_charge),
    }


# ============ CATEGORIES ============

@router.get("/categories")
def list_categories(session: Session = Depends(get_session)) -> list[dict]:
    categories = session.exec(select(models.Category).order_by(models.Category.name)).all()
    return [
        {"id": c.id, "name": c.name, "description": c.description}
        for c in categories
    ]


@router.post("/categories", status_code=status.HTTP_201_CREATED)
def create_category(
    category_data: models.CategoryCreate,
    current_user: Annotated[models.User, Depends(PermissionChecker(Permissions.CATALOG_MANAGE))],
    session: Session = Depends(get_session),
) -> dict:
    name = category_data.name.strip()
    if not name:
        raise ValidationError("Name is required")

    existing = session.exec(select(models.Category).where(models.Category.name == name)).first()
    if existing:
        raise Conflict("Category already exists")

    category = models.Category(name=name, description=category_data.description)
    session.add(category)
    session.commit()
    session.refresh(category)
    return {"id": category.id, "name": category.name, "description": category.description}


# ============ FOOD ITEMS ============

@router.get("/food-items")
def list_food_items(
    category_id: int | None = None,
    session: Session = Depends(get_session),
) -> list[dict]:
    statement = select(models.FoodItem)
    if category_id is not None:
        statement = statement.where(models.FoodItem.category_id == category_id)
    items = session.exec(statement.order_by(models.FoodItem.name)).all()
    return [serialize_food_item(item) for item in items]


@router.get("/food-items/{food_item_id}")
def get_food_item(food_item_id: int, session: Session = Depends(get_session)) -> dict:
    item = session.get(models.FoodItem, food_item_id)
    if not item:
        raise HTTPException(status_code=404, detail="Food item not found")
    return serialize_food_item(item)


@router.post("/food-items", status_code=status.HTTP_201_CREATED)
def create_food_item(
    item_data: models.FoodItemCreate,
    current_user: Annotated[models.User, Depends(PermissionChecker(Permissions.CATALOG_MANAGE))],
    session: Session = Depends(get_session),
) -> dict:
    if not item_data.name.strip() or item_data.price < 0:
        raise ValidationError("Missing required fields")

    category = session.get(models.Category, item_data.category_id)
    if not category:
        raise HTTPException(status_code=404, detail="Category not found")

    item = models.FoodItem(**item_data.model_dump())
    session.add(item)
    session.commit()
    session.refresh(item)
    return serialize_food_item(item)


# ============ SHOP SETTINGS ============

@router.get("/shop/settings")
def get_shop_settings(session: Session = Depends(get_session)) -> dict:
    return serialize_shop(get_shop(session))


@router.patch("/shop/settings")
def update_shop_settings(
    settings_update: models.ShopSettingsUpdate,
    current_user: Annotated[models.User, Depends(PermissionChecker(Permissions.SETTINGS_MANAGE))],
    session: Session = Depends(get_session),
) -> dict:
    """Update tax rate and delivery settings used for new orders."""
    if settings_update.tax_rate is not None and not (0 <= settings_update.tax_rate < 1):
        raise ValidationError("Tax rate must be a fraction between 0 and 1")
    if settings_update.delivery_charge is not None and settings_update.delivery_charge < 0:
        raise ValidationError("Delivery charge cannot be negative")

    shop = get_shop(session)
    update_data = settings_update.model_dump(exclude_unset=True, exclude_none=True)
    for key, value in update_data.items():
        setattr(shop, key, value)
    shop.updated_at = datetime.now(timezone.utc)

    session.add(shop)
    session.commit()
    session.refresh(shop)
    return serialize_shop(shop)
