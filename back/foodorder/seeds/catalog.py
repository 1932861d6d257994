"""
Seed a demo menu, the shop configuration and an operator account.

Safe to run repeatedly: existing categories, items and users are left alone.

Usage:
    python -m foodorder.seeds.catalog
    python -m foodorder.seeds.catalog --admin-email admin@example.com --admin-password secret
"""

import argparse
from decimal import Decimal

from sqlmodel import Session, select

from foodorder.db import create_db_and_tables, engine
from foodorder.models import Category, FoodItem, Shop, User, UserRole
from foodorder.security import hash_password
from foodorder.settings import settings


DEMO_MENU = {
    "Burgers": [
        ("Classic Burger", "Beef patty, lettuce, tomato, house sauce", "9.99"),
        ("Chicken Burger", "Crispy chicken, slaw, pickles", "8.49"),
    ],
    "Momo": [
        ("Chicken Momo", "Steamed dumplings with tomato achar", "4.50"),
        ("Veg Momo", "Cabbage and paneer dumplings", "3.99"),
    ],
    "Drinks": [
        ("Masala Tea", "Spiced milk tea", "1.25"),
        ("Lemon Soda", "Fresh lime and soda", "1.75"),
    ],
}


def seed_catalog(admin_email: str, admin_password: str) -> dict[str, int]:
    create_db_and_tables()
    with Session(engine) as session:
        categories_created = 0
        items_created = 0

        for category_name, items in DEMO_MENU.items():
            category = session.exec(
                select(Category).where(Category.name == category_name)
            ).first()
            if not category:
                category = Category(name=category_name)
                session.add(category)
                session.commit()
                session.refresh(category)
                categories_created += 1
                print(f"Created category: {category_name}")

            for name, description, price in items:
                existing = session.exec(
                    select(FoodItem).where(FoodItem.name == name, FoodItem.category_id == category.id)
                ).first()
                if existing:
                    continue
                session.add(FoodItem(
                    name=name,
                    description=description,
                    price=Decimal(price),
                    category_id=category.id,
                ))
                items_created += 1
                print(f"  Created item: {name} ({price})")
            session.commit()

        if not session.exec(select(Shop)).first():
            session.add(Shop(
                tax_rate=settings.default_tax_rate,
                delivery_enabled=settings.default_delivery_enabled,
                delivery_charge=settings.default_delivery_charge,
            ))
            print("Created shop settings")

        admin_created = 0
        if not session.exec(select(User).where(User.email == admin_email)).first():
            session.add(User(
                email=admin_email,
                hashed_password=hash_password(admin_password),
                name="Operator",
                role=UserRole.ADMIN,
            ))
            admin_created = 1
            print(f"Created operator account: {admin_email}")
        session.commit()

        return {
            "categories_created": categories_created,
            "items_created": items_created,
            "admin_created": admin_created,
        }


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Seed demo menu and operator account")
    parser.add_argument("--admin-email", default="admin@example.com")
    parser.add_argument("--admin-password", default="admin1234")
    args = parser.parse_args()

    print("Seeding demo catalog...")
    result = seed_catalog(args.admin_email, args.admin_password)
    print(f"\nComplete!")
    print(f"  Categories created: {result['categories_created']}")
    print(f"  Items created: {result['items_created']}")
    print(f"  Operator created: {result['admin_created']}")
