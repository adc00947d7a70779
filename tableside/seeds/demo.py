"""
Seed staff accounts, tables and a small menu for local development.

Existing rows (matched by email, table number or item name) are left alone.

Usage:
    python -m tableside.seeds.demo
"""
import os

from sqlmodel import Session, select

from ..db import create_db_and_tables, engine
from ..models import MenuItem, Role, Table, User
from ..security import get_password_hash

DEMO_PASSWORD = os.getenv("DEMO_STAFF_PASSWORD", "tableside123")

STAFF = [
    ("admin@tableside.local", "Admin", Role.admin),
    ("kitchen@tableside.local", "Kitchen", Role.kitchen),
    ("runner@tableside.local", "Runner", Role.runner),
]

TABLES = [("1", 2), ("2", 4), ("3", 4), ("4", 6)]

MENU = [
    {"name": "Paneer Tikka", "category": "starter", "price_cents": 24000, "description": "Char-grilled cottage cheese"},
    {"name": "Veg Spring Rolls", "category": "starter", "price_cents": 18000},
    {"name": "Butter Chicken", "category": "main", "price_cents": 42000, "description": "Tomato and butter gravy"},
    {"name": "Dal Makhani", "category": "main", "price_cents": 32000},
    {"name": "Garlic Naan", "category": "side", "price_cents": 7000},
    {"name": "Gulab Jamun", "category": "dessert", "price_cents": 12000},
    {"name": "Masala Chai", "category": "drink", "price_cents": 6000},
]


def seed_staff(session: Session) -> None:
    for email, full_name, role in STAFF:
        if session.exec(select(User).where(User.email == email)).first():
            continue
        session.add(User(
            email=email,
            full_name=full_name,
            role=role,
            hashed_password=get_password_hash(DEMO_PASSWORD),
        ))
        print(f"✅ Created {role.value} user {email}")
    session.commit()


def seed_tables(session: Session) -> None:
    for number, capacity in TABLES:
        if session.exec(select(Table).where(Table.table_number == number)).first():
            continue
        session.add(Table(table_number=number, qr_code=f"table-{number}", capacity=capacity))
        print(f"✅ Created table {number}")
    session.commit()


def seed_menu(session: Session) -> None:
    for data in MENU:
        if session.exec(select(MenuItem).where(MenuItem.name == data["name"])).first():
            continue
        session.add(MenuItem(**data))
        print(f"✅ Created menu item {data['name']}")
    session.commit()


def seed_demo() -> None:
    create_db_and_tables()
    with Session(engine) as session:
        seed_staff(session)
        seed_tables(session)
        seed_menu(session)
    print("\n✨ Demo data ready!")


if __name__ == "__main__":
    seed_demo()
