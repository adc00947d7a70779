from datetime import datetime, timezone
from enum import Enum

from sqlmodel import Field, Relationship, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """SQLite hands datetimes back naive; they were stored as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Role(str, Enum):
    admin = "admin"
    kitchen = "kitchen"
    runner = "runner"
    customer = "customer"


STAFF_ROLES = frozenset({Role.admin, Role.kitchen, Role.runner})


class OrderStatus(str, Enum):
    placed = "placed"
    preparing = "preparing"
    ready = "ready"
    delivered = "delivered"
    cancelled = "cancelled"


class PaymentStatus(str, Enum):
    """Payment state as seen on the order."""
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"
    refunded = "refunded"


class PaymentRecordStatus(str, Enum):
    """State of a single payment attempt."""
    created = "created"
    authorized = "authorized"
    captured = "captured"
    failed = "failed"
    refunded = "refunded"


class User(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    email: str = Field(unique=True, index=True)
    hashed_password: str
    full_name: str | None = None
    role: Role = Field(default=Role.kitchen)
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=utcnow)


class MenuItem(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    name: str = Field(max_length=100)
    description: str | None = Field(default=None, max_length=500)
    price_cents: int = Field(ge=0)
    category: str | None = Field(default=None, index=True)  # starter, main, dessert, drink, side
    image_url: str | None = None
    is_available: bool = Field(default=True, index=True)
    preparation_time: int = Field(default=15)  # minutes


class Table(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    table_number: str = Field(unique=True, index=True)
    qr_code: str | None = Field(default=None, unique=True)  # defaults to "table-{table_number}"
    capacity: int = Field(default=4)
    # Written only by the order engine
    is_occupied: bool = Field(default=False)
    created_at: datetime = Field(default_factory=utcnow)


class Order(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    table_id: int = Field(foreign_key="table.id", index=True)
    customer_session_id: str | None = Field(default=None, index=True)  # Session cookie of the ordering browser
    status: OrderStatus = Field(default=OrderStatus.placed, index=True)
    payment_status: PaymentStatus = Field(default=PaymentStatus.pending, index=True)
    total_cents: int = Field(default=0, ge=0)
    notes: str | None = None  # Preparation note for the kitchen
    created_at: datetime = Field(default_factory=utcnow, index=True)

    prepared_at: datetime | None = None
    ready_at: datetime | None = None
    delivered_at: datetime | None = None
    cancelled_at: datetime | None = None
    cancelled_by: Role | None = None

    # Bumped on every status write; status updates are conditional on it
    version: int = Field(default=0)

    items: list["OrderItem"] = Relationship(
        back_populates="order",
        sa_relationship_kwargs={"order_by": "OrderItem.id"},
    )


class OrderItem(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    order_id: int = Field(foreign_key="order.id", index=True)
    menu_item_id: int = Field(foreign_key="menuitem.id")
    menu_item_name: str  # Snapshot of name at order time
    quantity: int = Field(ge=1)
    price_cents: int  # Snapshot of price at order time
    special_instructions: str | None = Field(default=None, max_length=200)

    order: Order = Relationship(back_populates="items")


class Payment(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    order_id: int = Field(foreign_key="order.id", index=True)
    amount_cents: int = Field(ge=0)  # Snapshot of the order total
    currency: str
    provider: str
    provider_payment_id: str | None = Field(default=None, unique=True, index=True)
    status: PaymentRecordStatus = Field(default=PaymentRecordStatus.created, index=True)
    # Set when the provider call failed; the attempt stays created but no longer blocks a retry
    provider_error: str | None = None
    customer_email: str | None = None
    receipt_url: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# Request/Response Models
class OrderLineCreate(SQLModel):
    menu_item_id: int
    quantity: int = 1
    special_instructions: str | None = None


class OrderCreate(SQLModel):
    table_id: int
    items: list[OrderLineCreate]
    notes: str | None = None


class OrderStatusUpdate(SQLModel):
    status: OrderStatus


class CustomerInfo(SQLModel):
    user_id: str | None = None
    email: str | None = None
    phone: str | None = None


class PaymentCreate(SQLModel):
    order_id: int
    customer_info: CustomerInfo | None = None


class UserRead(SQLModel):
    id: int
    email: str
    full_name: str | None = None
    role: Role
    is_active: bool
