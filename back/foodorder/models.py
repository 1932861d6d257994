from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum

from sqlalchemy import Numeric
from sqlmodel import Field, Relationship, SQLModel


class UserRole(str, Enum):
    USER = "USER"
    ADMIN = "ADMIN"


class FulfillmentStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class PaymentStatus(str, Enum):
    UNPAID = "UNPAID"
    PAID = "PAID"


class PaymentMethod(str, Enum):
    CASH = "CASH"
    ESEWA = "ESEWA"
    KHALTI = "KHALTI"


class PaymentAttemptStatus(str, Enum):
    initiated = "initiated"
    verified = "verified"
    failed = "failed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    email: str = Field(unique=True, index=True)
    hashed_password: str
    name: str | None = None
    role: UserRole = Field(default=UserRole.USER)
    token_version: int = Field(default=0)  # Bump to revoke issued tokens
    created_at: datetime = Field(default_factory=_utcnow)


# ============ CATALOG (external collaborator) ============

class Category(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    name: str = Field(unique=True, index=True)
    description: str | None = None

    food_items: list["FoodItem"] = Relationship(back_populates="category")


class FoodItem(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    name: str = Field(index=True)
    description: str | None = None
    price: Decimal = Field(sa_type=Numeric(10, 2))
    image: str | None = None
    category_id: int | None = Field(default=None, foreign_key="category.id", index=True)
    is_available: bool = Field(default=True)

    category: Category | None = Relationship(back_populates="food_items")


class Shop(SQLModel, table=True):
    """Single-row shop configuration that pricing reads from."""
    id: int | None = Field(default=None, primary_key=True)
    name: str = Field(default="Food Order")
    tax_rate: Decimal = Field(default=Decimal("0.08"), sa_type=Numeric(6, 4))
    delivery_enabled: bool = Field(default=True)
    delivery_charge: Decimal = Field(default=Decimal("3.99"), sa_type=Numeric(10, 2))
    updated_at: datetime = Field(default_factory=_utcnow)


# ============ ORDERS ============

class Order(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)

    subtotal: Decimal = Field(sa_type=Numeric(10, 2))
    delivery_fee: Decimal = Field(default=Decimal("0"), sa_type=Numeric(10, 2))
    tax: Decimal = Field(default=Decimal("0"), sa_type=Numeric(10, 2))
    total: Decimal = Field(sa_type=Numeric(10, 2))

    # Two independent axes, never merged into one column
    fulfillment_status: FulfillmentStatus = Field(default=FulfillmentStatus.PENDING, index=True)
    payment_status: PaymentStatus = Field(default=PaymentStatus.UNPAID, index=True)
    payment_method: PaymentMethod = Field(default=PaymentMethod.CASH)

    # Buyer contact
    buyer_first_name: str
    buyer_last_name: str
    buyer_email: str
    buyer_phone: str
    # Delivery address
    address_street: str
    address_apartment: str | None = None
    address_city: str
    address_state: str | None = None
    address_zip: str | None = None
    delivery_instructions: str | None = None

    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    # Payment tracking
    paid_at: datetime | None = None
    paid_by_user_id: int | None = None  # Operator who confirmed a cash payment

    # Cancellation tracking
    cancelled_at: datetime | None = None
    cancelled_by: str | None = None  # 'customer' or 'staff'

    items: list["OrderLine"] = Relationship(back_populates="order")
    payment_attempts: list["PaymentAttempt"] = Relationship(back_populates="order")


class OrderLine(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    order_id: int = Field(foreign_key="order.id", index=True)
    food_item_id: int = Field(foreign_key="fooditem.id")
    name: str  # Snapshot of item name at order time
    unit_price: Decimal = Field(sa_type=Numeric(10, 2))  # Snapshot of price at order time
    quantity: int
    line_total: Decimal = Field(sa_type=Numeric(10, 2))

    order: Order = Relationship(back_populates="items")


class PaymentAttempt(SQLModel, table=True):
    """One initiation of an online payment and its verification outcome."""
    id: int | None = Field(default=None, primary_key=True)
    order_id: int = Field(foreign_key="order.id", index=True)
    gateway: PaymentMethod
    # eSewa transaction_uuid or Khalti pidx; unique so a replayed callback cannot apply twice
    transaction_ref: str = Field(unique=True, index=True)
    amount: Decimal = Field(sa_type=Numeric(10, 2))
    signature: str | None = None
    status: PaymentAttemptStatus = Field(default=PaymentAttemptStatus.initiated, index=True)
    gateway_reference: str | None = None  # Provider-side transaction code
    created_at: datetime = Field(default_factory=_utcnow)
    verified_at: datetime | None = None
    raw_response: str | None = None  # Provider payload as JSON, kept for reconciliation

    order: Order = Relationship(back_populates="payment_attempts")


# Request/Response Models
class UserRegister(SQLModel):
    email: str
    password: str
    name: str | None = None


class UserRead(SQLModel):
    id: int
    email: str
    name: str | None = None
    role: UserRole


class UserReadWithPermissions(UserRead):
    permissions: list[str] = []


class CategoryCreate(SQLModel):
    name: str
    description: str | None = None


class FoodItemCreate(SQLModel):
    name: str
    description: str | None = None
    price: Decimal
    image: str | None = None
    category_id: int
    is_available: bool = True


class ShopSettingsUpdate(SQLModel):
    name: str | None = None
    tax_rate: Decimal | None = None
    delivery_enabled: bool | None = None
    delivery_charge: Decimal | None = None


class BuyerInfo(SQLModel):
    first_name: str = ""
    last_name: str = ""
    email: str = ""
    phone: str = ""
    street: str = ""
    apartment: str | None = None
    city: str = ""
    state: str | None = None
    zip_code: str | None = None
    instructions: str | None = None


class OrderItemCreate(SQLModel):
    food_item_id: int
    quantity: int = 1
    # Accepted for client convenience but never used for pricing
    unit_price: Decimal | None = None
    name: str | None = None


class OrderCreate(SQLModel):
    items: list[OrderItemCreate] = Field(default_factory=list)
    buyer: BuyerInfo = Field(default_factory=BuyerInfo)
    payment_method: PaymentMethod = PaymentMethod.CASH


class OrderStatusUpdate(SQLModel):
    fulfillment_status: FulfillmentStatus | None = None
    payment_status: PaymentStatus | None = None


class BulkStatusUpdate(SQLModel):
    order_ids: list[int]
    selector: str  # "status:PROCESSING" or "payment:PAID"


class GatewayInitiateRequest(SQLModel):
    order_id: int
