from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, validator

MONEY_STEP = Decimal("0.001")


def to_money(value) -> Decimal:
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise ValueError(f"Not a monetary amount: {value!r}")
    return amount.quantize(MONEY_STEP, rounding=ROUND_HALF_UP)


def format_price(value) -> str:
    return f"{to_money(value):.3f} DT"


class Role(str, Enum):
    ADMIN = "ADMIN"
    SERVER = "SERVEUR"


class OrderStatus(str, Enum):
    OPEN = "EN_COURS"
    SERVED = "SERVIE"
    CANCELLED = "ANNULEE"
    PAID = "PAYEE"

    @property
    def label(self) -> str:
        return ORDER_STATUS_LABELS[self]

    @property
    def is_terminal(self) -> bool:
        return not ORDER_TRANSITIONS[self]

    def can_transition_to(self, target: "OrderStatus") -> bool:
        return target in ORDER_TRANSITIONS[self]


ORDER_STATUS_LABELS = {
    OrderStatus.OPEN: "En cours",
    OrderStatus.SERVED: "Servie",
    OrderStatus.CANCELLED: "Annulée",
    OrderStatus.PAID: "Payée",
}

ORDER_TRANSITIONS = {
    OrderStatus.OPEN: frozenset({OrderStatus.SERVED, OrderStatus.CANCELLED}),
    OrderStatus.SERVED: frozenset({OrderStatus.PAID}),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.PAID: frozenset(),
}


class ReservationStatus(str, Enum):
    ACTIVE = "ACTIVE"
    CANCELLED = "ANNULEE"
    HONORED = "HONOREE"

    @property
    def label(self) -> str:
        return RESERVATION_STATUS_LABELS[self]

    @property
    def is_terminal(self) -> bool:
        return not RESERVATION_TRANSITIONS[self]

    def can_transition_to(self, target: "ReservationStatus") -> bool:
        return target in RESERVATION_TRANSITIONS[self]


RESERVATION_STATUS_LABELS = {
    ReservationStatus.ACTIVE: "Active",
    ReservationStatus.CANCELLED: "Annulée",
    ReservationStatus.HONORED: "Honorée",
}

RESERVATION_TRANSITIONS = {
    ReservationStatus.ACTIVE: frozenset({ReservationStatus.HONORED, ReservationStatus.CANCELLED}),
    ReservationStatus.CANCELLED: frozenset(),
    ReservationStatus.HONORED: frozenset(),
}


class TableStatus(str, Enum):
    FREE = "libre"
    OCCUPIED = "occupee"
    RESERVED = "reservee"


# ========== Records ==========

class Product(BaseModel):
    id: str
    name: str
    price: Decimal
    active: bool
    created_at: datetime
    updated_at: Optional[datetime] = None


class OrderItem(BaseModel):
    product_id: str
    name: str
    price: Decimal
    quantity: int

    @validator("price", pre=True)
    def validate_price(cls, v) -> Decimal:
        return to_money(v)

    @validator("quantity")
    def validate_quantity(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("Quantity must be greater than 0")
        return v

    @property
    def line_total(self) -> Decimal:
        return to_money(self.price * self.quantity)

    def to_document(self) -> dict:
        return {
            "product_id": self.product_id,
            "name": self.name,
            "price": str(self.price),
            "quantity": self.quantity,
        }


def compute_total(items: List[OrderItem]) -> Decimal:
    return to_money(sum((item.line_total for item in items), Decimal("0")))


class Order(BaseModel):
    id: str
    table_number: int
    server_id: str
    server_name: Optional[str] = None
    items: List[OrderItem]
    total: Decimal
    status: OrderStatus
    created_at: datetime
    updated_at: Optional[datetime] = None

    @property
    def computed_total(self) -> Decimal:
        return compute_total(self.items)


class Reservation(BaseModel):
    id: str
    table_number: int
    reserved_at: datetime
    client_name: Optional[str] = None
    party_size: Optional[int] = None
    note: Optional[str] = None
    status: ReservationStatus
    created_by: str
    created_at: datetime


class Table(BaseModel):
    number: int
    status: TableStatus
    order: Optional[Order] = None
    reservation: Optional[Reservation] = None


class UserProfile(BaseModel):
    id: str
    username: str
    role: Optional[Role] = None
    created_at: datetime


# ========== Request payloads ==========

def _check_product_name(v: str) -> str:
    if not v or len(v.strip()) == 0:
        raise ValueError("Product name cannot be empty")
    if len(v) > 100:
        raise ValueError("Product name cannot exceed 100 characters")
    return v.strip()


def _check_product_price(v: Decimal) -> Decimal:
    if v <= 0:
        raise ValueError("Price must be greater than 0")
    if v > 1000000:
        raise ValueError("Price is too high")
    return to_money(v)


class ProductCreate(BaseModel):
    name: str
    price: Decimal
    active: bool = True

    @validator("name")
    def validate_name(cls, v: str) -> str:
        return _check_product_name(v)

    @validator("price")
    def validate_price(cls, v: Decimal) -> Decimal:
        return _check_product_price(v)


class ProductUpdate(BaseModel):
    name: Optional[str] = None
    price: Optional[Decimal] = None
    active: Optional[bool] = None

    @validator("name")
    def validate_name(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        return _check_product_name(v)

    @validator("price")
    def validate_price(cls, v: Optional[Decimal]) -> Optional[Decimal]:
        if v is None:
            return v
        return _check_product_price(v)


class OrderLineIn(BaseModel):
    product_id: str
    quantity: int = 1

    @validator("quantity")
    def validate_quantity(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("Quantity must be greater than 0")
        if v > 100:
            raise ValueError("Quantity cannot exceed 100")
        return v


class OrderCreate(BaseModel):
    items: List[OrderLineIn]


class OrderStatusUpdate(BaseModel):
    status: OrderStatus


class ReservationCreate(BaseModel):
    table_number: int
    reserved_at: datetime
    client_name: Optional[str] = None
    party_size: Optional[int] = None
    note: Optional[str] = None

    @validator("table_number")
    def validate_table_number(cls, v: int) -> int:
        if v < 1:
            raise ValueError("Table number must be at least 1")
        return v

    @validator("party_size")
    def validate_party_size(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v <= 0:
            raise ValueError("Party size must be greater than 0")
        return v

    @validator("client_name", "note")
    def blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        return v.strip()


class ReservationStatusUpdate(BaseModel):
    status: ReservationStatus


class RoleUpdate(BaseModel):
    role: Role


class UserLogin(BaseModel):
    email: str
    password: str


class UserSignUp(BaseModel):
    email: str
    password: str
    username: str

    @validator("username")
    def validate_username(cls, v: str) -> str:
        if not v or len(v.strip()) == 0:
            raise ValueError("Username cannot be empty")
        if len(v) < 3:
            raise ValueError("Username must be at least 3 characters")
        if len(v) > 50:
            raise ValueError("Username cannot exceed 50 characters")
        return v.strip()

    @validator("password")
    def validate_password(cls, v: str) -> str:
        if not v:
            raise ValueError("Password cannot be empty")
        if len(v) < 6:
            raise ValueError("Password must be at least 6 characters")
        return v
