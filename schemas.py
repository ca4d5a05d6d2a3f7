from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Annotated, Any, List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, StringConstraints, field_validator

CENT = Decimal("0.01")
DESCRIPTION_MAX_LENGTH = 500

NonEmptyStr = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]


def to_money(value) -> Decimal:
    """Exact decimal for a stored price, rounded half-up to cents."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class Role(str, Enum):
    USER = "user"
    ADMIN = "admin"


# Collection: products
class Product(BaseModel):
    id: str = Field(..., description="Public product id (uuid4), not the storage key")
    name: str
    description: str = ""
    price: float = Field(..., ge=0, description="Price in dollars")
    stock: int = Field(..., ge=0)
    category: str
    owner_id: str = Field(..., description="Admin who created the product")
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# Collection: orders
class LineItem(BaseModel):
    """Copy of the product as it was when the order was placed."""
    product_id: str
    name: str
    price: float = Field(..., ge=0)
    quantity: int = Field(..., gt=0)
    item_total: float = Field(..., ge=0)


class Order(BaseModel):
    id: str
    owner_id: str
    description: str
    total: float = Field(..., ge=0)
    status: OrderStatus = OrderStatus.PENDING
    items: List[LineItem]
    created_at: datetime


# Collection: users
class User(BaseModel):
    id: str
    username: str
    email: EmailStr
    password_hash: str
    role: Role = Role.USER
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    created_at: Optional[datetime] = None


# ---------- Requests ----------

class OrderLineIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    product_id: NonEmptyStr = Field(..., alias="productId")
    quantity: int = Field(..., gt=0, strict=True)


class OrderCreate(BaseModel):
    # unknown keys such as a client "price" are dropped, never read
    model_config = ConfigDict(extra="ignore")

    description: Optional[str] = Field(None, max_length=DESCRIPTION_MAX_LENGTH)
    products: List[OrderLineIn] = Field(..., min_length=1)


class ProductIn(BaseModel):
    name: NonEmptyStr
    description: NonEmptyStr
    price: float = Field(..., gt=0)
    stock: int = Field(..., ge=0, strict=True)
    category: NonEmptyStr

    @field_validator("price")
    @classmethod
    def round_price(cls, v: float) -> float:
        return float(to_money(v))


class ProductUpdate(BaseModel):
    name: Optional[NonEmptyStr] = None
    description: Optional[NonEmptyStr] = None
    price: Optional[float] = Field(None, gt=0)
    stock: Optional[int] = Field(None, ge=0, strict=True)
    category: Optional[NonEmptyStr] = None

    @field_validator("price")
    @classmethod
    def round_price(cls, v: Optional[float]) -> Optional[float]:
        return None if v is None else float(to_money(v))


class RegisterIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    username: str
    email: EmailStr
    password: str
    first_name: Optional[str] = Field(None, alias="firstName")
    last_name: Optional[str] = Field(None, alias="lastName")


class LoginIn(BaseModel):
    email: EmailStr
    password: str


# ---------- Responses ----------

class LineItemOut(BaseModel):
    product_id: str = Field(..., serialization_alias="productId")
    name: str
    quantity: int
    price: float
    item_total: float = Field(..., serialization_alias="itemTotal")


class OrderOut(BaseModel):
    order_id: str
    status: OrderStatus
    total_price: float
    description: str
    products: List[LineItemOut]
    created_at: datetime

    @classmethod
    def from_order(cls, order: Order) -> "OrderOut":
        return cls(
            order_id=order.id,
            status=order.status,
            total_price=order.total,
            description=order.description,
            products=[LineItemOut(**item.model_dump()) for item in order.items],
            created_at=order.created_at,
        )


class UserOut(BaseModel):
    id: str
    username: str
    email: EmailStr
    role: Role
    first_name: Optional[str] = Field(None, serialization_alias="firstName")
    last_name: Optional[str] = Field(None, serialization_alias="lastName")
    created_at: Optional[datetime] = None

    @classmethod
    def from_user(cls, user: User) -> "UserOut":
        return cls(**user.model_dump(exclude={"password_hash"}))


class ApiResponse(BaseModel):
    success: bool
    message: str
    object: Any = None
    errors: Optional[List[str]] = None


class PaginatedResponse(ApiResponse):
    page_number: int = Field(..., serialization_alias="pageNumber")
    page_size: int = Field(..., serialization_alias="pageSize")
    total_size: int = Field(..., serialization_alias="totalSize")
    total_pages: int = Field(..., serialization_alias="totalPages")
