from pydantic import BaseModel, Field, field_validator
from pydantic.alias_generators import to_camel
from typing import Optional, List
from decimal import Decimal
from datetime import datetime
from shared.security_config import (
    sanitize_input, sanitize_phone, normalize_phone,
    is_valid_email, is_valid_phone, is_valid_amount
)
from app.models import OrderStatus

MAX_CART_ITEMS = 50
MAX_QUANTITY = 99
MAX_ITEM_MODIFIERS = 20
MAX_MODIFIER_PRICE = Decimal("100")

# Field lengths for sanitized free text
NAME_MAX = 100
INSTRUCTIONS_MAX = 500
PRODUCT_NAME_MAX = 200
SIZE_NAME_MAX = 50
MODIFIER_NAME_MAX = 100
PRODUCT_ID_MAX = 100


class CamelModel(BaseModel):
    class Config:
        alias_generator = to_camel
        populate_by_name = True


def _quantity(v) -> int:
    if isinstance(v, float) and v.is_integer():
        v = int(v)
    if isinstance(v, bool) or not isinstance(v, int) or not 1 <= v <= MAX_QUANTITY:
        raise ValueError("Invalid item quantity")
    return v


def _amount(v, message: str) -> Decimal:
    if not is_valid_amount(v):
        raise ValueError(message)
    return Decimal(str(v))


# --- Shared ---

class CustomerIn(CamelModel):
    name: str = Field(None, validate_default=True)
    email: str = Field(None, validate_default=True)
    phone: Optional[str] = None

    @field_validator("name", mode="before")
    def validate_name(cls, v):
        if not isinstance(v, str) or len(v.strip()) < 2:
            raise ValueError("Name must be at least 2 characters")
        if len(v) > NAME_MAX:
            raise ValueError("Name is too long")
        name = sanitize_input(v, NAME_MAX)
        if len(name) < 2:
            raise ValueError("Name must be at least 2 characters")
        return name

    @field_validator("email", mode="before")
    def validate_email(cls, v):
        if not isinstance(v, str) or not is_valid_email(v.strip()):
            raise ValueError("Invalid email address")
        return v.strip().lower()

    @field_validator("phone", mode="before")
    def validate_phone(cls, v):
        if v is None:
            return None
        cleaned = sanitize_phone(v)
        if not cleaned:
            return None
        if not is_valid_phone(cleaned):
            raise ValueError("Invalid phone number")
        return normalize_phone(cleaned)


def _customer(v):
    if not isinstance(v, (dict, CustomerIn)):
        raise ValueError("Invalid customer data")
    return v


def _instructions(v):
    if v is None:
        return None
    return sanitize_input(v, INSTRUCTIONS_MAX) or None


class ModifierIn(CamelModel):
    name: str
    price: Decimal = Decimal(0)

    @field_validator("name")
    def sanitize_name(cls, v):
        return sanitize_input(v, MODIFIER_NAME_MAX)

    @field_validator("price", mode="before")
    def clamp_price(cls, v):
        # Advisory only; recomputed from the catalog where it matters
        if not is_valid_amount(v):
            return Decimal(0)
        return min(Decimal(str(v)), MAX_MODIFIER_PRICE)


# --- Checkout ---

class ProductRef(CamelModel):
    id: str
    name: Optional[str] = None

    @field_validator("id")
    def sanitize_id(cls, v):
        return sanitize_input(v, PRODUCT_ID_MAX)

    @field_validator("name")
    def sanitize_name(cls, v):
        return sanitize_input(v, PRODUCT_NAME_MAX) if v is not None else None


class SizeIn(CamelModel):
    name: str = ""
    price: Optional[Decimal] = None

    @field_validator("name")
    def sanitize_name(cls, v):
        return sanitize_input(v, SIZE_NAME_MAX)


class CartItemIn(CamelModel):
    """One cart line as the browser sends it. Every price on it is advisory."""
    product: ProductRef = Field(None, validate_default=True)
    size: Optional[SizeIn] = None
    modifiers: List[ModifierIn] = []
    quantity: int = Field(None, validate_default=True)
    unit_price: Decimal = Field(None, validate_default=True)
    total_price: Optional[Decimal] = None

    @field_validator("product", mode="before")
    def require_product(cls, v):
        if isinstance(v, ProductRef):
            return v
        if not isinstance(v, dict) or not isinstance(v.get("id"), str) or not v["id"].strip():
            raise ValueError("Item is missing a product reference")
        return v

    @field_validator("quantity", mode="before")
    def validate_quantity(cls, v):
        return _quantity(v)

    @field_validator("unit_price", mode="before")
    def validate_unit_price(cls, v):
        return _amount(v, "Invalid item price")

    @field_validator("total_price", mode="before")
    def validate_total_price(cls, v):
        if v is None:
            return None
        return _amount(v, "Invalid item price")


class CheckoutRequest(CamelModel):
    items: List[CartItemIn] = Field(None, validate_default=True)
    customer: CustomerIn = Field(None, validate_default=True)
    instructions: Optional[str] = None

    @field_validator("items", mode="before")
    def validate_items(cls, v):
        if not isinstance(v, list) or len(v) == 0:
            raise ValueError("Cart is empty")
        if len(v) > MAX_CART_ITEMS:
            raise ValueError("Too many items in cart")
        return v

    @field_validator("customer", mode="before")
    def validate_customer(cls, v):
        return _customer(v)

    @field_validator("instructions", mode="before")
    def sanitize_instructions(cls, v):
        return _instructions(v)


class CheckoutResponse(CamelModel):
    client_secret: str
    payment_intent_id: str
    amount: float


# --- Order creation (client path) ---

class OrderItemIn(CamelModel):
    product_id: Optional[str] = None
    product_name: str = "Unknown"
    product_type: Optional[str] = None
    size_name: Optional[str] = None
    quantity: int = Field(None, validate_default=True)
    unit_price: Decimal = Field(None, validate_default=True)
    modifiers: List[ModifierIn] = []

    @field_validator("product_id", "size_name", "product_type", mode="before")
    def sanitize_optional(cls, v, info):
        if v is None:
            return None
        limit = SIZE_NAME_MAX if info.field_name == "size_name" else PRODUCT_ID_MAX
        return sanitize_input(str(v), limit) or None

    @field_validator("product_name", mode="before")
    def sanitize_product_name(cls, v):
        return sanitize_input(str(v), PRODUCT_NAME_MAX) or "Unknown"

    @field_validator("quantity", mode="before")
    def validate_quantity(cls, v):
        return _quantity(v)

    @field_validator("unit_price", mode="before")
    def validate_unit_price(cls, v):
        return _amount(v, "Invalid item price")

    @field_validator("modifiers", mode="before")
    def limit_modifiers(cls, v):
        if v is None:
            return []
        if not isinstance(v, list):
            raise ValueError("Invalid item modifiers")
        return v[:MAX_ITEM_MODIFIERS]


class CreateOrderRequest(CamelModel):
    payment_intent_id: str = Field(None, validate_default=True)
    customer: CustomerIn = Field(None, validate_default=True)
    items: List[OrderItemIn] = Field(None, validate_default=True)
    subtotal: Decimal = Field(None, validate_default=True)
    tax: Decimal = Field(None, validate_default=True)
    total: Decimal = Field(None, validate_default=True)
    instructions: Optional[str] = None

    @field_validator("payment_intent_id", mode="before")
    def validate_payment_intent_id(cls, v):
        if not isinstance(v, str) or not v:
            raise ValueError("Missing payment intent ID")
        if not v.startswith("pi_") or len(v) < 20:
            raise ValueError("Invalid payment intent format")
        return v

    @field_validator("customer", mode="before")
    def validate_customer(cls, v):
        return _customer(v)

    @field_validator("items", mode="before")
    def validate_items(cls, v):
        if not isinstance(v, list) or len(v) == 0:
            raise ValueError("Order must contain items")
        if len(v) > MAX_CART_ITEMS:
            raise ValueError("Too many items in order")
        return v

    @field_validator("subtotal", "tax", "total", mode="before")
    def validate_amounts(cls, v):
        return _amount(v, "Invalid order amounts")

    @field_validator("instructions", mode="before")
    def sanitize_instructions(cls, v):
        return _instructions(v)


class CreateOrderResponse(CamelModel):
    success: bool = True
    order_number: str
    order_id: str
    duplicate: bool = False


# --- Order tracking / management ---

class OrderItemResponse(BaseModel):
    product_name: str
    product_type: Optional[str] = None
    size_name: Optional[str] = None
    quantity: int
    unit_price: Decimal
    line_total: Decimal
    modifiers: List[ModifierIn] = []


class OrderResponse(BaseModel):
    id: str
    order_number: str
    customer_name: str
    status: OrderStatus
    payment_status: str
    subtotal: Decimal
    tax: Decimal
    total: Decimal
    special_instructions: Optional[str] = None
    items: List[OrderItemResponse] = []
    created_at: datetime
    updated_at: Optional[datetime] = None
    ready_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class OrderStatusUpdate(BaseModel):
    status: OrderStatus
