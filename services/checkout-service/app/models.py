from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, List, Any
from pydantic import BaseModel, Field, field_validator

# --- Catalog (read-only here, owned by the admin surface) ---

# Prices are stored as floats; go through str so 4.5 stays Decimal("4.5")
def money(v):
    if isinstance(v, float):
        return Decimal(str(v))
    return v

class ProductType(str, Enum):
    DRINK = "drink"
    FOOD = "food"
    COMIC = "comic"
    MERCHANDISE = "merchandise"

class ProductSizeDB(BaseModel):
    name: str
    price: Decimal
    display_order: int = 0
    is_default: bool = False

    price_from_float = field_validator("price", mode="before")(money)

class ModifierDB(BaseModel):
    name: str
    price: Decimal = Decimal(0)
    is_available: bool = True
    display_order: int = 0

    price_from_float = field_validator("price", mode="before")(money)

class ModifierGroupDB(BaseModel):
    name: str
    modifiers: List[ModifierDB] = []

class ProductDB(BaseModel):
    id: str = Field(..., alias="_id")
    name: str
    product_type: str = ProductType.DRINK.value
    base_price: Decimal
    is_active: bool = True
    in_stock: bool = True
    sizes: List[ProductSizeDB] = []
    modifier_groups: List[ModifierGroupDB] = []

    class Config:
        populate_by_name = True

    @field_validator("id", mode="before")
    def stringify_id(cls, v):
        return str(v)

    base_price_from_float = field_validator("base_price", mode="before")(money)

# --- Orders ---

class OrderStatus(str, Enum):
    PENDING = "pending"
    PREPARING = "preparing"
    READY = "ready"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

ORDER_STATUS_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.PREPARING, OrderStatus.CANCELLED},
    OrderStatus.PREPARING: {OrderStatus.READY, OrderStatus.CANCELLED},
    OrderStatus.READY: {OrderStatus.COMPLETED, OrderStatus.CANCELLED},
    OrderStatus.COMPLETED: set(),
    OrderStatus.CANCELLED: set(),
}

def can_transition(current: OrderStatus, requested: OrderStatus) -> bool:
    return requested in ORDER_STATUS_TRANSITIONS[current]

class OrderSource(str, Enum):
    CLIENT = "client"
    WEBHOOK = "webhook"

class ModifierSnapshot(BaseModel):
    name: str
    price: Decimal = Decimal(0)

class OrderDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    order_number: str
    customer_name: str
    customer_email: str
    customer_phone: Optional[str] = None
    subtotal: Decimal
    tax: Decimal
    total: Decimal
    platform_fee: Optional[Decimal] = None
    status: OrderStatus = OrderStatus.PENDING
    payment_status: str = "paid"
    payment_intent_id: str
    special_instructions: Optional[str] = None
    source: OrderSource
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: Optional[datetime] = None
    ready_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    class Config:
        populate_by_name = True

class OrderItemDB(BaseModel):
    order_id: str
    product_id: Optional[str] = None
    product_name: str
    product_type: Optional[str] = None
    size_name: Optional[str] = None
    quantity: int
    unit_price: Decimal
    line_total: Decimal
    modifiers: List[ModifierSnapshot] = []

# Mongo cannot encode Decimal, store money as float
def to_document(model: BaseModel) -> dict:
    doc = model.model_dump(by_alias=True, exclude_none=True, mode="python")
    return _decimals_to_float(doc)

def _decimals_to_float(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _decimals_to_float(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_decimals_to_float(v) for v in value]
    return value
