from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

OrderType = Literal["delivery", "pickup"]
OrderStatus = Literal[
    "pending",
    "confirmed",
    "preparing",
    "ready",
    "out_for_delivery",
    "completed",
    "cancelled",
]
PaymentStatus = Literal["pending", "paid", "failed", "refunded"]
PaymentMethod = Literal["cash", "card"]


class Token(BaseModel):
    access_token: str
    token_type: str


class UserCreate(BaseModel):
    email: EmailStr
    password: str = Field(min_length=6, max_length=72)
    full_name: Optional[str] = Field(default=None, max_length=120)


class UserOut(BaseModel):
    id: int
    email: EmailStr
    full_name: Optional[str] = None
    is_admin: bool
    email_verified: bool

    class Config:
        from_attributes = True


# ----- Catalog -----


class OptionIn(BaseModel):
    name: str
    price_modifier: Decimal = Decimal("0")
    is_default: bool = False
    sort_order: int = 0


class OptionGroupIn(BaseModel):
    name: str
    is_required: bool = False
    min_selections: int = Field(default=0, ge=0)
    max_selections: int = Field(default=1, ge=1)
    sort_order: int = 0
    options: List[OptionIn]

    @model_validator(mode="after")
    def check_selection_bounds(self):
        if self.min_selections > self.max_selections:
            raise ValueError("min_selections cannot exceed max_selections")
        if self.is_required and self.min_selections < 1:
            raise ValueError("required groups need min_selections of at least 1")
        return self


class ProductCreate(BaseModel):
    name: str
    description: Optional[str] = None
    price: Decimal = Field(ge=0)
    category: str
    image_url: Optional[str] = None
    available_for_delivery: bool = True
    available_for_pickup: bool = True
    is_popular: bool = False
    option_groups: List[OptionGroupIn] = []


class OptionOut(BaseModel):
    id: int
    name: str
    price_modifier: Decimal
    is_default: bool
    sort_order: int

    class Config:
        from_attributes = True


class OptionGroupOut(BaseModel):
    id: int
    name: str
    is_required: bool
    min_selections: int
    max_selections: int
    sort_order: int
    options: List[OptionOut]

    class Config:
        from_attributes = True


class ProductOut(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    price: Decimal
    category: str
    image_url: Optional[str] = None
    is_available: bool
    available_for_delivery: bool
    available_for_pickup: bool
    is_popular: bool
    option_groups: List[OptionGroupOut] = []

    class Config:
        from_attributes = True


# ----- Cart -----


class SelectedOptionIn(BaseModel):
    group_id: int
    option_id: int


class SelectedOption(BaseModel):
    """An option choice frozen with the name and price it had when chosen."""

    group_id: int
    group_name: str
    option_id: int
    name: str
    price_modifier: Decimal


class CartItemCreate(BaseModel):
    product_id: int
    quantity: int = 1
    selected_options: List[SelectedOptionIn] = []
    special_instructions: Optional[str] = Field(default=None, max_length=500)


class CartItemUpdate(BaseModel):
    quantity: int


class CartMergeRequest(BaseModel):
    items: List[CartItemCreate]


class ProductSnapshot(BaseModel):
    id: int
    name: str
    price: Decimal
    image_url: Optional[str] = None

    class Config:
        from_attributes = True


class CartItemOut(BaseModel):
    id: int
    product_id: int
    quantity: int
    selected_options: List[SelectedOption]
    special_instructions: Optional[str] = None
    product: ProductSnapshot
    unit_price: Decimal
    line_total: Decimal


class CartOut(BaseModel):
    items: List[CartItemOut]
    subtotal: Decimal
    item_count: int


# ----- Checkout & orders -----


class CheckoutRequest(BaseModel):
    order_type: OrderType = "delivery"
    delivery_address: Optional[str] = Field(default=None, max_length=500)
    phone: Optional[str] = Field(default=None, max_length=40)
    notes: Optional[str] = Field(default=None, max_length=500)


class CheckoutSessionOut(BaseModel):
    session_id: str
    url: str


class ProcessSessionRequest(BaseModel):
    session_id: str = Field(min_length=1)


class ProcessSessionOut(BaseModel):
    order_id: int
    order_number: str
    total: Decimal


class OrderCreate(CheckoutRequest):
    items: List[CartItemCreate]
    payment_method: PaymentMethod = "cash"
    payment_status: PaymentStatus = "pending"


class OrderItemOut(BaseModel):
    id: int
    product_id: Optional[int] = None
    product_name: str
    quantity: int
    unit_price: Decimal
    subtotal: Decimal
    selected_options: List[SelectedOption]
    special_instructions: Optional[str] = None

    class Config:
        from_attributes = True


class OrderOut(BaseModel):
    id: int
    order_number: str
    user_id: int
    status: str
    payment_status: str
    payment_method: Optional[str] = None
    order_type: str
    delivery_address: Optional[str] = None
    phone: Optional[str] = None
    notes: Optional[str] = None
    subtotal: Decimal
    delivery_fee: Optional[Decimal] = None
    total: Decimal
    created_at: datetime
    items: List[OrderItemOut]

    class Config:
        from_attributes = True


class OrderStatusUpdate(BaseModel):
    status: OrderStatus


class PaymentStatusUpdate(BaseModel):
    payment_status: PaymentStatus


class OrderMetadata(BaseModel):
    """What the provider echoes back about the order a session was opened for."""

    user_id: str
    order_type: OrderType
    delivery_address: Optional[str] = None
    phone: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("delivery_address", "phone", "notes", mode="before")
    @classmethod
    def blank_to_none(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value

    def as_metadata(self) -> Dict[str, str]:
        # provider metadata values must be strings
        return {key: value or "" for key, value in self.model_dump().items()}


# ----- Settings -----


class RestaurantConfig(BaseModel):
    """Per-request snapshot of the restaurant settings row."""

    model_config = ConfigDict(from_attributes=True, frozen=True)

    restaurant_name: str
    notification_email: Optional[str] = None
    allow_order_cancellation: bool = True
    email_notifications_enabled: bool = False
    require_email_verification: bool = False
    enable_delivery: bool = True
    enable_pickup: bool = True
    delivery_fee: Decimal = Decimal("0")
    minimum_order: Decimal = Decimal("0")


class RestaurantSettingsUpdate(BaseModel):
    restaurant_name: Optional[str] = None
    notification_email: Optional[str] = None
    allow_order_cancellation: Optional[bool] = None
    email_notifications_enabled: Optional[bool] = None
    require_email_verification: Optional[bool] = None
    enable_delivery: Optional[bool] = None
    enable_pickup: Optional[bool] = None
    delivery_fee: Optional[Decimal] = Field(default=None, ge=0)
    minimum_order: Optional[Decimal] = Field(default=None, ge=0)


# ----- Webhooks -----


class EventObject(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    object: Optional[str] = None
    metadata: Dict[str, str] = {}
    payment_intent: Optional[str] = None
    payment_status: Optional[str] = None

    @field_validator("metadata", mode="before")
    @classmethod
    def none_to_empty(cls, value):
        return value or {}

    @field_validator("payment_intent", mode="before")
    @classmethod
    def expanded_intent_id(cls, value):
        if isinstance(value, dict):
            return value.get("id")
        return value


class EventData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    object: EventObject


class EventEnvelope(BaseModel):
    """The part every provider event carries, whatever its ``data.object``."""

    model_config = ConfigDict(extra="ignore")

    id: str
    type: str


class PaymentEvent(EventEnvelope):
    data: EventData


class WebhookAck(BaseModel):
    received: bool = True
    outcome: str
