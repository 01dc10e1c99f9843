from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from .db import Base


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(320), unique=True, index=True, nullable=False)
    password_hash = Column(String(255), nullable=False)
    full_name = Column(String(120), nullable=True)
    is_admin = Column(Boolean, default=False, nullable=False)
    email_verified = Column(Boolean, default=False, nullable=False)

    orders = relationship("Order", back_populates="user")
    cart_items = relationship("CartItem", back_populates="user")


class Product(Base):
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(120), nullable=False)
    description = Column(String(500), nullable=True)
    price = Column(Numeric(10, 2), nullable=False)
    category = Column(String(80), nullable=False)
    image_url = Column(String(500), nullable=True)
    is_available = Column(Boolean, default=True, nullable=False)
    available_for_delivery = Column(Boolean, default=True, nullable=False)
    available_for_pickup = Column(Boolean, default=True, nullable=False)
    is_popular = Column(Boolean, default=False, nullable=False)

    option_groups = relationship(
        "OptionGroup",
        back_populates="product",
        cascade="all, delete-orphan",
        order_by="OptionGroup.sort_order",
    )


class OptionGroup(Base):
    __tablename__ = "option_groups"

    id = Column(Integer, primary_key=True, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False, index=True)
    name = Column(String(120), nullable=False)
    is_required = Column(Boolean, default=False, nullable=False)
    min_selections = Column(Integer, default=0, nullable=False)
    max_selections = Column(Integer, default=1, nullable=False)
    sort_order = Column(Integer, default=0, nullable=False)

    product = relationship("Product", back_populates="option_groups")
    options = relationship(
        "Option",
        back_populates="group",
        cascade="all, delete-orphan",
        order_by="Option.sort_order",
    )


class Option(Base):
    __tablename__ = "options"

    id = Column(Integer, primary_key=True, index=True)
    option_group_id = Column(
        Integer, ForeignKey("option_groups.id"), nullable=False, index=True
    )
    name = Column(String(120), nullable=False)
    price_modifier = Column(Numeric(10, 2), default=0, nullable=False)
    is_default = Column(Boolean, default=False, nullable=False)
    sort_order = Column(Integer, default=0, nullable=False)

    group = relationship("OptionGroup", back_populates="options")


class CartItem(Base):
    __tablename__ = "cart_items"
    # merge_key is NULL for items with options, so those never collide
    __table_args__ = (
        UniqueConstraint("user_id", "product_id", "merge_key", name="uq_cart_merge"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    selected_options = Column(JSON, nullable=False, default=list)
    special_instructions = Column(String(500), nullable=True)
    merge_key = Column(String(500), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    user = relationship("User", back_populates="cart_items")
    product = relationship("Product")


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    order_number = Column(String(20), unique=True, nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    status = Column(String(30), nullable=False, default="pending")
    payment_status = Column(String(20), nullable=False, default="pending")
    payment_method = Column(String(30), nullable=True)
    order_type = Column(String(20), nullable=False, default="delivery")
    delivery_address = Column(String(500), nullable=True)
    phone = Column(String(40), nullable=True)
    notes = Column(Text, nullable=True)
    subtotal = Column(Numeric(10, 2), nullable=False)
    delivery_fee = Column(Numeric(10, 2), nullable=True)
    total = Column(Numeric(10, 2), nullable=False)
    stripe_session_id = Column(String(255), unique=True, nullable=True)
    stripe_payment_intent_id = Column(String(255), nullable=True, index=True)
    version_id = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    user = relationship("User", back_populates="orders")
    items = relationship(
        "OrderItem", back_populates="order", cascade="all, delete-orphan"
    )

    __mapper_args__ = {"version_id_col": version_id}


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    product_id = Column(
        Integer, ForeignKey("products.id", ondelete="SET NULL"), nullable=True
    )
    product_name = Column(String(120), nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(10, 2), nullable=False)  # base price at order time
    subtotal = Column(Numeric(10, 2), nullable=False)
    selected_options = Column(JSON, nullable=False, default=list)
    special_instructions = Column(String(500), nullable=True)

    order = relationship("Order", back_populates="items")


class RestaurantSettings(Base):
    __tablename__ = "restaurant_settings"

    id = Column(Integer, primary_key=True)
    restaurant_name = Column(String(120), nullable=False, default="Our Restaurant")
    notification_email = Column(String(320), nullable=True)
    allow_order_cancellation = Column(Boolean, default=True, nullable=False)
    email_notifications_enabled = Column(Boolean, default=False, nullable=False)
    require_email_verification = Column(Boolean, default=False, nullable=False)
    enable_delivery = Column(Boolean, default=True, nullable=False)
    enable_pickup = Column(Boolean, default=True, nullable=False)
    delivery_fee = Column(Numeric(10, 2), default=0, nullable=False)
    minimum_order = Column(Numeric(10, 2), default=0, nullable=False)


class ProcessedWebhookEvent(Base):
    __tablename__ = "processed_webhook_events"

    event_id = Column(String(255), primary_key=True)
    event_type = Column(String(120), nullable=False)
    outcome = Column(String(40), nullable=False)
    received_at = Column(DateTime, default=datetime.utcnow, nullable=False)
