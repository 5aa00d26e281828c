"""Database models for the marketplace service."""
import enum
from datetime import datetime, timezone

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Category(str, enum.Enum):
    """Produce categories."""
    RICE = "Rice"
    VEGETABLES = "Vegetables"
    FRUITS = "Fruits"
    GRAINS = "Grains"
    DAIRY = "Dairy"
    SPICES = "Spices"
    OTHER = "Other"


class MeasuringUnit(str, enum.Enum):
    """Units a product is sold in."""
    KG = "kg"
    G = "g"
    PACKET = "packet"
    BUNCH = "bunch"
    PIECE = "piece"
    LITRE = "litre"


class OrderStatus(str, enum.Enum):
    """Order fulfillment states."""
    PLACED = "placed"
    ACCEPTED = "accepted"
    PACKED = "packed"
    DISPATCHED = "dispatched"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class Role(str, enum.Enum):
    """Roles issued by the identity provider."""
    CONSUMER = "consumer"
    FARMER = "farmer"
    ADMIN = "admin"


class Product(Base):
    """Product listed by a farmer."""
    __tablename__ = "products"
    __table_args__ = (
        CheckConstraint("quantity_available >= 0", name="ck_products_quantity_non_negative"),
        CheckConstraint("price_per_unit >= 0", name="ck_products_price_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True)
    farmer_id = Column(String, index=True, nullable=False)
    title = Column(String(200), index=True, nullable=False)
    description = Column(Text, nullable=False)
    category = Column(String(20), index=True, nullable=False)
    price_per_unit = Column(Numeric(10, 2), nullable=False)
    measuring_unit = Column(String(10), nullable=False)
    min_order_qty = Column(Integer, nullable=False, default=1)
    shelf_life_days = Column(Integer, nullable=False)
    quantity_available = Column(Integer, nullable=False, default=0)
    delivery_radius_km = Column(Integer, nullable=False)
    longitude = Column(Float, nullable=False, default=0.0)
    latitude = Column(Float, nullable=False, default=0.0)
    images = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime(timezone=True), default=_utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class Order(Base):
    """Order placed by a consumer with a single farmer."""
    __tablename__ = "orders"
    __table_args__ = (
        CheckConstraint("subtotal >= 0", name="ck_orders_subtotal_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True)
    consumer_id = Column(String, index=True, nullable=False)
    farmer_id = Column(String, index=True, nullable=False)
    subtotal = Column(Numeric(12, 2), nullable=False)
    delivery_address = Column(String(500), nullable=False)
    phone = Column(String(20), nullable=False)
    special_instructions = Column(Text, nullable=True)
    status = Column(String(20), index=True, nullable=False, default=OrderStatus.PLACED.value)
    created_at = Column(DateTime(timezone=True), default=_utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.position",
        lazy="selectin",
    )


class OrderItem(Base):
    """Line item snapshot embedded in an order."""
    __tablename__ = "order_items"
    __table_args__ = (
        CheckConstraint("quantity >= 1", name="ck_order_items_quantity_positive"),
        CheckConstraint("unit_price >= 0", name="ck_order_items_price_non_negative"),
    )

    id = Column(Integer, primary_key=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), index=True, nullable=False)
    position = Column(Integer, nullable=False)
    # No FK: products may be deleted after the order was placed.
    product_id = Column(Integer, nullable=False)
    title = Column(String(200), nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(10, 2), nullable=False)
    measuring_unit = Column(String(10), nullable=False)

    order = relationship("Order", back_populates="items")
