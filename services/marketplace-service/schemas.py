"""Pydantic schemas for request/response validation."""
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from models import Category, MeasuringUnit


class GeoPoint(BaseModel):
    """Longitude/latitude pair."""
    longitude: float = Field(0.0, ge=-180, le=180)
    latitude: float = Field(0.0, ge=-90, le=90)


class ProductCreate(BaseModel):
    """Schema for creating a product."""
    model_config = ConfigDict(str_strip_whitespace=True)

    title: str = Field(..., min_length=1, max_length=200)
    description: str = Field(..., min_length=1)
    category: Category
    price_per_unit: Decimal = Field(..., ge=0, max_digits=10, decimal_places=2)
    measuring_unit: MeasuringUnit
    min_order_qty: int = Field(..., ge=1)
    shelf_life_days: int = Field(..., ge=1)
    quantity_available: int = Field(..., ge=0)
    delivery_radius_km: int = Field(..., ge=1)
    location: GeoPoint = Field(default_factory=GeoPoint)
    images: List[str] = Field(default_factory=list)


class ProductUpdate(BaseModel):
    """Schema for a partial product update."""
    model_config = ConfigDict(str_strip_whitespace=True)

    title: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = Field(None, min_length=1)
    category: Optional[Category] = None
    price_per_unit: Optional[Decimal] = Field(None, ge=0, max_digits=10, decimal_places=2)
    measuring_unit: Optional[MeasuringUnit] = None
    min_order_qty: Optional[int] = Field(None, ge=1)
    shelf_life_days: Optional[int] = Field(None, ge=1)
    quantity_available: Optional[int] = Field(None, ge=0)
    delivery_radius_km: Optional[int] = Field(None, ge=1)
    location: Optional[GeoPoint] = None
    images: Optional[List[str]] = None


class ProductResponse(BaseModel):
    """Schema for product response."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    farmer_id: str
    title: str
    description: str
    category: str
    price_per_unit: float
    measuring_unit: str
    min_order_qty: int
    shelf_life_days: int
    quantity_available: int
    delivery_radius_km: int
    longitude: float
    latitude: float
    images: List[str]
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ProductListResponse(BaseModel):
    """Paginated catalog page."""
    products: List[ProductResponse]
    total: int
    total_pages: int
    current_page: int


class ProductDeleteResponse(BaseModel):
    message: str
    product_id: int


class OrderItemRequest(BaseModel):
    """One cart line at checkout."""
    product_id: int
    quantity: int


class PlaceOrderRequest(BaseModel):
    """Schema for checkout request."""
    items: List[OrderItemRequest]
    delivery_address: str
    phone: str
    special_instructions: Optional[str] = Field(None, max_length=1000)


class OrderItemResponse(BaseModel):
    """Line item snapshot."""
    product_id: int
    title: str
    quantity: int
    unit_price: float
    measuring_unit: str


class OrderResponse(BaseModel):
    """Schema for order response."""
    id: int
    consumer_id: str
    farmer_id: str
    items: List[OrderItemResponse]
    subtotal: float
    delivery_address: str
    phone: str
    special_instructions: Optional[str] = None
    status: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class PlaceOrderResponse(BaseModel):
    """Schema for checkout response."""
    message: str
    orders: List[OrderResponse]


class StatusUpdateRequest(BaseModel):
    status: str


class ConsumerContact(BaseModel):
    """Consumer details as known to the identity service."""
    id: str
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


class FarmerOrderResponse(OrderResponse):
    consumer: ConsumerContact


class OrdersListResponse(BaseModel):
    """Schema for orders list response."""
    orders: List[OrderResponse]


class FarmerOrdersListResponse(BaseModel):
    orders: List[FarmerOrderResponse]


class FarmerSummaryResponse(BaseModel):
    """Farmer dashboard stat cards."""
    total_orders: int
    orders_by_status: dict
    total_products: int
    low_stock_products: int
    delivered_revenue: float
