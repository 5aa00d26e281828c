"""Orders API router."""
from fastapi import APIRouter, Depends, Path, status
from sqlalchemy.orm import Session

from auth import Actor, get_current_actor
from database import get_db
from dependencies import get_dashboard_service, get_order_service
from schemas import (
    FarmerOrdersListResponse,
    FarmerSummaryResponse,
    OrderResponse,
    OrdersListResponse,
    PlaceOrderRequest,
    PlaceOrderResponse,
    StatusUpdateRequest,
)
from services.dashboard_service import DashboardService
from services.order_service import OrderService, serialize_order

router = APIRouter(prefix="/orders", tags=["orders"])


@router.post("", response_model=PlaceOrderResponse, status_code=status.HTTP_201_CREATED)
async def place_order(
    request: PlaceOrderRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    order_service: OrderService = Depends(get_order_service)
):
    """Checkout the cart - consumers only."""
    order = order_service.place_order(
        db=db,
        actor=actor,
        cart_items=request.items,
        delivery_address=request.delivery_address,
        phone=request.phone,
        special_instructions=request.special_instructions
    )
    return {
        "message": "Order placed successfully",
        "orders": [serialize_order(order)]
    }


@router.get("/farmer", response_model=FarmerOrdersListResponse)
async def get_farmer_orders(
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    dashboard: DashboardService = Depends(get_dashboard_service)
):
    """Orders received by the calling farmer."""
    return {"orders": await dashboard.farmer_orders(db, actor)}


@router.get("/farmer/summary", response_model=FarmerSummaryResponse)
async def get_farmer_summary(
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    dashboard: DashboardService = Depends(get_dashboard_service)
):
    """Dashboard stats for the calling farmer."""
    return dashboard.farmer_summary(db, actor)


@router.get("/consumer", response_model=OrdersListResponse)
async def get_consumer_orders(
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    dashboard: DashboardService = Depends(get_dashboard_service)
):
    """Orders placed by the calling consumer."""
    return {"orders": dashboard.consumer_orders(db, actor)}


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(
    order_id: int = Path(..., description="Order ID"),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    order_service: OrderService = Depends(get_order_service)
):
    """Order detail - its consumer or farmer only."""
    return serialize_order(order_service.get_order(db, actor, order_id))


@router.put("/{order_id}/status", response_model=OrderResponse)
async def update_order_status(
    request: StatusUpdateRequest,
    order_id: int = Path(..., description="Order ID"),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    order_service: OrderService = Depends(get_order_service)
):
    """Advance or cancel an order - owning farmer only."""
    order = order_service.update_status(db, actor, order_id, request.status)
    return serialize_order(order)
