"""Products API router."""
from typing import List, Optional

from fastapi import APIRouter, Depends, Path, Query, status
from opentelemetry import trace
from sqlalchemy.orm import Session

from auth import Actor, get_current_actor
from database import get_db
from dependencies import get_catalog_store, get_dashboard_service
from schemas import (
    ProductCreate,
    ProductDeleteResponse,
    ProductListResponse,
    ProductResponse,
    ProductUpdate,
)
from services.catalog_store import CatalogStore, DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE
from services.dashboard_service import DashboardService
from monitoring import product_views_counter

router = APIRouter(prefix="/products", tags=["products"])


@router.get("", response_model=ProductListResponse)
async def list_products(
    category: Optional[str] = Query(None, description="Category name, or 'all'"),
    search: Optional[str] = Query(None, description="Matches title or description"),
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    db: Session = Depends(get_db),
    catalog: CatalogStore = Depends(get_catalog_store)
):
    """Browse the public catalog."""
    result = catalog.find_available(db, category=category, search=search, page=page, limit=limit)

    span = trace.get_current_span()
    span.set_attribute("product.count", len(result["products"]))
    span.set_attribute("catalog.category", category or "all")

    product_views_counter.add(1, {"view": "catalog", "category": category or "all"})
    return result


@router.get("/farmer/mine", response_model=List[ProductResponse])
async def list_my_products(
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    dashboard: DashboardService = Depends(get_dashboard_service)
):
    """Farmer's own listings, newest first."""
    return dashboard.farmer_products(db, actor)


@router.get("/{product_id}", response_model=ProductResponse)
async def get_product(
    product_id: int = Path(..., description="Product ID"),
    db: Session = Depends(get_db),
    catalog: CatalogStore = Depends(get_catalog_store)
):
    """Product detail."""
    product = catalog.get_product(db, product_id)

    span = trace.get_current_span()
    span.set_attribute("product.id", product_id)

    product_views_counter.add(1, {"view": "detail", "category": product.category})
    return product


@router.post("", response_model=ProductResponse, status_code=status.HTTP_201_CREATED)
async def create_product(
    request: ProductCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    catalog: CatalogStore = Depends(get_catalog_store)
):
    """List a new product - farmers only."""
    return catalog.create_product(db, actor, request.model_dump())


@router.put("/{product_id}", response_model=ProductResponse)
async def update_product(
    request: ProductUpdate,
    product_id: int = Path(..., description="Product ID"),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    catalog: CatalogStore = Depends(get_catalog_store)
):
    """Update a listing - owning farmer only."""
    return catalog.update_product(db, actor, product_id, request.model_dump(exclude_unset=True))


@router.delete("/{product_id}", response_model=ProductDeleteResponse)
async def delete_product(
    product_id: int = Path(..., description="Product ID"),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    catalog: CatalogStore = Depends(get_catalog_store)
):
    """Remove a listing - owning farmer only."""
    catalog.delete_product(db, actor, product_id)
    return {"message": "Product deleted successfully", "product_id": product_id}
