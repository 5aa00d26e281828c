"""Dependency injection for services."""
from typing import Any
import httpx
from fastapi import Depends, Request

from services.catalog_store import CatalogStore
from services.order_service import OrderService
from services.dashboard_service import DashboardService
from services.external_service import UserDirectoryClient


def get_identity_provider(request: Request) -> Any:
    """Get identity provider from app state."""
    return request.app.state.identity_provider


def get_http_client(request: Request) -> httpx.AsyncClient:
    """Get HTTP client from app state."""
    return request.app.state.http_client


def get_catalog_store() -> CatalogStore:
    """Get catalog store instance."""
    return CatalogStore()


def get_user_directory(
    http_client: httpx.AsyncClient = Depends(get_http_client)
) -> UserDirectoryClient:
    """Get user directory client."""
    return UserDirectoryClient(http_client)


def get_order_service(
    catalog: CatalogStore = Depends(get_catalog_store)
) -> OrderService:
    """Get order service instance."""
    return OrderService(catalog)


def get_dashboard_service(
    catalog: CatalogStore = Depends(get_catalog_store),
    order_service: OrderService = Depends(get_order_service),
    user_directory: UserDirectoryClient = Depends(get_user_directory)
) -> DashboardService:
    """Get dashboard query service instance."""
    return DashboardService(catalog, order_service, user_directory)
