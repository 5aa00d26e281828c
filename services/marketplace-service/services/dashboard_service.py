"""Read-only projections behind the farmer and consumer dashboards."""
import logging
from decimal import Decimal
from typing import Any, Dict, List

from sqlalchemy.orm import Session

from errors import ForbiddenError
from models import OrderStatus, Product
from services.catalog_store import CatalogStore
from services.order_service import OrderService, serialize_order
from services.external_service import UserDirectoryClient

logger = logging.getLogger(__name__)


class DashboardService:
    """Filters by requester identity and sorts by recency. No business rules."""

    def __init__(
        self,
        catalog: CatalogStore,
        orders: OrderService,
        user_directory: UserDirectoryClient
    ):
        self.catalog = catalog
        self.orders = orders
        self.user_directory = user_directory

    @staticmethod
    def _require_farmer(actor) -> None:
        if not actor.is_farmer:
            raise ForbiddenError("Farmer access required")

    @staticmethod
    def _require_consumer(actor) -> None:
        if not actor.is_consumer:
            raise ForbiddenError("Consumer access required")

    def farmer_products(self, db: Session, actor) -> List[Product]:
        self._require_farmer(actor)
        return self.catalog.list_farmer_products(db, actor.id)

    async def farmer_orders(self, db: Session, actor) -> List[Dict[str, Any]]:
        """
        Orders received by the farmer, newest first, with consumer contact.

        Contact details come from the identity service; when it cannot be
        reached the order is still returned with only the consumer id.
        """
        self._require_farmer(actor)
        orders = self.orders.list_orders(db, farmer_id=actor.id)

        contacts = await self.user_directory.get_contacts(
            order.consumer_id for order in orders
        )

        result = []
        for order in orders:
            view = serialize_order(order)
            view["consumer"] = {"id": order.consumer_id, **(contacts.get(order.consumer_id) or {})}
            result.append(view)
        return result

    def consumer_orders(self, db: Session, actor) -> List[Dict[str, Any]]:
        """Orders placed by the consumer, newest first."""
        self._require_consumer(actor)
        return [
            serialize_order(order)
            for order in self.orders.list_orders(db, consumer_id=actor.id)
        ]

    def farmer_summary(self, db: Session, actor) -> Dict[str, Any]:
        """Order counts by status, product counts and delivered revenue."""
        self._require_farmer(actor)
        orders = self.orders.list_orders(db, farmer_id=actor.id)
        products = self.catalog.list_farmer_products(db, actor.id)

        by_status = {status.value: 0 for status in OrderStatus}
        revenue = Decimal("0")
        for order in orders:
            by_status[order.status] += 1
            if order.status == OrderStatus.DELIVERED.value:
                revenue += order.subtotal

        return {
            "total_orders": len(orders),
            "orders_by_status": by_status,
            "total_products": len(products),
            "low_stock_products": sum(
                1 for product in products
                if product.quantity_available < product.min_order_qty
            ),
            "delivered_revenue": revenue
        }
