"""Catalog store: product persistence and atomic stock adjustment."""
import logging
import math
from typing import Any, Dict, List, Optional

from opentelemetry import trace
from sqlalchemy import or_, update
from sqlalchemy.orm import Session

from errors import ForbiddenError, InsufficientStock, ProductNotFoundError, ValidationError
from models import Product
from monitoring import product_changes_counter, stock_reservation_failures_counter

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 12
MAX_PAGE_SIZE = 100

_LOCATION_FIELDS = ("longitude", "latitude")


def _flatten_fields(data: Dict[str, Any]) -> Dict[str, Any]:
    """Turn schema payloads into column values."""
    values = {}
    for key, value in data.items():
        if key == "location":
            if value is not None:
                for field in _LOCATION_FIELDS:
                    values[field] = value[field]
            continue
        if hasattr(value, "value"):  # Category / MeasuringUnit enums
            value = value.value
        values[key] = value
    return values


def _escape_like(text: str) -> str:
    """Make ``%`` and ``_`` in user search text match literally."""
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class CatalogStore:
    """Persists products and applies stock changes inside the caller's transaction."""

    def __init__(self):
        self.tracer = trace.get_tracer(__name__)

    def find_available(
        self,
        db: Session,
        category: Optional[str] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE
    ) -> Dict[str, Any]:
        """
        List products matching a category and free-text search.

        Args:
            db: Database session
            category: Category name, ``None`` or ``"all"`` for every category
            search: Case-insensitive match against title or description
            page: 1-based page number
            limit: Page size

        Returns:
            Page of products with totals
        """
        if page < 1:
            raise ValidationError("page must be at least 1", page=page)
        if limit < 1 or limit > MAX_PAGE_SIZE:
            raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}", limit=limit)

        with self.tracer.start_as_current_span("db.query.find_products") as db_span:
            db_span.set_attribute("db.operation", "SELECT")
            db_span.set_attribute("db.table", "products")

            query = db.query(Product)
            if category and category != "all":
                query = query.filter(Product.category == category)
            if search:
                pattern = f"%{_escape_like(search.strip())}%"
                query = query.filter(or_(
                    Product.title.ilike(pattern, escape="\\"),
                    Product.description.ilike(pattern, escape="\\")
                ))

            total = query.count()
            products = (
                query.order_by(Product.created_at.desc(), Product.id.desc())
                .offset((page - 1) * limit)
                .limit(limit)
                .all()
            )
            db_span.set_attribute("db.rows_returned", len(products))

        return {
            "products": products,
            "total": total,
            "total_pages": math.ceil(total / limit),
            "current_page": page
        }

    def get_product(self, db: Session, product_id: int) -> Product:
        """Load a product or raise ProductNotFoundError."""
        product = db.query(Product).filter(Product.id == product_id).first()
        if product is None:
            raise ProductNotFoundError(product_id)
        return product

    def is_owned_by(self, db: Session, product_id: int, farmer_id: str) -> bool:
        """Check whether a product belongs to the given farmer."""
        owner = db.query(Product.farmer_id).filter(Product.id == product_id).scalar()
        return owner is not None and owner == farmer_id

    def reserve_stock(self, db: Session, product_id: int, quantity: int) -> None:
        """
        Atomically decrement available stock.

        Runs as one conditional UPDATE so concurrent checkouts cannot oversell.
        Does not commit.

        Args:
            db: Database session
            product_id: Product identifier
            quantity: Units to take

        Raises:
            InsufficientStock: If fewer than ``quantity`` units remain
        """
        if quantity < 1:
            raise ValidationError("Quantity must be at least 1", product_id=product_id)

        with self.tracer.start_as_current_span("db.query.reserve_stock") as db_span:
            db_span.set_attribute("db.operation", "UPDATE")
            db_span.set_attribute("db.table", "products")
            db_span.set_attribute("product.id", product_id)
            db_span.set_attribute("quantity", quantity)

            result = db.execute(
                update(Product)
                .where(Product.id == product_id)
                .where(Product.quantity_available >= quantity)
                .values(quantity_available=Product.quantity_available - quantity)
                .execution_options(synchronize_session=False)
            )
            db_span.set_attribute("db.rows_affected", result.rowcount)

        if result.rowcount != 1:
            stock_reservation_failures_counter.add(1)
            logger.warning("Stock reservation failed", extra={
                "product_id": product_id,
                "quantity": quantity
            })
            raise InsufficientStock(product_id, quantity)

    def release_stock(self, db: Session, product_id: int, quantity: int) -> None:
        """
        Give reserved units back to a product. Does not commit.

        A product deleted since the reservation is skipped.
        """
        with self.tracer.start_as_current_span("db.query.release_stock") as db_span:
            db_span.set_attribute("db.operation", "UPDATE")
            db_span.set_attribute("db.table", "products")
            db_span.set_attribute("product.id", product_id)
            db_span.set_attribute("quantity", quantity)

            result = db.execute(
                update(Product)
                .where(Product.id == product_id)
                .values(quantity_available=Product.quantity_available + quantity)
                .execution_options(synchronize_session=False)
            )
            db_span.set_attribute("db.rows_affected", result.rowcount)

        if result.rowcount != 1:
            logger.warning("Released stock for a product that no longer exists", extra={
                "product_id": product_id,
                "quantity": quantity
            })

    def create_product(self, db: Session, actor, data: Dict[str, Any]) -> Product:
        """
        Create a listing owned by the calling farmer.

        Args:
            db: Database session
            actor: Authenticated caller
            data: Validated ``ProductCreate`` payload

        Returns:
            Persisted product
        """
        if not actor.is_farmer:
            raise ForbiddenError("Only farmers can list products")

        product = Product(farmer_id=actor.id, **_flatten_fields(data))
        db.add(product)
        db.commit()
        db.refresh(product)

        product_changes_counter.add(1, {"action": "create", "category": product.category})
        logger.info("Product created", extra={
            "product_id": product.id,
            "farmer_id": actor.id,
            "category": product.category
        })
        return product

    def _owned_product(self, db: Session, actor, product_id: int) -> Product:
        if not actor.is_farmer:
            raise ForbiddenError("Only farmers can modify products")
        product = self.get_product(db, product_id)
        if not self.is_owned_by(db, product_id, actor.id):
            logger.warning("Product ownership check failed", extra={
                "product_id": product_id,
                "actor_id": actor.id
            })
            raise ForbiddenError("Access denied", product_id=product_id)
        return product

    def update_product(
        self,
        db: Session,
        actor,
        product_id: int,
        changes: Dict[str, Any]
    ) -> Product:
        """Apply a partial update to a product the farmer owns."""
        product = self._owned_product(db, actor, product_id)

        for field, value in _flatten_fields(changes).items():
            if value is None:
                continue
            setattr(product, field, value)
        db.commit()
        db.refresh(product)

        product_changes_counter.add(1, {"action": "update", "category": product.category})
        logger.info("Product updated", extra={
            "product_id": product_id,
            "farmer_id": actor.id,
            "fields": sorted(changes)
        })
        return product

    def delete_product(self, db: Session, actor, product_id: int) -> None:
        """Delete a product the farmer owns. Existing orders keep their snapshots."""
        product = self._owned_product(db, actor, product_id)
        category = product.category
        db.delete(product)
        db.commit()

        product_changes_counter.add(1, {"action": "delete", "category": category})
        logger.info("Product deleted", extra={
            "product_id": product_id,
            "farmer_id": actor.id
        })

    def list_farmer_products(self, db: Session, farmer_id: str) -> List[Product]:
        """All listings of one farmer, newest first."""
        with self.tracer.start_as_current_span("db.query.get_farmer_products") as db_span:
            db_span.set_attribute("db.operation", "SELECT")
            db_span.set_attribute("db.table", "products")
            db_span.set_attribute("farmer.id", farmer_id)

            products = (
                db.query(Product)
                .filter(Product.farmer_id == farmer_id)
                .order_by(Product.created_at.desc(), Product.id.desc())
                .all()
            )
            db_span.set_attribute("db.rows_returned", len(products))

            return products
