"""Order workflow: checkout transaction and fulfillment state machine."""
import logging
import re
from collections import OrderedDict
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

from opentelemetry import trace
from sqlalchemy import update
from sqlalchemy.orm import Session

from errors import (
    EmptyCartError,
    ForbiddenError,
    InsufficientStock,
    InvalidQuantityError,
    InvalidTransitionError,
    MarketplaceError,
    MixedFarmerCartError,
    OrderNotFoundError,
    ValidationError,
)
from models import Order, OrderItem, OrderStatus
from services.catalog_store import CatalogStore
from monitoring import (
    orders_placed_counter,
    order_amount_histogram,
    order_rejections_counter,
    order_status_transitions_counter,
)

logger = logging.getLogger(__name__)

MIN_ADDRESS_LENGTH = 10
PHONE_DIGITS = 10

# Forward path plus early cancellation. Delivered and cancelled are terminal.
ALLOWED_TRANSITIONS = {
    OrderStatus.PLACED: {OrderStatus.ACCEPTED, OrderStatus.CANCELLED},
    OrderStatus.ACCEPTED: {OrderStatus.PACKED, OrderStatus.CANCELLED},
    OrderStatus.PACKED: {OrderStatus.DISPATCHED},
    OrderStatus.DISPATCHED: {OrderStatus.DELIVERED},
    OrderStatus.DELIVERED: set(),
    OrderStatus.CANCELLED: set(),
}

TERMINAL_STATUSES = {OrderStatus.DELIVERED, OrderStatus.CANCELLED}


def can_transition(current: OrderStatus, new: OrderStatus) -> bool:
    return new in ALLOWED_TRANSITIONS[current]


def serialize_order(order: Order) -> Dict[str, Any]:
    """Plain-dict view of an order and its line items."""
    return {
        "id": order.id,
        "consumer_id": order.consumer_id,
        "farmer_id": order.farmer_id,
        "items": [
            {
                "product_id": item.product_id,
                "title": item.title,
                "quantity": item.quantity,
                "unit_price": item.unit_price,
                "measuring_unit": item.measuring_unit,
            }
            for item in order.items
        ],
        "subtotal": order.subtotal,
        "delivery_address": order.delivery_address,
        "phone": order.phone,
        "special_instructions": order.special_instructions,
        "status": order.status,
        "created_at": order.created_at,
        "updated_at": order.updated_at,
    }


def _merge_cart(cart_items: Iterable[Any]) -> "OrderedDict[int, int]":
    """Collapse repeated products into one line, keeping first-seen order."""
    merged: "OrderedDict[int, int]" = OrderedDict()
    for item in cart_items:
        product_id, quantity = _cart_line(item)
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 1:
            raise ValidationError("Quantity must be at least 1", product_id=product_id)
        merged[product_id] = merged.get(product_id, 0) + quantity
    return merged


def _cart_line(item: Any) -> Tuple[int, Any]:
    if isinstance(item, dict):
        return item["product_id"], item["quantity"]
    return item.product_id, item.quantity


def _normalize_address(delivery_address: Optional[str]) -> str:
    address = (delivery_address or "").strip()
    if len(address) < MIN_ADDRESS_LENGTH:
        raise ValidationError(
            f"Delivery address must be at least {MIN_ADDRESS_LENGTH} characters"
        )
    return address


def _normalize_phone(phone: Optional[str]) -> str:
    digits = re.sub(r"\D", "", phone or "")
    if len(digits) != PHONE_DIGITS:
        raise ValidationError(f"Please enter a valid {PHONE_DIGITS}-digit phone number")
    return digits


def _cart_size_bucket(item_count: int) -> str:
    """Bounded metric label for the number of lines in an order."""
    if item_count == 1:
        return "1"
    if item_count <= 5:
        return "2-5"
    return "6+"


def _parse_status(status: str) -> OrderStatus:
    try:
        return OrderStatus(status)
    except ValueError:
        raise ValidationError(
            f"Unknown order status '{status}'",
            allowed=[s.value for s in OrderStatus],
        )


class OrderService:
    """Service for placing orders and moving them through fulfillment."""

    def __init__(self, catalog: CatalogStore):
        """
        Initialize order service.

        Args:
            catalog: Catalog store used for product lookups and stock changes
        """
        self.catalog = catalog
        self.tracer = trace.get_tracer(__name__)

    def place_order(
        self,
        db: Session,
        actor,
        cart_items: List[Any],
        delivery_address: str,
        phone: str,
        special_instructions: Optional[str] = None
    ) -> Order:
        """
        Turn a consumer's cart into a persisted order.

        Validation happens before any write. Stock reservations and the order
        insert then run in one transaction: either all of them commit or none.

        Args:
            db: Database session
            actor: Authenticated caller, must be a consumer
            cart_items: Lines with ``product_id`` and ``quantity``
            delivery_address: At least 10 characters
            phone: Contact number, 10 digits
            special_instructions: Optional note for the farmer

        Returns:
            The created order

        Raises:
            ForbiddenError: If the caller is not a consumer
            EmptyCartError: If the cart has no items
            ProductNotFoundError: If any product does not exist
            MixedFarmerCartError: If products belong to different farmers
            InvalidQuantityError: If a quantity breaks minimum or availability
            InsufficientStock: If stock ran out between validation and reservation
        """
        span = trace.get_current_span()
        span.set_attribute("user.id", actor.id)

        try:
            order = self._place_order(
                db, actor, cart_items, delivery_address, phone, special_instructions
            )
        except MarketplaceError as e:
            order_rejections_counter.add(1, {"reason": e.code})
            logger.warning("Order rejected", extra={
                "user_id": actor.id,
                "reason": e.code,
                "detail": e.message,
                **e.context
            })
            raise

        cart_size = _cart_size_bucket(len(order.items))
        orders_placed_counter.add(1, {"cart_size": cart_size})
        order_amount_histogram.record(float(order.subtotal), {"cart_size": cart_size})
        logger.info("Order placed", extra={
            "order_id": order.id,
            "user_id": actor.id,
            "farmer_id": order.farmer_id,
            "subtotal": str(order.subtotal),
            "item_count": len(order.items)
        })
        return order

    def _place_order(
        self,
        db: Session,
        actor,
        cart_items: List[Any],
        delivery_address: str,
        phone: str,
        special_instructions: Optional[str]
    ) -> Order:
        if not actor.is_consumer:
            raise ForbiddenError("Only consumers can place orders")

        if not cart_items:
            raise EmptyCartError()

        address = _normalize_address(delivery_address)
        phone_digits = _normalize_phone(phone)
        quantities = _merge_cart(cart_items)

        # Step 1: resolve products
        products = {}
        with self.tracer.start_as_current_span("db.query.get_cart_products") as db_span:
            db_span.set_attribute("db.operation", "SELECT")
            db_span.set_attribute("db.table", "products")
            for product_id in quantities:
                products[product_id] = self.catalog.get_product(db, product_id)

        # Step 2: single-farmer rule
        farmer_ids = {product.farmer_id for product in products.values()}
        if len(farmer_ids) > 1:
            raise MixedFarmerCartError(farmer_ids)
        farmer_id = farmer_ids.pop()

        # Step 3: quantity rules against the current listing
        for product_id, quantity in quantities.items():
            product = products[product_id]
            if quantity < product.min_order_qty:
                raise InvalidQuantityError(
                    product_id,
                    product.title,
                    f"Minimum order quantity for {product.title} is "
                    f"{product.min_order_qty} {product.measuring_unit}",
                )
            if quantity > product.quantity_available:
                raise InvalidQuantityError(
                    product_id,
                    product.title,
                    f"Only {product.quantity_available} {product.measuring_unit} "
                    f"of {product.title} available",
                )

        # Step 4: reserve stock and insert the order in one transaction
        try:
            with self.tracer.start_as_current_span("db.transaction.create_order") as db_span:
                db_span.set_attribute("db.operation", "INSERT")
                db_span.set_attribute("db.table", "orders")
                db_span.set_attribute("farmer.id", farmer_id)

                items = []
                subtotal = Decimal("0")
                for position, (product_id, quantity) in enumerate(quantities.items()):
                    product = products[product_id]
                    try:
                        self.catalog.reserve_stock(db, product_id, quantity)
                    except InsufficientStock:
                        raise InsufficientStock(product_id, quantity, product.title)

                    unit_price = Decimal(product.price_per_unit)
                    subtotal += unit_price * quantity
                    items.append(OrderItem(
                        position=position,
                        product_id=product_id,
                        title=product.title,
                        quantity=quantity,
                        unit_price=unit_price,
                        measuring_unit=product.measuring_unit
                    ))

                order = Order(
                    consumer_id=actor.id,
                    farmer_id=farmer_id,
                    items=items,
                    subtotal=subtotal,
                    delivery_address=address,
                    phone=phone_digits,
                    special_instructions=(special_instructions or "").strip() or None,
                    status=OrderStatus.PLACED.value
                )
                db.add(order)
                db.commit()
                db_span.set_attribute("order.id", order.id)
        except Exception as e:
            db.rollback()
            if not isinstance(e, MarketplaceError):
                logger.error("Failed to create order", extra={
                    "user_id": actor.id,
                    "farmer_id": farmer_id,
                    "error": str(e)
                })
            raise

        db.refresh(order)
        return order

    def get_order(self, db: Session, actor, order_id: int) -> Order:
        """
        Load an order visible to the caller.

        Only the order's consumer and farmer may read it.
        """
        order = db.query(Order).filter(Order.id == order_id).first()
        if order is None:
            raise OrderNotFoundError(order_id)
        if actor.id not in (order.consumer_id, order.farmer_id):
            raise ForbiddenError("Access denied", order_id=order_id)
        return order

    def update_status(self, db: Session, actor, order_id: int, new_status: str) -> Order:
        """
        Move an order to a new status.

        The write is guarded by the status the order had when it was read, so
        two concurrent updates cannot both apply. Cancelling returns the
        reserved stock in the same transaction.

        Args:
            db: Database session
            actor: Authenticated caller, must be the order's farmer
            order_id: Order identifier
            new_status: Target status

        Returns:
            The updated order

        Raises:
            ValidationError: If ``new_status`` is not a known status
            OrderNotFoundError: If the order does not exist
            ForbiddenError: If the caller is not the owning farmer
            InvalidTransitionError: If the state machine forbids the change
        """
        target = _parse_status(new_status)

        order = db.query(Order).filter(Order.id == order_id).first()
        if order is None:
            raise OrderNotFoundError(order_id)

        if not actor.is_farmer or order.farmer_id != actor.id:
            logger.warning("Order status update denied", extra={
                "order_id": order_id,
                "actor_id": actor.id,
                "actor_role": actor.role
            })
            raise ForbiddenError("Only the order's farmer can update its status", order_id=order_id)

        current = OrderStatus(order.status)
        if not can_transition(current, target):
            raise InvalidTransitionError(order_id, current.value, target.value)

        try:
            with self.tracer.start_as_current_span("db.transaction.update_order_status") as db_span:
                db_span.set_attribute("db.operation", "UPDATE")
                db_span.set_attribute("db.table", "orders")
                db_span.set_attribute("order.id", order_id)
                db_span.set_attribute("order.status.before", current.value)
                db_span.set_attribute("order.status.after", target.value)

                result = db.execute(
                    update(Order)
                    .where(Order.id == order_id)
                    .where(Order.status == current.value)
                    .values(status=target.value)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    # Another request changed the status after we read it
                    db.rollback()
                    db.refresh(order)
                    raise InvalidTransitionError(order_id, order.status, target.value)

                if target == OrderStatus.CANCELLED:
                    for item in order.items:
                        self.catalog.release_stock(db, item.product_id, item.quantity)

                db.commit()
        except MarketplaceError:
            raise
        except Exception as e:
            db.rollback()
            logger.error("Failed to update order status", extra={
                "order_id": order_id,
                "new_status": target.value,
                "error": str(e)
            })
            raise

        db.refresh(order)

        order_status_transitions_counter.add(1, {
            "from": current.value,
            "to": target.value
        })
        logger.info("Order status updated", extra={
            "order_id": order_id,
            "farmer_id": actor.id,
            "from_status": current.value,
            "to_status": target.value
        })
        return order

    def list_orders(
        self,
        db: Session,
        consumer_id: Optional[str] = None,
        farmer_id: Optional[str] = None
    ) -> List[Order]:
        """Orders for a consumer or a farmer, newest first."""
        with self.tracer.start_as_current_span("db.query.list_orders") as db_span:
            db_span.set_attribute("db.operation", "SELECT")
            db_span.set_attribute("db.table", "orders")

            query = db.query(Order)
            if consumer_id is not None:
                query = query.filter(Order.consumer_id == consumer_id)
            if farmer_id is not None:
                query = query.filter(Order.farmer_id == farmer_id)
            orders = query.order_by(Order.created_at.desc(), Order.id.desc()).all()

            db_span.set_attribute("db.rows_returned", len(orders))

            return orders
