"""Tests for checkout: validation, the single-farmer rule and all-or-nothing persistence."""
import random
from decimal import Decimal

import pytest
from sqlalchemy import update

from conftest import ADDRESS, CONSUMER_1, FARMER_1, PHONE
from errors import (
    EmptyCartError,
    ForbiddenError,
    InsufficientStock,
    InvalidQuantityError,
    MixedFarmerCartError,
    ProductNotFoundError,
    ValidationError,
)
from models import Order, Product


@pytest.fixture
def order_count(session_factory):
    def _count():
        session = session_factory()
        try:
            return session.query(Order).count()
        finally:
            session.close()

    return _count


def place(order_service, db, cart, actor=CONSUMER_1, address=ADDRESS, phone=PHONE, **kwargs):
    return order_service.place_order(db, actor, cart, address, phone, **kwargs)


class TestPlaceOrder:

    def test_two_items_from_one_farmer(self, db, order_service, make_product, stock_of):
        rice = make_product(title="Basmati Rice", price_per_unit=Decimal("80.00"), quantity_available=10)
        mango = make_product(title="Mango", category="Fruits", price_per_unit=Decimal("60.00"),
                             measuring_unit="piece", quantity_available=5)

        order = place(order_service, db, [
            {"product_id": rice, "quantity": 2},
            {"product_id": mango, "quantity": 1},
        ])

        assert order.id is not None
        assert order.status == "placed"
        assert order.subtotal == Decimal("220.00")
        assert order.consumer_id == "consumer-1"
        assert order.farmer_id == "farmer-1"
        assert [(i.product_id, i.quantity) for i in order.items] == [(rice, 2), (mango, 1)]
        assert stock_of(rice) == 8
        assert stock_of(mango) == 4

    def test_items_snapshot_title_price_and_unit(self, db, order_service, catalog, make_product):
        product_id = make_product(title="Okra", category="Vegetables",
                                  price_per_unit=Decimal("45.50"), measuring_unit="kg")

        order = place(order_service, db, [{"product_id": product_id, "quantity": 2}])
        catalog.update_product(db, FARMER_1, product_id, {
            "title": "Premium Okra",
            "price_per_unit": Decimal("99.00"),
        })
        db.refresh(order)

        item = order.items[0]
        assert item.title == "Okra"
        assert item.unit_price == Decimal("45.50")
        assert item.measuring_unit == "kg"
        assert order.subtotal == Decimal("91.00")

    def test_address_and_phone_are_normalized(self, db, order_service, make_product):
        product_id = make_product()

        order = place(order_service, db, [{"product_id": product_id, "quantity": 1}],
                      address="   12 Orchard Lane, Nashik  ", phone="+(98) 765-43210",
                      special_instructions="  Leave at the gate ")

        assert order.delivery_address == "12 Orchard Lane, Nashik"
        assert order.phone == "9876543210"
        assert order.special_instructions == "Leave at the gate"

    def test_duplicate_lines_are_merged(self, db, order_service, make_product, stock_of):
        product_id = make_product(quantity_available=10)

        order = place(order_service, db, [
            {"product_id": product_id, "quantity": 2},
            {"product_id": product_id, "quantity": 3},
        ])

        assert len(order.items) == 1
        assert order.items[0].quantity == 5
        assert stock_of(product_id) == 5

    def test_subtotal_is_sum_of_line_totals(self, db, order_service, make_product):
        rng = random.Random(7)
        for _ in range(10):
            farmer = f"farmer-{rng.randint(1, 1000)}"
            cart = []
            expected = Decimal("0")
            for _ in range(rng.randint(1, 5)):
                price = Decimal(rng.randint(1, 99999)) / 100
                quantity = rng.randint(1, 20)
                product_id = make_product(farmer_id=farmer, price_per_unit=price,
                                          quantity_available=quantity + rng.randint(0, 5))
                cart.append({"product_id": product_id, "quantity": quantity})
                expected += price * quantity

            order = place(order_service, db, cart)

            assert order.subtotal == expected
            assert order.subtotal == sum(i.unit_price * i.quantity for i in order.items)
            assert all(i.quantity >= 1 for i in order.items)
            assert {i.product_id for i in order.items} == {line["product_id"] for line in cart}

    def test_accepts_schema_objects(self, db, order_service, make_product):
        from schemas import OrderItemRequest

        product_id = make_product()

        order = place(order_service, db, [OrderItemRequest(product_id=product_id, quantity=3)])

        assert order.items[0].quantity == 3


class TestPlaceOrderRejections:

    def test_mixed_farmer_cart(self, db, order_service, make_product, stock_of, order_count):
        first = make_product(farmer_id="farmer-1", quantity_available=10)
        second = make_product(farmer_id="farmer-2", quantity_available=10)

        with pytest.raises(MixedFarmerCartError) as exc_info:
            place(order_service, db, [
                {"product_id": first, "quantity": 1},
                {"product_id": second, "quantity": 1},
            ])

        assert exc_info.value.context["farmer_ids"] == ["farmer-1", "farmer-2"]
        assert stock_of(first) == 10
        assert stock_of(second) == 10
        assert order_count() == 0

    def test_quantity_above_available(self, db, order_service, make_product, stock_of, order_count):
        plenty = make_product(title="Wheat", quantity_available=50)
        scarce = make_product(title="Saffron", quantity_available=3)

        with pytest.raises(InvalidQuantityError) as exc_info:
            place(order_service, db, [
                {"product_id": plenty, "quantity": 4},
                {"product_id": scarce, "quantity": 5},
            ])

        assert exc_info.value.product_id == scarce
        assert "Saffron" in exc_info.value.message
        assert stock_of(plenty) == 50
        assert stock_of(scarce) == 3
        assert order_count() == 0

    def test_repeated_failures_never_decrement_stock(self, db, order_service, make_product,
                                                     stock_of, order_count):
        product_id = make_product(quantity_available=3)

        for _ in range(3):
            with pytest.raises(InvalidQuantityError):
                place(order_service, db, [{"product_id": product_id, "quantity": 5}])

        assert stock_of(product_id) == 3
        assert order_count() == 0

    def test_quantity_below_minimum(self, db, order_service, make_product):
        product_id = make_product(title="Mango", min_order_qty=6, measuring_unit="piece")

        with pytest.raises(InvalidQuantityError) as exc_info:
            place(order_service, db, [{"product_id": product_id, "quantity": 2}])

        assert "Minimum order quantity for Mango is 6 piece" == exc_info.value.message

    @pytest.mark.parametrize("quantity", [0, -1, 1.5, "2", True])
    def test_non_positive_or_non_integer_quantity(self, db, order_service, make_product, quantity):
        product_id = make_product()

        with pytest.raises(ValidationError):
            place(order_service, db, [{"product_id": product_id, "quantity": quantity}])

    def test_empty_cart(self, db, order_service, order_count):
        with pytest.raises(EmptyCartError):
            place(order_service, db, [])
        assert order_count() == 0

    def test_unknown_product(self, db, order_service):
        with pytest.raises(ProductNotFoundError):
            place(order_service, db, [{"product_id": 4242, "quantity": 1}])

    def test_farmer_cannot_place_orders(self, db, order_service, make_product):
        product_id = make_product()

        with pytest.raises(ForbiddenError):
            place(order_service, db, [{"product_id": product_id, "quantity": 1}], actor=FARMER_1)

    @pytest.mark.parametrize("address", ["", "   ", "Short st"])
    def test_short_address(self, db, order_service, make_product, address):
        product_id = make_product()

        with pytest.raises(ValidationError):
            place(order_service, db, [{"product_id": product_id, "quantity": 1}], address=address)

    @pytest.mark.parametrize("phone", ["", "12345", "98765432101"])
    def test_invalid_phone(self, db, order_service, make_product, phone):
        product_id = make_product()

        with pytest.raises(ValidationError):
            place(order_service, db, [{"product_id": product_id, "quantity": 1}], phone=phone)


class TestPlaceOrderAtomicity:

    def test_stock_sold_out_after_validation_rolls_back_everything(
        self, db, order_service, catalog, session_factory, make_product, stock_of, order_count,
        monkeypatch
    ):
        first = make_product(title="Wheat", quantity_available=10)
        second = make_product(title="Millet", quantity_available=4)
        original_get = catalog.get_product

        def get_then_sell_out(session, product_id):
            product = original_get(session, product_id)
            if product_id == second:
                # Another checkout takes the remaining stock
                other = session_factory()
                other.execute(update(Product).where(Product.id == second).values(quantity_available=0))
                other.commit()
                other.close()
            return product

        monkeypatch.setattr(catalog, "get_product", get_then_sell_out)

        with pytest.raises(InsufficientStock) as exc_info:
            place(order_service, db, [
                {"product_id": first, "quantity": 3},
                {"product_id": second, "quantity": 2},
            ])

        assert exc_info.value.product_id == second
        assert "Millet" in exc_info.value.message
        assert stock_of(first) == 10
        assert stock_of(second) == 0
        assert order_count() == 0

    def test_persistence_failure_rolls_back_reservations(
        self, db, order_service, make_product, stock_of, order_count, monkeypatch
    ):
        product_id = make_product(quantity_available=10)

        def failing_commit():
            raise RuntimeError("connection lost")

        monkeypatch.setattr(db, "commit", failing_commit)

        with pytest.raises(RuntimeError):
            place(order_service, db, [{"product_id": product_id, "quantity": 4}])

        assert stock_of(product_id) == 10
        assert order_count() == 0


class RecordingInstrument:
    """Stands in for an OpenTelemetry counter or histogram."""

    def __init__(self):
        self.calls = []

    def add(self, amount, attributes=None):
        self.calls.append((amount, attributes or {}))

    def record(self, amount, attributes=None):
        self.calls.append((amount, attributes or {}))


class TestOrderMetrics:

    def test_labels_stay_bounded(self, db, order_service, make_product, monkeypatch):
        import services.catalog_store as catalog_module
        import services.order_service as order_module

        placed = RecordingInstrument()
        amounts = RecordingInstrument()
        reservation_failures = RecordingInstrument()
        monkeypatch.setattr(order_module, "orders_placed_counter", placed)
        monkeypatch.setattr(order_module, "order_amount_histogram", amounts)
        monkeypatch.setattr(catalog_module, "stock_reservation_failures_counter", reservation_failures)

        product_ids = [make_product(farmer_id="farmer-77", title=f"Item {i}") for i in range(7)]
        place(order_service, db, [{"product_id": product_ids[0], "quantity": 1}])
        place(order_service, db, [{"product_id": pid, "quantity": 1} for pid in product_ids[:3]])
        place(order_service, db, [{"product_id": pid, "quantity": 1} for pid in product_ids])
        with pytest.raises(InsufficientStock):
            order_service.catalog.reserve_stock(db, product_ids[0], 500)
        db.rollback()

        assert [attrs for _, attrs in placed.calls] == [
            {"cart_size": "1"},
            {"cart_size": "2-5"},
            {"cart_size": "6+"},
        ]
        assert [attrs for _, attrs in amounts.calls] == [attrs for _, attrs in placed.calls]
        assert reservation_failures.calls == [(1, {})]
