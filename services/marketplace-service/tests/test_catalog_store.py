"""Tests for product listing, ownership and atomic stock changes."""
import threading
from decimal import Decimal

import pytest

from conftest import CONSUMER_1, FARMER_1, FARMER_2
from errors import ForbiddenError, InsufficientStock, ProductNotFoundError, ValidationError
from models import Product


class TestFindAvailable:

    def test_filters_by_category(self, db, catalog, make_product):
        make_product(title="Basmati Rice", category="Rice")
        make_product(title="Okra", category="Vegetables", description="Tender green okra")

        result = catalog.find_available(db, category="Vegetables")

        assert [p.title for p in result["products"]] == ["Okra"]
        assert result["total"] == 1

    def test_all_category_means_no_filter(self, db, catalog, make_product):
        make_product(category="Rice")
        make_product(category="Fruits", title="Mango", description="Alphonso")

        assert catalog.find_available(db, category="all")["total"] == 2

    def test_search_is_case_insensitive_over_title_and_description(self, db, catalog, make_product):
        make_product(title="Organic Turmeric", category="Spices", description="Ground root")
        make_product(title="Cow Milk", category="Dairy", description="Fresh ORGANIC milk")
        make_product(title="Wheat", category="Grains", description="Durum wheat")

        result = catalog.find_available(db, search="organic")

        assert sorted(p.title for p in result["products"]) == ["Cow Milk", "Organic Turmeric"]

    def test_search_treats_like_wildcards_literally(self, db, catalog, make_product):
        make_product(title="100% Organic Jaggery", category="Other")
        make_product(title="Brown_Rice Pack", description="Hand-pounded")
        make_product(title="Wheat", category="Grains", description="Durum wheat")

        assert [p.title for p in catalog.find_available(db, search="%")["products"]] == ["100% Organic Jaggery"]
        assert [p.title for p in catalog.find_available(db, search="n_r")["products"]] == ["Brown_Rice Pack"]
        assert catalog.find_available(db, search="\\")["total"] == 0

    def test_paginates_newest_first(self, db, catalog, make_product):
        ids = [make_product(title=f"Product {i}") for i in range(5)]

        first = catalog.find_available(db, page=1, limit=2)
        last = catalog.find_available(db, page=3, limit=2)

        assert [p.id for p in first["products"]] == [ids[4], ids[3]]
        assert [p.id for p in last["products"]] == [ids[0]]
        assert first["total"] == 5
        assert first["total_pages"] == 3
        assert last["current_page"] == 3

    def test_rejects_bad_paging(self, db, catalog):
        with pytest.raises(ValidationError):
            catalog.find_available(db, page=0)
        with pytest.raises(ValidationError):
            catalog.find_available(db, limit=101)

    def test_has_no_side_effects(self, db, catalog, make_product, stock_of):
        product_id = make_product(quantity_available=7)
        catalog.find_available(db)
        catalog.find_available(db, search="rice")
        assert stock_of(product_id) == 7


class TestStock:

    def test_reserve_decrements(self, db, catalog, make_product, stock_of):
        product_id = make_product(quantity_available=10)

        catalog.reserve_stock(db, product_id, 4)
        db.commit()

        assert stock_of(product_id) == 6

    def test_reserve_can_take_the_last_unit(self, db, catalog, make_product, stock_of):
        product_id = make_product(quantity_available=3)

        catalog.reserve_stock(db, product_id, 3)
        db.commit()

        assert stock_of(product_id) == 0

    def test_reserve_more_than_available_fails_without_change(self, db, catalog, make_product, stock_of):
        product_id = make_product(quantity_available=3)

        with pytest.raises(InsufficientStock) as exc_info:
            catalog.reserve_stock(db, product_id, 4)
        db.rollback()

        assert exc_info.value.product_id == product_id
        assert stock_of(product_id) == 3

    def test_reserve_unknown_product_is_insufficient_stock(self, db, catalog):
        with pytest.raises(InsufficientStock):
            catalog.reserve_stock(db, 999, 1)

    def test_reserve_rejects_non_positive_quantity(self, db, catalog, make_product):
        product_id = make_product()
        with pytest.raises(ValidationError):
            catalog.reserve_stock(db, product_id, 0)

    def test_reservation_is_undone_by_rollback(self, db, catalog, make_product, stock_of):
        product_id = make_product(quantity_available=5)

        catalog.reserve_stock(db, product_id, 2)
        db.rollback()

        assert stock_of(product_id) == 5

    def test_release_increments(self, db, catalog, make_product, stock_of):
        product_id = make_product(quantity_available=5)

        catalog.release_stock(db, product_id, 3)
        db.commit()

        assert stock_of(product_id) == 8

    def test_release_for_deleted_product_is_skipped(self, db, catalog):
        catalog.release_stock(db, 12345, 3)
        db.commit()

    def test_concurrent_reservations_never_oversell(self, session_factory, catalog, make_product, stock_of):
        product_id = make_product(quantity_available=20)
        attempts = 30
        barrier = threading.Barrier(attempts)
        outcomes = []
        lock = threading.Lock()

        def checkout():
            session = session_factory()
            try:
                barrier.wait()
                catalog.reserve_stock(session, product_id, 1)
                session.commit()
                result = "ok"
            except InsufficientStock:
                session.rollback()
                result = "insufficient"
            finally:
                session.close()
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=checkout) for _ in range(attempts)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert outcomes.count("ok") == 20
        assert outcomes.count("insufficient") == 10
        assert stock_of(product_id) == 0

    def test_concurrent_reservations_total_matches_decrement(self, session_factory, catalog, make_product, stock_of):
        product_id = make_product(quantity_available=50)
        quantities = [3, 5, 7, 2, 9, 4, 6]
        barrier = threading.Barrier(len(quantities))
        taken = []
        lock = threading.Lock()

        def checkout(quantity):
            session = session_factory()
            try:
                barrier.wait()
                catalog.reserve_stock(session, product_id, quantity)
                session.commit()
                with lock:
                    taken.append(quantity)
            except InsufficientStock:
                session.rollback()
            finally:
                session.close()

        threads = [threading.Thread(target=checkout, args=(q,)) for q in quantities]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sum(quantities) <= 50
        assert sorted(taken) == sorted(quantities)
        assert stock_of(product_id) == 50 - sum(quantities)


class TestOwnership:

    def test_is_owned_by(self, db, catalog, make_product):
        product_id = make_product(farmer_id="farmer-1")

        assert catalog.is_owned_by(db, product_id, "farmer-1")
        assert not catalog.is_owned_by(db, product_id, "farmer-2")
        assert not catalog.is_owned_by(db, 999, "farmer-1")

    def test_farmer_creates_product(self, db, catalog):
        product = catalog.create_product(db, FARMER_1, {
            "title": "Jaggery",
            "description": "Organic cane jaggery",
            "category": "Other",
            "price_per_unit": Decimal("95.50"),
            "measuring_unit": "kg",
            "min_order_qty": 1,
            "shelf_life_days": 90,
            "quantity_available": 40,
            "delivery_radius_km": 15,
            "location": {"longitude": 73.85, "latitude": 18.52},
            "images": ["https://img.example.com/jaggery.jpg"],
        })

        assert product.id is not None
        assert product.farmer_id == "farmer-1"
        assert product.price_per_unit == Decimal("95.50")
        assert product.longitude == pytest.approx(73.85)
        assert product.images == ["https://img.example.com/jaggery.jpg"]

    def test_consumer_cannot_create_product(self, db, catalog):
        with pytest.raises(ForbiddenError):
            catalog.create_product(db, CONSUMER_1, {"title": "x"})

    def test_owner_updates_product(self, db, catalog, make_product):
        product_id = make_product(farmer_id="farmer-1")

        product = catalog.update_product(db, FARMER_1, product_id, {
            "price_per_unit": Decimal("85.00"),
            "quantity_available": 25,
        })

        assert product.price_per_unit == Decimal("85.00")
        assert product.quantity_available == 25
        assert product.title == "Basmati Rice"

    def test_other_farmer_cannot_update_or_delete(self, db, catalog, make_product):
        product_id = make_product(farmer_id="farmer-1")

        with pytest.raises(ForbiddenError):
            catalog.update_product(db, FARMER_2, product_id, {"quantity_available": 0})
        with pytest.raises(ForbiddenError):
            catalog.delete_product(db, FARMER_2, product_id)

        assert db.get(Product, product_id) is not None

    def test_owner_deletes_product(self, db, catalog, make_product):
        product_id = make_product(farmer_id="farmer-1")

        catalog.delete_product(db, FARMER_1, product_id)

        with pytest.raises(ProductNotFoundError):
            catalog.get_product(db, product_id)

    def test_update_unknown_product(self, db, catalog):
        with pytest.raises(ProductNotFoundError):
            catalog.update_product(db, FARMER_1, 404, {"title": "Ghost"})

    def test_list_farmer_products(self, db, catalog, make_product):
        first = make_product(farmer_id="farmer-1", title="First")
        make_product(farmer_id="farmer-2", title="Someone else's")
        second = make_product(farmer_id="farmer-1", title="Second")

        products = catalog.list_farmer_products(db, "farmer-1")

        assert [p.id for p in products] == [second, first]

    def test_modification_checks_ownership_through_is_owned_by(self, db, catalog, make_product, monkeypatch):
        product_id = make_product(farmer_id="farmer-1")
        checked = []

        def not_owned(session, pid, farmer_id):
            checked.append((pid, farmer_id))
            return False

        monkeypatch.setattr(catalog, "is_owned_by", not_owned)

        with pytest.raises(ForbiddenError):
            catalog.update_product(db, FARMER_1, product_id, {"quantity_available": 0})

        assert checked == [(product_id, "farmer-1")]
