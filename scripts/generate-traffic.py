#!/usr/bin/env python3
"""
Traffic generator for the farm marketplace demo.
Farmers list produce and work through their order queue; consumers browse,
check out single-farmer carts and check on their orders.

Tokens are minted locally with the service's JWT secret (JWT_SECRET env var).
"""

import os
import random
import threading
import time
from datetime import datetime, timedelta, timezone

import requests
from jose import jwt

API_URL = "http://localhost:8000"
JWT_SECRET = os.getenv("JWT_SECRET", "change-me-in-production")

CATEGORIES = ["Rice", "Vegetables", "Fruits", "Grains", "Dairy", "Spices"]

PRODUCE = {
    "Rice": ("Sona Masoori Rice", "kg", 70),
    "Vegetables": ("Green Okra", "kg", 45),
    "Fruits": ("Nagpur Oranges", "kg", 90),
    "Grains": ("Pearl Millet", "kg", 35),
    "Dairy": ("Fresh Paneer", "packet", 120),
    "Spices": ("Turmeric Powder", "packet", 60),
}

NEXT_STATUS = {
    "placed": "accepted",
    "accepted": "packed",
    "packed": "dispatched",
    "dispatched": "delivered",
}

CONSUMER_ACTION_WEIGHTS = {
    "browse": 0.5,
    "checkout": 0.3,
    "view_orders": 0.2,
}


def mint_token(user_id, role):
    claims = {
        "sub": user_id,
        "role": role,
        "exp": datetime.now(timezone.utc) + timedelta(hours=2),
    }
    return jwt.encode(claims, JWT_SECRET, algorithm="HS256")


def log(message):
    timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    print(f"[{timestamp}] {message}")


class Participant:
    def __init__(self, user_id, role):
        self.user_id = user_id
        self.role = role
        self.headers = {"Authorization": f"Bearer {mint_token(user_id, role)}"}

    def call(self, method, path, **kwargs):
        try:
            response = requests.request(
                method, f"{API_URL}{path}", headers=self.headers, timeout=10, **kwargs
            )
        except requests.RequestException as e:
            log(f"{self.role} {self.user_id}: {method} {path} failed - {e}")
            return None
        if response.status_code >= 400:
            log(f"{self.role} {self.user_id}: {method} {path} -> {response.status_code} "
                f"{response.text[:120]}")
        return response


class Farmer(Participant):
    def __init__(self, user_id):
        super().__init__(user_id, "farmer")

    def list_produce(self):
        category = random.choice(CATEGORIES)
        title, unit, price = PRODUCE[category]
        response = self.call("POST", "/products", json={
            "title": f"{title} ({self.user_id})",
            "description": f"{title} grown by {self.user_id}",
            "category": category,
            "price_per_unit": price + random.randint(-10, 10),
            "measuring_unit": unit,
            "min_order_qty": random.randint(1, 3),
            "shelf_life_days": random.randint(3, 180),
            "quantity_available": random.randint(20, 200),
            "delivery_radius_km": random.randint(5, 50),
        })
        if response is not None and response.status_code == 201:
            log(f"farmer {self.user_id}: listed {response.json()['title']}")

    def work_orders(self):
        response = self.call("GET", "/orders/farmer")
        if response is None or response.status_code != 200:
            return
        for order in response.json()["orders"]:
            if random.random() < 0.05 and order["status"] in ("placed", "accepted"):
                new_status = "cancelled"
            else:
                new_status = NEXT_STATUS.get(order["status"])
            if new_status is None:
                continue
            updated = self.call("PUT", f"/orders/{order['id']}/status", json={"status": new_status})
            if updated is not None and updated.status_code == 200:
                log(f"farmer {self.user_id}: order {order['id']} -> {new_status}")


class Consumer(Participant):
    def __init__(self, user_id):
        super().__init__(user_id, "consumer")
        self.catalog = []

    def browse(self):
        params = {"limit": 50}
        if random.random() < 0.5:
            params["category"] = random.choice(CATEGORIES)
        response = self.call("GET", "/products", params=params)
        if response is not None and response.status_code == 200:
            self.catalog = response.json()["products"]
            log(f"consumer {self.user_id}: browsed {len(self.catalog)} products")

    def checkout(self):
        if not self.catalog:
            self.browse()
        in_stock = [p for p in self.catalog if p["quantity_available"] >= p["min_order_qty"]]
        if not in_stock:
            return
        # Orders are single-farmer: build the cart from one farmer's listings
        farmer_id = random.choice(in_stock)["farmer_id"]
        listings = [p for p in in_stock if p["farmer_id"] == farmer_id]
        cart = [
            {"product_id": p["id"], "quantity": p["min_order_qty"] + random.randint(0, 2)}
            for p in random.sample(listings, k=min(len(listings), random.randint(1, 3)))
        ]
        response = self.call("POST", "/orders", json={
            "items": cart,
            "delivery_address": f"{random.randint(1, 200)} Market Road, Pune 4110{random.randint(10, 99)}",
            "phone": f"98{random.randint(10000000, 99999999)}",
        })
        if response is not None and response.status_code == 201:
            order = response.json()["orders"][0]
            log(f"consumer {self.user_id}: placed order {order['id']} for {order['subtotal']}")

    def view_orders(self):
        response = self.call("GET", "/orders/consumer")
        if response is not None and response.status_code == 200:
            log(f"consumer {self.user_id}: has {len(response.json()['orders'])} orders")

    def random_action(self):
        action = random.choices(
            list(CONSUMER_ACTION_WEIGHTS.keys()),
            weights=list(CONSUMER_ACTION_WEIGHTS.values())
        )[0]
        getattr(self, action)()


def farmer_session(farmer, duration_seconds):
    end_time = time.time() + duration_seconds
    for _ in range(random.randint(2, 4)):
        farmer.list_produce()
    while time.time() < end_time:
        farmer.work_orders()
        if random.random() < 0.1:
            farmer.list_produce()
        time.sleep(random.uniform(2, 5))


def consumer_session(consumer, duration_seconds):
    end_time = time.time() + duration_seconds
    consumer.browse()
    while time.time() < end_time:
        consumer.random_action()
        time.sleep(random.uniform(0.5, 1.5))


def generate_traffic(num_farmers=3, num_consumers=10, session_duration=60):
    """Run farmer and consumer sessions concurrently until interrupted."""
    log(f"Starting traffic generation with {num_farmers} farmers and {num_consumers} consumers")
    log(f"Session duration: {session_duration} seconds")

    farmers = [Farmer(f"farmer_{i}") for i in range(num_farmers)]
    threads = []

    try:
        while True:
            for farmer in farmers:
                if not any(t.name == farmer.user_id and t.is_alive() for t in threads):
                    thread = threading.Thread(
                        target=farmer_session,
                        args=(farmer, session_duration),
                        name=farmer.user_id
                    )
                    thread.start()
                    threads.append(thread)

            while len([t for t in threads if t.is_alive()]) < num_farmers + num_consumers:
                consumer = Consumer(f"consumer_{random.randint(1000, 9999)}")
                thread = threading.Thread(
                    target=consumer_session,
                    args=(consumer, session_duration),
                    name=consumer.user_id
                )
                thread.start()
                threads.append(thread)
                time.sleep(random.uniform(0.5, 2))

            threads = [t for t in threads if t.is_alive()]
            time.sleep(5)

    except KeyboardInterrupt:
        log("\nStopping traffic generation...")
        for thread in threads:
            thread.join(timeout=10)
        log("Traffic generation stopped")


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Generate traffic for the farm marketplace")
    parser.add_argument("--farmers", type=int, default=3, help="Concurrent farmers (default: 3)")
    parser.add_argument("--consumers", type=int, default=10, help="Concurrent consumers (default: 10)")
    parser.add_argument("--duration", type=int, default=60, help="Session duration in seconds (default: 60)")
    parser.add_argument("--url", type=str, default="http://localhost:8000", help="API URL")

    args = parser.parse_args()
    API_URL = args.url

    log("=" * 60)
    log("Farm Marketplace Traffic Generator")
    log("=" * 60)
    log(f"API URL: {API_URL}")

    generate_traffic(args.farmers, args.consumers, args.duration)
