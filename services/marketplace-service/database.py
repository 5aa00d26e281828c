"""Database connection and session management."""
from decimal import Decimal
from typing import Generator
import logging

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from config import DATABASE_URL, DB_POOL_TIMEOUT, DB_STATEMENT_TIMEOUT_MS, SEED_DEMO_DATA
from models import Base, Product

logger = logging.getLogger(__name__)


def build_engine(url: str) -> Engine:
    """
    Create an engine for the given database URL.

    PostgreSQL gets a bounded connection pool and a server-side statement
    timeout. SQLite (local development and tests) gets a busy timeout so
    concurrent writers wait for the lock instead of failing.

    Args:
        url: SQLAlchemy database URL

    Returns:
        Configured engine
    """
    if url.startswith("sqlite"):
        if url in ("sqlite://", "sqlite:///:memory:"):
            return create_engine(
                url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        return create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": DB_POOL_TIMEOUT},
        )

    return create_engine(
        url,
        pool_size=10,
        max_overflow=20,
        pool_pre_ping=True,  # Verify connections before use
        pool_recycle=3600,
        pool_timeout=DB_POOL_TIMEOUT,
        connect_args={"options": f"-c statement_timeout={DB_STATEMENT_TIMEOUT_MS}"},
    )


engine = build_engine(DATABASE_URL)

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Generator[Session, None, None]:
    """
    Dependency for getting database session.

    Yields:
        Database session
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind: Engine = engine, seed: bool = SEED_DEMO_DATA) -> None:
    """Initialize database tables and seed demo listings."""
    Base.metadata.create_all(bind=bind)

    if not seed:
        return

    db = sessionmaker(bind=bind)()
    try:
        if db.query(Product).count() == 0:
            products = [
                Product(
                    farmer_id="demo-farmer",
                    title="Basmati Rice",
                    description="Aged long-grain basmati from the Doon valley",
                    category="Rice",
                    price_per_unit=Decimal("80.00"),
                    measuring_unit="kg",
                    min_order_qty=1,
                    shelf_life_days=365,
                    quantity_available=200,
                    delivery_radius_km=50,
                ),
                Product(
                    farmer_id="demo-farmer",
                    title="Fresh Tomatoes",
                    description="Vine-ripened tomatoes picked this morning",
                    category="Vegetables",
                    price_per_unit=Decimal("40.00"),
                    measuring_unit="kg",
                    min_order_qty=2,
                    shelf_life_days=7,
                    quantity_available=120,
                    delivery_radius_km=25,
                ),
                Product(
                    farmer_id="demo-farmer",
                    title="Alphonso Mangoes",
                    description="Sweet Ratnagiri Alphonso mangoes",
                    category="Fruits",
                    price_per_unit=Decimal("60.00"),
                    measuring_unit="piece",
                    min_order_qty=6,
                    shelf_life_days=10,
                    quantity_available=300,
                    delivery_radius_km=40,
                ),
                Product(
                    farmer_id="demo-farmer",
                    title="Cow Milk",
                    description="Unpasteurised whole milk from grass-fed cows",
                    category="Dairy",
                    price_per_unit=Decimal("55.00"),
                    measuring_unit="litre",
                    min_order_qty=1,
                    shelf_life_days=2,
                    quantity_available=40,
                    delivery_radius_km=10,
                ),
            ]
            db.add_all(products)
            db.commit()
            logger.info("Seeded database with demo products")
    finally:
        db.close()
