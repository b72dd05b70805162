"""
Test Configuration — Fixtures for async DB, ledger store, and seed data.

Each test gets its own SQLite file so several sessions (e.g. concurrent
stock changes) can share one database.
"""

from datetime import datetime

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from db.models import Anomaly, Product, Transaction
from db.session import Base
from db.store import LedgerStore


@pytest.fixture
async def test_engine(tmp_path):
    """Create a file-backed SQLite engine and build all tables."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def test_db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def store(test_db):
    return LedgerStore(test_db)


@pytest.fixture
def make_product(store):
    """Factory: insert and commit a product (defaults are a plain 50-unit item)."""

    async def _make(**overrides) -> Product:
        fields = {
            "name": "Widget",
            "category": "general",
            "quantity": 50,
            "unit_price": 10.0,
            "minimum_stock": 10,
            "currency": "USD",
        }
        fields.update(overrides)
        product = await store.add_product(**fields)
        await store.commit()
        return product

    return _make


@pytest.fixture
def record_transaction(store):
    """
    Factory: append a ledger row at an explicit timestamp and move the
    product's quantity to match, the way the stock mutator would.
    """

    async def _record(
        product: Product,
        transaction_type: str,
        delta: int,
        *,
        at: datetime,
        actor: str | None = "clerk",
    ) -> Transaction:
        previous = product.quantity
        new = max(0, previous + delta)
        txn = Transaction(
            product_id=product.product_id,
            transaction_type=transaction_type,
            quantity_delta=delta,
            previous_quantity=previous,
            new_quantity=new,
            actor=actor,
            transaction_metadata={},
            created_at=at,
        )
        store.add_transactions([txn])
        product.quantity = new
        await store.commit()
        return txn

    return _record


@pytest.fixture
def record_anomaly(store):
    async def _record(
        product: Product | None,
        anomaly_type: str,
        *,
        at: datetime,
        severity: str = "medium",
        resolved: bool = False,
        metadata: dict | None = None,
    ) -> Anomaly:
        anomaly = Anomaly(
            product_id=product.product_id if product else None,
            anomaly_type=anomaly_type,
            severity=severity,
            description=f"{anomaly_type} recorded for test",
            confidence=0.8,
            resolved=resolved,
            resolved_at=at if resolved else None,
            anomaly_metadata=metadata or {},
            created_at=at,
        )
        store.add_anomalies([anomaly])
        await store.commit()
        return anomaly

    return _record
