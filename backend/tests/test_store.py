"""Tests for the LedgerStore query surface."""

import uuid
from datetime import datetime, timedelta

import pytest
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from db.models import Alert


class TestProducts:
    async def test_list_products_filters(self, store, make_product):
        await make_product(name="Cheap", category="food", unit_price=100.0)
        await make_product(name="Pricey", category="electronics", unit_price=100.01)

        assert [p.name for p in await store.list_products(min_price=100)] == ["Pricey"]
        assert [p.name for p in await store.list_products(category="food")] == ["Cheap"]

    async def test_update_missing_product(self, store):
        assert await store.update_product(uuid.uuid4(), quantity=3) is None


class TestAnomalies:
    async def test_product_filter_distinguishes_system_wide(self, store, make_product, record_anomaly):
        now = datetime.utcnow()
        product = await make_product()
        await record_anomaly(product, "low_stock", at=now)
        await record_anomaly(None, "organized_theft_pattern", at=now)

        assert len(await store.find_anomalies()) == 2
        assert [a.anomaly_type for a in await store.find_anomalies(product_id=None)] == ["organized_theft_pattern"]
        assert [a.anomaly_type for a in await store.find_anomalies(product_id=product.product_id)] == ["low_stock"]

    async def test_type_and_window_filters(self, store, make_product, record_anomaly):
        now = datetime.utcnow()
        product = await make_product()
        await record_anomaly(product, "low_stock", at=now - timedelta(days=10))
        await record_anomaly(product, "potential_theft", at=now - timedelta(hours=1))

        recent = await store.find_anomalies(since=now - timedelta(days=1))
        assert [a.anomaly_type for a in recent] == ["potential_theft"]
        both = await store.find_anomalies(anomaly_type=("low_stock", "potential_theft"))
        assert [a.anomaly_type for a in both] == ["potential_theft", "low_stock"]

    async def test_resolve_anomaly(self, store, make_product, record_anomaly):
        now = datetime.utcnow()
        anomaly = await record_anomaly(await make_product(), "low_stock", at=now)

        resolved = await store.resolve_anomaly(anomaly.anomaly_id, resolved_at=now)

        assert resolved.resolved is True
        assert resolved.resolved_at == now
        assert await store.find_anomalies(resolved=False) == []


class TestAlerts:
    async def test_mark_alert_read(self, store):
        alert = Alert(alert_type="system", title="Test", message="hello", severity="info")
        store.add_alerts([alert])
        await store.commit()

        await store.mark_alert_read(alert.alert_id)

        assert await store.find_alerts(is_read=False) == []
        assert len(await store.find_alerts(alert_type="system", is_read=True)) == 1


class TestUnitOfWork:
    async def test_failed_statement_rolls_back_to_savepoint(self, store, make_product):
        product = await make_product(quantity=50)

        with pytest.raises(SQLAlchemyError):
            async with store.savepoint():
                await store.db.execute(text("SELECT 1 FROM missing_table"))

        await store.update_product(product.product_id, quantity=7)
        await store.commit()

        assert (await store.get_product(product.product_id)).quantity == 7
