"""
Ledger Store — the narrow persistence interface the core consumes.

Wraps an AsyncSession so the stock mutator, rule engine, and alert
generator take the store as an explicit parameter instead of reaching
for a global session. Writes are staged on the session; callers decide
when to commit.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable, Sequence
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import Alert, Anomaly, Product, Transaction

# Distinguishes "filter on product_id IS NULL" from "no product filter".
ANY = object()


class LedgerStore:
    def __init__(self, db: AsyncSession):
        self.db = db

    # ── Products ────────────────────────────────────────────────────────

    async def get_product(self, product_id: uuid.UUID, *, for_update: bool = False) -> Product | None:
        query = select(Product).where(Product.product_id == product_id)
        if for_update:
            query = query.with_for_update()
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def get_products(self, product_ids: Iterable[uuid.UUID]) -> dict[uuid.UUID, Product]:
        ids = {pid for pid in product_ids if pid is not None}
        if not ids:
            return {}
        result = await self.db.execute(select(Product).where(Product.product_id.in_(ids)))
        return {p.product_id: p for p in result.scalars().all()}

    async def list_products(
        self,
        category: str | None = None,
        min_price: float | None = None,
    ) -> list[Product]:
        """List products; ``min_price`` is exclusive (price > min_price)."""
        query = select(Product)
        if category:
            query = query.where(Product.category == category)
        if min_price is not None:
            query = query.where(Product.unit_price > min_price)
        result = await self.db.execute(query.order_by(Product.name))
        return list(result.scalars().all())

    async def add_product(self, **fields: Any) -> Product:
        product = Product(**fields)
        self.db.add(product)
        await self.db.flush()
        return product

    async def update_product(self, product_id: uuid.UUID, **fields: Any) -> Product | None:
        """Direct edit of product fields, bypassing the stock ledger."""
        product = await self.get_product(product_id)
        if product is None:
            return None
        for key, value in fields.items():
            setattr(product, key, value)
        await self.db.flush()
        return product

    # ── Transactions ────────────────────────────────────────────────────

    async def list_transactions(
        self,
        product_id: uuid.UUID,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[Transaction]:
        """A product's ledger, oldest first."""
        query = select(Transaction).where(Transaction.product_id == product_id)
        if since is not None:
            query = query.where(Transaction.created_at >= since)
        if until is not None:
            query = query.where(Transaction.created_at <= until)
        result = await self.db.execute(query.order_by(Transaction.created_at.asc()))
        return list(result.scalars().all())

    def add_transactions(self, transactions: Sequence[Transaction]) -> None:
        self.db.add_all(transactions)

    # ── Anomalies ───────────────────────────────────────────────────────

    def add_anomalies(self, anomalies: Sequence[Anomaly]) -> None:
        self.db.add_all(anomalies)

    async def find_anomalies(
        self,
        product_id: Any = ANY,
        anomaly_type: str | Sequence[str] | None = None,
        resolved: bool | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[Anomaly]:
        query = select(Anomaly)
        if product_id is None:
            query = query.where(Anomaly.product_id.is_(None))
        elif product_id is not ANY:
            query = query.where(Anomaly.product_id == product_id)
        if isinstance(anomaly_type, str):
            query = query.where(Anomaly.anomaly_type == anomaly_type)
        elif anomaly_type:
            query = query.where(Anomaly.anomaly_type.in_(list(anomaly_type)))
        if resolved is not None:
            query = query.where(Anomaly.resolved.is_(resolved))
        if since is not None:
            query = query.where(Anomaly.created_at >= since)
        if until is not None:
            query = query.where(Anomaly.created_at <= until)
        result = await self.db.execute(query.order_by(Anomaly.created_at.desc()))
        return list(result.scalars().all())

    async def resolve_anomaly(self, anomaly_id: uuid.UUID, resolved_at: datetime | None = None) -> Anomaly | None:
        result = await self.db.execute(select(Anomaly).where(Anomaly.anomaly_id == anomaly_id))
        anomaly = result.scalar_one_or_none()
        if anomaly is None:
            return None
        anomaly.resolved = True
        anomaly.resolved_at = resolved_at or datetime.utcnow()
        await self.db.commit()
        return anomaly

    # ── Alerts ──────────────────────────────────────────────────────────

    def add_alerts(self, alerts: Sequence[Alert]) -> None:
        self.db.add_all(alerts)

    async def find_alerts(
        self,
        alert_type: str | None = None,
        product_id: Any = ANY,
        is_read: bool | None = None,
        since: datetime | None = None,
    ) -> list[Alert]:
        query = select(Alert)
        if alert_type:
            query = query.where(Alert.alert_type == alert_type)
        if product_id is None:
            query = query.where(Alert.product_id.is_(None))
        elif product_id is not ANY:
            query = query.where(Alert.product_id == product_id)
        if is_read is not None:
            query = query.where(Alert.is_read.is_(is_read))
        if since is not None:
            query = query.where(Alert.created_at >= since)
        result = await self.db.execute(query.order_by(Alert.created_at.desc()))
        return list(result.scalars().all())

    async def mark_alert_read(self, alert_id: uuid.UUID) -> Alert | None:
        result = await self.db.execute(select(Alert).where(Alert.alert_id == alert_id))
        alert = result.scalar_one_or_none()
        if alert is None:
            return None
        alert.is_read = True
        await self.db.commit()
        return alert

    # ── Unit of work ────────────────────────────────────────────────────

    async def commit(self) -> None:
        await self.db.commit()

    async def rollback(self) -> None:
        await self.db.rollback()

    def savepoint(self):
        """Nested transaction; a failure inside rolls back to it and leaves the outer one usable."""
        return self.db.begin_nested()

    def detach(self, records: Iterable[Any]) -> None:
        """Expunge committed records so a later rollback cannot expire them."""
        for record in records:
            self.db.expunge(record)
