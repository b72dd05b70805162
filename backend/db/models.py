"""
ShelfGuard Database Models

4 tables for inventory stock tracking and loss-prevention monitoring.

Tables:
  1. products      - Product catalog with live quantity snapshot
  2. transactions  - Stock ledger, one row per quantity change (append-only)
  3. anomalies     - Rule-engine findings (resolved, never deleted)
  4. alerts        - User-facing notifications derived from anomalies
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    types,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import relationship

from db.session import Base

TRANSACTION_TYPES = ("sale", "restock", "adjustment", "expiry", "damage", "purchase")

ANOMALY_TYPES = (
    "low_stock",
    "expiry_warning",
    "unusual_pattern",
    "potential_theft",
    "inventory_shrinkage",
    "unauthorized_access_pattern",
    "organized_theft_pattern",
    "security",
    "stock_discrepancy",
    "high_variance",
)
ANOMALY_SEVERITIES = ("low", "medium", "high", "critical")

ALERT_TYPES = ("low_stock", "expiry", "anomaly", "system", "security")
ALERT_SEVERITIES = ("info", "warning", "error", "critical")


def _in_list(column: str, values: tuple[str, ...]) -> str:
    quoted = ", ".join(f"'{v}'" for v in values)
    return f"{column} IN ({quoted})"


class GUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL UUID when available, stores as CHAR(36) on SQLite.
    """

    impl = types.String(36)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(types.String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if dialect.name == "postgresql":
            return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
        return str(value) if isinstance(value, uuid.UUID) else str(uuid.UUID(str(value)))

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(str(value))


# ─── 1. Products ────────────────────────────────────────────────────────────


class Product(Base):
    __tablename__ = "products"

    product_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    name = Column(String(100), nullable=False)
    category = Column(String(50), nullable=False)
    quantity = Column(Integer, nullable=False, default=0)
    unit_price = Column(Float, nullable=False, default=0.0)
    expiry_date = Column(DateTime, nullable=True)
    minimum_stock = Column(Integer, nullable=False, default=10)
    currency = Column(String(3))
    barcode = Column(String(64), unique=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_products_category", "category"),
        Index("ix_products_price", "unit_price"),
        CheckConstraint("quantity >= 0", name="ck_product_quantity_nonnegative"),
        CheckConstraint("unit_price >= 0", name="ck_product_price_positive"),
        CheckConstraint("minimum_stock >= 0", name="ck_product_minimum_stock_nonnegative"),
    )

    transactions = relationship("Transaction", back_populates="product")


# ─── 2. Transactions (ledger) ──────────────────────────────────────────────


class Transaction(Base):
    __tablename__ = "transactions"

    transaction_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    product_id = Column(GUID(), ForeignKey("products.product_id"), nullable=False)
    transaction_type = Column(String(20), nullable=False)
    quantity_delta = Column(Integer, nullable=False)  # signed
    previous_quantity = Column(Integer, nullable=False)
    new_quantity = Column(Integer, nullable=False)
    reason = Column(String(200))
    actor = Column(String(100))
    transaction_metadata = Column("metadata", JSON, default=dict)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_transactions_product_time", "product_id", "created_at"),
        CheckConstraint(_in_list("transaction_type", TRANSACTION_TYPES), name="ck_transaction_type"),
    )

    product = relationship("Product", back_populates="transactions")


# ─── 3. Anomalies ──────────────────────────────────────────────────────────


class Anomaly(Base):
    __tablename__ = "anomalies"

    anomaly_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    product_id = Column(GUID(), ForeignKey("products.product_id"), nullable=True)  # NULL = system-wide
    anomaly_type = Column(String(50), nullable=False)
    severity = Column(String(20), nullable=False)
    description = Column(Text, nullable=False)
    confidence = Column(Float)
    resolved = Column(Boolean, nullable=False, default=False)
    resolved_at = Column(DateTime)
    anomaly_metadata = Column("metadata", JSON, default=dict)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_anomalies_product_type", "product_id", "anomaly_type", "created_at"),
        Index("ix_anomalies_resolved", "resolved"),
        CheckConstraint(_in_list("anomaly_type", ANOMALY_TYPES), name="ck_anomaly_type"),
        CheckConstraint(_in_list("severity", ANOMALY_SEVERITIES), name="ck_anomaly_severity"),
        CheckConstraint("confidence >= 0 AND confidence <= 1", name="ck_anomaly_confidence_range"),
    )


# ─── 4. Alerts ─────────────────────────────────────────────────────────────


class Alert(Base):
    __tablename__ = "alerts"

    alert_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    alert_type = Column(String(20), nullable=False)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    severity = Column(String(20), nullable=False, default="info")
    is_read = Column(Boolean, nullable=False, default=False)
    product_id = Column(GUID(), ForeignKey("products.product_id"), nullable=True)
    alert_metadata = Column("metadata", JSON, default=dict)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_alerts_type_product_time", "alert_type", "product_id", "created_at"),
        CheckConstraint(_in_list("alert_type", ALERT_TYPES), name="ck_alert_type"),
        CheckConstraint(_in_list("severity", ALERT_SEVERITIES), name="ck_alert_severity"),
    )
