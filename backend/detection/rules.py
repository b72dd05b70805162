"""
Detection Rules — per-product and cross-product anomaly detectors.

Every detector is a pure function of a ProductContext (product, its
recent ledger, its already-recorded anomalies, and "now"). Nothing here
touches the database; the engine loads the context and persists the
candidates.

Detectors:
  - low_stock:                   quantity <= minimum_stock
  - expiry_warning:              expires within 30 days
  - potential_theft:             unexplained ledger losses, two-strike
  - inventory_shrinkage:         gradual loss over 90 days
  - unauthorized_access_pattern: after-hours or single-actor bursts
  - organized_theft_pattern:     >= 3 high-value items short on the same day
  - unusual_pattern:             legacy sales-spike / frequency check
"""

import math
import uuid
from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Any

from db.models import Anomaly, Product, Transaction

# ──────────────────────────────────────────────────────────────────────────
# Thresholds
# ──────────────────────────────────────────────────────────────────────────

CONFIDENCE = {
    "low_stock": 0.95,
    "expiry_warning": 0.90,
    "inventory_shrinkage": 0.80,
    "unauthorized_access_pattern": 0.70,
    "organized_theft_pattern": 0.85,
}

EXPIRY_WINDOW_DAYS = 30
EXPIRY_URGENT_DAYS = 7

THEFT_WINDOW = timedelta(days=30)
THEFT_STRIKE_WINDOW = timedelta(hours=24)
THEFT_RECENT_LOSS_WINDOW = timedelta(days=7)
THEFT_LOSS_TOLERANCE = 2  # units of drift ignored per event
THEFT_MIN_TOTAL_LOSS = 3
THEFT_CRITICAL_VALUE = 500
THEFT_HIGH_UNITS = 10
THEFT_CONFIDENCE_CAP = 0.95
# A first detection records a stock_discrepancy; either type counts as a prior strike.
THEFT_STRIKE_TYPES = ("stock_discrepancy", "potential_theft")

SHRINKAGE_WINDOW_DAYS = 90
SHRINKAGE_MIN_TRANSACTIONS = 10
SHRINKAGE_MIN_DAILY_RATE = 0.5
SHRINKAGE_HIGH_DAILY_RATE = 2
SHRINKAGE_MIN_UNITS = 5
SHRINKAGE_COOLDOWN = timedelta(days=7)

ACCESS_WINDOW = timedelta(days=7)
ACCESS_COOLDOWN = timedelta(hours=24)
AFTER_HOURS = frozenset({23, 0, 1, 2, 3, 4, 5})
AFTER_HOURS_MAX_EVENTS = 2
ACTOR_MAX_EVENTS = 10
SYSTEM_ACTOR = "system"
UNKNOWN_ACTOR = "unknown"

ORGANIZED_THEFT_WINDOW = timedelta(hours=24)
ORGANIZED_THEFT_MIN_PRICE = 100
ORGANIZED_THEFT_MIN_ITEMS = 3

PATTERN_WINDOW = timedelta(days=7)
PATTERN_COOLDOWN = timedelta(hours=24)
PATTERN_MIN_TRANSACTIONS = 3
PATTERN_LARGE_SALE_FACTOR = 3
PATTERN_HIGH_FREQUENCY = 10


# ──────────────────────────────────────────────────────────────────────────
# Types
# ──────────────────────────────────────────────────────────────────────────


@dataclass
class AnomalyCandidate:
    """A detector finding that has not been persisted yet."""

    anomaly_type: str
    severity: str
    description: str
    confidence: float
    product_id: uuid.UUID | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "product_id": str(self.product_id) if self.product_id else None,
            "anomaly_type": self.anomaly_type,
            "severity": self.severity,
            "description": self.description,
            "confidence": self.confidence,
            "metadata": self.metadata,
        }


@dataclass
class ProductContext:
    product: Product
    ledger: list[Transaction]  # trailing 90 days, oldest first
    existing: list[Anomaly]  # unresolved, plus anything recorded in the last 7 days
    now: datetime
    tz: tzinfo = timezone.utc

    def transactions_since(self, window: timedelta) -> list[Transaction]:
        cutoff = self.now - window
        return [t for t in self.ledger if t.created_at >= cutoff]

    def has_anomaly(
        self,
        anomaly_types: Iterable[str],
        *,
        unresolved_only: bool,
        within: timedelta | None = None,
    ) -> bool:
        types = set(anomaly_types)
        cutoff = self.now - within if within is not None else None
        for anomaly in self.existing:
            if anomaly.anomaly_type not in types:
                continue
            if unresolved_only and anomaly.resolved:
                continue
            if cutoff is not None and anomaly.created_at < cutoff:
                continue
            return True
        return False


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _local_hour(timestamp: datetime, tz: tzinfo) -> int:
    """Stored timestamps are naive UTC."""
    return timestamp.replace(tzinfo=timezone.utc).astimezone(tz).hour


# ──────────────────────────────────────────────────────────────────────────
# Stock level rules
# ──────────────────────────────────────────────────────────────────────────


def detect_low_stock(ctx: ProductContext) -> list[AnomalyCandidate]:
    product = ctx.product
    if product.quantity > product.minimum_stock:
        return []
    if ctx.has_anomaly(("low_stock",), unresolved_only=True):
        return []

    return [
        AnomalyCandidate(
            product_id=product.product_id,
            anomaly_type="low_stock",
            severity="critical" if product.quantity == 0 else "high",
            description=f"Stock critically low: {product.quantity} units remaining",
            confidence=CONFIDENCE["low_stock"],
            metadata={
                "current_stock": product.quantity,
                "minimum_stock": product.minimum_stock,
            },
        )
    ]


def days_until_expiry(expiry_date: datetime, now: datetime) -> int:
    """Whole days remaining, rounded up (expires in 2.1 days → 3)."""
    return math.ceil((expiry_date - now).total_seconds() / 86400)


def detect_expiry_warning(ctx: ProductContext) -> list[AnomalyCandidate]:
    product = ctx.product
    if product.expiry_date is None:
        return []

    days = days_until_expiry(product.expiry_date, ctx.now)
    if not 0 < days <= EXPIRY_WINDOW_DAYS:
        return []
    if ctx.has_anomaly(("expiry_warning",), unresolved_only=True):
        return []

    return [
        AnomalyCandidate(
            product_id=product.product_id,
            anomaly_type="expiry_warning",
            severity="high" if days <= EXPIRY_URGENT_DAYS else "medium",
            description=f"Product expires in {days} days",
            confidence=CONFIDENCE["expiry_warning"],
            metadata={
                "days_until_expiry": days,
                "expiry_date": _iso(product.expiry_date),
            },
        )
    ]


# ──────────────────────────────────────────────────────────────────────────
# Theft rules
# ──────────────────────────────────────────────────────────────────────────


def find_unexplained_losses(ctx: ProductContext) -> list[dict[str, Any]]:
    """
    Replay the last 30 days of the ledger and collect losses the
    transactions do not explain.

    Each transaction's delta is applied to a running total seeded from the
    first transaction's previous_quantity. A recorded new_quantity more
    than 2 units below the running total is a loss; the total then resyncs
    to the recorded value so one gap is not counted twice. Finally the
    live quantity is compared with the last recorded new_quantity.
    """
    ledger = ctx.transactions_since(THEFT_WINDOW)
    if not ledger:
        return []

    losses: list[dict[str, Any]] = []
    calculated = ledger[0].previous_quantity
    for txn in ledger:
        calculated += txn.quantity_delta
        discrepancy = txn.new_quantity - calculated
        if discrepancy < -THEFT_LOSS_TOLERANCE:
            losses.append(
                {
                    "date": txn.created_at,
                    "expected_stock": calculated,
                    "actual_stock": txn.new_quantity,
                    "discrepancy": -discrepancy,
                    "transaction_id": str(txn.transaction_id),
                }
            )
        calculated = txn.new_quantity

    last = ledger[-1]
    current_gap = last.new_quantity - ctx.product.quantity
    if current_gap > THEFT_LOSS_TOLERANCE:
        losses.append(
            {
                "date": ctx.now,
                "expected_stock": last.new_quantity,
                "actual_stock": ctx.product.quantity,
                "discrepancy": current_gap,
                "type": "current_discrepancy",
            }
        )

    return losses


def theft_confidence(losses: list[dict[str, Any]], total_loss: int, now: datetime) -> float:
    confidence = 0.5
    if len(losses) > 2:
        confidence += 0.1
    if len(losses) > 5:
        confidence += 0.1
    if total_loss > 10:
        confidence += 0.1
    if total_loss > 25:
        confidence += 0.1
    recent_cutoff = now - THEFT_RECENT_LOSS_WINDOW
    if any(loss["date"] > recent_cutoff for loss in losses):
        confidence += 0.1
    return round(min(confidence, THEFT_CONFIDENCE_CAP), 2)


def theft_severity(total_loss: int, loss_value: float) -> str:
    if loss_value > THEFT_CRITICAL_VALUE:
        return "critical"
    if total_loss > THEFT_HIGH_UNITS:
        return "high"
    return "medium"


def detect_potential_theft(ctx: ProductContext) -> list[AnomalyCandidate]:
    """
    Two-strike theft rule.

    The first pass that sees unexplained losses records a
    stock_discrepancy strike. A later pass that still sees more than 3
    lost units while an unresolved strike from the last 24 hours is on
    record escalates to potential_theft.
    """
    losses = find_unexplained_losses(ctx)
    if not losses:
        return []

    product = ctx.product
    total_loss = sum(loss["discrepancy"] for loss in losses)
    loss_value = total_loss * (product.unit_price or 0)
    currency = product.currency or "USD"
    confidence = theft_confidence(losses, total_loss, ctx.now)
    evidence = {
        "total_units_lost": total_loss,
        "estimated_value": round(loss_value, 2),
        "currency": currency,
        "discrepancy_count": len(losses),
        "unexplained_losses": [{**loss, "date": _iso(loss["date"])} for loss in losses[:5]],
        "analysis_period": "30 days",
    }

    has_prior_strike = ctx.has_anomaly(THEFT_STRIKE_TYPES, unresolved_only=True, within=THEFT_STRIKE_WINDOW)
    if not has_prior_strike:
        return [
            AnomalyCandidate(
                product_id=product.product_id,
                anomaly_type="stock_discrepancy",
                severity="medium",
                description=f"Stock discrepancy: {total_loss} units unaccounted for by recorded transactions",
                confidence=confidence,
                metadata=evidence,
            )
        ]

    if total_loss <= THEFT_MIN_TOTAL_LOSS:
        return []

    return [
        AnomalyCandidate(
            product_id=product.product_id,
            anomaly_type="potential_theft",
            severity=theft_severity(total_loss, loss_value),
            description=(
                f"Potential theft detected: {total_loss} units ({loss_value:.2f} {currency}) unaccounted for"
            ),
            confidence=confidence,
            metadata=evidence,
        )
    ]


def detect_inventory_shrinkage(ctx: ProductContext) -> list[AnomalyCandidate]:
    """Gradual loss: stock the sales/restock history cannot account for over 90 days."""
    ledger = ctx.transactions_since(timedelta(days=SHRINKAGE_WINDOW_DAYS))
    if len(ledger) < SHRINKAGE_MIN_TRANSACTIONS:
        return []

    total_sales = sum(abs(t.quantity_delta) for t in ledger if t.transaction_type == "sale")
    total_restocks = sum(abs(t.quantity_delta) for t in ledger if t.transaction_type in ("restock", "purchase"))
    expected = ledger[0].previous_quantity + total_restocks - total_sales
    actual = ctx.product.quantity
    shrinkage = expected - actual
    daily_rate = shrinkage / SHRINKAGE_WINDOW_DAYS

    if not (daily_rate > SHRINKAGE_MIN_DAILY_RATE and shrinkage > SHRINKAGE_MIN_UNITS):
        return []
    # Recency only; a resolved finding still suppresses for the cooldown.
    if ctx.has_anomaly(("inventory_shrinkage",), unresolved_only=False, within=SHRINKAGE_COOLDOWN):
        return []

    return [
        AnomalyCandidate(
            product_id=ctx.product.product_id,
            anomaly_type="inventory_shrinkage",
            severity="high" if daily_rate > SHRINKAGE_HIGH_DAILY_RATE else "medium",
            description=(
                f"Inventory shrinkage detected: {shrinkage:.1f} units lost over "
                f"{SHRINKAGE_WINDOW_DAYS} days ({daily_rate:.2f} units/day)"
            ),
            confidence=CONFIDENCE["inventory_shrinkage"],
            metadata={
                "total_shrinkage": shrinkage,
                "daily_shrinkage_rate": round(daily_rate, 4),
                "expected_stock": expected,
                "actual_stock": actual,
                "total_sales": total_sales,
                "total_restocks": total_restocks,
                "analysis_period": f"{SHRINKAGE_WINDOW_DAYS} days",
            },
        )
    ]


def detect_unauthorized_access(ctx: ProductContext) -> list[AnomalyCandidate]:
    recent = ctx.transactions_since(ACCESS_WINDOW)

    hourly = [0] * 24
    by_actor: Counter[str] = Counter()
    for txn in recent:
        hourly[_local_hour(txn.created_at, ctx.tz)] += 1
        by_actor[txn.actor or UNKNOWN_ACTOR] += 1

    patterns: list[dict[str, Any]] = []
    after_hours = sum(hourly[h] for h in AFTER_HOURS)
    if after_hours > AFTER_HOURS_MAX_EVENTS:
        patterns.append(
            {
                "type": "after_hours_access",
                "count": after_hours,
                "description": f"{after_hours} transactions during non-business hours",
            }
        )
    for actor, count in by_actor.items():
        if count > ACTOR_MAX_EVENTS and actor != SYSTEM_ACTOR:
            patterns.append(
                {
                    "type": "excessive_user_activity",
                    "actor": actor,
                    "count": count,
                    "description": f"User {actor} performed {count} transactions in 7 days",
                }
            )

    if not patterns:
        return []
    # Recency only; a resolved finding still suppresses for the cooldown.
    if ctx.has_anomaly(("unauthorized_access_pattern",), unresolved_only=False, within=ACCESS_COOLDOWN):
        return []

    return [
        AnomalyCandidate(
            product_id=ctx.product.product_id,
            anomaly_type="unauthorized_access_pattern",
            severity="high" if any(p["type"] == "after_hours_access" for p in patterns) else "medium",
            description="Unusual access patterns detected: " + ", ".join(p["description"] for p in patterns),
            confidence=CONFIDENCE["unauthorized_access_pattern"],
            metadata={
                "patterns": patterns,
                "total_transactions": len(recent),
                "analysis_window": "7 days",
            },
        )
    ]


# ──────────────────────────────────────────────────────────────────────────
# Legacy pattern rule (ruleset v1)
# ──────────────────────────────────────────────────────────────────────────


def analyze_transaction_pattern(transactions: list[Transaction]) -> dict[str, Any] | None:
    sale_sizes = [abs(t.quantity_delta) for t in transactions if t.transaction_type == "sale"]

    if sale_sizes:
        avg_sale = sum(sale_sizes) / len(sale_sizes)
        large = [q for q in sale_sizes if q > avg_sale * PATTERN_LARGE_SALE_FACTOR]
        if large:
            return {
                "severity": "medium",
                "confidence": 0.75,
                "description": f"Unusual sales pattern detected: {len(large)} unusually large transactions",
                "metadata": {
                    "large_sales_count": len(large),
                    "avg_sale_quantity": round(avg_sale, 2),
                    "max_sale_quantity": max(large),
                },
            }

    if len(transactions) > PATTERN_HIGH_FREQUENCY:
        return {
            "severity": "low",
            "confidence": 0.60,
            "description": f"High transaction frequency: {len(transactions)} transactions in 7 days",
            "metadata": {"transaction_count": len(transactions), "period": "7 days"},
        }

    return None


def detect_unusual_pattern(ctx: ProductContext) -> list[AnomalyCandidate]:
    recent = ctx.transactions_since(PATTERN_WINDOW)
    if len(recent) < PATTERN_MIN_TRANSACTIONS:
        return []

    pattern = analyze_transaction_pattern(recent)
    if pattern is None:
        return []
    if ctx.has_anomaly(("unusual_pattern",), unresolved_only=True, within=PATTERN_COOLDOWN):
        return []

    return [
        AnomalyCandidate(
            product_id=ctx.product.product_id,
            anomaly_type="unusual_pattern",
            severity=pattern["severity"],
            description=pattern["description"],
            confidence=pattern["confidence"],
            metadata=pattern["metadata"],
        )
    ]


# ──────────────────────────────────────────────────────────────────────────
# Cross-product rules
# ──────────────────────────────────────────────────────────────────────────


def _open_incident_products(system_anomalies: list[Anomaly], since: datetime) -> set[str]:
    """Product ids already named by an unresolved organized-theft incident since ``since``."""
    covered: set[str] = set()
    for anomaly in system_anomalies:
        if anomaly.anomaly_type != "organized_theft_pattern" or anomaly.resolved or anomaly.created_at < since:
            continue
        metadata = anomaly.anomaly_metadata or {}
        covered.update(metadata.get("product_ids") or [])
        covered.update(item["product_id"] for item in metadata.get("suspicious_items") or [] if "product_id" in item)
    return covered


def detect_organized_theft(
    contexts: list[ProductContext],
    system_anomalies: list[Anomaly],
    now: datetime,
) -> list[AnomalyCandidate]:
    """Several high-value products short against their last transaction on the same day."""
    suspicious: list[dict[str, Any]] = []
    for ctx in contexts:
        product = ctx.product
        if (product.unit_price or 0) <= ORGANIZED_THEFT_MIN_PRICE:
            continue
        recent = ctx.transactions_since(ORGANIZED_THEFT_WINDOW)
        if not recent:
            continue
        last = recent[-1]
        discrepancy = last.new_quantity - product.quantity
        if discrepancy > 0:
            suspicious.append(
                {
                    "product_id": str(product.product_id),
                    "product_name": product.name,
                    "discrepancy": discrepancy,
                    "value": round(discrepancy * product.unit_price, 2),
                    "last_transaction_time": _iso(last.created_at),
                }
            )

    if len(suspicious) < ORGANIZED_THEFT_MIN_ITEMS:
        return []

    suspect_ids = {item["product_id"] for item in suspicious}
    if suspect_ids <= _open_incident_products(system_anomalies, now - ORGANIZED_THEFT_WINDOW):
        return []

    total_value = sum(item["value"] for item in suspicious)
    return [
        AnomalyCandidate(
            product_id=None,
            anomaly_type="organized_theft_pattern",
            severity="critical",
            description=(
                f"Potential organized theft: {len(suspicious)} high-value items with discrepancies "
                f"(total value: {total_value:.2f})"
            ),
            confidence=CONFIDENCE["organized_theft_pattern"],
            metadata={
                "affected_products": len(suspicious),
                "total_value": round(total_value, 2),
                "suspicious_items": suspicious[:10],
                "product_ids": sorted(suspect_ids),
                "detection_time": _iso(now),
            },
        )
    ]
