"""
Rule Engine — runs the versioned detector set over every product.

Loads each product's context (90-day ledger plus already-recorded
anomalies), runs the ruleset's detectors independently per product, then
runs the cross-product pass. A failing detector or an unreadable product
is logged and skipped; only a failure to list products aborts the pass.
"""

from collections.abc import Callable
from datetime import datetime, timedelta, timezone, tzinfo
from zoneinfo import ZoneInfo

import structlog
from sqlalchemy.exc import SQLAlchemyError

from db.models import Anomaly, Product
from db.store import LedgerStore
from detection.rules import (
    AnomalyCandidate,
    ProductContext,
    detect_expiry_warning,
    detect_inventory_shrinkage,
    detect_low_stock,
    detect_organized_theft,
    detect_potential_theft,
    detect_unauthorized_access,
    detect_unusual_pattern,
)

logger = structlog.get_logger()

Detector = Callable[[ProductContext], list[AnomalyCandidate]]
CrossProductDetector = Callable[[list[ProductContext], list[Anomaly], datetime], list[AnomalyCandidate]]

DEFAULT_RULESET = "v2"

RULESETS: dict[str, tuple[Detector, ...]] = {
    "v1": (
        detect_low_stock,
        detect_expiry_warning,
        detect_unusual_pattern,
    ),
    "v2": (
        detect_low_stock,
        detect_expiry_warning,
        detect_potential_theft,
        detect_inventory_shrinkage,
        detect_unauthorized_access,
    ),
}

CROSS_PRODUCT_RULES: dict[str, tuple[CrossProductDetector, ...]] = {
    "v1": (),
    "v2": (detect_organized_theft,),
}

LEDGER_WINDOW = timedelta(days=90)
RECENT_ANOMALY_WINDOW = timedelta(days=7)


class DetectionError(RuntimeError):
    """The pass could not run at all (e.g. products could not be listed)."""


def resolve_timezone(name: str | None) -> tzinfo:
    if not name or name.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(name)


async def load_product_context(
    store: LedgerStore,
    product: Product,
    now: datetime,
    tz: tzinfo = timezone.utc,
) -> ProductContext:
    ledger = await store.list_transactions(product.product_id, since=now - LEDGER_WINDOW)

    unresolved = await store.find_anomalies(product_id=product.product_id, resolved=False)
    recent = await store.find_anomalies(product_id=product.product_id, since=now - RECENT_ANOMALY_WINDOW)
    existing = {a.anomaly_id: a for a in unresolved}
    for anomaly in recent:
        existing.setdefault(anomaly.anomaly_id, anomaly)

    return ProductContext(
        product=product,
        ledger=ledger,
        existing=list(existing.values()),
        now=now,
        tz=tz,
    )


def run_detectors(ctx: ProductContext, detectors: tuple[Detector, ...]) -> list[AnomalyCandidate]:
    candidates: list[AnomalyCandidate] = []
    for detector in detectors:
        try:
            candidates.extend(detector(ctx))
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "detection.detector_failed",
                detector=detector.__name__,
                product_id=str(ctx.product.product_id),
                error=str(exc),
                exc_info=True,
            )
    return candidates


async def detect_anomalies(
    store: LedgerStore,
    now: datetime | None = None,
    ruleset: str = DEFAULT_RULESET,
    tz: tzinfo = timezone.utc,
) -> list[AnomalyCandidate]:
    """
    Run one detection pass and return the candidates (nothing is persisted).

    Args:
        store: ledger store (read only here)
        now: evaluation time, naive UTC; defaults to the current time
        ruleset: "v1" or "v2"
        tz: business timezone used for hour-of-day rules

    Raises:
        ValueError: unknown ruleset
        DetectionError: products could not be listed
    """
    if ruleset not in RULESETS:
        raise ValueError(f"Unknown detection ruleset: {ruleset!r}")
    now = now or datetime.utcnow()
    detectors = RULESETS[ruleset]

    logger.info("detection.pass_start", ruleset=ruleset, detected_at=now.isoformat())

    try:
        products = await store.list_products()
    except SQLAlchemyError as exc:
        raise DetectionError(f"Unable to list products: {exc}") from exc

    contexts: list[ProductContext] = []
    candidates: list[AnomalyCandidate] = []
    for product in products:
        try:
            async with store.savepoint():
                ctx = await load_product_context(store, product, now, tz)
        except SQLAlchemyError as exc:
            logger.error(
                "detection.product_skipped",
                product_id=str(product.product_id),
                error=str(exc),
                exc_info=True,
            )
            continue
        contexts.append(ctx)
        candidates.extend(run_detectors(ctx, detectors))

    cross_rules = CROSS_PRODUCT_RULES[ruleset]
    if cross_rules:
        try:
            async with store.savepoint():
                system_anomalies = await store.find_anomalies(product_id=None, resolved=False)
        except SQLAlchemyError as exc:
            logger.error("detection.cross_product_skipped", error=str(exc), exc_info=True)
            system_anomalies = None

        if system_anomalies is not None:
            for detector in cross_rules:
                try:
                    candidates.extend(detector(contexts, system_anomalies, now))
                except Exception as exc:  # noqa: BLE001
                    logger.error(
                        "detection.detector_failed",
                        detector=detector.__name__,
                        product_id=None,
                        error=str(exc),
                        exc_info=True,
                    )

    logger.info(
        "detection.pass_complete",
        ruleset=ruleset,
        products_scanned=len(contexts),
        products_skipped=len(products) - len(contexts),
        candidates=len(candidates),
    )
    return candidates
