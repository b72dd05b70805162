"""
Alert Engine — user-facing alerts synthesized from unresolved anomalies.

Alert generators:
  - security (v2): one alert per product per 2 hours, severity "error"
  - anomaly  (v1): one alert per product per hour, severity mapped from the anomaly

Both re-read unresolved anomalies from the store, skip products that
already have an alert of the same type inside the cooldown (a system-wide
anomaly matches a system-wide alert), and bulk insert in one commit.
"""

import json
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import Any

import redis.asyncio as aioredis
import structlog
from sqlalchemy.exc import SQLAlchemyError

from core.config import get_settings
from db.models import Alert, Anomaly, Product
from db.store import LedgerStore

logger = structlog.get_logger()

# ──────────────────────────────────────────────────────────────────────────
# Policies
# ──────────────────────────────────────────────────────────────────────────

SECURITY_ALERT_COOLDOWN = timedelta(hours=2)
ANOMALY_ALERT_COOLDOWN = timedelta(hours=1)

ANOMALY_TO_ALERT_SEVERITY = {
    "critical": "error",
    "high": "warning",
}


class AlertGenerationError(RuntimeError):
    pass


def map_anomaly_severity(severity: str) -> str:
    """critical → error, high → warning, anything else → info."""
    return ANOMALY_TO_ALERT_SEVERITY.get(severity, "info")


def humanize_type(anomaly_type: str) -> str:
    return anomaly_type.replace("_", " ").upper()


def alert_title(anomaly_type: str, alert_type: str = "security") -> str:
    if alert_type == "security":
        return f"SECURITY ALERT: {humanize_type(anomaly_type)}"
    return f"{humanize_type(anomaly_type)} ALERT"


def alert_message(anomaly: Anomaly, product: Product | None) -> str:
    if product is None:
        return anomaly.description
    return f"{product.name}: {anomaly.description}"


# ──────────────────────────────────────────────────────────────────────────
# Alert builders
# ──────────────────────────────────────────────────────────────────────────


def build_security_alert(anomaly: Anomaly, product: Product | None, now: datetime) -> Alert:
    return Alert(
        alert_type="security",
        title=alert_title(anomaly.anomaly_type, "security"),
        message=alert_message(anomaly, product),
        severity="error",
        is_read=False,
        product_id=anomaly.product_id,
        alert_metadata={
            "anomaly_id": str(anomaly.anomaly_id),
            "anomaly_type": anomaly.anomaly_type,
            "confidence": anomaly.confidence,
            "detection_type": "theft_prevention",
        },
        created_at=now,
        updated_at=now,
    )


def build_anomaly_alert(anomaly: Anomaly, product: Product | None, now: datetime) -> Alert:
    return Alert(
        alert_type="anomaly",
        title=alert_title(anomaly.anomaly_type, "anomaly"),
        message=alert_message(anomaly, product),
        severity=map_anomaly_severity(anomaly.severity),
        is_read=False,
        product_id=anomaly.product_id,
        alert_metadata={
            "anomaly_id": str(anomaly.anomaly_id),
            "anomaly_type": anomaly.anomaly_type,
            "confidence": anomaly.confidence,
        },
        created_at=now,
        updated_at=now,
    )


# ──────────────────────────────────────────────────────────────────────────
# Generation
# ──────────────────────────────────────────────────────────────────────────


async def _synthesize_alerts(
    store: LedgerStore,
    *,
    alert_type: str,
    cooldown: timedelta,
    build: Callable[[Anomaly, Product | None, datetime], Alert],
    now: datetime | None,
) -> list[Alert]:
    now = now or datetime.utcnow()
    try:
        anomalies = await store.find_anomalies(resolved=False)
        if not anomalies:
            return []
        products = await store.get_products(a.product_id for a in anomalies)
        recent = await store.find_alerts(alert_type=alert_type, since=now - cooldown)
    except SQLAlchemyError as exc:
        logger.error("alerts.generation_failed", alert_type=alert_type, error=str(exc), exc_info=True)
        raise AlertGenerationError(f"Failed to load anomalies for {alert_type} alerts") from exc

    # product_id None stands for system-wide and matches other system-wide alerts
    alerted = {alert.product_id for alert in recent}
    created: list[Alert] = []
    for anomaly in anomalies:
        if anomaly.product_id in alerted:
            continue
        alerted.add(anomaly.product_id)
        created.append(build(anomaly, products.get(anomaly.product_id), now))

    if created:
        try:
            store.add_alerts(created)
            await store.commit()
        except SQLAlchemyError as exc:
            await store.rollback()
            logger.error("alerts.generation_failed", alert_type=alert_type, error=str(exc), exc_info=True)
            raise AlertGenerationError(f"Failed to save {len(created)} {alert_type} alerts") from exc

    logger.info(
        "alerts.generated",
        alert_type=alert_type,
        unresolved_anomalies=len(anomalies),
        created=len(created),
    )
    return created


async def generate_security_alerts(store: LedgerStore, now: datetime | None = None) -> list[Alert]:
    return await _synthesize_alerts(
        store,
        alert_type="security",
        cooldown=SECURITY_ALERT_COOLDOWN,
        build=build_security_alert,
        now=now,
    )


async def generate_anomaly_alerts(store: LedgerStore, now: datetime | None = None) -> list[Alert]:
    return await _synthesize_alerts(
        store,
        alert_type="anomaly",
        cooldown=ANOMALY_ALERT_COOLDOWN,
        build=build_anomaly_alert,
        now=now,
    )


ALERT_GENERATORS: dict[str, Callable[..., Awaitable[list[Alert]]]] = {
    "v1": generate_anomaly_alerts,
    "v2": generate_security_alerts,
}


# ──────────────────────────────────────────────────────────────────────────
# Publishing
# ──────────────────────────────────────────────────────────────────────────


def alert_payload(alert: Alert) -> dict[str, Any]:
    return {
        "type": "alert",
        "payload": {
            "alert_id": str(alert.alert_id),
            "alert_type": alert.alert_type,
            "severity": alert.severity,
            "title": alert.title,
            "message": alert.message,
            "product_id": str(alert.product_id) if alert.product_id else None,
            "metadata": alert.alert_metadata or {},
            "created_at": alert.created_at.isoformat() if alert.created_at else None,
        },
    }


async def publish_alerts(alerts: list[Alert], redis_url: str | None = None) -> int:
    """
    Publish new alerts to Redis pub/sub (channel ``alerts:<alert_type>``).
    Returns number of subscribers notified.
    """
    if not alerts:
        return 0

    redis = aioredis.from_url(redis_url or get_settings().redis_url)
    try:
        total_subs = 0
        for alert in alerts:
            subs = await redis.publish(f"alerts:{alert.alert_type}", json.dumps(alert_payload(alert)))
            total_subs += subs
        logger.info("alerts.published", count=len(alerts), subscribers=total_subs)
        return total_subs
    finally:
        await redis.aclose()
