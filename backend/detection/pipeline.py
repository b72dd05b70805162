"""
Detection pipeline — detect, persist, alert.

run_detection() is the single entry point used by the scheduler and by
on-demand callers. It never raises for pipeline failures; the returned
DetectionReport says whether the pass succeeded ("ok"), persisted
anomalies but failed to alert ("partial"), or failed ("failed").
"""

import uuid
from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, tzinfo
from typing import Any

import structlog

from alerts.engine import ALERT_GENERATORS, AlertGenerationError
from core.config import get_settings
from db.models import Alert, Anomaly
from db.store import LedgerStore
from detection.engine import DetectionError, detect_anomalies, resolve_timezone
from detection.gate import AnomalyPersistenceError, persist_anomalies
from detection.rules import AnomalyCandidate

logger = structlog.get_logger()

THEFT_TYPES = (
    "potential_theft",
    "inventory_shrinkage",
    "unauthorized_access_pattern",
    "organized_theft_pattern",
)

# Anomaly types counted as loss-prevention incidents in summaries.
INCIDENT_TYPES = (*THEFT_TYPES, "stock_discrepancy", "security")

HIGH_RISK_MIN_INCIDENTS = 2

THEFT_RECOMMENDATIONS = {
    "potential_theft": {
        "priority": "high",
        "action": "Investigate immediate stock discrepancy",
        "details": "Check security cameras, verify recent transactions, conduct physical inventory count",
    },
    "security": {
        "priority": "high",
        "action": "Investigate immediate stock discrepancy",
        "details": "Check security cameras, verify recent transactions, conduct physical inventory count",
    },
    "inventory_shrinkage": {
        "priority": "medium",
        "action": "Implement enhanced inventory controls",
        "details": "Consider more frequent audits, improve access controls, review handling procedures",
    },
    "unauthorized_access_pattern": {
        "priority": "high",
        "action": "Review user access and security protocols",
        "details": "Audit user permissions, check after-hours access logs, enhance authentication",
    },
    "organized_theft_pattern": {
        "priority": "critical",
        "action": "Alert security/management immediately",
        "details": (
            "Potential organized theft detected across multiple high-value items - requires immediate investigation"
        ),
    },
}


def _str_id(value: uuid.UUID | None) -> str | None:
    return str(value) if value else None


def anomaly_to_dict(anomaly: Anomaly | AnomalyCandidate) -> dict[str, Any]:
    if isinstance(anomaly, AnomalyCandidate):
        return {"anomaly_id": None, "resolved": False, "created_at": None, **anomaly.as_dict()}
    return {
        "anomaly_id": _str_id(anomaly.anomaly_id),
        "product_id": _str_id(anomaly.product_id),
        "anomaly_type": anomaly.anomaly_type,
        "severity": anomaly.severity,
        "description": anomaly.description,
        "confidence": anomaly.confidence,
        "resolved": anomaly.resolved,
        "metadata": anomaly.anomaly_metadata or {},
        "created_at": anomaly.created_at.isoformat() if anomaly.created_at else None,
    }


def alert_to_dict(alert: Alert) -> dict[str, Any]:
    return {
        "alert_id": _str_id(alert.alert_id),
        "alert_type": alert.alert_type,
        "title": alert.title,
        "message": alert.message,
        "severity": alert.severity,
        "product_id": _str_id(alert.product_id),
        "metadata": alert.alert_metadata or {},
        "created_at": alert.created_at.isoformat() if alert.created_at else None,
    }


@dataclass
class DetectionReport:
    status: str  # "ok" | "partial" | "failed"
    ruleset: str
    detected_at: datetime
    # Persisted Anomaly rows, or the unsaved candidates when persistence failed
    anomalies: list[Anomaly | AnomalyCandidate] = field(default_factory=list)
    alerts: list[Alert] = field(default_factory=list)
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == "ok"

    def as_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "ruleset": self.ruleset,
            "anomalies": [anomaly_to_dict(a) for a in self.anomalies],
            "alerts": [alert_to_dict(a) for a in self.alerts],
            "error": self.error,
            "detected_at": self.detected_at.isoformat(),
        }


async def run_detection(
    store: LedgerStore,
    now: datetime | None = None,
    ruleset: str | None = None,
    tz: tzinfo | None = None,
) -> DetectionReport:
    """
    Full detection pass:
    1. Run the ruleset's detectors over every product
    2. Persist the candidates in one commit
    3. Synthesize alerts for unresolved anomalies

    Returns a DetectionReport; failures are reported, not raised.
    """
    if ruleset is None or tz is None:
        settings = get_settings()
        ruleset = ruleset or settings.detection_ruleset
        tz = tz or resolve_timezone(settings.business_timezone)
    now = now or datetime.utcnow()

    try:
        candidates = await detect_anomalies(store, now=now, ruleset=ruleset, tz=tz)
    except (DetectionError, ValueError) as exc:
        logger.error("detection.failed", ruleset=ruleset, error=str(exc), exc_info=True)
        await store.rollback()
        return DetectionReport(status="failed", ruleset=ruleset, detected_at=now, error=str(exc))

    try:
        anomalies = await persist_anomalies(store, candidates, now=now)
    except AnomalyPersistenceError as exc:
        return DetectionReport(
            status="failed",
            ruleset=ruleset,
            detected_at=now,
            anomalies=list(candidates),
            error=str(exc),
        )

    try:
        alerts = await ALERT_GENERATORS[ruleset](store, now=now)
    except AlertGenerationError as exc:
        return DetectionReport(
            status="partial",
            ruleset=ruleset,
            detected_at=now,
            anomalies=anomalies,
            error=str(exc),
        )

    logger.info(
        "detection.completed",
        ruleset=ruleset,
        anomalies=len(anomalies),
        alerts=len(alerts),
    )
    return DetectionReport(status="ok", ruleset=ruleset, detected_at=now, anomalies=anomalies, alerts=alerts)


# ──────────────────────────────────────────────────────────────────────────
# Theft-focused views
# ──────────────────────────────────────────────────────────────────────────


def recommend_theft_actions(anomalies: Iterable[Anomaly | AnomalyCandidate]) -> list[dict[str, Any]]:
    """One recommended action per theft-family anomaly; other types are ignored."""
    recommendations = []
    for anomaly in anomalies:
        template = THEFT_RECOMMENDATIONS.get(anomaly.anomaly_type)
        if template is None:
            continue
        product_id = None if anomaly.anomaly_type == "organized_theft_pattern" else anomaly.product_id
        recommendations.append({**template, "anomaly_type": anomaly.anomaly_type, "product_id": _str_id(product_id)})
    return recommendations


async def run_theft_detection(store: LedgerStore, now: datetime | None = None) -> dict[str, Any]:
    """Run an enhanced (v2) pass and report the theft-family findings with recommended actions."""
    report = await run_detection(store, now=now, ruleset="v2")
    theft = [a for a in report.anomalies if a.anomaly_type in THEFT_TYPES]

    return {
        **report.as_dict(),
        "total_anomalies_detected": len(report.anomalies),
        "theft_anomalies_detected": len(theft),
        "alerts_generated": len(report.alerts),
        "theft_anomalies": [anomaly_to_dict(a) for a in theft],
        "recommended_actions": recommend_theft_actions(theft),
    }


def estimated_loss(anomaly: Anomaly) -> float:
    metadata = anomaly.anomaly_metadata or {}
    return float(metadata.get("estimated_value") or metadata.get("total_value") or 0)


async def summarize_theft_incidents(
    store: LedgerStore,
    days: int = 30,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Incident counts, estimated losses and repeat-offender products over the last ``days``."""
    now = now or datetime.utcnow()
    incidents = await store.find_anomalies(anomaly_type=INCIDENT_TYPES, since=now - timedelta(days=days))
    products = await store.get_products(a.product_id for a in incidents)

    resolved = sum(1 for a in incidents if a.resolved)
    per_product = Counter(a.product_id for a in incidents if a.product_id is not None)
    high_risk = []
    for product_id, count in per_product.most_common():
        if count < HIGH_RISK_MIN_INCIDENTS:
            continue
        product = products.get(product_id)
        high_risk.append(
            {
                "product_id": str(product_id),
                "product_name": product.name if product else None,
                "category": product.category if product else None,
                "incident_count": count,
            }
        )

    return {
        "total_incidents": len(incidents),
        "resolved_incidents": resolved,
        "active_incidents": len(incidents) - resolved,
        "estimated_loss": round(sum(estimated_loss(a) for a in incidents), 2),
        "high_risk_products": high_risk,
        "recent_incidents": [anomaly_to_dict(a) for a in incidents[:10]],
        "analysis_window": f"{days} days",
    }
