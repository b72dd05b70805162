"""
Persistence gate for detector output.

Candidates already passed their existence checks inside the detectors,
so the gate adds no dedup of its own: one bulk insert, one commit.
"""

from collections.abc import Sequence
from datetime import datetime

import structlog
from sqlalchemy.exc import SQLAlchemyError

from db.models import Anomaly
from db.store import LedgerStore
from detection.rules import AnomalyCandidate

logger = structlog.get_logger()


class AnomalyPersistenceError(RuntimeError):
    pass


def to_model(candidate: AnomalyCandidate, created_at: datetime | None = None) -> Anomaly:
    return Anomaly(
        product_id=candidate.product_id,
        anomaly_type=candidate.anomaly_type,
        severity=candidate.severity,
        description=candidate.description,
        confidence=candidate.confidence,
        resolved=False,
        anomaly_metadata=candidate.metadata,
        created_at=created_at or datetime.utcnow(),
    )


async def persist_anomalies(
    store: LedgerStore,
    candidates: Sequence[AnomalyCandidate],
    now: datetime | None = None,
) -> list[Anomaly]:
    """Insert all candidates in one commit. An empty batch writes nothing."""
    if not candidates:
        return []

    created_at = now or datetime.utcnow()
    records = [to_model(c, created_at) for c in candidates]
    try:
        store.add_anomalies(records)
        await store.commit()
    except SQLAlchemyError as exc:
        await store.rollback()
        logger.error("anomalies.persist_failed", count=len(records), error=str(exc), exc_info=True)
        raise AnomalyPersistenceError(f"Failed to persist {len(records)} anomalies") from exc

    store.detach(records)
    logger.info("anomalies.persisted", count=len(records))
    return records
