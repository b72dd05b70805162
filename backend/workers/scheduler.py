"""Scheduled and on-demand anomaly detection passes."""

from __future__ import annotations

import asyncio

import structlog
from celery.signals import worker_ready
from redis.exceptions import RedisError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from workers.celery_app import celery_app

logger = structlog.get_logger()


@celery_app.task(
    name="workers.scheduler.run_detection_pass",
    bind=True,
    max_retries=2,
    default_retry_delay=60,
    acks_late=True,
)
def run_detection_pass(self, ruleset: str | None = None):
    """
    Run one detection pass against its own engine and session.

    Pipeline failures come back in the report (status "failed"/"partial");
    only infrastructure errors escaping the pipeline trigger a retry.
    Overlapping passes are allowed.
    """
    from alerts.engine import publish_alerts
    from core.config import get_settings
    from db.session import init_models
    from db.store import LedgerStore
    from detection.engine import resolve_timezone
    from detection.pipeline import run_detection

    run_id = self.request.id or "manual"

    async def _run():
        settings = get_settings()
        engine = create_async_engine(settings.database_url)
        try:
            if settings.auto_create_tables:
                await init_models(engine)

            async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
            async with async_session() as db:
                report = await run_detection(
                    LedgerStore(db),
                    ruleset=ruleset or settings.detection_ruleset,
                    tz=resolve_timezone(settings.business_timezone),
                )

            published = 0
            if report.alerts and settings.alert_publish_enabled:
                try:
                    published = await publish_alerts(report.alerts, settings.redis_url)
                except RedisError as exc:
                    logger.warning("scheduler.publish_failed", run_id=run_id, error=str(exc))

            summary = report.as_dict()
            summary["run_id"] = run_id
            summary["subscribers_notified"] = published
            logger.info(
                "scheduler.detection_complete",
                run_id=run_id,
                status=report.status,
                ruleset=report.ruleset,
                anomalies=len(report.anomalies),
                alerts=len(report.alerts),
            )
            return summary
        finally:
            await engine.dispose()

    try:
        return asyncio.run(_run())
    except Exception as exc:  # noqa: BLE001
        logger.error("scheduler.detection_failed", run_id=run_id, error=str(exc), exc_info=True)
        raise self.retry(exc=exc)


def trigger_detection(ruleset: str | None = None):
    """Enqueue an on-demand pass; returns the Celery AsyncResult."""
    return run_detection_pass.delay(ruleset=ruleset)


@worker_ready.connect
def schedule_initial_detection(sender=None, **kwargs):
    """Run one pass shortly after a worker comes up, before the first beat tick."""
    from core.config import get_settings

    delay = get_settings().initial_detection_delay_seconds
    run_detection_pass.apply_async(countdown=delay)
    logger.info("scheduler.initial_detection_scheduled", countdown=delay)
