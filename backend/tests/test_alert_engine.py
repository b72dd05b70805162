"""
Tests for the Alert Engine — titles, severity mapping, cooldown
deduplication, and Redis publishing.
"""

import json
from datetime import datetime, timedelta

import pytest

from alerts.engine import (
    alert_title,
    generate_anomaly_alerts,
    generate_security_alerts,
    map_anomaly_severity,
    publish_alerts,
)
from db.models import Alert


class TestAlertFormatting:
    def test_security_title(self):
        assert alert_title("potential_theft") == "SECURITY ALERT: POTENTIAL THEFT"
        assert alert_title("organized_theft_pattern", "security") == "SECURITY ALERT: ORGANIZED THEFT PATTERN"

    def test_anomaly_title(self):
        assert alert_title("low_stock", "anomaly") == "LOW STOCK ALERT"

    @pytest.mark.parametrize(
        "severity, expected",
        [("critical", "error"), ("high", "warning"), ("medium", "info"), ("low", "info")],
    )
    def test_severity_mapping(self, severity, expected):
        assert map_anomaly_severity(severity) == expected


class TestSecurityAlerts:
    async def test_one_alert_per_product_per_batch(self, store, make_product, record_anomaly):
        now = datetime.utcnow()
        product = await make_product(name="Headphones")
        await record_anomaly(product, "stock_discrepancy", at=now - timedelta(minutes=10))
        await record_anomaly(product, "low_stock", at=now - timedelta(minutes=5))

        created = await generate_security_alerts(store, now=now)

        assert len(created) == 1
        alert = created[0]
        assert alert.alert_type == "security"
        assert alert.severity == "error"
        assert alert.product_id == product.product_id
        assert alert.message.startswith("Headphones: ")
        assert alert.alert_metadata["detection_type"] == "theft_prevention"
        assert alert.alert_metadata["confidence"] == 0.8

    async def test_cooldown_window(self, store, make_product, record_anomaly):
        now = datetime.utcnow()
        product = await make_product()
        await record_anomaly(product, "potential_theft", at=now - timedelta(minutes=5))

        first = await generate_security_alerts(store, now=now)
        within = await generate_security_alerts(store, now=now + timedelta(hours=1))
        after = await generate_security_alerts(store, now=now + timedelta(hours=3))

        assert len(first) == 1
        assert within == []
        assert len(after) == 1
        assert len(await store.find_alerts(alert_type="security")) == 2

    async def test_system_wide_anomalies_share_a_cooldown(self, store, record_anomaly):
        now = datetime.utcnow()
        await record_anomaly(None, "organized_theft_pattern", at=now - timedelta(minutes=5), severity="critical")

        [alert] = await generate_security_alerts(store, now=now)
        assert alert.product_id is None
        assert alert.title == "SECURITY ALERT: ORGANIZED THEFT PATTERN"
        assert alert.message == "organized_theft_pattern recorded for test"

        await record_anomaly(None, "organized_theft_pattern", at=now)
        assert await generate_security_alerts(store, now=now + timedelta(minutes=30)) == []

    async def test_resolved_anomalies_are_ignored(self, store, make_product, record_anomaly):
        now = datetime.utcnow()
        product = await make_product()
        await record_anomaly(product, "potential_theft", at=now - timedelta(hours=1), resolved=True)

        assert await generate_security_alerts(store, now=now) == []

    async def test_other_alert_types_do_not_block(self, store, make_product, record_anomaly):
        now = datetime.utcnow()
        product = await make_product()
        await record_anomaly(product, "low_stock", at=now - timedelta(minutes=5))
        await generate_anomaly_alerts(store, now=now)

        assert len(await generate_security_alerts(store, now=now)) == 1


class TestAnomalyAlerts:
    async def test_legacy_alerts_map_severity(self, store, make_product, record_anomaly):
        now = datetime.utcnow()
        product = await make_product(name="Milk")
        await record_anomaly(product, "expiry_warning", at=now - timedelta(minutes=1), severity="high")

        [alert] = await generate_anomaly_alerts(store, now=now)

        assert alert.alert_type == "anomaly"
        assert alert.title == "EXPIRY WARNING ALERT"
        assert alert.severity == "warning"
        assert "detection_type" not in alert.alert_metadata

    async def test_one_hour_cooldown(self, store, make_product, record_anomaly):
        now = datetime.utcnow()
        product = await make_product()
        await record_anomaly(product, "low_stock", at=now - timedelta(minutes=1))

        await generate_anomaly_alerts(store, now=now)
        assert await generate_anomaly_alerts(store, now=now + timedelta(minutes=59)) == []
        assert len(await generate_anomaly_alerts(store, now=now + timedelta(minutes=61))) == 1


class _FakeRedis:
    def __init__(self):
        self.published: list[tuple[str, dict]] = []
        self.closed = False

    async def publish(self, channel, payload):
        self.published.append((channel, json.loads(payload)))
        return 2

    async def aclose(self):
        self.closed = True


class TestPublishAlerts:
    async def test_publishes_per_alert_type(self, monkeypatch):
        fake = _FakeRedis()
        monkeypatch.setattr("alerts.engine.aioredis.from_url", lambda url: fake)
        now = datetime.utcnow()
        alerts = [
            Alert(alert_type="security", title="SECURITY ALERT: POTENTIAL THEFT", message="m", severity="error", created_at=now),
            Alert(alert_type="anomaly", title="LOW STOCK ALERT", message="m", severity="warning", created_at=now),
        ]

        notified = await publish_alerts(alerts, "redis://test:6379/0")

        assert notified == 4
        assert [channel for channel, _ in fake.published] == ["alerts:security", "alerts:anomaly"]
        assert fake.published[0][1]["payload"]["title"] == "SECURITY ALERT: POTENTIAL THEFT"
        assert fake.closed

    async def test_nothing_to_publish(self):
        assert await publish_alerts([], "redis://test:6379/0") == 0
