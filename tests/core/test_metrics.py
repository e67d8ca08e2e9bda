"""Unit tests for the sync engine OTel counters."""

from __future__ import annotations

from typing import Any

import pytest
from opentelemetry import metrics
from opentelemetry.metrics import _internal as _metrics_internal
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import InMemoryMetricReader
from opentelemetry.util._once import Once

from hearth.core.metrics import SyncMetrics, init_metrics

pytestmark = pytest.mark.unit


# ---------------------------------------------------------------------------
# Helpers / fixtures
# ---------------------------------------------------------------------------


def _reset_metrics_global_state() -> None:
    """Reset the OTel global MeterProvider state for test isolation.

    The OTel SDK uses a ``Once`` guard that prevents ``set_meter_provider``
    from being called more than once per process.
    """
    _metrics_internal._METER_PROVIDER_SET_ONCE = Once()
    _metrics_internal._METER_PROVIDER = None


@pytest.fixture
def reader():
    _reset_metrics_global_state()
    in_memory = InMemoryMetricReader()
    provider = MeterProvider(metric_readers=[in_memory])
    metrics.set_meter_provider(provider)
    yield in_memory
    provider.shutdown()
    _reset_metrics_global_state()


def _collect(reader: InMemoryMetricReader) -> dict[str, Any]:
    """Flatten metrics data into {metric_name: data_points}."""
    result: dict[str, Any] = {}
    data = reader.get_metrics_data()
    for rm in data.resource_metrics:
        for sm in rm.scope_metrics:
            for metric in sm.metrics:
                if metric.data.data_points:
                    result[metric.name] = list(metric.data.data_points)
    return result


# ---------------------------------------------------------------------------
# init_metrics
# ---------------------------------------------------------------------------


class TestInitMetrics:
    def test_returns_meter_without_endpoint(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("OTEL_EXPORTER_OTLP_ENDPOINT", raising=False)
        assert init_metrics("hearth") is not None

    def test_recordings_before_init_are_noops(self) -> None:
        _reset_metrics_global_state()
        SyncMetrics().event_applied("create")


# ---------------------------------------------------------------------------
# SyncMetrics
# ---------------------------------------------------------------------------


class TestSyncMetrics:
    def test_labelled_counters(self, reader: InMemoryMetricReader) -> None:
        sync_metrics = SyncMetrics(instance="worker")
        sync_metrics.event_applied("create")
        sync_metrics.event_applied("create")
        sync_metrics.event_applied("skip")
        sync_metrics.push_attempt("created")

        collected = _collect(reader)

        by_action = {
            p.attributes["action"]: p.value for p in collected["hearth.pull.events_applied"]
        }
        assert by_action == {"create": 2, "skip": 1}
        (push_point,) = collected["hearth.push.attempts"]
        assert push_point.attributes == {"instance": "worker", "outcome": "created"}

    def test_watch_counters(self, reader: InMemoryMetricReader) -> None:
        sync_metrics = SyncMetrics(instance="api")
        sync_metrics.watch_registered("created")
        sync_metrics.notification_received("pulled")
        sync_metrics.notification_received("pulled")

        collected = _collect(reader)

        (registration,) = collected["hearth.watch.registrations"]
        assert registration.attributes == {"instance": "api", "outcome": "created"}
        (notification,) = collected["hearth.watch.notifications"]
        assert notification.value == 2

    def test_unlabelled_counters(self, reader: InMemoryMetricReader) -> None:
        sync_metrics = SyncMetrics()
        sync_metrics.calendar_failed()
        sync_metrics.push_retry()
        sync_metrics.duplicate_dropped()
        sync_metrics.worker_backpressure()
        sync_metrics.callback_invoked("calendar")
        sync_metrics.ics_sent("sent")

        collected = _collect(reader)

        for name in (
            "hearth.pull.calendar_failures",
            "hearth.push.retries",
            "hearth.dispatcher.dropped_duplicates",
            "hearth.worker.backpressure",
        ):
            (point,) = collected[name]
            assert point.value == 1
            assert point.attributes == {"instance": "hearth"}
        (callback_point,) = collected["hearth.dispatcher.callbacks"]
        assert callback_point.attributes["domain"] == "calendar"
