"""OpenTelemetry metrics instruments for the calendar sync engine.

Instruments are created lazily from the global MeterProvider, so callers do
not need to pass a Meter instance around.

Initialization
--------------
Call ``init_metrics(service_name)`` once during process startup.  When
OTEL_EXPORTER_OTLP_ENDPOINT is not set, the global no-op MeterProvider is used
and all recordings are silent no-ops.

Instruments
-----------
  hearth.pull.events_applied        Counter  (label: action=create|update|delete|skip)
  hearth.pull.calendar_failures     Counter
  hearth.push.attempts              Counter  (label: outcome)
  hearth.push.retries               Counter
  hearth.ics.sent                   Counter  (label: outcome=sent|failed)
  hearth.dispatcher.dropped_duplicates  Counter
  hearth.dispatcher.callbacks       Counter  (label: domain)
  hearth.worker.backpressure        Counter

All instruments carry an ``instance`` label.
"""

from __future__ import annotations

import logging
import os

from opentelemetry import metrics

logger = logging.getLogger(__name__)

_METER_NAME = "hearth"

# ---------------------------------------------------------------------------
# MeterProvider initialization
# ---------------------------------------------------------------------------


def init_metrics(service_name: str) -> metrics.Meter:
    """Initialize OpenTelemetry metrics for a Hearth process.

    When OTEL_EXPORTER_OTLP_ENDPOINT is set, configures a real MeterProvider
    with a periodic OTLP gRPC exporter.  Otherwise, the global no-op
    MeterProvider is used and all recordings are silent.
    """
    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")

    if not endpoint:
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set, using no-op meter")
        return metrics.get_meter(_METER_NAME)

    # Import SDK/exporter only when needed to avoid hard dependency at import time
    from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
    from opentelemetry.sdk.metrics import MeterProvider
    from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
    from opentelemetry.sdk.resources import Resource

    resource = Resource.create({"service.name": service_name})
    exporter = OTLPMetricExporter(endpoint=endpoint)
    reader = PeriodicExportingMetricReader(exporter, export_interval_millis=15_000)
    provider = MeterProvider(resource=resource, metric_readers=[reader])

    metrics.set_meter_provider(provider)
    logger.info("Metrics initialized: service=%s, endpoint=%s", service_name, endpoint)

    return metrics.get_meter(_METER_NAME)


def get_meter() -> metrics.Meter:
    """Return a Meter from the current global provider (no-op before init)."""
    return metrics.get_meter(_METER_NAME)


def _counter(name: str, description: str, unit: str = "1") -> metrics.Counter:
    return get_meter().create_counter(name=name, description=description, unit=unit)


# ---------------------------------------------------------------------------
# SyncMetrics
# ---------------------------------------------------------------------------


class SyncMetrics:
    """Convenience wrapper around the sync engine counters.

    Safe to construct before ``init_metrics``; instruments are created on
    first use so recordings are no-ops until a real provider is installed.

    Typical usage::

        _metrics = SyncMetrics()
        _metrics.event_applied("update")
    """

    def __init__(self, instance: str = "hearth") -> None:
        self._attrs = {"instance": instance}
        self._instruments: dict[str, metrics.Counter] = {}

    def _get(self, name: str, description: str) -> metrics.Counter:
        instrument = self._instruments.get(name)
        if instrument is None:
            instrument = _counter(name, description)
            self._instruments[name] = instrument
        return instrument

    # -- pull ----------------------------------------------------------------

    def event_applied(self, action: str) -> None:
        """Record one provider event applied (or skipped) by pull."""
        self._get(
            "hearth.pull.events_applied", "Provider events applied to the local store"
        ).add(1, {**self._attrs, "action": action})

    def calendar_failed(self) -> None:
        self._get(
            "hearth.pull.calendar_failures", "Calendars whose pull ended in an error"
        ).add(1, self._attrs)

    # -- push ----------------------------------------------------------------

    def push_attempt(self, outcome: str) -> None:
        """Record one push outcome."""
        self._get("hearth.push.attempts", "Push operations by outcome").add(
            1, {**self._attrs, "outcome": outcome}
        )

    def push_retry(self) -> None:
        self._get("hearth.push.retries", "Provider calls retried after a transient error").add(
            1, self._attrs
        )

    # -- ics -----------------------------------------------------------------

    def ics_sent(self, outcome: str) -> None:
        self._get("hearth.ics.sent", "ICS fallback emails by outcome").add(
            1, {**self._attrs, "outcome": outcome}
        )

    # -- dispatcher ----------------------------------------------------------

    def duplicate_dropped(self) -> None:
        self._get(
            "hearth.dispatcher.dropped_duplicates", "Row changes dropped inside the dedup window"
        ).add(1, self._attrs)

    def callback_invoked(self, domain: str) -> None:
        self._get("hearth.dispatcher.callbacks", "Domain refresh callbacks invoked").add(
            1, {**self._attrs, "domain": domain}
        )

    # -- watch -----------------------------------------------------------------

    def watch_registered(self, outcome: str) -> None:
        self._get("hearth.watch.registrations", "Watch channel registrations by outcome").add(
            1, {**self._attrs, "outcome": outcome}
        )

    def notification_received(self, outcome: str) -> None:
        """Record one provider change notification handled by the webhook."""
        self._get("hearth.watch.notifications", "Provider change notifications by outcome").add(
            1, {**self._attrs, "outcome": outcome}
        )

    # -- worker --------------------------------------------------------------

    def worker_backpressure(self) -> None:
        self._get("hearth.worker.backpressure", "Background jobs rejected by a full queue").add(
            1, self._attrs
        )
