"""OpenTelemetry metrics instruments for the sync passes.

Instruments are created lazily from the global MeterProvider, so callers do
not need to pass a Meter instance around.

Initialization
--------------
Call ``init_metrics(service_name)`` once during service startup (alongside
``init_telemetry``). When OTEL_EXPORTER_OTLP_ENDPOINT is not set, the global
no-op MeterProvider stays in place and all recordings are silent.

Instruments
-----------
  opsmirror.sync.pass_total           Counter  (labels: pass, outcome=success|error)
      Completed sync passes.

  opsmirror.sync.pass_duration_ms     Histogram (label: pass)
      Wall-clock duration of a sync pass.

  opsmirror.contacts.records_total    Counter  (label: outcome=added|updated|skipped|error)
      CRM records applied by the reconciler.

  opsmirror.chats.messages_total      Counter  (label: pass)
      Messages written by chat sync and history backfill.

All instruments carry a ``service`` label.
"""

from __future__ import annotations

import logging
import os

from opentelemetry import metrics

logger = logging.getLogger(__name__)

_METER_NAME = "opsmirror"


def init_metrics(service_name: str) -> metrics.Meter:
    """Initialize OpenTelemetry metrics.

    When OTEL_EXPORTER_OTLP_ENDPOINT is set, configures a real MeterProvider
    with a periodic OTLP gRPC exporter. Otherwise the global no-op
    MeterProvider is used.
    """
    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")

    if not endpoint:
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set, using no-op meter")
        return metrics.get_meter(_METER_NAME)

    from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
    from opentelemetry.sdk.metrics import MeterProvider
    from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
    from opentelemetry.sdk.resources import Resource

    resource = Resource.create({"service.name": service_name})
    reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=endpoint), export_interval_millis=15_000
    )
    metrics.set_meter_provider(MeterProvider(resource=resource, metric_readers=[reader]))
    logger.info("Metrics initialized: service=%s, endpoint=%s", service_name, endpoint)

    return metrics.get_meter(_METER_NAME)


def get_meter() -> metrics.Meter:
    return metrics.get_meter(_METER_NAME)


class SyncMetrics:
    """Per-service recording helpers for sync pass instruments."""

    def __init__(self, service_name: str) -> None:
        self._attrs = {"service": service_name}
        self.__pass_total: metrics.Counter | None = None
        self.__pass_duration: metrics.Histogram | None = None
        self.__contact_records: metrics.Counter | None = None
        self.__messages: metrics.Counter | None = None

    @property
    def _pass_total(self) -> metrics.Counter:
        if self.__pass_total is None:
            self.__pass_total = get_meter().create_counter(
                name="opsmirror.sync.pass_total",
                description="Completed sync passes by outcome",
                unit="passes",
            )
        return self.__pass_total

    @property
    def _pass_duration(self) -> metrics.Histogram:
        if self.__pass_duration is None:
            self.__pass_duration = get_meter().create_histogram(
                name="opsmirror.sync.pass_duration_ms",
                description="Sync pass duration in milliseconds",
                unit="ms",
            )
        return self.__pass_duration

    @property
    def _contact_records(self) -> metrics.Counter:
        if self.__contact_records is None:
            self.__contact_records = get_meter().create_counter(
                name="opsmirror.contacts.records_total",
                description="CRM contact records applied, by outcome",
                unit="records",
            )
        return self.__contact_records

    @property
    def _messages(self) -> metrics.Counter:
        if self.__messages is None:
            self.__messages = get_meter().create_counter(
                name="opsmirror.chats.messages_total",
                description="Messages written by chat sync and history backfill",
                unit="messages",
            )
        return self.__messages

    def record_pass(self, name: str, *, success: bool, duration_ms: float) -> None:
        """Record one finished pass and its duration."""
        outcome = "success" if success else "error"
        self._pass_total.add(1, {**self._attrs, "pass": name, "outcome": outcome})
        self._pass_duration.record(duration_ms, {**self._attrs, "pass": name})

    def record_contact_outcomes(
        self, *, added: int, updated: int, skipped: int, errors: int
    ) -> None:
        for outcome, count in (
            ("added", added),
            ("updated", updated),
            ("skipped", skipped),
            ("error", errors),
        ):
            if count:
                self._contact_records.add(count, {**self._attrs, "outcome": outcome})

    def record_messages(self, name: str, count: int) -> None:
        if count:
            self._messages.add(count, {**self._attrs, "pass": name})
