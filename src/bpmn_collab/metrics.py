"""OpenTelemetry パイプラインメトリクス定義"""

from __future__ import annotations

from opentelemetry import metrics

_meter = metrics.get_meter("bpmn_collab", version="0.1.0")

commands_enqueued_total = _meter.create_counter(
    name="commands_enqueued_total",
    description="Total number of commands accepted into the delivery queue",
    unit="1",
)

commands_delivered_total = _meter.create_counter(
    name="commands_delivered_total",
    description="Total number of commands appended to the event store",
    unit="1",
)

commands_failed_total = _meter.create_counter(
    name="commands_failed_total",
    description="Total number of commands dropped after exhausting delivery",
    unit="1",
)

delivery_attempts_total = _meter.create_counter(
    name="delivery_attempts_total",
    description="Total number of append attempts",
    unit="1",
)

commands_pending = _meter.create_up_down_counter(
    name="commands_pending",
    description="Number of commands waiting for delivery",
    unit="1",
)

projection_anomalies_total = _meter.create_counter(
    name="projection_anomalies_total",
    description="Total number of events applied as no-ops against missing elements",
    unit="1",
)
