"""OpenTelemetry メトリクス定義"""

from __future__ import annotations

from opentelemetry import metrics

_meter = metrics.get_meter("k1s0_flagengine", version="0.1.0")

flag_evaluations_total = _meter.create_counter(
    name="flag_evaluations_total",
    description="Total number of flag evaluations",
    unit="1",
)

flag_mutations_total = _meter.create_counter(
    name="flag_mutations_total",
    description="Total number of committed flag mutations",
    unit="1",
)

rollout_transitions_total = _meter.create_counter(
    name="rollout_transitions_total",
    description="Total number of gradual rollout state transitions",
    unit="1",
)
