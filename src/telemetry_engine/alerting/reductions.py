"""Lookup table turning matching aggregates into one decision value per rule.

=====================  ===========================  ======================================
rule metric            aggregates consumed          decision value
=====================  ===========================  ======================================
``error_rate``         ``request``, ``error``       sum(error counts) / sum(request counts)
``success_rate``       ``request``, ``error``       (requests - errors) / requests
``response_time_p95``  ``response_time``,           max of p95
                       ``response_time_p95``
anything else          the rule's own metric name   mean of per-aggregate averages
=====================  ===========================  ======================================
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, Mapping, Sequence

from telemetry_engine.domain.models import AggregatedMetric

Reducer = Callable[[Sequence[AggregatedMetric]], float]

REQUEST_METRIC = "request"
ERROR_METRIC = "error"


def _count_of(aggregates: Sequence[AggregatedMetric], metric_name: str) -> int:
    return sum(agg.count for agg in aggregates if agg.metric_name == metric_name)


def error_rate(aggregates: Sequence[AggregatedMetric]) -> float:
    requests = _count_of(aggregates, REQUEST_METRIC)
    if requests == 0:
        return 0.0
    return _count_of(aggregates, ERROR_METRIC) / requests


def success_rate(aggregates: Sequence[AggregatedMetric]) -> float:
    requests = _count_of(aggregates, REQUEST_METRIC)
    if requests == 0:
        return 1.0
    errors = _count_of(aggregates, ERROR_METRIC)
    return max(requests - errors, 0) / requests


def max_p95(aggregates: Sequence[AggregatedMetric]) -> float:
    return max(agg.p95 for agg in aggregates)


def mean_of_averages(aggregates: Sequence[AggregatedMetric]) -> float:
    return sum(agg.average for agg in aggregates) / len(aggregates)


@dataclass(frozen=True)
class Reduction:
    """Which aggregates a rule metric consumes and how they are reduced."""

    inputs: FrozenSet[str]
    reducer: Reducer

    def matches(self, aggregate: AggregatedMetric) -> bool:
        return aggregate.metric_name in self.inputs

    def reduce(self, aggregates: Sequence[AggregatedMetric]) -> float:
        return float(self.reducer(aggregates))


REDUCTIONS: Mapping[str, Reduction] = {
    "error_rate": Reduction(frozenset({REQUEST_METRIC, ERROR_METRIC}), error_rate),
    "success_rate": Reduction(frozenset({REQUEST_METRIC, ERROR_METRIC}), success_rate),
    "response_time_p95": Reduction(
        frozenset({"response_time", "response_time_p95"}), max_p95
    ),
}


def reduction_for(
    metric_name: str, table: Mapping[str, Reduction] | None = None
) -> Reduction:
    """Return the table entry for a metric, falling back to mean-of-averages."""

    entries: Dict[str, Reduction] = dict(REDUCTIONS if table is None else table)
    found = entries.get(metric_name)
    if found is not None:
        return found
    return Reduction(frozenset({metric_name}), mean_of_averages)
