"""Alert rule evaluation and the Normal -> Active -> Normal lifecycle."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Mapping, Optional, Sequence

from telemetry_engine.domain.interfaces import IAlertPublisher
from telemetry_engine.domain.models import (
    AggregatedMetric,
    AlertHistory,
    AlertKind,
    AlertMessage,
    AlertRule,
    Severity,
)
from telemetry_engine.storage.sqlite_repository import SQLiteRepository

from .reductions import Reduction, reduction_for


@dataclass
class EvaluationResult:
    """What one evaluation cycle changed."""

    triggered: List[AlertHistory] = field(default_factory=list)
    resolved: List[AlertHistory] = field(default_factory=list)
    skipped: List[int] = field(default_factory=list)
    failed: List[int] = field(default_factory=list)


class AlertEvaluator:
    """Sole writer of alert history transitions.

    A cycle holds ``_cycle_lock`` for its whole duration, so evaluation of a
    rule in one cycle always completes before the next cycle starts.
    """

    def __init__(
        self,
        repository: SQLiteRepository,
        publisher: IAlertPublisher,
        *,
        reductions: Optional[Mapping[str, Reduction]] = None,
        clock: Optional[Callable[[], datetime]] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._repository = repository
        self._publisher = publisher
        self._reductions = reductions
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._cycle_lock = threading.Lock()
        self._logger = logger or logging.getLogger(__name__)

    def evaluate(self, aggregates: Sequence[AggregatedMetric]) -> EvaluationResult:
        result = EvaluationResult()
        with self._cycle_lock:
            now = self._clock()
            for rule in self._repository.list_rules(enabled_only=True):
                try:
                    self._evaluate_rule(rule, aggregates, now, result)
                except Exception:
                    result.failed.append(rule.id)  # type: ignore[arg-type]
                    self._logger.exception(
                        "rule_evaluation_failed",
                        extra={"rule_id": rule.id, "rule_name": rule.name},
                    )
        self._logger.info(
            "evaluation_cycle_completed",
            extra={
                "triggered": len(result.triggered),
                "resolved": len(result.resolved),
                "skipped": len(result.skipped),
                "failed": len(result.failed),
            },
        )
        return result

    def matching_aggregates(
        self,
        rule: AlertRule,
        aggregates: Sequence[AggregatedMetric],
        now: datetime,
    ) -> List[AggregatedMetric]:
        reduction = reduction_for(rule.metric_name, self._reductions)
        freshest_allowed = int(now.timestamp() * 1000) - rule.window_minutes * 60_000
        return [
            agg
            for agg in aggregates
            if reduction.matches(agg)
            and agg.window_end >= freshest_allowed
            and (rule.source_filter is None or agg.source_id == rule.source_filter)
        ]

    def decision_value(
        self, rule: AlertRule, matches: Sequence[AggregatedMetric]
    ) -> float:
        return reduction_for(rule.metric_name, self._reductions).reduce(matches)

    def resolve_manually(self, rule_id: int) -> Optional[AlertHistory]:
        """Close the open alert of a rule outside the evaluation cycle."""

        with self._cycle_lock:
            open_alert = self._repository.find_open_alert(rule_id)
            if open_alert is None:
                return None
            now = self._clock()
            self._repository.resolve_alert(open_alert.id, now)  # type: ignore[arg-type]
            self._logger.info(
                "alert_resolved_manually",
                extra={"rule_id": rule_id, "history_id": open_alert.id},
            )
            return open_alert.model_copy(update={"resolved_at": now})

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _evaluate_rule(
        self,
        rule: AlertRule,
        aggregates: Sequence[AggregatedMetric],
        now: datetime,
        result: EvaluationResult,
    ) -> None:
        assert rule.id is not None
        matches = self.matching_aggregates(rule, aggregates, now)
        if not matches:
            # no data is neither a breach nor a recovery
            result.skipped.append(rule.id)
            return

        value = self.decision_value(rule, matches)
        breached = rule.condition.evaluate(value, rule.threshold)
        open_alert = self._repository.find_open_alert(rule.id)

        if breached and open_alert is None:
            history = self._repository.open_alert(rule.id, value, now)
            result.triggered.append(history)
            self._logger.warning(
                "alert_triggered",
                extra={"rule_id": rule.id, "value": value, "threshold": rule.threshold},
            )
            self._publisher.send(self._trigger_message(rule, history, value))
        elif not breached and open_alert is not None:
            self._repository.resolve_alert(open_alert.id, now)  # type: ignore[arg-type]
            resolved = open_alert.model_copy(update={"resolved_at": now})
            result.resolved.append(resolved)
            self._logger.info(
                "alert_resolved",
                extra={"rule_id": rule.id, "history_id": open_alert.id, "value": value},
            )
            self._publisher.send(self._resolve_message(rule, resolved, value))

    @staticmethod
    def _trigger_message(
        rule: AlertRule, history: AlertHistory, value: float
    ) -> AlertMessage:
        return AlertMessage(
            kind=AlertKind.TRIGGER,
            severity=rule.severity,
            title=rule.name,
            message=f"{rule.metric_name} is {value:.2f} (threshold: {rule.threshold})",
            value=value,
            threshold=rule.threshold,
            rule_id=rule.id,
            history_id=history.id,
            source_id=rule.source_filter,
            metric_name=rule.metric_name,
            channels=rule.notification_channels,
        )

    @staticmethod
    def _resolve_message(
        rule: AlertRule, history: AlertHistory, value: float
    ) -> AlertMessage:
        return AlertMessage(
            kind=AlertKind.RESOLVE,
            severity=Severity.INFO,
            title=f"{rule.name} - Resolved",
            message=f"{rule.metric_name} has returned to normal ({value:.2f})",
            value=value,
            threshold=rule.threshold,
            rule_id=rule.id,
            history_id=history.id,
            source_id=rule.source_filter,
            metric_name=rule.metric_name,
            channels=rule.notification_channels,
        )
