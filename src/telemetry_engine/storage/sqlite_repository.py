"""SQLite-backed durable store for aggregates, alert rules/history and costs."""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from telemetry_engine.domain.exceptions import InvariantViolationError, StorageError
from telemetry_engine.domain.models import (
    AggregatedMetric,
    Aggregation,
    AlertHistory,
    AlertRule,
    CostRecord,
)

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS metrics_hourly (
    source_id TEXT NOT NULL,
    metric_name TEXT NOT NULL,
    window_start INTEGER NOT NULL,
    window_end INTEGER NOT NULL,
    count INTEGER NOT NULL,
    sum REAL NOT NULL,
    min REAL NOT NULL,
    max REAL NOT NULL,
    p50 REAL NOT NULL,
    p95 REAL NOT NULL,
    p99 REAL NOT NULL,
    PRIMARY KEY (source_id, metric_name, window_start)
);
CREATE INDEX IF NOT EXISTS idx_metrics_hourly_window_end ON metrics_hourly (window_end);

CREATE TABLE IF NOT EXISTS alert_rules (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    source_filter TEXT,
    metric_name TEXT NOT NULL,
    condition TEXT NOT NULL,
    threshold REAL NOT NULL,
    window_minutes INTEGER NOT NULL,
    severity TEXT NOT NULL,
    enabled INTEGER NOT NULL,
    notification_channels TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS alert_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    rule_id INTEGER NOT NULL,
    triggered_at TEXT NOT NULL,
    resolved_at TEXT,
    observed_value REAL NOT NULL,
    notification_sent INTEGER NOT NULL DEFAULT 0
);
CREATE UNIQUE INDEX IF NOT EXISTS idx_alert_history_open
    ON alert_history (rule_id) WHERE resolved_at IS NULL;

CREATE TABLE IF NOT EXISTS cost_tracking (
    date TEXT NOT NULL,
    worker TEXT NOT NULL,
    resource_type TEXT NOT NULL,
    usage REAL NOT NULL,
    cost_usd REAL NOT NULL,
    PRIMARY KEY (date, worker, resource_type)
);
"""

_UPSERT_AGGREGATE_SQL = """
INSERT INTO metrics_hourly (source_id, metric_name, window_start, window_end, count, sum, min, max, p50, p95, p99)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(source_id, metric_name, window_start) DO UPDATE SET
    window_end=excluded.window_end,
    count=excluded.count,
    sum=excluded.sum,
    min=excluded.min,
    max=excluded.max,
    p50=excluded.p50,
    p95=excluded.p95,
    p99=excluded.p99;
"""

_SELECT_AGGREGATES_SQL = """
SELECT source_id, metric_name, window_start, window_end, count, sum, min, max, p50, p95, p99
FROM metrics_hourly
WHERE window_end >= ? AND window_end < ?
"""

_SUMMARY_EXPRESSIONS = {
    Aggregation.SUM: "SUM(sum)",
    Aggregation.AVG: "SUM(sum) / NULLIF(SUM(count), 0)",
    Aggregation.MIN: "MIN(min)",
    Aggregation.MAX: "MAX(max)",
    Aggregation.COUNT: "SUM(count)",
}

_SUMMARY_SQL = """
SELECT
    date(window_end / 1000, 'unixepoch') AS day,
    source_id,
    metric_name,
    {expression} AS value,
    MAX(p50) AS p50,
    MAX(p95) AS p95,
    MAX(p99) AS p99
FROM metrics_hourly
WHERE window_end >= ? AND window_end <= ?
{filters}
GROUP BY day, source_id, metric_name
ORDER BY day DESC, source_id, metric_name
LIMIT ?
"""

_INSERT_RULE_SQL = """
INSERT INTO alert_rules (name, source_filter, metric_name, condition, threshold, window_minutes, severity, enabled, notification_channels, created_at, updated_at)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""

_UPDATE_RULE_SQL = """
UPDATE alert_rules
SET name = ?, source_filter = ?, metric_name = ?, condition = ?, threshold = ?,
    window_minutes = ?, severity = ?, enabled = ?, notification_channels = ?, updated_at = ?
WHERE id = ?
"""

_SELECT_RULES_SQL = """
SELECT id, name, source_filter, metric_name, condition, threshold, window_minutes, severity, enabled, notification_channels
FROM alert_rules
"""

_SELECT_HISTORY_SQL = """
SELECT id, rule_id, triggered_at, resolved_at, observed_value, notification_sent
FROM alert_history
"""

_UPSERT_COST_SQL = """
INSERT INTO cost_tracking (date, worker, resource_type, usage, cost_usd)
VALUES (?, ?, ?, ?, ?)
ON CONFLICT(date, worker, resource_type) DO UPDATE SET
    usage=excluded.usage,
    cost_usd=excluded.cost_usd;
"""

_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def _to_text(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(_TIMESTAMP_FORMAT)


def _from_text(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.strptime(value, _TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


class SQLiteRepository:
    """Persistence for every durable table of the engine.

    Each component writes only its own tables: aggregates come from the
    rollup job, history transitions from the evaluator, cost rows from the
    estimator, and the dispatcher only flips ``notification_sent``.
    """

    def __init__(self, db_path: str | Path, *, timeout: float = 5.0):
        self._db_path = str(db_path)
        self._timeout = timeout
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Aggregates
    # ------------------------------------------------------------------
    def upsert_aggregates(self, aggregates: Sequence[AggregatedMetric]) -> None:
        if not aggregates:
            return
        rows = [
            (
                agg.source_id,
                agg.metric_name,
                agg.window_start,
                agg.window_end,
                agg.count,
                agg.sum,
                agg.min,
                agg.max,
                agg.p50,
                agg.p95,
                agg.p99,
            )
            for agg in aggregates
        ]
        with self._connection() as conn:
            conn.executemany(_UPSERT_AGGREGATE_SQL, rows)

    def find_aggregates(
        self,
        start_ms: int,
        end_ms: int,
        *,
        source_id: Optional[str] = None,
        metric_name: Optional[str] = None,
    ) -> List[AggregatedMetric]:
        sql = _SELECT_AGGREGATES_SQL
        params: List[Any] = [start_ms, end_ms]
        if source_id is not None:
            sql += " AND source_id = ?"
            params.append(source_id)
        if metric_name is not None:
            sql += " AND metric_name = ?"
            params.append(metric_name)
        sql += " ORDER BY window_end ASC"
        with self._connection() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._row_to_aggregate(row) for row in rows]

    def summarize_metrics(
        self,
        start_ms: int,
        end_ms: int,
        aggregation: Aggregation,
        *,
        source_id: Optional[str] = None,
        metric_name: Optional[str] = None,
        limit: int = 1000,
    ) -> List[Dict[str, Any]]:
        filters = ""
        params: List[Any] = [start_ms, end_ms]
        if source_id is not None:
            filters += " AND source_id = ?"
            params.append(source_id)
        if metric_name is not None:
            filters += " AND metric_name = ?"
            params.append(metric_name)
        params.append(limit)
        sql = _SUMMARY_SQL.format(
            expression=_SUMMARY_EXPRESSIONS[aggregation], filters=filters
        )
        with self._connection() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [
            {
                "day": day,
                "source_id": source,
                "metric_name": metric,
                "value": value if value is not None else 0.0,
                "p50": p50,
                "p95": p95,
                "p99": p99,
            }
            for day, source, metric, value, p50, p95, p99 in rows
        ]

    def delete_aggregates_before(self, cutoff_ms: int) -> int:
        with self._connection() as conn:
            cursor = conn.execute(
                "DELETE FROM metrics_hourly WHERE window_end < ?", (cutoff_ms,)
            )
            return cursor.rowcount

    # ------------------------------------------------------------------
    # Alert rules
    # ------------------------------------------------------------------
    def create_rule(self, rule: AlertRule, *, now: Optional[datetime] = None) -> AlertRule:
        stamp = _to_text(now or datetime.now(timezone.utc))
        with self._connection() as conn:
            cursor = conn.execute(
                _INSERT_RULE_SQL, (*self._rule_params(rule), stamp, stamp)
            )
            rule_id = int(cursor.lastrowid)
        return rule.model_copy(update={"id": rule_id})

    def update_rule(self, rule: AlertRule, *, now: Optional[datetime] = None) -> None:
        if rule.id is None:
            raise ValueError("rule must have an id to be updated")
        stamp = _to_text(now or datetime.now(timezone.utc))
        with self._connection() as conn:
            conn.execute(_UPDATE_RULE_SQL, (*self._rule_params(rule), stamp, rule.id))

    def delete_rule(self, rule_id: int) -> bool:
        with self._connection() as conn:
            cursor = conn.execute("DELETE FROM alert_rules WHERE id = ?", (rule_id,))
            return cursor.rowcount > 0

    def get_rule(self, rule_id: int) -> Optional[AlertRule]:
        with self._connection() as conn:
            row = conn.execute(
                _SELECT_RULES_SQL + " WHERE id = ?", (rule_id,)
            ).fetchone()
        return self._row_to_rule(row) if row else None

    def list_rules(self, *, enabled_only: bool = False) -> List[AlertRule]:
        sql = _SELECT_RULES_SQL
        if enabled_only:
            sql += " WHERE enabled = 1"
        sql += " ORDER BY id ASC"
        with self._connection() as conn:
            rows = conn.execute(sql).fetchall()
        return [self._row_to_rule(row) for row in rows]

    # ------------------------------------------------------------------
    # Alert history
    # ------------------------------------------------------------------
    def find_open_alert(self, rule_id: int) -> Optional[AlertHistory]:
        with self._connection() as conn:
            rows = conn.execute(
                _SELECT_HISTORY_SQL
                + " WHERE rule_id = ? AND resolved_at IS NULL ORDER BY triggered_at DESC",
                (rule_id,),
            ).fetchall()
        if len(rows) > 1:
            raise InvariantViolationError(
                "More than one open alert for rule",
                context={"rule_id": rule_id, "open_rows": len(rows)},
            )
        return self._row_to_history(rows[0]) if rows else None

    def open_alert(
        self, rule_id: int, observed_value: float, triggered_at: datetime
    ) -> AlertHistory:
        try:
            with self._connection() as conn:
                cursor = conn.execute(
                    "INSERT INTO alert_history (rule_id, triggered_at, observed_value) VALUES (?, ?, ?)",
                    (rule_id, _to_text(triggered_at), observed_value),
                )
                history_id = int(cursor.lastrowid)
        except StorageError as exc:
            if isinstance(exc.__cause__, sqlite3.IntegrityError):
                raise InvariantViolationError(
                    "Rule already has an open alert", context={"rule_id": rule_id}
                ) from exc
            raise
        return AlertHistory(
            id=history_id,
            rule_id=rule_id,
            triggered_at=_from_text(_to_text(triggered_at)),
            observed_value=observed_value,
        )

    def resolve_alert(self, history_id: int, resolved_at: datetime) -> None:
        with self._connection() as conn:
            conn.execute(
                "UPDATE alert_history SET resolved_at = ? WHERE id = ? AND resolved_at IS NULL",
                (_to_text(resolved_at), history_id),
            )

    def mark_notification_sent(self, history_id: int) -> None:
        with self._connection() as conn:
            conn.execute(
                "UPDATE alert_history SET notification_sent = 1 WHERE id = ?",
                (history_id,),
            )

    def get_history(self, history_id: int) -> Optional[AlertHistory]:
        with self._connection() as conn:
            row = conn.execute(
                _SELECT_HISTORY_SQL + " WHERE id = ?", (history_id,)
            ).fetchone()
        return self._row_to_history(row) if row else None

    def list_history(
        self, *, rule_id: Optional[int] = None, open_only: bool = False
    ) -> List[AlertHistory]:
        clauses: List[str] = []
        params: List[Any] = []
        if rule_id is not None:
            clauses.append("rule_id = ?")
            params.append(rule_id)
        if open_only:
            clauses.append("resolved_at IS NULL")
        sql = _SELECT_HISTORY_SQL
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY id ASC"
        with self._connection() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._row_to_history(row) for row in rows]

    def delete_resolved_alerts_before(self, cutoff: datetime) -> int:
        with self._connection() as conn:
            cursor = conn.execute(
                "DELETE FROM alert_history WHERE resolved_at IS NOT NULL AND triggered_at < ?",
                (_to_text(cutoff),),
            )
            return cursor.rowcount

    # ------------------------------------------------------------------
    # Costs
    # ------------------------------------------------------------------
    def upsert_costs(self, records: Sequence[CostRecord]) -> None:
        if not records:
            return
        rows = [
            (
                record.date.isoformat(),
                record.worker,
                record.resource_type,
                record.usage_units,
                record.cost_usd,
            )
            for record in records
        ]
        with self._connection() as conn:
            conn.executemany(_UPSERT_COST_SQL, rows)

    def find_costs(
        self,
        start: date,
        *,
        end: Optional[date] = None,
        worker: Optional[str] = None,
    ) -> List[CostRecord]:
        sql = "SELECT date, worker, resource_type, usage, cost_usd FROM cost_tracking WHERE date >= ?"
        params: List[Any] = [start.isoformat()]
        if end is not None:
            sql += " AND date < ?"
            params.append(end.isoformat())
        if worker is not None:
            sql += " AND worker = ?"
            params.append(worker)
        sql += " ORDER BY date DESC, worker, resource_type"
        with self._connection() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [
            CostRecord(
                date=date.fromisoformat(day),
                worker=worker_name,
                resource_type=resource,
                usage_units=usage,
                cost_usd=cost,
            )
            for day, worker_name, resource, usage, cost in rows
        ]

    def delete_costs_before(self, cutoff: date) -> int:
        with self._connection() as conn:
            cursor = conn.execute(
                "DELETE FROM cost_tracking WHERE date < ?", (cutoff.isoformat(),)
            )
            return cursor.rowcount

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------
    def ping(self) -> bool:
        with self._connection() as conn:
            conn.execute("SELECT 1").fetchone()
        return True

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self._db_path, timeout=self._timeout)
        except sqlite3.Error as exc:
            raise StorageError(
                "Could not open database", context={"db_path": self._db_path}
            ) from exc
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            raise StorageError(str(exc), context={"db_path": self._db_path}) from exc
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _ensure_schema(self) -> None:
        with self._connection() as conn:
            conn.executescript(_SCHEMA_SQL)

    @staticmethod
    def _rule_params(rule: AlertRule) -> Tuple[Any, ...]:
        return (
            rule.name,
            rule.source_filter,
            rule.metric_name,
            rule.condition.value,
            rule.threshold,
            rule.window_minutes,
            rule.severity.value,
            1 if rule.enabled else 0,
            json.dumps(list(rule.notification_channels)),
        )

    @staticmethod
    def _row_to_aggregate(row: Tuple[Any, ...]) -> AggregatedMetric:
        (
            source_id,
            metric_name,
            window_start,
            window_end,
            count,
            sum_,
            min_,
            max_,
            p50,
            p95,
            p99,
        ) = row
        return AggregatedMetric(
            source_id=source_id,
            metric_name=metric_name,
            window_start=window_start,
            window_end=window_end,
            count=count,
            sum=sum_,
            min=min_,
            max=max_,
            p50=p50,
            p95=p95,
            p99=p99,
        )

    @staticmethod
    def _row_to_rule(row: Tuple[Any, ...]) -> AlertRule:
        (
            id_,
            name,
            source_filter,
            metric_name,
            condition,
            threshold,
            window_minutes,
            severity,
            enabled,
            channels,
        ) = row
        return AlertRule(
            id=id_,
            name=name,
            source_filter=source_filter,
            metric_name=metric_name,
            condition=condition,
            threshold=threshold,
            window_minutes=window_minutes,
            severity=severity,
            enabled=bool(enabled),
            notification_channels=json.loads(channels or "[]"),
        )

    @staticmethod
    def _row_to_history(row: Tuple[Any, ...]) -> AlertHistory:
        id_, rule_id, triggered_at, resolved_at, observed_value, sent = row
        return AlertHistory(
            id=id_,
            rule_id=rule_id,
            triggered_at=_from_text(triggered_at),
            resolved_at=_from_text(resolved_at),
            observed_value=observed_value,
            notification_sent=bool(sent),
        )
