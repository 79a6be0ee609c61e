"""Rule management: validated create/update/delete over alert rules."""

from __future__ import annotations

import logging
from typing import Any, List, Mapping, Optional

import pydantic

from telemetry_engine.domain.exceptions import RuleNotFoundError, ValidationError
from telemetry_engine.domain.models import AlertHistory, AlertRule
from telemetry_engine.storage.sqlite_repository import SQLiteRepository

from .evaluator import AlertEvaluator

UPDATABLE_FIELDS = frozenset(
    {
        "name",
        "source_filter",
        "enabled",
        "threshold",
        "window_minutes",
        "severity",
        "notification_channels",
    }
)


def _validate_rule(data: Mapping[str, Any]) -> AlertRule:
    try:
        return AlertRule.model_validate(dict(data))
    except pydantic.ValidationError as exc:
        errors = [
            {"field": ".".join(str(part) for part in err["loc"]), "error": err["msg"]}
            for err in exc.errors()
        ]
        raise ValidationError("Invalid alert rule", context={"errors": errors}) from exc


class AlertRuleService:
    """Operator-facing CRUD; validation errors surface synchronously."""

    def __init__(
        self,
        repository: SQLiteRepository,
        evaluator: Optional[AlertEvaluator] = None,
        *,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._repository = repository
        self._evaluator = evaluator
        self._logger = logger or logging.getLogger(__name__)

    def create(self, payload: Mapping[str, Any]) -> AlertRule:
        if "id" in payload:
            raise ValidationError(
                "Rule id is assigned by the store", context={"field": "id"}
            )
        rule = self._repository.create_rule(_validate_rule(payload))
        self._logger.info(
            "alert_rule_created", extra={"rule_id": rule.id, "rule_name": rule.name}
        )
        return rule

    def update(self, rule_id: int, payload: Mapping[str, Any]) -> AlertRule:
        unknown = sorted(set(payload) - UPDATABLE_FIELDS)
        if unknown:
            raise ValidationError(
                "Fields cannot be updated", context={"fields": unknown}
            )
        current = self.get(rule_id)
        updated = _validate_rule({**current.model_dump(), **payload})
        self._repository.update_rule(updated)
        self._logger.info(
            "alert_rule_updated",
            extra={"rule_id": rule_id, "fields": sorted(payload)},
        )
        return updated

    def delete(self, rule_id: int) -> None:
        self.get(rule_id)
        # an orphaned open row could never be resolved again
        self.resolve_manually(rule_id)
        self._repository.delete_rule(rule_id)
        self._logger.info("alert_rule_deleted", extra={"rule_id": rule_id})

    def get(self, rule_id: int) -> AlertRule:
        rule = self._repository.get_rule(rule_id)
        if rule is None:
            raise RuleNotFoundError(context={"rule_id": rule_id})
        return rule

    def list(self, *, enabled_only: bool = False) -> List[AlertRule]:
        return self._repository.list_rules(enabled_only=enabled_only)

    def history(self, rule_id: int) -> List[AlertHistory]:
        return self._repository.list_history(rule_id=rule_id)

    def resolve_manually(self, rule_id: int) -> Optional[AlertHistory]:
        if self._evaluator is None:
            raise RuntimeError("Manual resolution requires an alert evaluator")
        return self._evaluator.resolve_manually(rule_id)
