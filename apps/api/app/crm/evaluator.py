from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any

from sqlalchemy.orm import Session

from app.crm.errors import TypeCoercionError
from app.crm.formatter import (
    BOOLEAN_TYPES,
    DATE_TYPES,
    NUMBER_TYPES,
    CanonicalValue,
    canonicalize_input,
    stored_from_columns,
    to_canonical,
)
from app.crm.models import CRMFieldDefinition, CRMFieldValue, CRMQualificationRule
from app.crm.repository import AttributeStore, SqlAttributeStore
from app.crm.resolver import system_field

logger = logging.getLogger("app.crm.qualification")

QUALIFIABLE_ENTITY_KIND = "contact"
EMPTINESS_OPERATORS = {"is_empty", "is_not_empty"}
ORDERING_OPERATORS = {"greater_than", "less_than", "greater_or_equal", "less_or_equal"}
COMPARISON_OPERATORS = {"equals", "not_equals", "contains", "not_contains"} | ORDERING_OPERATORS
OPERATORS = COMPARISON_OPERATORS | EMPTINESS_OPERATORS


class QualificationOutcome(str, Enum):
    QUALIFIED = "QUALIFIED"
    NOT_QUALIFIED = "NOT_QUALIFIED"
    NOT_APPLICABLE = "NOT_APPLICABLE"


@dataclass(frozen=True, slots=True)
class Operand:
    declared_type: str | None
    value: CanonicalValue | None
    field_key: str | None
    reason: str | None = None


@dataclass(frozen=True, slots=True)
class RuleResult:
    rule_id: uuid.UUID
    name: str
    operator: str
    field_key: str | None
    operand: CanonicalValue | None
    passed: bool
    reason: str | None = None


@dataclass(frozen=True, slots=True)
class Evaluation:
    outcome: QualificationOutcome
    results: tuple[RuleResult, ...] = ()


def is_empty_value(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple)):
        return len(value) == 0
    return False


def comparison_targets(rule: CRMQualificationRule) -> list[str]:
    if rule.comparison_values:
        return [item for item in rule.comparison_values if isinstance(item, str)]
    if rule.comparison_value is not None and rule.comparison_value != "":
        return [rule.comparison_value]
    return []


def canonical_target(declared_type: str | None, raw: str) -> CanonicalValue:
    """Comparison value in the operand's canonical form; text-like types compare raw."""
    if declared_type in NUMBER_TYPES | DATE_TYPES | BOOLEAN_TYPES:
        target = canonicalize_input(declared_type, raw)
        if target is None:
            raise TypeCoercionError(declared_type, "comparison value is empty")
        return target
    return raw


def apply_operator(operator: str, operand: Operand, targets: list[str]) -> tuple[bool, str | None]:
    """Apply one operator; returns the boolean result and, when false for a data reason, why."""
    value = operand.value
    # An unresolved operand fails every operator, emptiness checks included.
    if operand.reason is not None:
        return False, operand.reason
    if operator == "is_empty":
        return is_empty_value(value), None
    if operator == "is_not_empty":
        return not is_empty_value(value), None
    if operator not in COMPARISON_OPERATORS:
        return False, "unknown_operator"
    if is_empty_value(value):
        return False, "missing_operand"
    if not targets:
        return False, "missing_comparison_value"

    if operator in {"contains", "not_contains"}:
        matched = _contains(value, targets)
        return (matched if operator == "contains" else not matched), None

    try:
        coerced = [canonical_target(operand.declared_type, target) for target in targets]
    except TypeCoercionError:
        return False, "uncoercible_comparison_value"

    if operator in {"equals", "not_equals"}:
        matched = _equals(value, coerced)
        return (matched if operator == "equals" else not matched), None

    if not _is_orderable(value) or not _is_orderable(coerced[0]) or type(value) is not type(coerced[0]):
        return False, "not_orderable"
    target = coerced[0]
    if operator == "greater_than":
        return value > target, None  # type: ignore[operator]
    if operator == "less_than":
        return value < target, None  # type: ignore[operator]
    if operator == "greater_or_equal":
        return value >= target, None  # type: ignore[operator]
    return value <= target, None  # type: ignore[operator]


def _is_orderable(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    return isinstance(value, (int, float, date, datetime))


def _equals(value: CanonicalValue, targets: list[CanonicalValue]) -> bool:
    if isinstance(value, list):
        return set(value) == {str(target) for target in targets}
    return any(value == target for target in targets)


def _contains(value: CanonicalValue, targets: list[str]) -> bool:
    needles = [target.casefold() for target in targets]
    if isinstance(value, list):
        members = {item.casefold() for item in value}
        return any(needle in members for needle in needles)
    haystack = value.isoformat() if isinstance(value, (date, datetime)) else str(value)
    haystack = haystack.casefold()
    return any(needle in haystack for needle in needles)


class QualificationEvaluator:
    """AND over a tenant's active qualification rules for one contact."""

    def __init__(self, store: AttributeStore) -> None:
        self.store = store

    def evaluate(self, tenant_id: str, entity_kind: str, entity_id: uuid.UUID) -> QualificationOutcome:
        return self._run(tenant_id, entity_kind, entity_id, short_circuit=True).outcome

    def explain(self, tenant_id: str, entity_kind: str, entity_id: uuid.UUID) -> Evaluation:
        return self._run(tenant_id, entity_kind, entity_id, short_circuit=False)

    def _run(self, tenant_id: str, entity_kind: str, entity_id: uuid.UUID, *, short_circuit: bool) -> Evaluation:
        if entity_kind != QUALIFIABLE_ENTITY_KIND:
            return Evaluation(QualificationOutcome.NOT_APPLICABLE)

        rules = self.store.fetch_active_rules(tenant_id)
        if not rules:
            return Evaluation(QualificationOutcome.NOT_APPLICABLE)

        values = {row.field_definition_id: row for row in self.store.fetch_values(entity_kind, entity_id)}
        record = self.store.fetch_record_fields(entity_kind, entity_id) or {}
        definitions: dict[uuid.UUID, CRMFieldDefinition | None] = {}

        results: list[RuleResult] = []
        all_passed = True
        for rule in rules:
            operand = self._resolve_operand(rule, tenant_id, values, record, definitions)
            passed, reason = apply_operator(rule.operator, operand, comparison_targets(rule))
            if reason in {"missing_comparison_value", "uncoercible_comparison_value", "unknown_operator"}:
                logger.warning(
                    "qualification_rule_unusable",
                    extra={
                        "tenant_id": tenant_id,
                        "rule_id": str(rule.id),
                        "operator": rule.operator,
                        "declared_type": operand.declared_type,
                        "reason": reason,
                    },
                )
            results.append(
                RuleResult(
                    rule_id=rule.id,
                    name=rule.name,
                    operator=rule.operator,
                    field_key=operand.field_key,
                    operand=operand.value,
                    passed=passed,
                    reason=reason,
                )
            )
            if not passed:
                all_passed = False
                if short_circuit:
                    break

        outcome = QualificationOutcome.QUALIFIED if all_passed else QualificationOutcome.NOT_QUALIFIED
        return Evaluation(outcome, tuple(results))

    def _resolve_operand(
        self,
        rule: CRMQualificationRule,
        tenant_id: str,
        values: dict[uuid.UUID, CRMFieldValue],
        record: dict[str, Any],
        definitions: dict[uuid.UUID, CRMFieldDefinition | None],
    ) -> Operand:
        if rule.field_definition_id is not None:
            if rule.field_definition_id not in definitions:
                definitions[rule.field_definition_id] = self.store.fetch_definition(rule.field_definition_id)
            definition = definitions[rule.field_definition_id]
            if (
                definition is None
                or definition.deleted_at is not None
                or not definition.active
                or definition.tenant_id != tenant_id
                or definition.entity_kind != QUALIFIABLE_ENTITY_KIND
            ):
                self._warn_unresolved(rule, tenant_id, str(rule.field_definition_id))
                return Operand(None, None, None, reason="unresolved_reference")

            row = values.get(definition.id)
            try:
                stored = (
                    stored_from_columns(
                        definition.declared_type,
                        text_value=row.text_value,
                        number_value=row.number_value,
                        date_value=row.date_value,
                        boolean_value=row.boolean_value,
                        json_value=row.json_value,
                    )
                    if row is not None
                    else None
                )
                canonical = to_canonical(definition.declared_type, stored)
            except TypeCoercionError:
                logger.warning(
                    "qualification_operand_unreadable",
                    extra={
                        "tenant_id": tenant_id,
                        "rule_id": str(rule.id),
                        "field_definition_id": str(definition.id),
                        "declared_type": definition.declared_type,
                    },
                )
                canonical = None
            return Operand(definition.declared_type, canonical, definition.field_key)

        if rule.system_field_key:
            field = system_field(QUALIFIABLE_ENTITY_KIND, rule.system_field_key)
            if field is None:
                self._warn_unresolved(rule, tenant_id, rule.system_field_key)
                return Operand(None, None, rule.system_field_key, reason="unresolved_reference")
            raw = record.get(field.key)
            value = raw.strip() if isinstance(raw, str) else raw
            return Operand(field.declared_type, value if not is_empty_value(value) else None, field.key)

        self._warn_unresolved(rule, tenant_id, None)
        return Operand(None, None, None, reason="unresolved_reference")

    def _warn_unresolved(self, rule: CRMQualificationRule, tenant_id: str, reference: str | None) -> None:
        logger.warning(
            "qualification_reference_unresolved",
            extra={
                "tenant_id": tenant_id,
                "rule_id": str(rule.id),
                "field_definition_id": reference,
            },
        )


def evaluate_qualification(
    session: Session,
    tenant_id: str,
    entity_kind: str,
    entity_id: uuid.UUID,
) -> QualificationOutcome:
    return QualificationEvaluator(SqlAttributeStore(session)).evaluate(tenant_id, entity_kind, entity_id)
