from __future__ import annotations

import logging
import re
import unicodedata
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.orm import Session

from app import audit
from app.core.config import get_settings
from app.crm.errors import (
    ConflictError,
    FieldErrors,
    ImmutableFieldError,
    NotFoundError,
    SystemFieldError,
    TypeCoercionError,
    UnresolvedReferenceError,
    ValidationError,
)
from app.crm.evaluator import (
    COMPARISON_OPERATORS,
    EMPTINESS_OPERATORS,
    OPERATORS,
    ORDERING_OPERATORS,
    QUALIFIABLE_ENTITY_KIND,
    canonical_target,
)
from app.crm.formatter import (
    DATE_TYPES,
    NUMBER_TYPES,
    SELECT_TYPES,
    CanonicalValue,
    StoredValue,
    display_string,
    from_input,
    stored_from_columns,
    to_canonical,
)
from app.crm.models import CRMFieldDefinition, CRMFieldValue, CRMQualificationRule
from app.crm.repository import AttributeStore, SqlAttributeStore
from app.crm.resolver import ENTITY_KINDS, FieldResolver, system_field, system_fields
from app.crm.schemas import (
    FieldDefinitionCreate,
    FieldDefinitionRead,
    FieldDefinitionUpdate,
    QualificationRuleCreate,
    QualificationRuleRead,
    QualificationRuleUpdate,
    ReorderItem,
)
from app.metrics import observe_coercion_failure


logger = logging.getLogger("app.crm.attributes")

StoreFactory = Callable[[Session], AttributeStore]

_TEXT_RULE_KEYS = {"min_length", "max_length", "regex"}
_NUMBER_RULE_KEYS = {"min", "max", "precision"}
_DATE_RULE_KEYS = {"min_date", "max_date"}
_SLUG_SEPARATOR_RE = re.compile(r"[^a-z0-9]+")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ActorUser:
    user_id: str
    tenant_id: str
    permissions: set[str] = field(default_factory=set)
    correlation_id: str | None = None


def slugify(name: str) -> str:
    folded = unicodedata.normalize("NFKD", name).encode("ascii", "ignore").decode("ascii").lower()
    slug = _SLUG_SEPARATOR_RE.sub("-", folded).strip("-")
    if not slug:
        raise ValidationError("name must contain at least one letter or digit")
    return slug


def validate_entity_kind(entity_kind: str) -> None:
    if entity_kind not in ENTITY_KINDS:
        raise ValidationError(f"invalid entity_kind: {entity_kind}")


def _slug_taken(slug: str, entity_kind: str) -> ValidationError:
    return ValidationError(f"a field with slug '{slug}' already exists for {entity_kind}")


def _definition_snapshot(definition: CRMFieldDefinition) -> dict[str, Any]:
    return FieldDefinitionRead.model_validate(definition).model_dump(mode="json")


def _rule_snapshot(rule: CRMQualificationRule) -> dict[str, Any]:
    return QualificationRuleRead.model_validate(rule).model_dump(mode="json")


def stored_value_of(definition: CRMFieldDefinition, row: CRMFieldValue | None) -> StoredValue | None:
    if row is None:
        return None
    return stored_from_columns(
        definition.declared_type,
        text_value=row.text_value,
        number_value=row.number_value,
        date_value=row.date_value,
        boolean_value=row.boolean_value,
        json_value=row.json_value,
    )


@dataclass(slots=True)
class FieldDefinitionService:
    store_factory: StoreFactory = SqlAttributeStore

    def list(
        self,
        session: Session,
        tenant_id: str,
        entity_kind: str,
        *,
        include_inactive: bool = False,
    ) -> list[FieldDefinitionRead]:
        validate_entity_kind(entity_kind)
        store = self.store_factory(session)
        definitions = store.fetch_definitions(tenant_id, entity_kind, include_inactive=include_inactive)
        return [FieldDefinitionRead.model_validate(item) for item in definitions]

    def create(
        self,
        session: Session,
        actor: ActorUser,
        entity_kind: str,
        dto: FieldDefinitionCreate,
    ) -> FieldDefinitionRead:
        validate_entity_kind(entity_kind)
        store = self.store_factory(session)
        name = dto.name.strip()
        slug = slugify(name)
        self._ensure_slug_available(store, actor.tenant_id, entity_kind, slug)

        options = self._normalize_options(dto.declared_type, dto.options)
        validation_rules = self._normalize_validation_rules(dto.declared_type, dto.validation_rules)
        default_value = self._normalize_default(dto.declared_type, dto.default_value, options, validation_rules)
        display_order = dto.display_order
        if display_order is None:
            display_order = store.next_definition_order(actor.tenant_id, entity_kind)

        definition = CRMFieldDefinition(
            tenant_id=actor.tenant_id,
            entity_kind=entity_kind,
            slug=slug,
            name=name,
            description=dto.description,
            declared_type=dto.declared_type,
            required=dto.required,
            default_value=default_value,
            placeholder=dto.placeholder,
            options=options,
            validation_rules=validation_rules,
            display_order=display_order,
            is_system=False,
            active=dto.active,
        )
        try:
            store.upsert_definition(definition)
        except ConflictError as exc:
            # A concurrent create took the slug after the availability check.
            raise _slug_taken(slug, entity_kind) from exc
        audit.record(
            actor.user_id,
            "crm.field_definition",
            str(definition.id),
            "create",
            None,
            _definition_snapshot(definition),
            tenant_id=actor.tenant_id,
            correlation_id=actor.correlation_id,
        )
        store.commit()
        logger.info(
            "field_definition_created",
            extra={
                "tenant_id": actor.tenant_id,
                "entity_kind": entity_kind,
                "field_definition_id": str(definition.id),
                "declared_type": definition.declared_type,
            },
        )
        return FieldDefinitionRead.model_validate(definition)

    def update(
        self,
        session: Session,
        actor: ActorUser,
        definition_id: uuid.UUID,
        dto: FieldDefinitionUpdate,
    ) -> FieldDefinitionRead:
        store = self.store_factory(session)
        definition = self._get_live(store, actor.tenant_id, definition_id)
        payload = dto.model_dump(exclude_unset=True)

        changed_identity = [
            key for key in ("declared_type", "slug") if key in payload and payload[key] != getattr(definition, key)
        ]
        if definition.is_system:
            if "declared_type" in changed_identity:
                raise SystemFieldError(definition.slug, "retyped")
            if "slug" in changed_identity:
                raise SystemFieldError(definition.slug, "renamed")
            locked = [
                key
                for key in ("options", "validation_rules", "default_value")
                if key in payload and payload[key] != getattr(definition, key)
            ]
            if locked or payload.get("active") is False:
                raise SystemFieldError(definition.slug, "changed in " + ", ".join(locked or ["active"]))
        elif changed_identity:
            raise ImmutableFieldError(definition.id, changed_identity)

        before = _definition_snapshot(definition)
        options = definition.options
        if "options" in payload:
            options = self._normalize_options(definition.declared_type, payload["options"])
        validation_rules = definition.validation_rules
        if "validation_rules" in payload:
            validation_rules = self._normalize_validation_rules(definition.declared_type, payload["validation_rules"])
        default_value = payload.get("default_value", definition.default_value)
        if {"options", "validation_rules", "default_value"} & payload.keys():
            default_value = self._normalize_default(definition.declared_type, default_value, options, validation_rules)
        if "name" in payload and payload["name"] is None:
            raise ValidationError("name cannot be empty")

        definition.options = options
        definition.validation_rules = validation_rules
        definition.default_value = default_value
        for key in ("name", "description", "required", "placeholder", "active", "display_order"):
            if key in payload and payload[key] is not None:
                setattr(definition, key, payload[key].strip() if key == "name" else payload[key])
        if "description" in payload and payload["description"] is None:
            definition.description = None
        if "placeholder" in payload and payload["placeholder"] is None:
            definition.placeholder = None
        definition.updated_at = utcnow()

        store.upsert_definition(definition)
        audit.record(
            actor.user_id,
            "crm.field_definition",
            str(definition.id),
            "update",
            before,
            _definition_snapshot(definition),
            tenant_id=actor.tenant_id,
            correlation_id=actor.correlation_id,
        )
        store.commit()
        return FieldDefinitionRead.model_validate(definition)

    def deactivate(self, session: Session, actor: ActorUser, definition_id: uuid.UUID) -> FieldDefinitionRead:
        """Soft delete; stored values stay attributable to the definition."""
        store = self.store_factory(session)
        definition = self._get_live(store, actor.tenant_id, definition_id)
        if definition.is_system:
            raise SystemFieldError(definition.slug, "deleted")

        before = _definition_snapshot(definition)
        now = utcnow()
        definition.active = False
        definition.deleted_at = now
        definition.updated_at = now
        store.upsert_definition(definition)
        audit.record(
            actor.user_id,
            "crm.field_definition",
            str(definition.id),
            "deactivate",
            before,
            _definition_snapshot(definition),
            tenant_id=actor.tenant_id,
            correlation_id=actor.correlation_id,
        )
        store.commit()
        logger.info(
            "field_definition_deactivated",
            extra={"tenant_id": actor.tenant_id, "field_definition_id": str(definition.id)},
        )
        return FieldDefinitionRead.model_validate(definition)

    def seed_system_fields(self, session: Session, actor: ActorUser, entity_kind: str) -> list[FieldDefinitionRead]:
        validate_entity_kind(entity_kind)
        store = self.store_factory(session)
        existing = {
            definition.slug: definition
            for definition in store.fetch_definitions(actor.tenant_id, entity_kind, include_inactive=True)
            if definition.is_system
        }
        for position, system in enumerate(system_fields(entity_kind)):
            if system.key in existing:
                continue
            definition = CRMFieldDefinition(
                tenant_id=actor.tenant_id,
                entity_kind=entity_kind,
                slug=system.key,
                name=system.label,
                declared_type=system.declared_type,
                required=system.required,
                placeholder=system.placeholder or None,
                display_order=position,
                is_system=True,
                active=True,
            )
            store.upsert_definition(definition)
            existing[system.key] = definition
            audit.record(
                actor.user_id,
                "crm.field_definition",
                str(definition.id),
                "seed",
                None,
                _definition_snapshot(definition),
                tenant_id=actor.tenant_id,
                correlation_id=actor.correlation_id,
            )
        store.commit()
        seeded = [definition for definition in existing.values()]
        seeded.sort(key=lambda definition: (definition.display_order, definition.slug))
        return [FieldDefinitionRead.model_validate(item) for item in seeded]

    def reorder(
        self,
        session: Session,
        actor: ActorUser,
        entity_kind: str,
        items: list[ReorderItem],
    ) -> list[FieldDefinitionRead]:
        validate_entity_kind(entity_kind)
        store = self.store_factory(session)
        definitions = {
            definition.id: definition
            for definition in store.fetch_definitions(actor.tenant_id, entity_kind, include_inactive=True)
        }
        unknown = [str(item.id) for item in items if item.id not in definitions]
        if unknown:
            raise NotFoundError(f"field definitions not found: {', '.join(unknown)}")
        for item in items:
            definitions[item.id].display_order = item.display_order
            definitions[item.id].updated_at = utcnow()
            store.upsert_definition(definitions[item.id])
        store.commit()
        return self.list(session, actor.tenant_id, entity_kind, include_inactive=True)

    def resolver(self, session: Session, tenant_id: str, entity_kind: str) -> FieldResolver:
        validate_entity_kind(entity_kind)
        store = self.store_factory(session)
        return FieldResolver(store.fetch_definitions(tenant_id, entity_kind))

    def _get_live(self, store: AttributeStore, tenant_id: str, definition_id: uuid.UUID) -> CRMFieldDefinition:
        definition = store.fetch_definition(definition_id)
        if definition is None or definition.tenant_id != tenant_id or definition.deleted_at is not None:
            raise NotFoundError("field definition not found")
        return definition

    def _ensure_slug_available(self, store: AttributeStore, tenant_id: str, entity_kind: str, slug: str) -> None:
        for definition in store.fetch_definitions(tenant_id, entity_kind, include_inactive=True):
            if definition.slug == slug:
                raise _slug_taken(slug, entity_kind)

    def _normalize_options(self, declared_type: str, options: list[str] | None) -> list[str] | None:
        if declared_type not in SELECT_TYPES:
            return None
        cleaned: list[str] = []
        for option in options or []:
            if not isinstance(option, str) or not option.strip():
                raise ValidationError("options must be non-empty strings")
            if option.strip() not in cleaned:
                cleaned.append(option.strip())
        if not cleaned:
            raise ValidationError(f"options are required for {declared_type}")
        limit = get_settings().custom_field_max_options
        if len(cleaned) > limit:
            raise ValidationError(f"at most {limit} options are allowed")
        return cleaned

    def _normalize_validation_rules(
        self,
        declared_type: str,
        rules: dict[str, Any] | None,
    ) -> dict[str, Any] | None:
        if not rules:
            return None
        if declared_type in {"short_text", "long_text"}:
            allowed = _TEXT_RULE_KEYS
        elif declared_type in NUMBER_TYPES:
            allowed = _NUMBER_RULE_KEYS if declared_type == "decimal" else _NUMBER_RULE_KEYS - {"precision"}
        elif declared_type in DATE_TYPES:
            allowed = _DATE_RULE_KEYS
        else:
            allowed = set()

        unsupported = sorted(set(rules) - allowed)
        if unsupported:
            raise ValidationError(
                f"validation rules not supported for {declared_type}: {', '.join(unsupported)}",
                details={"unsupported": unsupported},
            )
        for key in ("min_length", "max_length", "precision"):
            if key in rules and (not isinstance(rules[key], int) or isinstance(rules[key], bool) or rules[key] < 0):
                raise ValidationError(f"{key} must be a non-negative integer")
        for key in ("min", "max"):
            if key in rules and (isinstance(rules[key], bool) or not isinstance(rules[key], (int, float))):
                raise ValidationError(f"{key} must be a number")
        if "regex" in rules:
            try:
                re.compile(str(rules["regex"]))
            except re.error as exc:
                raise ValidationError(f"regex is invalid: {exc}")
        for key in ("min_date", "max_date"):
            if key in rules:
                try:
                    from_input("date", rules[key])
                except TypeCoercionError:
                    raise ValidationError(f"{key} must be an ISO date")
        return dict(rules)

    def _normalize_default(
        self,
        declared_type: str,
        default_value: str | None,
        options: list[str] | None,
        validation_rules: dict[str, Any] | None,
    ) -> str | None:
        if default_value is None or not default_value.strip():
            return None
        try:
            from_input(declared_type, default_value, options=options, validation_rules=validation_rules)
        except TypeCoercionError as exc:
            raise ValidationError(f"default_value is invalid: {exc.message}")
        return default_value


@dataclass(slots=True)
class FieldValueService:
    store_factory: StoreFactory = SqlAttributeStore

    def set(
        self,
        session: Session,
        tenant_id: str,
        field_definition_id: uuid.UUID,
        entity_kind: str,
        entity_id: uuid.UUID,
        raw_value: Any,
    ) -> CanonicalValue | None:
        store = self.store_factory(session)
        definition = self._writable_definition(store, tenant_id, field_definition_id, entity_kind)
        stored = self._coerce(definition, raw_value)
        self._write(store, definition, entity_id, stored)
        store.commit()
        return to_canonical(definition.declared_type, stored)

    def get_all(
        self,
        session: Session,
        tenant_id: str,
        entity_kind: str,
        entity_id: uuid.UUID,
    ) -> dict[uuid.UUID, CRMFieldValue]:
        validate_entity_kind(entity_kind)
        store = self.store_factory(session)
        return {
            row.field_definition_id: row
            for row in store.fetch_values(entity_kind, entity_id)
            if row.tenant_id == tenant_id
        }

    def get_canonical(
        self,
        session: Session,
        tenant_id: str,
        entity_kind: str,
        entity_id: uuid.UUID,
    ) -> dict[str, CanonicalValue | None]:
        output: dict[str, CanonicalValue | None] = {}
        for definition, row in self._live_pairs(session, tenant_id, entity_kind, entity_id):
            output[definition.field_key] = to_canonical(definition.declared_type, stored_value_of(definition, row))
        return output

    def get_display(
        self,
        session: Session,
        tenant_id: str,
        entity_kind: str,
        entity_id: uuid.UUID,
        locale: str,
    ) -> dict[str, str]:
        output: dict[str, str] = {}
        for definition, row in self._live_pairs(session, tenant_id, entity_kind, entity_id):
            output[definition.field_key] = display_string(definition.declared_type, stored_value_of(definition, row), locale)
        return output

    def delete(
        self,
        session: Session,
        tenant_id: str,
        field_definition_id: uuid.UUID,
        entity_kind: str,
        entity_id: uuid.UUID,
    ) -> bool:
        validate_entity_kind(entity_kind)
        store = self.store_factory(session)
        definition = store.fetch_definition(field_definition_id)
        if definition is None or definition.tenant_id != tenant_id:
            raise NotFoundError("field definition not found")
        removed = store.delete_value(field_definition_id, entity_kind, entity_id)
        store.commit()
        return removed

    def coerce_many(
        self,
        session: Session,
        tenant_id: str,
        entity_kind: str,
        values: dict[str, Any],
    ) -> tuple[dict[str, StoredValue | None], dict[str, TypeCoercionError]]:
        """Coerce a form's custom values field by field without writing anything."""
        definitions = self._definitions_by_key(session, tenant_id, entity_kind)
        unknown = sorted(key for key in values if key not in definitions)
        if unknown:
            raise ValidationError(f"unknown custom fields: {', '.join(unknown)}", details={"unknown": unknown})

        coerced: dict[str, StoredValue | None] = {}
        errors: dict[str, TypeCoercionError] = {}
        for key, raw_value in values.items():
            try:
                coerced[key] = self._coerce(definitions[key], raw_value)
            except TypeCoercionError as exc:
                errors[key] = exc
        return coerced, errors

    def set_many(
        self,
        session: Session,
        tenant_id: str,
        entity_kind: str,
        entity_id: uuid.UUID,
        values: dict[str, Any],
        *,
        enforce_required: bool = False,
    ) -> dict[str, CanonicalValue | None]:
        coerced, errors = self.coerce_many(session, tenant_id, entity_kind, values)
        if errors:
            raise FieldErrors(errors)

        store = self.store_factory(session)
        definitions = self._definitions_by_key(session, tenant_id, entity_kind)
        for key, stored in coerced.items():
            self._write(store, definitions[key], entity_id, stored)
        if enforce_required:
            try:
                self._check_required(store, tenant_id, entity_kind, entity_id)
            except ValidationError:
                store.rollback()
                raise
        store.commit()
        logger.info(
            "custom_values_saved",
            extra={"tenant_id": tenant_id, "entity_kind": entity_kind, "entity_id": str(entity_id)},
        )
        return self.get_canonical(session, tenant_id, entity_kind, entity_id)

    def ensure_required(self, session: Session, tenant_id: str, entity_kind: str, entity_id: uuid.UUID) -> None:
        validate_entity_kind(entity_kind)
        self._check_required(self.store_factory(session), tenant_id, entity_kind, entity_id)

    def purge_entity(self, session: Session, tenant_id: str, entity_kind: str, entity_id: uuid.UUID) -> int:
        """Hard-delete cascade for an owning record that is removed for good."""
        validate_entity_kind(entity_kind)
        store = self.store_factory(session)
        removed = store.purge_values(entity_kind, entity_id)
        store.commit()
        logger.info(
            "custom_values_purged",
            extra={"tenant_id": tenant_id, "entity_kind": entity_kind, "entity_id": str(entity_id)},
        )
        return removed

    def _check_required(self, store: AttributeStore, tenant_id: str, entity_kind: str, entity_id: uuid.UUID) -> None:
        present = {row.field_definition_id: row for row in store.fetch_values(entity_kind, entity_id)}
        missing: list[str] = []
        for definition in store.fetch_definitions(tenant_id, entity_kind):
            if definition.is_system or not definition.required:
                continue
            canonical = to_canonical(definition.declared_type, stored_value_of(definition, present.get(definition.id)))
            if canonical is None or canonical == "" or canonical == []:
                missing.append(definition.field_key)
        if missing:
            raise ValidationError(
                f"missing required custom fields: {', '.join(sorted(missing))}",
                details={"missing": sorted(missing)},
            )

    def _live_pairs(
        self,
        session: Session,
        tenant_id: str,
        entity_kind: str,
        entity_id: uuid.UUID,
    ) -> list[tuple[CRMFieldDefinition, CRMFieldValue]]:
        definitions = {definition.id: definition for definition in self._definitions_by_key(session, tenant_id, entity_kind).values()}
        rows = self.get_all(session, tenant_id, entity_kind, entity_id)
        pairs = [(definitions[key], row) for key, row in rows.items() if key in definitions]
        pairs.sort(key=lambda pair: (pair[0].display_order, pair[0].slug))
        return pairs

    def _definitions_by_key(self, session: Session, tenant_id: str, entity_kind: str) -> dict[str, CRMFieldDefinition]:
        validate_entity_kind(entity_kind)
        store = self.store_factory(session)
        return {
            definition.field_key: definition
            for definition in store.fetch_definitions(tenant_id, entity_kind)
            if not definition.is_system
        }

    def _writable_definition(
        self,
        store: AttributeStore,
        tenant_id: str,
        field_definition_id: uuid.UUID,
        entity_kind: str,
    ) -> CRMFieldDefinition:
        validate_entity_kind(entity_kind)
        definition = store.fetch_definition(field_definition_id)
        if (
            definition is None
            or definition.tenant_id != tenant_id
            or definition.deleted_at is not None
            or not definition.active
        ):
            raise NotFoundError("field definition not found")
        if definition.entity_kind != entity_kind:
            raise ValidationError(f"field definition belongs to {definition.entity_kind}, not {entity_kind}")
        if definition.is_system:
            raise ValidationError("system field values are stored on the record itself")
        return definition

    def _coerce(self, definition: CRMFieldDefinition, raw_value: Any) -> StoredValue | None:
        try:
            return from_input(
                definition.declared_type,
                raw_value,
                options=definition.options,
                validation_rules=definition.validation_rules,
            )
        except TypeCoercionError as exc:
            observe_coercion_failure(definition.declared_type)
            raise exc.for_field(definition.field_key)

    def _write(
        self,
        store: AttributeStore,
        definition: CRMFieldDefinition,
        entity_id: uuid.UUID,
        stored: StoredValue | None,
    ) -> None:
        if stored is None:
            store.delete_value(definition.id, definition.entity_kind, entity_id)
            return
        row = store.fetch_value(definition.id, definition.entity_kind, entity_id)
        if row is None:
            row = CRMFieldValue(
                tenant_id=definition.tenant_id,
                field_definition_id=definition.id,
                entity_kind=definition.entity_kind,
                entity_id=entity_id,
            )
        row.text_value = None
        row.number_value = None
        row.date_value = None
        row.boolean_value = None
        row.json_value = None
        setattr(row, stored.column, stored.payload)
        row.updated_at = utcnow()
        store.upsert_value(row)


@dataclass(slots=True)
class QualificationRuleService:
    store_factory: StoreFactory = SqlAttributeStore

    def list(self, session: Session, tenant_id: str) -> list[QualificationRuleRead]:
        store = self.store_factory(session)
        return [QualificationRuleRead.model_validate(rule) for rule in store.fetch_rules(tenant_id)]

    def list_active(self, session: Session, tenant_id: str) -> list[QualificationRuleRead]:
        store = self.store_factory(session)
        return [QualificationRuleRead.model_validate(rule) for rule in store.fetch_active_rules(tenant_id)]

    def create(self, session: Session, actor: ActorUser, dto: QualificationRuleCreate) -> QualificationRuleRead:
        store = self.store_factory(session)
        reference = self._validate(
            store,
            actor.tenant_id,
            field_definition_id=dto.field_definition_id,
            system_field_key=dto.system_field_key,
            operator=dto.operator,
            comparison_value=dto.comparison_value,
            comparison_values=dto.comparison_values,
        )
        display_order = dto.display_order
        if display_order is None:
            display_order = store.next_rule_order(actor.tenant_id)

        rule = CRMQualificationRule(
            tenant_id=actor.tenant_id,
            name=dto.name.strip(),
            description=dto.description,
            field_definition_id=reference["field_definition_id"],
            system_field_key=reference["system_field_key"],
            operator=dto.operator,
            comparison_value=reference["comparison_value"],
            comparison_values=reference["comparison_values"],
            active=dto.active,
            display_order=display_order,
        )
        store.upsert_rule(rule)
        audit.record(
            actor.user_id,
            "crm.qualification_rule",
            str(rule.id),
            "create",
            None,
            _rule_snapshot(rule),
            tenant_id=actor.tenant_id,
            correlation_id=actor.correlation_id,
        )
        store.commit()
        logger.info(
            "qualification_rule_created",
            extra={"tenant_id": actor.tenant_id, "rule_id": str(rule.id), "operator": rule.operator},
        )
        return QualificationRuleRead.model_validate(rule)

    def update(
        self,
        session: Session,
        actor: ActorUser,
        rule_id: uuid.UUID,
        dto: QualificationRuleUpdate,
    ) -> QualificationRuleRead:
        store = self.store_factory(session)
        rule = self._get(store, actor.tenant_id, rule_id)
        payload = dto.model_dump(exclude_unset=True)

        field_definition_id = payload.get("field_definition_id", rule.field_definition_id)
        system_field_key = payload.get("system_field_key", rule.system_field_key)
        if "field_definition_id" in payload and payload["field_definition_id"] is not None and "system_field_key" not in payload:
            system_field_key = None
        if "system_field_key" in payload and payload["system_field_key"] and "field_definition_id" not in payload:
            field_definition_id = None

        operator = payload.get("operator") or rule.operator
        comparison_value = payload.get("comparison_value", rule.comparison_value)
        comparison_values = payload.get("comparison_values", rule.comparison_values)
        if operator in EMPTINESS_OPERATORS and operator != rule.operator:
            if "comparison_value" not in payload:
                comparison_value = None
            if "comparison_values" not in payload:
                comparison_values = None

        reference = self._validate(
            store,
            actor.tenant_id,
            field_definition_id=field_definition_id,
            system_field_key=system_field_key,
            operator=operator,
            comparison_value=comparison_value,
            comparison_values=comparison_values,
        )
        before = _rule_snapshot(rule)
        rule.field_definition_id = reference["field_definition_id"]
        rule.system_field_key = reference["system_field_key"]
        rule.operator = operator
        rule.comparison_value = reference["comparison_value"]
        rule.comparison_values = reference["comparison_values"]
        if payload.get("name"):
            rule.name = payload["name"].strip()
        if "description" in payload:
            rule.description = payload["description"]
        if payload.get("active") is not None:
            rule.active = payload["active"]
        if payload.get("display_order") is not None:
            rule.display_order = payload["display_order"]
        rule.updated_at = utcnow()

        store.upsert_rule(rule)
        audit.record(
            actor.user_id,
            "crm.qualification_rule",
            str(rule.id),
            "update",
            before,
            _rule_snapshot(rule),
            tenant_id=actor.tenant_id,
            correlation_id=actor.correlation_id,
        )
        store.commit()
        return QualificationRuleRead.model_validate(rule)

    def toggle_active(
        self,
        session: Session,
        actor: ActorUser,
        rule_id: uuid.UUID,
        active: bool | None = None,
    ) -> QualificationRuleRead:
        store = self.store_factory(session)
        rule = self._get(store, actor.tenant_id, rule_id)
        before = _rule_snapshot(rule)
        rule.active = (not rule.active) if active is None else active
        rule.updated_at = utcnow()
        store.upsert_rule(rule)
        audit.record(
            actor.user_id,
            "crm.qualification_rule",
            str(rule.id),
            "toggle",
            before,
            _rule_snapshot(rule),
            tenant_id=actor.tenant_id,
            correlation_id=actor.correlation_id,
        )
        store.commit()
        return QualificationRuleRead.model_validate(rule)

    def delete(self, session: Session, actor: ActorUser, rule_id: uuid.UUID) -> None:
        store = self.store_factory(session)
        rule = self._get(store, actor.tenant_id, rule_id)
        before = _rule_snapshot(rule)
        store.delete_rule(rule.id)
        audit.record(
            actor.user_id,
            "crm.qualification_rule",
            str(rule_id),
            "delete",
            before,
            None,
            tenant_id=actor.tenant_id,
            correlation_id=actor.correlation_id,
        )
        store.commit()
        logger.info("qualification_rule_deleted", extra={"tenant_id": actor.tenant_id, "rule_id": str(rule_id)})

    def reorder(self, session: Session, actor: ActorUser, items: list[ReorderItem]) -> list[QualificationRuleRead]:
        store = self.store_factory(session)
        rules = {rule.id: rule for rule in store.fetch_rules(actor.tenant_id)}
        unknown = [str(item.id) for item in items if item.id not in rules]
        if unknown:
            raise NotFoundError(f"qualification rules not found: {', '.join(unknown)}")
        for item in items:
            rules[item.id].display_order = item.display_order
            rules[item.id].updated_at = utcnow()
            store.upsert_rule(rules[item.id])
        store.commit()
        return self.list(session, actor.tenant_id)

    def integrity_issues(self, session: Session, tenant_id: str) -> list[UnresolvedReferenceError]:
        store = self.store_factory(session)
        issues: list[UnresolvedReferenceError] = []
        for rule in store.fetch_active_rules(tenant_id):
            if rule.field_definition_id is None:
                continue
            definition = store.fetch_definition(rule.field_definition_id)
            if definition is None or definition.tenant_id != tenant_id:
                reason = "missing"
            elif definition.deleted_at is not None:
                reason = "deleted"
            elif not definition.active:
                reason = "inactive"
            else:
                continue
            issues.append(UnresolvedReferenceError(rule.field_definition_id, rule_id=rule.id, reason=reason))
        if issues:
            logger.warning("qualification_integrity_issues", extra={"tenant_id": tenant_id, "reason": f"{len(issues)} unresolved"})
        return issues

    def _get(self, store: AttributeStore, tenant_id: str, rule_id: uuid.UUID) -> CRMQualificationRule:
        rule = store.fetch_rule(rule_id)
        if rule is None or rule.tenant_id != tenant_id:
            raise NotFoundError("qualification rule not found")
        return rule

    def _validate(
        self,
        store: AttributeStore,
        tenant_id: str,
        *,
        field_definition_id: uuid.UUID | None,
        system_field_key: str | None,
        operator: str,
        comparison_value: str | None,
        comparison_values: list[str] | None,
    ) -> dict[str, Any]:
        if (field_definition_id is None) == (not system_field_key):
            raise ValidationError("exactly one of field_definition_id or system_field_key is required")
        if operator not in OPERATORS:
            raise ValidationError(f"unsupported operator: {operator}")

        declared_type: str | None
        if field_definition_id is not None:
            definition = store.fetch_definition(field_definition_id)
            if (
                definition is None
                or definition.tenant_id != tenant_id
                or definition.deleted_at is not None
                or not definition.active
            ):
                raise ValidationError("field_definition_id does not reference an active field")
            if definition.entity_kind != QUALIFIABLE_ENTITY_KIND:
                raise ValidationError("qualification rules can only reference contact fields")
            if definition.is_system:
                raise ValidationError("use system_field_key to reference a system field")
            declared_type = definition.declared_type
        else:
            system = system_field(QUALIFIABLE_ENTITY_KIND, system_field_key or "")
            if system is None:
                raise ValidationError(f"unknown system field: {system_field_key}")
            system_field_key = system.key
            declared_type = system.declared_type

        value = comparison_value if comparison_value not in (None, "") else None
        stripped = (item.strip() for item in comparison_values or [] if isinstance(item, str))
        values = list(dict.fromkeys(item for item in stripped if item)) or None

        if operator in EMPTINESS_OPERATORS:
            if value is not None or values is not None:
                raise ValidationError(f"{operator} does not take a comparison value")
        elif operator in COMPARISON_OPERATORS:
            if value is None and values is None:
                raise ValidationError(f"{operator} requires comparison_value or comparison_values")
            if operator in ORDERING_OPERATORS:
                if declared_type not in NUMBER_TYPES | DATE_TYPES:
                    raise ValidationError(f"{operator} requires a numeric or date field")
                if values is not None and len(values) > 1:
                    raise ValidationError(f"{operator} takes a single comparison value")
            if operator not in {"contains", "not_contains"}:
                for raw in [value] if values is None else values:
                    try:
                        canonical_target(declared_type, raw or "")
                    except TypeCoercionError as exc:
                        raise ValidationError(f"comparison value is not a valid {declared_type}: {exc.message}")

        return {
            "field_definition_id": field_definition_id,
            "system_field_key": system_field_key if field_definition_id is None else None,
            "comparison_value": value,
            "comparison_values": values,
        }


field_definition_service = FieldDefinitionService()
field_value_service = FieldValueService()
qualification_rule_service = QualificationRuleService()



def resolve_label(
    session: Session,
    tenant_id: str,
    entity_kind: str,
    field_key: str,
    fallback: str | None = None,
) -> str:
    resolver = field_definition_service.resolver(session, tenant_id, entity_kind)
    return resolver.label_for(entity_kind, field_key, fallback)


def resolve_required(
    session: Session,
    tenant_id: str,
    entity_kind: str,
    field_key: str,
    fallback_required: bool = False,
) -> bool:
    resolver = field_definition_service.resolver(session, tenant_id, entity_kind)
    return resolver.is_required(entity_kind, field_key, fallback_required)


def resolve_placeholder(
    session: Session,
    tenant_id: str,
    entity_kind: str,
    field_key: str,
    fallback: str = "",
) -> str:
    resolver = field_definition_service.resolver(session, tenant_id, entity_kind)
    return resolver.placeholder_for(entity_kind, field_key, fallback)
