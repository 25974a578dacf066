from __future__ import annotations

import uuid
from typing import Any, Protocol

from sqlalchemy import Select, and_, delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.crm.errors import ConflictError
from app.crm.models import CRMContact, CRMFieldDefinition, CRMFieldValue, CRMQualificationRule

_CONTACT_RECORD_FIELDS = ("first_name", "last_name", "email", "phone", "job_title", "linkedin_url")


class AttributeStore(Protocol):
    """Data access boundary of the attribute engine."""

    def fetch_definitions(
        self,
        tenant_id: str,
        entity_kind: str,
        *,
        include_inactive: bool = False,
    ) -> list[CRMFieldDefinition]: ...

    def fetch_definition(self, definition_id: uuid.UUID) -> CRMFieldDefinition | None: ...

    def upsert_definition(self, definition: CRMFieldDefinition) -> CRMFieldDefinition: ...

    def next_definition_order(self, tenant_id: str, entity_kind: str) -> int: ...

    def fetch_values(self, entity_kind: str, entity_id: uuid.UUID) -> list[CRMFieldValue]: ...

    def fetch_value(
        self,
        field_definition_id: uuid.UUID,
        entity_kind: str,
        entity_id: uuid.UUID,
    ) -> CRMFieldValue | None: ...

    def upsert_value(self, value: CRMFieldValue) -> CRMFieldValue: ...

    def delete_value(self, field_definition_id: uuid.UUID, entity_kind: str, entity_id: uuid.UUID) -> bool: ...

    def purge_values(self, entity_kind: str, entity_id: uuid.UUID) -> int: ...

    def fetch_active_rules(self, tenant_id: str) -> list[CRMQualificationRule]: ...

    def fetch_rules(self, tenant_id: str) -> list[CRMQualificationRule]: ...

    def fetch_rule(self, rule_id: uuid.UUID) -> CRMQualificationRule | None: ...

    def upsert_rule(self, rule: CRMQualificationRule) -> CRMQualificationRule: ...

    def delete_rule(self, rule_id: uuid.UUID) -> bool: ...

    def next_rule_order(self, tenant_id: str) -> int: ...

    def fetch_record_fields(self, entity_kind: str, entity_id: uuid.UUID) -> dict[str, Any] | None: ...

    def commit(self) -> None: ...

    def rollback(self) -> None: ...


class SqlAttributeStore:
    def __init__(self, session: Session) -> None:
        self.session = session

    def fetch_definitions(
        self,
        tenant_id: str,
        entity_kind: str,
        *,
        include_inactive: bool = False,
    ) -> list[CRMFieldDefinition]:
        stmt: Select[tuple[CRMFieldDefinition]] = select(CRMFieldDefinition).where(
            and_(
                CRMFieldDefinition.tenant_id == tenant_id,
                CRMFieldDefinition.entity_kind == entity_kind,
                CRMFieldDefinition.deleted_at.is_(None),
            )
        )
        if not include_inactive:
            stmt = stmt.where(CRMFieldDefinition.active.is_(True))
        stmt = stmt.order_by(
            CRMFieldDefinition.is_system.desc(),
            CRMFieldDefinition.display_order.asc(),
            CRMFieldDefinition.created_at.asc(),
        )
        return list(self.session.scalars(stmt).all())

    def fetch_definition(self, definition_id: uuid.UUID) -> CRMFieldDefinition | None:
        return self.session.get(CRMFieldDefinition, definition_id)

    def upsert_definition(self, definition: CRMFieldDefinition) -> CRMFieldDefinition:
        return self._flush(definition, "field definition slug already in use")

    def next_definition_order(self, tenant_id: str, entity_kind: str) -> int:
        current = self.session.scalar(
            select(func.max(CRMFieldDefinition.display_order)).where(
                and_(
                    CRMFieldDefinition.tenant_id == tenant_id,
                    CRMFieldDefinition.entity_kind == entity_kind,
                    CRMFieldDefinition.deleted_at.is_(None),
                )
            )
        )
        return 0 if current is None else current + 1

    def fetch_values(self, entity_kind: str, entity_id: uuid.UUID) -> list[CRMFieldValue]:
        stmt = select(CRMFieldValue).where(
            and_(CRMFieldValue.entity_kind == entity_kind, CRMFieldValue.entity_id == entity_id)
        )
        return list(self.session.scalars(stmt).all())

    def fetch_value(
        self,
        field_definition_id: uuid.UUID,
        entity_kind: str,
        entity_id: uuid.UUID,
    ) -> CRMFieldValue | None:
        return self.session.scalar(
            select(CRMFieldValue).where(
                and_(
                    CRMFieldValue.field_definition_id == field_definition_id,
                    CRMFieldValue.entity_kind == entity_kind,
                    CRMFieldValue.entity_id == entity_id,
                )
            )
        )

    def upsert_value(self, value: CRMFieldValue) -> CRMFieldValue:
        return self._flush(value, "custom value slot already exists")

    def delete_value(self, field_definition_id: uuid.UUID, entity_kind: str, entity_id: uuid.UUID) -> bool:
        existing = self.fetch_value(field_definition_id, entity_kind, entity_id)
        if existing is None:
            return False
        self.session.delete(existing)
        self.session.flush()
        return True

    def purge_values(self, entity_kind: str, entity_id: uuid.UUID) -> int:
        result = self.session.execute(
            delete(CRMFieldValue).where(
                and_(CRMFieldValue.entity_kind == entity_kind, CRMFieldValue.entity_id == entity_id)
            )
        )
        return int(result.rowcount or 0)

    def fetch_active_rules(self, tenant_id: str) -> list[CRMQualificationRule]:
        stmt = (
            select(CRMQualificationRule)
            .where(and_(CRMQualificationRule.tenant_id == tenant_id, CRMQualificationRule.active.is_(True)))
            .order_by(CRMQualificationRule.display_order.asc(), CRMQualificationRule.created_at.asc())
        )
        return list(self.session.scalars(stmt).all())

    def fetch_rules(self, tenant_id: str) -> list[CRMQualificationRule]:
        stmt = (
            select(CRMQualificationRule)
            .where(CRMQualificationRule.tenant_id == tenant_id)
            .order_by(CRMQualificationRule.display_order.asc(), CRMQualificationRule.created_at.asc())
        )
        return list(self.session.scalars(stmt).all())

    def fetch_rule(self, rule_id: uuid.UUID) -> CRMQualificationRule | None:
        return self.session.get(CRMQualificationRule, rule_id)

    def upsert_rule(self, rule: CRMQualificationRule) -> CRMQualificationRule:
        return self._flush(rule, "qualification rule conflicts with an existing rule")

    def delete_rule(self, rule_id: uuid.UUID) -> bool:
        rule = self.fetch_rule(rule_id)
        if rule is None:
            return False
        self.session.delete(rule)
        self.session.flush()
        return True

    def next_rule_order(self, tenant_id: str) -> int:
        current = self.session.scalar(
            select(func.max(CRMQualificationRule.display_order)).where(CRMQualificationRule.tenant_id == tenant_id)
        )
        return 0 if current is None else current + 1

    def fetch_record_fields(self, entity_kind: str, entity_id: uuid.UUID) -> dict[str, Any] | None:
        if entity_kind != "contact":
            return None
        contact = self.fetch_contact(entity_id)
        if contact is None:
            return None
        return {key: getattr(contact, key) for key in _CONTACT_RECORD_FIELDS}

    def fetch_contact(self, contact_id: uuid.UUID) -> CRMContact | None:
        contact = self.session.get(CRMContact, contact_id)
        if contact is None or contact.deleted_at is not None:
            return None
        return contact

    def fetch_contacts(self, tenant_id: str) -> list[CRMContact]:
        stmt = (
            select(CRMContact)
            .where(and_(CRMContact.tenant_id == tenant_id, CRMContact.deleted_at.is_(None)))
            .order_by(CRMContact.created_at.asc())
        )
        return list(self.session.scalars(stmt).all())

    def save_contact(self, contact: CRMContact) -> CRMContact:
        return self._flush(contact, "contact update conflicted")

    def commit(self) -> None:
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise ConflictError("write conflicted with existing data") from exc

    def rollback(self) -> None:
        self.session.rollback()

    def _flush(self, row: Any, conflict_message: str) -> Any:
        self.session.add(row)
        try:
            self.session.flush()
        except IntegrityError as exc:
            self.session.rollback()
            raise ConflictError(conflict_message) from exc
        return row
