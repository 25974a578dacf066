from __future__ import annotations

import uuid
from collections.abc import Iterable
from dataclasses import dataclass

from app.crm.models import CRMFieldDefinition

CUSTOM_KEY_PREFIX = "custom_"
ENTITY_KINDS = ("contact", "company", "opportunity")


@dataclass(frozen=True, slots=True)
class SystemField:
    key: str
    label: str
    declared_type: str
    required: bool = False
    structural: bool = False
    placeholder: str = ""
    aliases: tuple[str, ...] = ()


SYSTEM_FIELDS: dict[str, tuple[SystemField, ...]] = {
    "contact": (
        SystemField("first_name", "First name", "short_text", required=True, structural=True),
        SystemField("last_name", "Last name", "short_text"),
        SystemField("email", "Email", "email", placeholder="name@company.com"),
        SystemField("phone", "Phone", "phone"),
        SystemField("job_title", "Job title", "short_text"),
        SystemField("linkedin_url", "LinkedIn", "url", placeholder="https://linkedin.com/in/", aliases=("linkedin",)),
    ),
    "company": (
        SystemField("trade_name", "Trade name", "short_text", required=True, structural=True),
        SystemField("legal_name", "Legal name", "short_text"),
        SystemField("tax_id", "Tax ID", "tax_id_business"),
        SystemField("email", "Email", "email"),
        SystemField("phone", "Phone", "phone"),
        SystemField("website", "Website", "url"),
        SystemField("market_segment", "Market segment", "short_text", aliases=("segment",)),
        SystemField("company_size", "Company size", "short_text"),
    ),
    "opportunity": (
        SystemField("title", "Title", "short_text", required=True, structural=True),
        SystemField("amount", "Amount", "decimal"),
        SystemField("expected_close_date", "Expected close date", "date"),
        SystemField("source", "Source", "short_text"),
    ),
}


def system_fields(entity_kind: str) -> tuple[SystemField, ...]:
    return SYSTEM_FIELDS.get(entity_kind, ())


def system_field(entity_kind: str, key: str) -> SystemField | None:
    for candidate in system_fields(entity_kind):
        if candidate.key == key or key in candidate.aliases:
            return candidate
    return None


def custom_key(slug: str) -> str:
    return f"{CUSTOM_KEY_PREFIX}{slug}"


def split_custom_key(field_key: str) -> str | None:
    if field_key.startswith(CUSTOM_KEY_PREFIX) and len(field_key) > len(CUSTOM_KEY_PREFIX):
        return field_key[len(CUSTOM_KEY_PREFIX):]
    return None


@dataclass(frozen=True, slots=True)
class FieldResolution:
    key: str
    label: str
    placeholder: str
    required: bool
    declared_type: str | None
    is_system: bool
    definition_id: uuid.UUID | None


class FieldResolver:
    """Three-tier lookup of field presentation: tenant overlay, compiled defaults, caller fallback.

    Overlays are the tenant's active, non-deleted definitions. System overlays may
    only change label, placeholder and required; type and identity always come
    from the compiled table.
    """

    def __init__(self, definitions: Iterable[CRMFieldDefinition]) -> None:
        self._system: dict[tuple[str, str], CRMFieldDefinition] = {}
        self._custom: dict[tuple[str, str], CRMFieldDefinition] = {}
        for definition in definitions:
            if not definition.active or definition.deleted_at is not None:
                continue
            if definition.is_system:
                resolved = system_field(definition.entity_kind, definition.slug)
                key = resolved.key if resolved is not None else definition.slug
                self._system.setdefault((definition.entity_kind, key), definition)
            else:
                self._custom[(definition.entity_kind, definition.slug)] = definition

    def overlay_for(self, entity_kind: str, field_key: str) -> CRMFieldDefinition | None:
        slug = split_custom_key(field_key)
        if slug is not None:
            return self._custom.get((entity_kind, slug))
        resolved = system_field(entity_kind, field_key)
        key = resolved.key if resolved is not None else field_key
        return self._system.get((entity_kind, key))

    def label_for(self, entity_kind: str, field_key: str, fallback: str | None = None) -> str:
        overlay = self.overlay_for(entity_kind, field_key)
        if overlay is not None and overlay.name:
            return overlay.name
        default = system_field(entity_kind, field_key) if split_custom_key(field_key) is None else None
        if default is not None:
            return default.label
        return fallback if fallback is not None else field_key

    def is_required(self, entity_kind: str, field_key: str, fallback_required: bool = False) -> bool:
        default = system_field(entity_kind, field_key) if split_custom_key(field_key) is None else None
        if default is not None and default.structural:
            return True
        overlay = self.overlay_for(entity_kind, field_key)
        if overlay is not None:
            return overlay.required
        if default is not None:
            return default.required
        return fallback_required

    def placeholder_for(self, entity_kind: str, field_key: str, fallback: str = "") -> str:
        overlay = self.overlay_for(entity_kind, field_key)
        if overlay is not None and overlay.placeholder:
            return overlay.placeholder
        default = system_field(entity_kind, field_key) if split_custom_key(field_key) is None else None
        if default is not None and default.placeholder:
            return default.placeholder
        return fallback

    def declared_type_for(self, entity_kind: str, field_key: str) -> str | None:
        if split_custom_key(field_key) is None:
            default = system_field(entity_kind, field_key)
            return default.declared_type if default is not None else None
        overlay = self.overlay_for(entity_kind, field_key)
        return overlay.declared_type if overlay is not None else None

    def resolve(self, entity_kind: str, field_key: str) -> FieldResolution:
        overlay = self.overlay_for(entity_kind, field_key)
        default = system_field(entity_kind, field_key) if split_custom_key(field_key) is None else None
        key = default.key if default is not None else field_key
        return FieldResolution(
            key=key,
            label=self.label_for(entity_kind, field_key),
            placeholder=self.placeholder_for(entity_kind, field_key),
            required=self.is_required(entity_kind, field_key),
            declared_type=self.declared_type_for(entity_kind, field_key),
            is_system=default is not None,
            definition_id=overlay.id if overlay is not None else None,
        )

    def custom_definitions(self, entity_kind: str) -> list[CRMFieldDefinition]:
        return sorted(
            (definition for (kind, _), definition in self._custom.items() if kind == entity_kind),
            key=lambda definition: (definition.display_order, definition.slug),
        )
