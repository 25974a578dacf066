from __future__ import annotations

import uuid


class AttributeEngineError(Exception):
    """Base error for custom attribute and qualification failures."""

    code = "crm_attribute_error"


class ValidationError(AttributeEngineError):
    """Raised when a definition or rule payload is structurally invalid."""

    code = "crm_validation_failed"

    def __init__(self, message: str, *, details: object = None) -> None:
        self.details = details
        super().__init__(message)


class ImmutableFieldError(AttributeEngineError):
    code = "crm_immutable_field"

    def __init__(self, definition_id: uuid.UUID, fields: list[str]) -> None:
        self.definition_id = definition_id
        self.fields = sorted(set(fields))
        super().__init__(f"Immutable properties cannot be changed: {', '.join(self.fields)}")


class SystemFieldError(AttributeEngineError):
    code = "crm_system_field_protected"

    def __init__(self, slug: str, action: str) -> None:
        self.slug = slug
        self.action = action
        super().__init__(f"System field '{slug}' cannot be {action}")


class TypeCoercionError(AttributeEngineError):
    """Raised when a raw value does not fit the declared type of its field."""

    code = "crm_type_coercion_failed"

    def __init__(self, declared_type: str, message: str, *, field_key: str | None = None) -> None:
        self.declared_type = declared_type
        self.field_key = field_key
        self.message = message
        prefix = f"{field_key}: " if field_key else ""
        super().__init__(f"{prefix}{message}")

    def for_field(self, field_key: str) -> TypeCoercionError:
        return TypeCoercionError(self.declared_type, self.message, field_key=field_key)


class FieldErrors(AttributeEngineError):
    """Aggregate of per-field coercion failures from a multi-field save."""

    code = "crm_custom_values_invalid"

    def __init__(self, errors: dict[str, TypeCoercionError]) -> None:
        self.errors = dict(sorted(errors.items()))
        super().__init__(f"invalid custom fields: {', '.join(self.errors)}")

    def as_details(self) -> dict[str, str]:
        return {key: error.message for key, error in self.errors.items()}


class UnresolvedReferenceError(AttributeEngineError):
    """A rule or value points at a field definition that is gone or inactive.

    Never raised during evaluation; instances are collected for integrity reports.
    """

    code = "crm_unresolved_reference"

    def __init__(self, field_definition_id: uuid.UUID, *, rule_id: uuid.UUID | None = None, reason: str = "missing") -> None:
        self.field_definition_id = field_definition_id
        self.rule_id = rule_id
        self.reason = reason
        super().__init__(f"field definition {field_definition_id} is {reason}")


class NotFoundError(AttributeEngineError):
    code = "crm_not_found"


class ConflictError(AttributeEngineError):
    code = "crm_conflict"
