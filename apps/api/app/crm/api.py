from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from app.context import get_correlation_id
from app.core.auth import AuthUser, get_current_user as get_auth_user
from app.core.config import get_settings
from app.core.database import get_db
from app.crm.errors import (
    AttributeEngineError,
    ConflictError,
    FieldErrors,
    ImmutableFieldError,
    NotFoundError,
    SystemFieldError,
    TypeCoercionError,
    ValidationError,
)
from app.crm.evaluator import Evaluation
from app.crm.qualification import QualificationResult, contact_qualification_service
from app.crm.schemas import (
    CustomValuesDisplayRead,
    CustomValuesRead,
    CustomValuesWrite,
    FieldDefinitionCreate,
    FieldDefinitionRead,
    FieldDefinitionUpdate,
    FieldResolutionRead,
    IntegrityIssueRead,
    QualificationResultRead,
    QualificationRuleCreate,
    QualificationRuleRead,
    QualificationRuleUpdate,
    ReorderRequest,
    RuleResultRead,
    RuleToggleRequest,
)
from app.crm.service import (
    ActorUser,
    field_definition_service,
    field_value_service,
    qualification_rule_service,
    validate_entity_kind,
)

custom_fields_router = APIRouter(prefix="/api/crm", tags=["crm.custom_fields"])
custom_values_router = APIRouter(prefix="/api/crm", tags=["crm.custom_values"])
qualification_router = APIRouter(prefix="/api/crm", tags=["crm.qualification"])

_STATUS_BY_ERROR: list[tuple[type[AttributeEngineError], int]] = [
    (FieldErrors, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (TypeCoercionError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (ImmutableFieldError, status.HTTP_409_CONFLICT),
    (SystemFieldError, status.HTTP_409_CONFLICT),
    (ConflictError, status.HTTP_409_CONFLICT),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
]


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def failure_response(request: Request, exc: HTTPException | AttributeEngineError, fallback_code: str) -> JSONResponse:
    if isinstance(exc, HTTPException):
        return error_response(
            request,
            status_code=exc.status_code,
            code=fallback_code,
            message=str(exc.detail),
            details=exc.detail,
        )

    status_code = status.HTTP_400_BAD_REQUEST
    for error_type, mapped_status in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            status_code = mapped_status
            break

    details: Any = None
    if isinstance(exc, FieldErrors):
        details = exc.as_details()
    elif isinstance(exc, TypeCoercionError):
        details = {exc.field_key or exc.declared_type: exc.message}
    elif isinstance(exc, ImmutableFieldError):
        details = {"fields": exc.fields}
    elif isinstance(exc, ValidationError):
        details = exc.details
    return error_response(request, status_code=status_code, code=exc.code, message=str(exc), details=details)


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    tenant_id = request.headers.get("x-tenant-id") or auth_user.tenant_id or ""
    return ActorUser(
        user_id=auth_user.sub,
        tenant_id=tenant_id.strip(),
        permissions=set(auth_user.roles),
        correlation_id=correlation_id,
    )


def require_permission(user: ActorUser, permission: str) -> None:
    if permission not in user.permissions:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {permission}")
    if not user.tenant_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="x-tenant-id header is required")


def _result_read(result: QualificationResult, evaluation: Evaluation | None = None) -> QualificationResultRead:
    rules = []
    if evaluation is not None:
        rules = [
            RuleResultRead(
                rule_id=item.rule_id,
                name=item.name,
                operator=item.operator,
                field_key=item.field_key,
                operand=item.operand,
                passed=item.passed,
                reason=item.reason,
            )
            for item in evaluation.results
        ]
    return QualificationResultRead(
        contact_id=result.contact.id,
        outcome=result.outcome.value,
        qualified_mql=result.contact.qualified_mql,
        qualified_mql_at=result.contact.qualified_mql_at,
        transitioned=result.transitioned,
        rules=rules,
    )


@custom_fields_router.get("/custom-fields/{entity_kind}", response_model=list[FieldDefinitionRead])
def list_field_definitions(
    request: Request,
    entity_kind: str,
    include_inactive: bool = Query(default=False),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[FieldDefinitionRead] | JSONResponse:
    try:
        require_permission(user, "crm.custom_fields.read")
        return field_definition_service.list(db, user.tenant_id, entity_kind, include_inactive=include_inactive)
    except (HTTPException, AttributeEngineError) as exc:
        return failure_response(request, exc, "crm_custom_fields_list_failed")


@custom_fields_router.post(
    "/custom-fields/{entity_kind}",
    response_model=FieldDefinitionRead,
    status_code=status.HTTP_201_CREATED,
)
def create_field_definition(
    request: Request,
    entity_kind: str,
    dto: FieldDefinitionCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> FieldDefinitionRead | JSONResponse:
    try:
        require_permission(user, "crm.custom_fields.manage")
        return field_definition_service.create(db, user, entity_kind, dto)
    except (HTTPException, AttributeEngineError) as exc:
        return failure_response(request, exc, "crm_custom_fields_create_failed")


@custom_fields_router.patch("/custom-fields/definitions/{definition_id}", response_model=FieldDefinitionRead)
def update_field_definition(
    request: Request,
    definition_id: uuid.UUID,
    dto: FieldDefinitionUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> FieldDefinitionRead | JSONResponse:
    try:
        require_permission(user, "crm.custom_fields.manage")
        return field_definition_service.update(db, user, definition_id, dto)
    except (HTTPException, AttributeEngineError) as exc:
        return failure_response(request, exc, "crm_custom_fields_update_failed")


@custom_fields_router.delete("/custom-fields/definitions/{definition_id}", response_model=FieldDefinitionRead)
def deactivate_field_definition(
    request: Request,
    definition_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> FieldDefinitionRead | JSONResponse:
    try:
        require_permission(user, "crm.custom_fields.manage")
        return field_definition_service.deactivate(db, user, definition_id)
    except (HTTPException, AttributeEngineError) as exc:
        return failure_response(request, exc, "crm_custom_fields_delete_failed")


@custom_fields_router.post("/custom-fields/{entity_kind}/reorder", response_model=list[FieldDefinitionRead])
def reorder_field_definitions(
    request: Request,
    entity_kind: str,
    dto: ReorderRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[FieldDefinitionRead] | JSONResponse:
    try:
        require_permission(user, "crm.custom_fields.manage")
        return field_definition_service.reorder(db, user, entity_kind, dto.items)
    except (HTTPException, AttributeEngineError) as exc:
        return failure_response(request, exc, "crm_custom_fields_reorder_failed")


@custom_fields_router.post("/custom-fields/{entity_kind}/system-fields", response_model=list[FieldDefinitionRead])
def seed_system_fields(
    request: Request,
    entity_kind: str,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[FieldDefinitionRead] | JSONResponse:
    try:
        require_permission(user, "crm.custom_fields.manage")
        return field_definition_service.seed_system_fields(db, user, entity_kind)
    except (HTTPException, AttributeEngineError) as exc:
        return failure_response(request, exc, "crm_custom_fields_seed_failed")


@custom_fields_router.get("/custom-fields/{entity_kind}/resolve", response_model=list[FieldResolutionRead])
def resolve_fields(
    request: Request,
    entity_kind: str,
    keys: str = Query(min_length=1),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[FieldResolutionRead] | JSONResponse:
    try:
        require_permission(user, "crm.custom_fields.read")
        resolver = field_definition_service.resolver(db, user.tenant_id, entity_kind)
        output: list[FieldResolutionRead] = []
        for key in [item.strip() for item in keys.split(",") if item.strip()]:
            resolution = resolver.resolve(entity_kind, key)
            output.append(
                FieldResolutionRead(
                    key=resolution.key,
                    label=resolution.label,
                    placeholder=resolution.placeholder,
                    required=resolution.required,
                    declared_type=resolution.declared_type,
                    is_system=resolution.is_system,
                    definition_id=resolution.definition_id,
                )
            )
        return output
    except (HTTPException, AttributeEngineError) as exc:
        return failure_response(request, exc, "crm_custom_fields_resolve_failed")


@custom_values_router.get("/entities/{entity_kind}/{entity_id}/custom-values", response_model=CustomValuesRead)
def get_custom_values(
    request: Request,
    entity_kind: str,
    entity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> CustomValuesRead | JSONResponse:
    try:
        require_permission(user, "crm.custom_values.read")
        values = field_value_service.get_canonical(db, user.tenant_id, entity_kind, entity_id)
        return CustomValuesRead(entity_kind=entity_kind, entity_id=entity_id, values=values)
    except (HTTPException, AttributeEngineError) as exc:
        return failure_response(request, exc, "crm_custom_values_read_failed")


@custom_values_router.put("/entities/{entity_kind}/{entity_id}/custom-values", response_model=CustomValuesRead)
def save_custom_values(
    request: Request,
    entity_kind: str,
    entity_id: uuid.UUID,
    dto: CustomValuesWrite,
    enforce_required: bool = Query(default=False),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> CustomValuesRead | JSONResponse:
    try:
        require_permission(user, "crm.custom_values.write")
        values = field_value_service.set_many(
            db,
            user.tenant_id,
            entity_kind,
            entity_id,
            dto.values,
            enforce_required=enforce_required,
        )
        qualification = None
        if entity_kind == "contact" and get_settings().qualification_auto_evaluate:
            try:
                result = contact_qualification_service.apply(db, user.tenant_id, entity_id)
            except NotFoundError:
                result = None
            if result is not None:
                qualification = _result_read(result)
        return CustomValuesRead(entity_kind=entity_kind, entity_id=entity_id, values=values, qualification=qualification)
    except (HTTPException, AttributeEngineError) as exc:
        return failure_response(request, exc, "crm_custom_values_write_failed")


@custom_values_router.get(
    "/entities/{entity_kind}/{entity_id}/custom-values/display",
    response_model=CustomValuesDisplayRead,
)
def display_custom_values(
    request: Request,
    entity_kind: str,
    entity_id: uuid.UUID,
    locale: str | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> CustomValuesDisplayRead | JSONResponse:
    try:
        require_permission(user, "crm.custom_values.read")
        resolved_locale = locale or get_settings().default_display_locale
        values = field_value_service.get_display(db, user.tenant_id, entity_kind, entity_id, resolved_locale)
        resolver = field_definition_service.resolver(db, user.tenant_id, entity_kind)
        labels = {key: resolver.label_for(entity_kind, key) for key in values}
        return CustomValuesDisplayRead(
            entity_kind=entity_kind,
            entity_id=entity_id,
            locale=resolved_locale,
            values=values,
            labels=labels,
        )
    except (HTTPException, AttributeEngineError) as exc:
        return failure_response(request, exc, "crm_custom_values_display_failed")


@custom_values_router.delete(
    "/entities/{entity_kind}/{entity_id}/custom-values/{definition_id}",
    status_code=status.HTTP_204_NO_CONTENT,
)
def delete_custom_value(
    request: Request,
    entity_kind: str,
    entity_id: uuid.UUID,
    definition_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        require_permission(user, "crm.custom_values.write")
        validate_entity_kind(entity_kind)
        field_value_service.delete(db, user.tenant_id, definition_id, entity_kind, entity_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except (HTTPException, AttributeEngineError) as exc:
        return failure_response(request, exc, "crm_custom_values_delete_failed")


@qualification_router.get("/qualification-rules", response_model=list[QualificationRuleRead])
def list_qualification_rules(
    request: Request,
    active_only: bool = Query(default=False),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[QualificationRuleRead] | JSONResponse:
    try:
        require_permission(user, "crm.qualification.read")
        if active_only:
            return qualification_rule_service.list_active(db, user.tenant_id)
        return qualification_rule_service.list(db, user.tenant_id)
    except (HTTPException, AttributeEngineError) as exc:
        return failure_response(request, exc, "crm_qualification_rules_list_failed")


@qualification_router.post(
    "/qualification-rules",
    response_model=QualificationRuleRead,
    status_code=status.HTTP_201_CREATED,
)
def create_qualification_rule(
    request: Request,
    dto: QualificationRuleCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> QualificationRuleRead | JSONResponse:
    try:
        require_permission(user, "crm.qualification.manage")
        return qualification_rule_service.create(db, user, dto)
    except (HTTPException, AttributeEngineError) as exc:
        return failure_response(request, exc, "crm_qualification_rule_create_failed")


@qualification_router.get("/qualification-rules/integrity", response_model=list[IntegrityIssueRead])
def qualification_integrity(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[IntegrityIssueRead] | JSONResponse:
    try:
        require_permission(user, "crm.qualification.read")
        rules = {rule.id: rule.name for rule in qualification_rule_service.list(db, user.tenant_id)}
        return [
            IntegrityIssueRead(
                rule_id=issue.rule_id,
                rule_name=rules.get(issue.rule_id) if issue.rule_id is not None else None,
                field_definition_id=issue.field_definition_id,
                reason=issue.reason,
            )
            for issue in qualification_rule_service.integrity_issues(db, user.tenant_id)
        ]
    except (HTTPException, AttributeEngineError) as exc:
        return failure_response(request, exc, "crm_qualification_integrity_failed")


@qualification_router.post("/qualification-rules/reorder", response_model=list[QualificationRuleRead])
def reorder_qualification_rules(
    request: Request,
    dto: ReorderRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[QualificationRuleRead] | JSONResponse:
    try:
        require_permission(user, "crm.qualification.manage")
        return qualification_rule_service.reorder(db, user, dto.items)
    except (HTTPException, AttributeEngineError) as exc:
        return failure_response(request, exc, "crm_qualification_rule_reorder_failed")


@qualification_router.patch("/qualification-rules/{rule_id}", response_model=QualificationRuleRead)
def update_qualification_rule(
    request: Request,
    rule_id: uuid.UUID,
    dto: QualificationRuleUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> QualificationRuleRead | JSONResponse:
    try:
        require_permission(user, "crm.qualification.manage")
        return qualification_rule_service.update(db, user, rule_id, dto)
    except (HTTPException, AttributeEngineError) as exc:
        return failure_response(request, exc, "crm_qualification_rule_update_failed")


@qualification_router.post("/qualification-rules/{rule_id}/toggle", response_model=QualificationRuleRead)
def toggle_qualification_rule(
    request: Request,
    rule_id: uuid.UUID,
    dto: RuleToggleRequest | None = None,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> QualificationRuleRead | JSONResponse:
    try:
        require_permission(user, "crm.qualification.manage")
        active = dto.active if dto is not None else None
        return qualification_rule_service.toggle_active(db, user, rule_id, active)
    except (HTTPException, AttributeEngineError) as exc:
        return failure_response(request, exc, "crm_qualification_rule_toggle_failed")


@qualification_router.delete("/qualification-rules/{rule_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_qualification_rule(
    request: Request,
    rule_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        require_permission(user, "crm.qualification.manage")
        qualification_rule_service.delete(db, user, rule_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except (HTTPException, AttributeEngineError) as exc:
        return failure_response(request, exc, "crm_qualification_rule_delete_failed")


@qualification_router.post("/contacts/{contact_id}/qualification/evaluate", response_model=QualificationResultRead)
def evaluate_contact_qualification(
    request: Request,
    contact_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> QualificationResultRead | JSONResponse:
    try:
        require_permission(user, "crm.qualification.evaluate")
        return _result_read(contact_qualification_service.apply(db, user.tenant_id, contact_id))
    except (HTTPException, AttributeEngineError) as exc:
        return failure_response(request, exc, "crm_qualification_evaluate_failed")


@qualification_router.post("/contacts/{contact_id}/qualification/dry-run", response_model=QualificationResultRead)
def dry_run_contact_qualification(
    request: Request,
    contact_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> QualificationResultRead | JSONResponse:
    try:
        require_permission(user, "crm.qualification.evaluate")
        result = contact_qualification_service.dry_run(db, user.tenant_id, contact_id)
        return _result_read(result, result.evaluation)
    except (HTTPException, AttributeEngineError) as exc:
        return failure_response(request, exc, "crm_qualification_dry_run_failed")


@qualification_router.post("/qualification/reevaluate", response_model=dict[str, int])
def reevaluate_tenant_contacts(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> dict[str, int] | JSONResponse:
    try:
        require_permission(user, "crm.qualification.evaluate")
        return contact_qualification_service.reevaluate_tenant(db, user.tenant_id)
    except (HTTPException, AttributeEngineError) as exc:
        return failure_response(request, exc, "crm_qualification_reevaluate_failed")
