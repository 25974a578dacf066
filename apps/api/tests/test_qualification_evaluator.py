from __future__ import annotations

import itertools
import logging
import uuid
from collections.abc import Generator
from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import get_settings
from app.core.database import Base
from app.crm.evaluator import (
    COMPARISON_OPERATORS,
    Operand,
    QualificationEvaluator,
    QualificationOutcome,
    apply_operator,
    evaluate_qualification,
)
from app.crm.models import CRMContact, CRMFieldValue
from app.crm.repository import SqlAttributeStore
from app.crm.schemas import FieldDefinitionCreate, FieldDefinitionRead, QualificationRuleCreate, ReorderItem
from app.crm.service import ActorUser, field_definition_service, field_value_service, qualification_rule_service


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def reset_settings() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def actor() -> ActorUser:
    return ActorUser(user_id="admin-1", tenant_id="tenant-a")


@pytest.fixture()
def contact(db_session: Session) -> CRMContact:
    row = CRMContact(tenant_id="tenant-a", first_name="Ana", email="ana@gmail.com")
    db_session.add(row)
    db_session.commit()
    return row


@pytest.fixture()
def domain_field(db_session: Session, actor: ActorUser) -> FieldDefinitionRead:
    return field_definition_service.create(
        db_session,
        actor,
        "contact",
        FieldDefinitionCreate(name="Email domain", declared_type="single_select", options=["gmail.com", "hotmail.com"]),
    )


@pytest.fixture()
def employees_field(db_session: Session, actor: ActorUser) -> FieldDefinitionRead:
    return field_definition_service.create(
        db_session,
        actor,
        "contact",
        FieldDefinitionCreate(name="Employees", declared_type="integer"),
    )


def _rule(session: Session, actor: ActorUser, **fields: object):
    payload: dict[str, object] = {"name": "Rule", "operator": "equals"}
    payload.update(fields)
    return qualification_rule_service.create(session, actor, QualificationRuleCreate(**payload))


def _set(session: Session, definition: FieldDefinitionRead, contact: CRMContact, raw: object) -> None:
    field_value_service.set(session, "tenant-a", definition.id, "contact", contact.id, raw)


def test_matching_select_value_qualifies(
    db_session: Session,
    actor: ActorUser,
    contact: CRMContact,
    domain_field: FieldDefinitionRead,
) -> None:
    _rule(db_session, actor, field_definition_id=domain_field.id, comparison_value="gmail.com")
    _set(db_session, domain_field, contact, "gmail.com")

    assert evaluate_qualification(db_session, "tenant-a", "contact", contact.id) is QualificationOutcome.QUALIFIED


def test_unset_field_does_not_qualify(
    db_session: Session,
    actor: ActorUser,
    contact: CRMContact,
    domain_field: FieldDefinitionRead,
) -> None:
    _rule(db_session, actor, field_definition_id=domain_field.id, comparison_value="gmail.com")

    assert evaluate_qualification(db_session, "tenant-a", "contact", contact.id) is QualificationOutcome.NOT_QUALIFIED


def test_all_active_rules_must_pass(
    db_session: Session,
    actor: ActorUser,
    contact: CRMContact,
    domain_field: FieldDefinitionRead,
    employees_field: FieldDefinitionRead,
) -> None:
    _rule(db_session, actor, name="Gmail", field_definition_id=domain_field.id, comparison_value="gmail.com")
    _rule(
        db_session,
        actor,
        name="Large",
        field_definition_id=employees_field.id,
        operator="greater_than",
        comparison_value="100",
    )
    _set(db_session, domain_field, contact, "gmail.com")
    _set(db_session, employees_field, contact, "40")

    assert evaluate_qualification(db_session, "tenant-a", "contact", contact.id) is QualificationOutcome.NOT_QUALIFIED

    _set(db_session, employees_field, contact, "250")
    assert evaluate_qualification(db_session, "tenant-a", "contact", contact.id) is QualificationOutcome.QUALIFIED


def test_no_active_rules_is_not_applicable(
    db_session: Session,
    actor: ActorUser,
    contact: CRMContact,
    domain_field: FieldDefinitionRead,
) -> None:
    assert evaluate_qualification(db_session, "tenant-a", "contact", contact.id) is QualificationOutcome.NOT_APPLICABLE

    rule = _rule(db_session, actor, field_definition_id=domain_field.id, operator="is_empty")
    qualification_rule_service.toggle_active(db_session, actor, rule.id, False)
    _set(db_session, domain_field, contact, "gmail.com")

    evaluator = QualificationEvaluator(SqlAttributeStore(db_session))
    assert evaluator.evaluate("tenant-a", "contact", contact.id) is QualificationOutcome.NOT_APPLICABLE
    assert evaluator.explain("tenant-a", "contact", contact.id).results == ()


def test_non_contact_records_are_not_applicable(
    db_session: Session,
    actor: ActorUser,
    contact: CRMContact,
    domain_field: FieldDefinitionRead,
) -> None:
    _rule(db_session, actor, field_definition_id=domain_field.id, operator="is_empty")

    assert evaluate_qualification(db_session, "tenant-a", "company", contact.id) is QualificationOutcome.NOT_APPLICABLE


def test_is_empty_is_satisfied_by_blank_and_missing_values(
    db_session: Session,
    actor: ActorUser,
    contact: CRMContact,
) -> None:
    notes = field_definition_service.create(
        db_session,
        actor,
        "contact",
        FieldDefinitionCreate(name="Notes", declared_type="short_text"),
    )
    _rule(db_session, actor, field_definition_id=notes.id, operator="is_empty")

    assert evaluate_qualification(db_session, "tenant-a", "contact", contact.id) is QualificationOutcome.QUALIFIED

    db_session.add(
        CRMFieldValue(
            tenant_id="tenant-a",
            field_definition_id=notes.id,
            entity_kind="contact",
            entity_id=contact.id,
            text_value="",
        )
    )
    db_session.commit()
    assert evaluate_qualification(db_session, "tenant-a", "contact", contact.id) is QualificationOutcome.QUALIFIED

    _set(db_session, notes, contact, "hot lead")
    assert evaluate_qualification(db_session, "tenant-a", "contact", contact.id) is QualificationOutcome.NOT_QUALIFIED


@pytest.mark.parametrize("operator", sorted(COMPARISON_OPERATORS))
@pytest.mark.parametrize("value", [None, "", "   ", []])
def test_absent_operand_fails_every_comparison_operator(operator: str, value: object) -> None:
    operand = Operand("integer", value, "custom_employees")

    passed, reason = apply_operator(operator, operand, ["10"])

    assert passed is False
    assert reason == "missing_operand"


def test_emptiness_operators_on_absent_operand() -> None:
    operand = Operand("short_text", None, "custom_notes")

    assert apply_operator("is_empty", operand, []) == (True, None)
    assert apply_operator("is_not_empty", operand, []) == (False, None)


def test_operator_semantics() -> None:
    text = Operand("short_text", "Enterprise Plan", "custom_plan")
    tags = Operand("multi_select", ["VIP", "partner"], "custom_tags")
    seats = Operand("integer", 50.0, "custom_seats")
    renewal = Operand("date", date(2025, 1, 31), "custom_renewal")
    opt_in = Operand("boolean", True, "custom_opt-in")

    assert apply_operator("contains", text, ["enterprise"]) == (True, None)
    assert apply_operator("not_contains", text, ["free", "trial"]) == (True, None)
    assert apply_operator("equals", text, ["Starter", "Enterprise Plan"]) == (True, None)
    assert apply_operator("not_equals", text, ["Starter", "Enterprise Plan"]) == (False, None)

    assert apply_operator("contains", tags, ["vip"]) == (True, None)
    assert apply_operator("equals", tags, ["partner", "VIP"]) == (True, None)
    assert apply_operator("equals", tags, ["VIP"]) == (False, None)
    assert apply_operator("equals", tags, ["partner", "VIP", "VIP"]) == (True, None)
    assert apply_operator("equals", Operand("multi_select", ["VIP"], "custom_tags"), ["VIP", "VIP"]) == (True, None)

    assert apply_operator("greater_than", seats, ["49"]) == (True, None)
    assert apply_operator("less_or_equal", seats, ["50"]) == (True, None)
    assert apply_operator("equals", seats, ["50.0"]) == (True, None)
    assert apply_operator("less_than", renewal, ["2025-02-01"]) == (True, None)
    assert apply_operator("greater_or_equal", renewal, ["2025-02-01"]) == (False, None)
    assert apply_operator("equals", opt_in, ["sim"]) == (True, None)


def test_unusable_comparisons_evaluate_false_with_reason() -> None:
    seats = Operand("integer", 50.0, "custom_seats")
    text = Operand("short_text", "abc", "custom_code")
    flag = Operand("boolean", True, "custom_flag")

    assert apply_operator("equals", seats, []) == (False, "missing_comparison_value")
    assert apply_operator("greater_than", seats, ["lots"]) == (False, "uncoercible_comparison_value")
    assert apply_operator("greater_than", text, ["abc"]) == (False, "not_orderable")
    assert apply_operator("less_than", flag, ["true"]) == (False, "not_orderable")
    assert apply_operator("matches", text, ["abc"]) == (False, "unknown_operator")
    assert apply_operator("equals", Operand(None, None, None, reason="unresolved_reference"), ["x"]) == (
        False,
        "unresolved_reference",
    )


def test_system_field_operands_come_from_the_contact(
    db_session: Session,
    actor: ActorUser,
    contact: CRMContact,
) -> None:
    _rule(db_session, actor, system_field_key="email", operator="contains", comparison_value="@GMAIL.com")
    _rule(db_session, actor, system_field_key="job_title", operator="is_empty")

    assert evaluate_qualification(db_session, "tenant-a", "contact", contact.id) is QualificationOutcome.QUALIFIED

    contact.job_title = "   "
    db_session.commit()
    assert evaluate_qualification(db_session, "tenant-a", "contact", contact.id) is QualificationOutcome.QUALIFIED

    contact.job_title = "CTO"
    db_session.commit()
    assert evaluate_qualification(db_session, "tenant-a", "contact", contact.id) is QualificationOutcome.NOT_QUALIFIED


def test_full_and_short_circuit_evaluation_agree(
    db_session: Session,
    actor: ActorUser,
    contact: CRMContact,
    domain_field: FieldDefinitionRead,
    employees_field: FieldDefinitionRead,
) -> None:
    rules = [
        _rule(db_session, actor, name="Gmail", field_definition_id=domain_field.id, comparison_value="gmail.com"),
        _rule(
            db_session,
            actor,
            name="Mid size",
            field_definition_id=employees_field.id,
            operator="greater_or_equal",
            comparison_value="10",
        ),
        _rule(db_session, actor, name="Has email", system_field_key="email", operator="is_not_empty"),
    ]
    evaluator = QualificationEvaluator(SqlAttributeStore(db_session))

    for domain, employees in itertools.product([None, "gmail.com", "hotmail.com"], [None, "5", "10"]):
        _set(db_session, domain_field, contact, domain)
        _set(db_session, employees_field, contact, employees)

        for ordering in itertools.permutations(rules):
            qualification_rule_service.reorder(
                db_session,
                actor,
                [ReorderItem(id=rule.id, display_order=position) for position, rule in enumerate(ordering)],
            )
            short = evaluator.evaluate("tenant-a", "contact", contact.id)
            full = evaluator.explain("tenant-a", "contact", contact.id)

            assert full.outcome is short
            assert len(full.results) == 3
            expected = domain == "gmail.com" and employees == "10"
            assert (short is QualificationOutcome.QUALIFIED) is expected


def test_explain_reports_each_rule(
    db_session: Session,
    actor: ActorUser,
    contact: CRMContact,
    domain_field: FieldDefinitionRead,
    employees_field: FieldDefinitionRead,
) -> None:
    _rule(db_session, actor, name="Gmail", field_definition_id=domain_field.id, comparison_value="gmail.com")
    _rule(
        db_session,
        actor,
        name="Large",
        field_definition_id=employees_field.id,
        operator="greater_than",
        comparison_value="100",
    )
    _set(db_session, employees_field, contact, "500")

    evaluation = QualificationEvaluator(SqlAttributeStore(db_session)).explain("tenant-a", "contact", contact.id)

    assert evaluation.outcome is QualificationOutcome.NOT_QUALIFIED
    assert [(item.name, item.passed, item.reason) for item in evaluation.results] == [
        ("Gmail", False, "missing_operand"),
        ("Large", True, None),
    ]
    assert evaluation.results[0].field_key == "custom_email-domain"
    assert evaluation.results[1].operand == 500.0


def test_rule_on_retired_field_evaluates_false_and_logs_warning(
    db_session: Session,
    actor: ActorUser,
    contact: CRMContact,
    domain_field: FieldDefinitionRead,
    caplog: pytest.LogCaptureFixture,
) -> None:
    rule = _rule(db_session, actor, field_definition_id=domain_field.id, operator="is_not_empty")
    _set(db_session, domain_field, contact, "gmail.com")
    field_definition_service.deactivate(db_session, actor, domain_field.id)
    caplog.set_level(logging.WARNING, logger="app.crm.qualification")

    evaluation = QualificationEvaluator(SqlAttributeStore(db_session)).explain("tenant-a", "contact", contact.id)

    assert evaluation.outcome is QualificationOutcome.NOT_QUALIFIED
    assert evaluation.results[0].reason == "unresolved_reference"
    records = [record for record in caplog.records if record.getMessage() == "qualification_reference_unresolved"]
    assert records
    assert getattr(records[0], "rule_id", None) == str(rule.id)
    assert getattr(records[0], "tenant_id", None) == "tenant-a"


@pytest.mark.parametrize("operator", ["is_empty", "is_not_empty"])
def test_emptiness_rule_on_retired_field_never_qualifies(
    db_session: Session,
    actor: ActorUser,
    contact: CRMContact,
    domain_field: FieldDefinitionRead,
    operator: str,
) -> None:
    _rule(db_session, actor, field_definition_id=domain_field.id, operator=operator)
    field_definition_service.deactivate(db_session, actor, domain_field.id)

    assert evaluate_qualification(db_session, "tenant-a", "contact", contact.id) is QualificationOutcome.NOT_QUALIFIED
    evaluation = QualificationEvaluator(SqlAttributeStore(db_session)).explain("tenant-a", "contact", contact.id)
    assert [result.reason for result in evaluation.results] == ["unresolved_reference"]


def test_rule_on_unknown_system_field_fails_emptiness_checks() -> None:
    operand = Operand(None, None, "fax", reason="unresolved_reference")

    assert apply_operator("is_empty", operand, []) == (False, "unresolved_reference")
    assert apply_operator("is_not_empty", operand, []) == (False, "unresolved_reference")


def test_rules_of_other_tenants_are_ignored(
    db_session: Session,
    actor: ActorUser,
    contact: CRMContact,
    domain_field: FieldDefinitionRead,
) -> None:
    _rule(db_session, actor, field_definition_id=domain_field.id, comparison_value="gmail.com")
    other = ActorUser(user_id="admin-2", tenant_id="tenant-b")
    _rule(db_session, other, system_field_key="email", operator="is_not_empty")

    assert evaluate_qualification(db_session, "tenant-b", "contact", uuid.uuid4()) is QualificationOutcome.NOT_QUALIFIED
    assert evaluate_qualification(db_session, "tenant-a", "contact", contact.id) is QualificationOutcome.NOT_QUALIFIED
