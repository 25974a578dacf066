from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from prometheus_client import REGISTRY
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import events
from app.core.config import get_settings
from app.core.database import Base
from app.crm.errors import NotFoundError
from app.crm.evaluator import QualificationOutcome
from app.crm.models import CRMContact
from app.crm.qualification import MQL_QUALIFIED_EVENT, contact_qualification_service
from app.crm.schemas import FieldDefinitionCreate, FieldDefinitionRead, QualificationRuleCreate
from app.crm.service import ActorUser, field_definition_service, field_value_service, qualification_rule_service
from app.otel import setup_inmemory_otel


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
def clear_stubs() -> Generator[None, None, None]:
    events.published_events.clear()
    get_settings.cache_clear()
    yield
    events.published_events.clear()
    get_settings.cache_clear()


@pytest.fixture()
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel("api")
    exporter.clear()
    return exporter


@pytest.fixture()
def actor() -> ActorUser:
    return ActorUser(user_id="admin-1", tenant_id="tenant-a")


@pytest.fixture()
def domain_field(db_session: Session, actor: ActorUser) -> FieldDefinitionRead:
    definition = field_definition_service.create(
        db_session,
        actor,
        "contact",
        FieldDefinitionCreate(name="Email domain", declared_type="single_select", options=["gmail.com", "hotmail.com"]),
    )
    qualification_rule_service.create(
        db_session,
        actor,
        QualificationRuleCreate(
            name="Gmail users",
            field_definition_id=definition.id,
            operator="equals",
            comparison_value="gmail.com",
        ),
    )
    return definition


def _contact(session: Session, tenant_id: str = "tenant-a", first_name: str = "Ana") -> CRMContact:
    row = CRMContact(tenant_id=tenant_id, first_name=first_name)
    session.add(row)
    session.commit()
    return row


def _set(session: Session, definition: FieldDefinitionRead, contact: CRMContact, raw: object) -> None:
    field_value_service.set(session, "tenant-a", definition.id, "contact", contact.id, raw)


def test_transition_sets_mql_flag_and_publishes_event(
    db_session: Session,
    domain_field: FieldDefinitionRead,
) -> None:
    contact = _contact(db_session)
    _set(db_session, domain_field, contact, "gmail.com")

    result = contact_qualification_service.apply(db_session, "tenant-a", contact.id)

    assert result.outcome is QualificationOutcome.QUALIFIED
    assert result.transitioned is True
    db_session.expire_all()
    stored = db_session.get(CRMContact, contact.id)
    assert stored is not None
    assert stored.qualified_mql is True
    assert stored.qualified_mql_at is not None
    assert stored.lifecycle_status == "mql"

    qualified_events = [item for item in events.published_events if item.get("event_type") == MQL_QUALIFIED_EVENT]
    assert len(qualified_events) == 1
    assert qualified_events[0]["contact_id"] == str(contact.id)
    assert qualified_events[0]["tenant_id"] == "tenant-a"


def test_repeat_qualification_is_not_a_new_transition(
    db_session: Session,
    domain_field: FieldDefinitionRead,
) -> None:
    contact = _contact(db_session)
    _set(db_session, domain_field, contact, "gmail.com")

    contact_qualification_service.apply(db_session, "tenant-a", contact.id)
    again = contact_qualification_service.apply(db_session, "tenant-a", contact.id)

    assert again.outcome is QualificationOutcome.QUALIFIED
    assert again.transitioned is False
    assert len([item for item in events.published_events if item.get("event_type") == MQL_QUALIFIED_EVENT]) == 1


def test_mql_flag_is_never_revoked(db_session: Session, domain_field: FieldDefinitionRead) -> None:
    contact = _contact(db_session)
    _set(db_session, domain_field, contact, "gmail.com")
    contact_qualification_service.apply(db_session, "tenant-a", contact.id)

    _set(db_session, domain_field, contact, "hotmail.com")
    result = contact_qualification_service.apply(db_session, "tenant-a", contact.id)

    assert result.outcome is QualificationOutcome.NOT_QUALIFIED
    assert result.transitioned is False
    assert result.contact.qualified_mql is True
    assert result.contact.lifecycle_status == "mql"


def test_not_qualified_contact_is_left_untouched(db_session: Session, domain_field: FieldDefinitionRead) -> None:
    contact = _contact(db_session)
    _set(db_session, domain_field, contact, "hotmail.com")

    result = contact_qualification_service.apply(db_session, "tenant-a", contact.id)

    assert result.outcome is QualificationOutcome.NOT_QUALIFIED
    assert result.contact.qualified_mql is False
    assert result.contact.lifecycle_status == "lead"
    assert events.published_events == []


def test_dry_run_never_persists(db_session: Session, domain_field: FieldDefinitionRead) -> None:
    contact = _contact(db_session)
    _set(db_session, domain_field, contact, "gmail.com")

    result = contact_qualification_service.dry_run(db_session, "tenant-a", contact.id)

    assert result.outcome is QualificationOutcome.QUALIFIED
    assert result.transitioned is False
    assert result.evaluation is not None
    assert [item.passed for item in result.evaluation.results] == [True]
    db_session.expire_all()
    assert db_session.get(CRMContact, contact.id).qualified_mql is False
    assert events.published_events == []


def test_contacts_of_other_tenants_are_not_found(db_session: Session, domain_field: FieldDefinitionRead) -> None:
    contact = _contact(db_session, tenant_id="tenant-b")

    with pytest.raises(NotFoundError):
        contact_qualification_service.apply(db_session, "tenant-a", contact.id)
    with pytest.raises(NotFoundError):
        contact_qualification_service.dry_run(db_session, "tenant-a", uuid.uuid4())


def test_reevaluate_tenant_summarises_outcomes(db_session: Session, domain_field: FieldDefinitionRead) -> None:
    first = _contact(db_session, first_name="Ana")
    second = _contact(db_session, first_name="Bruno")
    _contact(db_session, first_name="Carla")
    _contact(db_session, tenant_id="tenant-b", first_name="Other")
    _set(db_session, domain_field, first, "gmail.com")
    _set(db_session, domain_field, second, "hotmail.com")

    summary = contact_qualification_service.reevaluate_tenant(db_session, "tenant-a")

    assert summary == {"QUALIFIED": 1, "NOT_QUALIFIED": 2, "transitioned": 1}


def test_evaluation_emits_span_and_metrics(
    db_session: Session,
    domain_field: FieldDefinitionRead,
    span_exporter: InMemorySpanExporter,
) -> None:
    contact = _contact(db_session)
    _set(db_session, domain_field, contact, "gmail.com")
    before = REGISTRY.get_sample_value("crm_qualification_evaluations_total", {"outcome": "QUALIFIED"}) or 0.0
    transitions_before = REGISTRY.get_sample_value("crm_qualification_transitions_total") or 0.0

    contact_qualification_service.apply(db_session, "tenant-a", contact.id)

    spans = [span for span in span_exporter.get_finished_spans() if span.name == "crm.qualification.evaluate"]
    assert spans
    assert spans[-1].attributes.get("crm.tenant_id") == "tenant-a"
    assert spans[-1].attributes.get("crm.qualification.outcome") == "QUALIFIED"
    assert spans[-1].attributes.get("crm.qualification.transitioned") is True

    assert REGISTRY.get_sample_value("crm_qualification_evaluations_total", {"outcome": "QUALIFIED"}) == before + 1
    assert REGISTRY.get_sample_value("crm_qualification_transitions_total") == transitions_before + 1
