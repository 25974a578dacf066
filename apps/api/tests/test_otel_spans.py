from __future__ import annotations

import os
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("OTEL_ENABLED", "true")

from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.api import get_current_user as crm_get_current_user
from app.crm.models import CRMContact
from app.crm.service import ActorUser
from app.main import app
from app.otel import setup_inmemory_otel


ALL_PERMISSIONS = {
    "crm.custom_fields.read",
    "crm.custom_fields.manage",
    "crm.custom_values.write",
    "crm.qualification.manage",
    "crm.qualification.evaluate",
}


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
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel("api")
    exporter.clear()
    return exporter


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="user-1",
            tenant_id="tenant-a",
            permissions=ALL_PERMISSIONS,
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[crm_get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_request_span_contains_correlation_id(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    response = client.post(
        "/api/crm/custom-fields/contact",
        json={"name": "Region", "declared_type": "short_text"},
        headers={"X-Correlation-Id": "otel-corr-1", "X-Tenant-Id": "tenant-a"},
    )
    assert response.status_code == 201

    spans = span_exporter.get_finished_spans()
    assert spans
    assert any(span.attributes.get("correlation_id") == "otel-corr-1" for span in spans)
    assert any(span.attributes.get("crm.tenant_id") == "tenant-a" for span in spans)


def test_qualification_span_contains_outcome_and_contact(
    client: TestClient,
    db_session: Session,
    span_exporter: InMemorySpanExporter,
) -> None:
    definition = client.post(
        "/api/crm/custom-fields/contact",
        json={"name": "Newsletter", "declared_type": "boolean"},
    )
    assert definition.status_code == 201
    rule = client.post(
        "/api/crm/qualification-rules",
        json={
            "name": "Subscribed",
            "field_definition_id": definition.json()["id"],
            "operator": "equals",
            "comparison_value": "true",
        },
    )
    assert rule.status_code == 201

    contact = CRMContact(tenant_id="tenant-a", first_name="Spans")
    db_session.add(contact)
    db_session.commit()

    response = client.put(
        f"/api/crm/entities/contact/{contact.id}/custom-values",
        json={"values": {"custom_newsletter": True}},
        headers={"X-Correlation-Id": "otel-qual-1"},
    )
    assert response.status_code == 200

    spans = [span for span in span_exporter.get_finished_spans() if span.name == "crm.qualification.evaluate"]
    assert spans
    assert any(
        span.attributes.get("crm.contact_id") == str(contact.id)
        and span.attributes.get("crm.tenant_id") == "tenant-a"
        and span.attributes.get("crm.qualification.outcome") == "QUALIFIED"
        and span.attributes.get("crm.qualification.transitioned") is True
        for span in spans
    )
