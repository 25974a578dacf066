from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.api import get_current_user as crm_get_current_user
from app.crm.models import CRMContact
from app.crm.service import ActorUser
from app.logging import JsonLogFormatter
from app.main import app


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


def test_logs_include_correlation_id_for_http(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    response = client.get(
        "/api/crm/custom-fields/contact",
        headers={"X-Correlation-Id": "abc-123", "X-Tenant-Id": "tenant-a"},
    )
    assert response.status_code == 200

    records = [record for record in caplog.records if record.name == "app.request" and record.getMessage() == "http.request"]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/api/crm/custom-fields/{id}"
        and getattr(record, "status_code", None) == 200
        and getattr(record, "tenant_id", None) == "tenant-a"
        and getattr(record, "entity_kind", None) == "contact"
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_unresolved_rule_reference_is_logged(
    client: TestClient,
    db_session: Session,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)

    definition = client.post(
        "/api/crm/custom-fields/contact",
        json={"name": "Segment", "declared_type": "short_text"},
    ).json()
    rule = client.post(
        "/api/crm/qualification-rules",
        json={"name": "Has segment", "field_definition_id": definition["id"], "operator": "is_not_empty"},
    ).json()
    client.delete(f"/api/crm/custom-fields/definitions/{definition['id']}")
    contact = CRMContact(tenant_id="tenant-a", first_name="Logs")
    db_session.add(contact)
    db_session.commit()

    response = client.post(
        f"/api/crm/contacts/{contact.id}/qualification/evaluate",
        headers={"X-Correlation-Id": "abc-456"},
    )
    assert response.status_code == 200
    assert response.json()["outcome"] == "NOT_QUALIFIED"

    warnings = [
        record
        for record in caplog.records
        if record.name == "app.crm.qualification" and record.getMessage() == "qualification_reference_unresolved"
    ]
    assert warnings
    assert any(
        getattr(record, "rule_id", None) == rule["id"]
        and getattr(record, "correlation_id", None) == "abc-456"
        for record in warnings
    )


def test_json_formatter_keeps_known_fields_only() -> None:
    record = logging.makeLogRecord(
        {
            "name": "app.crm.attributes",
            "levelname": "INFO",
            "msg": "custom_values_saved",
            "correlation_id": "fmt-1",
            "entity_kind": "contact",
            "entity_id": str(uuid.UUID(int=1)),
            "password": "secret",
        }
    )

    payload = json.loads(JsonLogFormatter().format(record))

    assert payload["msg"] == "custom_values_saved"
    assert payload["correlation_id"] == "fmt-1"
    assert payload["fields"] == {"entity_kind": "contact", "entity_id": str(uuid.UUID(int=1))}
