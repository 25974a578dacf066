from __future__ import annotations

import logging
import time
import uuid
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from app import events
from app.crm.errors import NotFoundError
from app.crm.evaluator import Evaluation, QualificationEvaluator, QualificationOutcome
from app.crm.models import CRMContact
from app.crm.repository import SqlAttributeStore
from app.metrics import observe_qualification_evaluation, observe_qualification_transition
from app.otel import crm_span


logger = logging.getLogger("app.crm.qualification")

MQL_QUALIFIED_EVENT = "crm.contact.mql_qualified"
MQL_LIFECYCLE_STATUS = "mql"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class QualificationResult:
    contact: CRMContact
    outcome: QualificationOutcome
    transitioned: bool
    evaluation: Evaluation | None = None


class ContactQualificationService:
    """Evaluates contacts and persists the MQL flag on a not-qualified to qualified transition.

    The flag is never revoked here; a later NOT_QUALIFIED result leaves it as is.
    """

    def dry_run(self, session: Session, tenant_id: str, contact_id: uuid.UUID) -> QualificationResult:
        store = SqlAttributeStore(session)
        contact = self._get_contact(store, tenant_id, contact_id)
        evaluation = QualificationEvaluator(store).explain(tenant_id, "contact", contact.id)
        return QualificationResult(contact=contact, outcome=evaluation.outcome, transitioned=False, evaluation=evaluation)

    def apply(self, session: Session, tenant_id: str, contact_id: uuid.UUID) -> QualificationResult:
        store = SqlAttributeStore(session)
        contact = self._get_contact(store, tenant_id, contact_id)
        evaluator = QualificationEvaluator(store)

        with crm_span("crm.qualification.evaluate", tenant_id, contact_id=str(contact.id)) as span:
            started = time.perf_counter()
            outcome = evaluator.evaluate(tenant_id, "contact", contact.id)
            observe_qualification_evaluation(outcome.value, time.perf_counter() - started)
            span.set_attribute("crm.qualification.outcome", outcome.value)

            transitioned = outcome is QualificationOutcome.QUALIFIED and not contact.qualified_mql
            span.set_attribute("crm.qualification.transitioned", transitioned)
            if transitioned:
                contact.qualified_mql = True
                contact.qualified_mql_at = utcnow()
                contact.lifecycle_status = MQL_LIFECYCLE_STATUS
                store.save_contact(contact)
                store.commit()
                observe_qualification_transition()
                events.publish(
                    {
                        "event_type": MQL_QUALIFIED_EVENT,
                        "tenant_id": tenant_id,
                        "contact_id": str(contact.id),
                        "qualified_at": contact.qualified_mql_at.isoformat(),
                    }
                )

        logger.info(
            "contact_qualification_evaluated",
            extra={
                "tenant_id": tenant_id,
                "entity_kind": "contact",
                "entity_id": str(contact.id),
                "outcome": outcome.value,
            },
        )
        return QualificationResult(contact=contact, outcome=outcome, transitioned=transitioned)

    def reevaluate_tenant(self, session: Session, tenant_id: str) -> dict[str, int]:
        """Apply qualification to every live contact of a tenant."""
        store = SqlAttributeStore(session)
        summary: Counter[str] = Counter()
        for contact in store.fetch_contacts(tenant_id):
            result = self.apply(session, tenant_id, contact.id)
            summary[result.outcome.value] += 1
            if result.transitioned:
                summary["transitioned"] += 1
        logger.info(
            "tenant_qualification_reevaluated",
            extra={"tenant_id": tenant_id, "outcome": dict(summary)},
        )
        return dict(summary)

    def _get_contact(self, store: SqlAttributeStore, tenant_id: str, contact_id: uuid.UUID) -> CRMContact:
        contact = store.fetch_contact(contact_id)
        if contact is None or contact.tenant_id != tenant_id:
            raise NotFoundError("contact not found")
        return contact


contact_qualification_service = ContactQualificationService()
