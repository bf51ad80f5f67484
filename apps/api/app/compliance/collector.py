from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from opentelemetry.trace import Status, StatusCode
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.compliance.errors import CollectionFailure
from app.compliance.models import utcnow
from app.compliance.registry import normalize_email
from app.compliance.repository import ConsentRepository
from app.crm.models import CRMActivity, CRMCommunication, CRMTask
from app.crm.repositories import SubjectDataRepository
from app.otel import get_tracer

tracer = get_tracer(__name__)

# Key order of ``data`` in the export document. Domains without rows are left out.
EXPORT_DOMAINS = ("profile", "leads", "tasks", "activities", "communications", "consents", "auditEntries")


def _jsonable(value: Any) -> Any:
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, dict):
        return {str(key): _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    return value


def row_to_dict(row: Any) -> dict[str, Any]:
    mapper = row.__mapper__
    return {attr.key: _jsonable(getattr(row, attr.key)) for attr in mapper.column_attrs}


@dataclass(slots=True)
class DataCollector:
    subject_data: SubjectDataRepository = field(default_factory=SubjectDataRepository)
    consents: ConsentRepository = field(default_factory=ConsentRepository)

    def collect(self, session: Session, subject_email: str) -> dict[str, Any]:
        email = normalize_email(subject_email)
        with tracer.start_as_current_span("compliance.collect") as span:
            try:
                data = self._collect_domains(session, email)
            except SQLAlchemyError as exc:
                span.record_exception(exc)
                span.set_status(Status(StatusCode.ERROR, str(exc)))
                raise CollectionFailure(f"Export collection failed: {exc}") from exc
            span.set_attribute("compliance.domains", ",".join(data.keys()))

        return {
            "exportedAt": utcnow().isoformat(),
            "subject": email,
            "data": data,
        }

    def _collect_domains(self, session: Session, email: str) -> dict[str, Any]:
        found: dict[str, Any] = {}

        profile = self.subject_data.find_user(session, email)
        if profile is not None:
            found["profile"] = row_to_dict(profile)

        leads = self.subject_data.find_leads(session, email, lock="share")
        if leads:
            found["leads"] = [row_to_dict(lead) for lead in leads]
        lead_ids = [lead.id for lead in leads]

        for key, model in (("tasks", CRMTask), ("activities", CRMActivity), ("communications", CRMCommunication)):
            rows = self.subject_data.find_by_lead_ids(session, model, lead_ids)
            if rows:
                found[key] = [row_to_dict(row) for row in rows]

        consents = self.consents.list_for_subject(session, email)
        if consents:
            found["consents"] = [row_to_dict(record) for record in consents]

        if profile is not None:
            entries = self.subject_data.find_audit_entries(session, str(profile.id))
            if entries:
                found["auditEntries"] = [row_to_dict(entry) for entry in entries]

        return {key: found[key] for key in EXPORT_DOMAINS if key in found}
