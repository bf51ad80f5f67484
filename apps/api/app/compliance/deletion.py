from __future__ import annotations

import logging
from datetime import datetime, timedelta

from opentelemetry.trace import Status, StatusCode
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.compliance.anonymization import AnonymizationEngine
from app.compliance.errors import DeletionFailure, InvalidRequest
from app.compliance.models import DELETION_STRATEGIES, utcnow
from app.compliance.registry import DEPENDENCY_ORDER, TABLE_MODELS, SubjectRegistry, normalize_email, subject_ref
from app.core.config import get_settings
from app.crm.repositories import SubjectDataRepository
from app.otel import get_tracer

logger = logging.getLogger("app.compliance.deletion")
tracer = get_tracer(__name__)

RETENTION_NOTE = "[GDPR] Data marked for legal retention"

__all__ = ["DEPENDENCY_ORDER", "DeletionCoordinator", "RETENTION_NOTE", "default_retention_until"]


def default_retention_until(now: datetime | None = None) -> datetime:
    return (now or utcnow()) + timedelta(days=get_settings().compliance_retention_days)


class DeletionCoordinator:
    """Runs one deletion strategy for a subject as a single unit of work.

    Mutations are flushed into the caller's transaction and never committed here.
    On any failure the session is rolled back before the error propagates, so no
    partial deletion survives.
    """

    def __init__(
        self,
        *,
        registry: SubjectRegistry | None = None,
        subject_data: SubjectDataRepository | None = None,
        anonymizer: AnonymizationEngine | None = None,
    ) -> None:
        self.subject_data = subject_data or SubjectDataRepository()
        self.registry = registry or SubjectRegistry(subject_data=self.subject_data)
        self._anonymizer = anonymizer

    @property
    def anonymizer(self) -> AnonymizationEngine:
        if self._anonymizer is None:
            self._anonymizer = AnonymizationEngine(registry=self.registry, subject_data=self.subject_data)
        return self._anonymizer

    def execute(
        self,
        session: Session,
        subject_email: str,
        strategy: str,
        *,
        retention_until: datetime | None = None,
    ) -> dict[str, int]:
        if strategy not in DELETION_STRATEGIES:
            raise InvalidRequest(f"Unknown deletion strategy: {strategy}")
        email = normalize_email(subject_email)

        with tracer.start_as_current_span("compliance.delete") as span:
            span.set_attribute("compliance.strategy", strategy)
            try:
                self.subject_data.find_leads(session, email, lock="update")
                if strategy == "retain":
                    affected = self._retain(session, email, retention_until or default_retention_until())
                else:
                    record_ids = self.registry.related_record_ids(session, email)
                    if strategy == "full":
                        affected = self._delete_all(session, record_ids)
                    else:
                        affected = self.anonymizer.anonymize(session, email, record_ids)
                session.flush()
            except SQLAlchemyError as exc:
                session.rollback()
                span.record_exception(exc)
                span.set_status(Status(StatusCode.ERROR, str(exc)))
                raise DeletionFailure(f"{strategy} deletion failed: {exc}") from exc
            except Exception as exc:
                session.rollback()
                span.record_exception(exc)
                span.set_status(Status(StatusCode.ERROR, str(exc)))
                raise

        logger.info(
            "compliance.deletion.applied",
            extra={"subject_ref": subject_ref(email), "strategy": strategy, "status": "flushed"},
        )
        return affected

    def _delete_all(self, session: Session, record_ids: dict[str, list]) -> dict[str, int]:
        deleted: dict[str, int] = {}
        for table_name in DEPENDENCY_ORDER:
            deleted[table_name] = self.subject_data.delete_by_ids(
                session, TABLE_MODELS[table_name], record_ids.get(table_name, [])
            )
        return deleted

    def _retain(self, session: Session, email: str, retention_until: datetime) -> dict[str, int]:
        leads = self.subject_data.find_leads(session, email)
        for lead in leads:
            lead.gdpr_retention = True
            lead.retention_until = retention_until
            lead.notes = f"{lead.notes}\n{RETENTION_NOTE}" if lead.notes else RETENTION_NOTE
        return {"crm_lead": len(leads)}
