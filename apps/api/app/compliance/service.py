from __future__ import annotations

import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import lru_cache
from typing import Any

from sqlalchemy.orm import Session

from app.compliance.artifacts import LocalArtifactStore
from app.compliance.consent import ConsentContext, ConsentLedger
from app.compliance.lifecycle import RequestLifecycleManager
from app.compliance.models import ConsentRecord, DataLifecycleRequest
from app.compliance.queue import (
    CeleryRequestQueue,
    InlineRequestQueue,
    RequestHandler,
    RequestQueue,
    ThreadPoolRequestQueue,
)
from app.compliance.registry import SubjectRegistry
from app.compliance.report import compliance_report
from app.core.config import Settings, get_settings

SessionFactory = Callable[[], Session]


def session_handler(lifecycle: RequestLifecycleManager, session_factory: SessionFactory) -> RequestHandler:
    def run(request_id: uuid.UUID) -> None:
        session = session_factory()
        try:
            lifecycle.execute(session, request_id)
        finally:
            session.close()

    return run


def build_request_queue(
    settings: Settings,
    lifecycle: RequestLifecycleManager,
    session_factory: SessionFactory,
) -> RequestQueue:
    backend = settings.compliance_queue_backend.lower()
    if backend == "celery":
        return CeleryRequestQueue()
    handler = session_handler(lifecycle, session_factory)
    if backend == "thread":
        return ThreadPoolRequestQueue(handler, max_workers=settings.compliance_worker_threads)
    if backend == "inline":
        return InlineRequestQueue(handler)
    raise ValueError(f"Unknown compliance queue backend: {settings.compliance_queue_backend}")


@dataclass(slots=True)
class ComplianceService:
    """Entry points the HTTP layer calls; every call returns without waiting on background work."""

    ledger: ConsentLedger
    registry: SubjectRegistry
    lifecycle: RequestLifecycleManager
    artifacts: LocalArtifactStore
    export_ttl: timedelta

    def submit_export(
        self,
        session: Session,
        subject_email: str,
        *,
        requested_by: str,
        reason: str | None = None,
        ip_address: str | None = None,
    ) -> uuid.UUID:
        return self.lifecycle.submit(
            session,
            "export",
            subject_email,
            requested_by=requested_by,
            reason=reason,
            ip_address=ip_address,
        )

    def submit_deletion(
        self,
        session: Session,
        subject_email: str,
        strategy: str,
        *,
        requested_by: str,
        reason: str | None = None,
        ip_address: str | None = None,
        retention_until: datetime | None = None,
    ) -> uuid.UUID:
        return self.lifecycle.submit(
            session,
            "deletion",
            subject_email,
            requested_by=requested_by,
            strategy=strategy,
            reason=reason,
            ip_address=ip_address,
            retention_until=retention_until,
        )

    def status(self, session: Session, request_id: uuid.UUID) -> DataLifecycleRequest:
        return self.lifecycle.status(session, request_id)

    def requests_for_subject(self, session: Session, subject_email: str) -> list[DataLifecycleRequest]:
        return self.lifecycle.list_for_subject(session, subject_email)

    def download_url(self, request: DataLifecycleRequest) -> str | None:
        if request.kind != "export" or request.status != "completed" or not request.artifact_key:
            return None
        return self.artifacts.url(request.artifact_key, self.export_ttl)

    def record_consent(
        self,
        session: Session,
        subject_email: str,
        consent_type: str,
        given: bool,
        method: str,
        context: ConsentContext,
    ) -> ConsentRecord:
        return self.ledger.record(session, subject_email, consent_type, given, method, context)

    def withdraw_consent(
        self,
        session: Session,
        subject_email: str,
        consent_type: str,
        reason: str | None,
        *,
        actor_id: str,
    ) -> ConsentRecord:
        return self.ledger.withdraw(session, subject_email, consent_type, reason, actor_id=actor_id)

    def has_consent(self, session: Session, subject_email: str, consent_type: str) -> bool:
        return self.ledger.has_consent(session, subject_email, consent_type)

    def list_consents(self, session: Session, subject_email: str) -> list[ConsentRecord]:
        return self.ledger.list_consents(session, subject_email)

    def report(self, session: Session, start: datetime | None, end: datetime | None) -> dict[str, Any]:
        return compliance_report(session, start, end)

    def shutdown(self) -> None:
        """Drain in-process workers. Celery and inline queues hold nothing to release."""
        if isinstance(self.lifecycle.queue, ThreadPoolRequestQueue):
            self.lifecycle.queue.shutdown()


def build_compliance_service(
    settings: Settings | None = None,
    *,
    session_factory: SessionFactory | None = None,
    queue: RequestQueue | None = None,
) -> ComplianceService:
    settings = settings or get_settings()
    if session_factory is None:
        from app.core.database import SessionLocal

        session_factory = SessionLocal

    artifacts = LocalArtifactStore(
        settings.compliance_artifact_dir,
        settings.jwt_secret,
        algorithm=settings.jwt_algorithm,
        base_url=settings.compliance_artifact_base_url,
    )
    registry = SubjectRegistry()
    lifecycle = RequestLifecycleManager(artifacts=artifacts, export_ttl_days=settings.compliance_export_ttl_days)
    lifecycle.queue = queue or build_request_queue(settings, lifecycle, session_factory)
    return ComplianceService(
        ledger=ConsentLedger(),
        registry=registry,
        lifecycle=lifecycle,
        artifacts=artifacts,
        export_ttl=timedelta(days=settings.compliance_export_ttl_days),
    )


@lru_cache
def get_compliance_service() -> ComplianceService:
    return build_compliance_service()
