from __future__ import annotations

import json
import logging
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

from opentelemetry.trace import Status, StatusCode
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app import audit
from app.compliance.artifacts import ArtifactStore, export_artifact_key
from app.compliance.collector import DataCollector
from app.compliance.deletion import DeletionCoordinator, default_retention_until
from app.compliance.errors import InvalidRequest, InvalidTransition, RequestConflict, RequestNotFound
from app.compliance.locks import KeyedLock, subject_locks
from app.compliance.models import DELETION_STRATEGIES, REQUEST_KINDS, DataLifecycleRequest, utcnow
from app.compliance.queue import RequestQueue
from app.compliance.registry import normalize_email, subject_ref
from app.compliance.repository import LifecycleRequestRepository
from app.context import get_correlation_id, reset_correlation_id, set_correlation_id
from app.core.config import get_settings
from app.metrics import observe_admission_conflict, observe_compliance_request, observe_dispatch_failure
from app.otel import annotate_request_span, get_tracer

logger = logging.getLogger("app.compliance.requests")
tracer = get_tracer(__name__)

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"processing"}),
    "processing": frozenset({"completed", "failed"}),
    "completed": frozenset(),
    "failed": frozenset(),
}

ABANDONED_MESSAGE = "abandoned by worker"


def ensure_transition(current: str, target: str) -> None:
    if target not in ALLOWED_TRANSITIONS.get(current, frozenset()):
        raise InvalidTransition(current, target)


class RequestLifecycleManager:
    """Admits export and deletion requests and drives each to exactly one terminal state.

    ``submit`` persists a ``pending`` row and hands the id to the request queue.
    ``execute`` is what the worker runs: it claims the row, does the work, and
    records ``completed`` or ``failed``. Re-running it on a claimed or terminal
    request changes nothing.
    """

    def __init__(
        self,
        *,
        artifacts: ArtifactStore,
        queue: RequestQueue | None = None,
        requests: LifecycleRequestRepository | None = None,
        collector: DataCollector | None = None,
        coordinator: DeletionCoordinator | None = None,
        locks: KeyedLock | None = None,
        export_ttl_days: int | None = None,
    ) -> None:
        self.artifacts = artifacts
        self.queue = queue
        self.requests = requests or LifecycleRequestRepository()
        self.collector = collector or DataCollector()
        self.coordinator = coordinator or DeletionCoordinator()
        self.locks = locks or subject_locks
        self.export_ttl_days = export_ttl_days if export_ttl_days is not None else get_settings().compliance_export_ttl_days

    def submit(
        self,
        session: Session,
        kind: str,
        subject_email: str,
        *,
        requested_by: str,
        strategy: str | None = None,
        reason: str | None = None,
        ip_address: str | None = None,
        retention_until: datetime | None = None,
    ) -> uuid.UUID:
        if self.queue is None:
            raise RuntimeError("request queue is not configured")
        email = normalize_email(subject_email)
        strategy, retention_until = self._validate(kind, email, strategy, retention_until)

        with self.locks.hold(("request", email, kind)):
            existing = self.requests.find_in_flight(session, email, kind)
            if existing is not None:
                existing_id = existing.id
                session.rollback()
                self._log_conflict(kind, email, existing_id)
                raise RequestConflict(kind, existing_id)

            request = DataLifecycleRequest(
                id=uuid.uuid4(),
                subject_email=email,
                kind=kind,
                status="pending",
                strategy=strategy,
                reason=reason,
                requested_by=requested_by,
                ip_address=ip_address,
                correlation_id=get_correlation_id(),
                requested_at=utcnow(),
                retention_until=retention_until,
            )
            request_id = request.id
            try:
                self.requests.add(session, request)
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                self._log_conflict(kind, email, None)
                raise RequestConflict(kind) from exc

        audit.record(
            requested_by,
            "compliance.request",
            str(request_id),
            f"{kind}.requested",
            {"strategy": strategy, "reason": reason},
            severity="high" if kind == "deletion" else "medium",
        )
        logger.info(
            "compliance.request.submitted",
            extra={
                "request_id": str(request_id),
                "request_kind": kind,
                "strategy": strategy,
                "subject_ref": subject_ref(email),
                "status": "pending",
            },
        )
        self._dispatch(session, request_id, kind)
        return request_id

    def execute(self, session: Session, request_id: uuid.UUID) -> DataLifecycleRequest:
        request = self._load(session, request_id)
        if request.status != "pending":
            logger.info(
                "compliance.request.skipped",
                extra={"request_id": str(request_id), "request_kind": request.kind, "status": request.status},
            )
            return request

        kind = request.kind
        token = set_correlation_id(request.correlation_id or get_correlation_id())
        started = time.perf_counter()
        final_status: str | None = None
        with tracer.start_as_current_span("compliance.request.execute") as span:
            try:
                if not self._claim(session, request_id):
                    session.rollback()
                    logger.info(
                        "compliance.request.skipped",
                        extra={"request_id": str(request_id), "request_kind": kind, "status": "processing"},
                    )
                    return self._load(session, request_id)

                request = self._load(session, request_id)
                annotate_request_span(span, request)
                logger.info(
                    "compliance.request.started",
                    extra={
                        "request_id": str(request_id),
                        "request_kind": kind,
                        "strategy": request.strategy,
                        "status": "processing",
                        "duration_ms": 0.0,
                    },
                )
                try:
                    if kind == "export":
                        self._run_export(session, request)
                    else:
                        self._run_deletion(session, request)
                    final_status = "completed"
                    logger.info(
                        "compliance.request.finished",
                        extra={
                            "request_id": str(request_id),
                            "request_kind": kind,
                            "strategy": request.strategy,
                            "status": final_status,
                            "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                        },
                    )
                except Exception as exc:
                    session.rollback()
                    self._mark_failed(session, request_id, str(exc))
                    final_status = "failed"
                    span.record_exception(exc)
                    span.set_status(Status(StatusCode.ERROR, str(exc)))
                    logger.info(
                        "compliance.request.finished",
                        extra={
                            "request_id": str(request_id),
                            "request_kind": kind,
                            "status": final_status,
                            "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                            "error": str(exc)[:500],
                        },
                    )
                span.set_attribute("compliance.status", final_status)
            finally:
                if final_status is not None:
                    observe_compliance_request(kind, final_status, time.perf_counter() - started)
                reset_correlation_id(token)

        return self._load(session, request_id)

    def status(self, session: Session, request_id: uuid.UUID) -> DataLifecycleRequest:
        return self._load(session, request_id)

    def list_for_subject(self, session: Session, subject_email: str) -> list[DataLifecycleRequest]:
        return self.requests.list_for_subject(session, normalize_email(subject_email))

    def fail_stalled(self, session: Session, older_than: timedelta) -> list[uuid.UUID]:
        """Fail ``processing`` requests started before ``now - older_than``. Called by an external watchdog."""
        cutoff = utcnow() - older_than
        failed: list[uuid.UUID] = []
        for request in self.requests.stalled(session, cutoff):
            if self.requests.compare_and_set_status(
                session,
                request.id,
                "processing",
                "failed",
                completed_at=utcnow(),
                error_message=ABANDONED_MESSAGE,
            ):
                failed.append(request.id)
                observe_compliance_request(request.kind, "failed", 0.0)
        session.commit()
        for request_id in failed:
            logger.warning(
                "compliance.request.abandoned",
                extra={"request_id": str(request_id), "status": "failed", "error": ABANDONED_MESSAGE},
            )
        return failed

    def _validate(
        self,
        kind: str,
        email: str,
        strategy: str | None,
        retention_until: datetime | None,
    ) -> tuple[str | None, datetime | None]:
        if kind not in REQUEST_KINDS:
            raise InvalidRequest(f"Unknown request kind: {kind}")
        if not email or "@" not in email:
            raise InvalidRequest("A subject email is required")
        if kind == "export":
            if strategy is not None:
                raise InvalidRequest("Export requests do not take a strategy")
            if retention_until is not None:
                raise InvalidRequest("Export requests do not take a retention date")
            return None, None
        if strategy not in DELETION_STRATEGIES:
            raise InvalidRequest(f"Deletion strategy must be one of: {', '.join(DELETION_STRATEGIES)}")
        if strategy != "retain":
            if retention_until is not None:
                raise InvalidRequest("Only the retain strategy takes a retention date")
            return strategy, None
        if retention_until is None:
            return strategy, default_retention_until()
        if retention_until.tzinfo is None:
            retention_until = retention_until.replace(tzinfo=timezone.utc)
        if retention_until <= utcnow():
            raise InvalidRequest("Retention date must be in the future")
        return strategy, retention_until

    def _dispatch(self, session: Session, request_id: uuid.UUID, kind: str) -> None:
        try:
            self.queue.enqueue(request_id)  # type: ignore[union-attr]
        except Exception as exc:
            observe_dispatch_failure(kind)
            logger.error(
                "compliance.request.dispatch_failed",
                exc_info=True,
                extra={"request_id": str(request_id), "request_kind": kind, "error": str(exc)},
            )
            session.rollback()
            if self._claim(session, request_id):
                self._mark_failed(session, request_id, f"dispatch failed: {exc}")
            else:
                session.rollback()

    def _claim(self, session: Session, request_id: uuid.UUID) -> bool:
        ensure_transition("pending", "processing")
        claimed = self.requests.compare_and_set_status(
            session,
            request_id,
            "pending",
            "processing",
            started_at=utcnow(),
        )
        if claimed:
            session.commit()
        return claimed

    def _finish(self, session: Session, request_id: uuid.UUID, **values: Any) -> None:
        ensure_transition("processing", "completed")
        if not self.requests.compare_and_set_status(session, request_id, "processing", "completed", **values):
            current = self._load(session, request_id).status
            raise InvalidTransition(current, "completed")
        session.commit()

    def _mark_failed(self, session: Session, request_id: uuid.UUID, message: str) -> bool:
        ensure_transition("processing", "failed")
        failed = self.requests.compare_and_set_status(
            session,
            request_id,
            "processing",
            "failed",
            completed_at=utcnow(),
            error_message=message[:2000],
        )
        if failed:
            session.commit()
        else:
            session.rollback()
        return failed

    def _run_export(self, session: Session, request: DataLifecycleRequest) -> None:
        document = self.collector.collect(session, request.subject_email)
        key = export_artifact_key(request.id)
        self.artifacts.put(key, json.dumps(document, sort_keys=False, default=str).encode("utf-8"))
        completed_at = utcnow()
        self._finish(
            session,
            request.id,
            completed_at=completed_at,
            artifact_key=key,
            artifact_expires_at=completed_at + timedelta(days=self.export_ttl_days),
            error_message=None,
        )

    def _run_deletion(self, session: Session, request: DataLifecycleRequest) -> None:
        self.coordinator.execute(
            session,
            request.subject_email,
            request.strategy or "",
            retention_until=request.retention_until,
        )
        # The coordinator's flushed mutations commit together with the status change.
        self._finish(session, request.id, completed_at=utcnow(), error_message=None)

    def _load(self, session: Session, request_id: uuid.UUID) -> DataLifecycleRequest:
        request = self.requests.get(session, request_id)
        if request is None:
            raise RequestNotFound(request_id)
        return request

    def _log_conflict(self, kind: str, email: str, existing_id: uuid.UUID | None) -> None:
        observe_admission_conflict(kind)
        logger.info(
            "compliance.request.conflict",
            extra={
                "request_id": str(existing_id) if existing_id else None,
                "request_kind": kind,
                "subject_ref": subject_ref(email),
                "status": "conflict",
            },
        )
