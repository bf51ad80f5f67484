from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from app.compliance.models import IN_FLIGHT_STATUSES, ConsentRecord, DataLifecycleRequest


class ConsentRepository:
    def effective_grant(
        self,
        session: Session,
        email: str,
        consent_type: str,
        *,
        lock: bool = False,
    ) -> ConsentRecord | None:
        query = select(ConsentRecord).where(
            func.lower(ConsentRecord.email) == email,
            ConsentRecord.consent_type == consent_type,
            ConsentRecord.given.is_(True),
            ConsentRecord.withdrawn_at.is_(None),
        )
        if lock:
            query = query.with_for_update()
        return session.scalar(query)

    def list_for_subject(self, session: Session, email: str) -> list[ConsentRecord]:
        query = (
            select(ConsentRecord)
            .where(func.lower(ConsentRecord.email) == email)
            .order_by(ConsentRecord.granted_at.desc(), ConsentRecord.id)
        )
        return list(session.scalars(query))

    def ids_for_subject(self, session: Session, email: str) -> list[uuid.UUID]:
        # Address only; consent given by someone else against the subject's lead or user stays.
        query = select(ConsentRecord.id).where(func.lower(ConsentRecord.email) == email)
        return list(session.scalars(query))

    def add(self, session: Session, record: ConsentRecord) -> ConsentRecord:
        session.add(record)
        session.flush()
        return record


class LifecycleRequestRepository:
    def get(self, session: Session, request_id: uuid.UUID) -> DataLifecycleRequest | None:
        return session.get(DataLifecycleRequest, request_id)

    def find_in_flight(self, session: Session, subject_email: str, kind: str) -> DataLifecycleRequest | None:
        return session.scalar(
            select(DataLifecycleRequest).where(
                DataLifecycleRequest.subject_email == subject_email,
                DataLifecycleRequest.kind == kind,
                DataLifecycleRequest.status.in_(IN_FLIGHT_STATUSES),
            )
        )

    def list_for_subject(self, session: Session, subject_email: str) -> list[DataLifecycleRequest]:
        query = (
            select(DataLifecycleRequest)
            .where(DataLifecycleRequest.subject_email == subject_email)
            .order_by(DataLifecycleRequest.requested_at.desc(), DataLifecycleRequest.id)
        )
        return list(session.scalars(query))

    def add(self, session: Session, request: DataLifecycleRequest) -> DataLifecycleRequest:
        session.add(request)
        session.flush()
        return request

    def compare_and_set_status(
        self,
        session: Session,
        request_id: uuid.UUID,
        expected: str,
        target: str,
        **values: Any,
    ) -> bool:
        result = session.execute(
            update(DataLifecycleRequest)
            .where(DataLifecycleRequest.id == request_id, DataLifecycleRequest.status == expected)
            .values(status=target, **values)
            .execution_options(synchronize_session=False)
        )
        return bool(result.rowcount)

    def stalled(self, session: Session, started_before: datetime) -> list[DataLifecycleRequest]:
        query = select(DataLifecycleRequest).where(
            DataLifecycleRequest.status == "processing",
            DataLifecycleRequest.started_at < started_before,
        )
        return list(session.scalars(query))
