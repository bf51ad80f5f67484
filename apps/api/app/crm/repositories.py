from __future__ import annotations

import uuid
from collections.abc import Sequence
from typing import Any, Literal

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from app.crm.models import CRMActivity, CRMCommunication, CRMLead, CRMTask, CRMUser
from app.models.audit import AuditLog

LockMode = Literal["share", "update"] | None

LEAD_CHILD_MODELS: dict[str, Any] = {
    CRMTask.__tablename__: CRMTask,
    CRMActivity.__tablename__: CRMActivity,
    CRMCommunication.__tablename__: CRMCommunication,
}


class SubjectDataRepository:
    """Narrow access to the CRM rows that belong to one data subject.

    The CRUD services own these tables; this repository only offers the lookups
    by email and by lead id that compliance processing needs, plus id-scoped
    bulk deletes.
    """

    def find_user(self, session: Session, email: str) -> CRMUser | None:
        return session.scalar(select(CRMUser).where(func.lower(CRMUser.email) == email))

    def find_leads(self, session: Session, email: str, *, lock: LockMode = None) -> list[CRMLead]:
        query = select(CRMLead).where(func.lower(CRMLead.email) == email).order_by(CRMLead.created_at, CRMLead.id)
        if lock == "share":
            query = query.with_for_update(read=True)
        elif lock == "update":
            query = query.with_for_update()
        return list(session.scalars(query))

    def find_by_lead_ids(self, session: Session, model: Any, lead_ids: Sequence[uuid.UUID]) -> list[Any]:
        if not lead_ids:
            return []
        timestamp = model.created_at if hasattr(model, "created_at") else model.performed_at
        query = select(model).where(model.lead_id.in_(list(lead_ids))).order_by(timestamp, model.id)
        return list(session.scalars(query))

    def ids_by_lead_ids(self, session: Session, model: Any, lead_ids: Sequence[uuid.UUID]) -> list[uuid.UUID]:
        if not lead_ids:
            return []
        return list(session.scalars(select(model.id).where(model.lead_id.in_(list(lead_ids)))))

    def find_audit_entries(self, session: Session, actor_id: str) -> list[AuditLog]:
        query = select(AuditLog).where(AuditLog.actor_id == actor_id).order_by(AuditLog.created_at, AuditLog.id)
        return list(session.scalars(query))

    def rows_by_ids(self, session: Session, model: Any, ids: Sequence[uuid.UUID]) -> list[Any]:
        if not ids:
            return []
        return list(session.scalars(select(model).where(model.id.in_(list(ids))).order_by(model.id)))

    def delete_by_ids(self, session: Session, model: Any, ids: Sequence[uuid.UUID]) -> int:
        if not ids:
            return 0
        result = session.execute(
            delete(model).where(model.id.in_(list(ids))).execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0)
