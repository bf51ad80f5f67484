from __future__ import annotations

import hashlib
import uuid
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import MetaData
from sqlalchemy.orm import Session

from app.compliance.models import ConsentRecord
from app.compliance.repository import ConsentRepository
from app.crm.models import CRMActivity, CRMCommunication, CRMLead, CRMTask, CRMUser
from app.crm.repositories import SubjectDataRepository

# Children before parents. Both the full and anonymize strategies walk this list.
DEPENDENCY_ORDER: tuple[str, ...] = (
    CRMActivity.__tablename__,
    CRMTask.__tablename__,
    CRMCommunication.__tablename__,
    CRMLead.__tablename__,
    CRMUser.__tablename__,
    ConsentRecord.__tablename__,
)

TABLE_MODELS: dict[str, Any] = {
    CRMActivity.__tablename__: CRMActivity,
    CRMTask.__tablename__: CRMTask,
    CRMCommunication.__tablename__: CRMCommunication,
    CRMLead.__tablename__: CRMLead,
    CRMUser.__tablename__: CRMUser,
    ConsentRecord.__tablename__: ConsentRecord,
}


def normalize_email(email: str) -> str:
    return email.strip().lower()


def subject_ref(email: str) -> str:
    """Stable short reference used in logs instead of the address itself."""
    return hashlib.sha256(normalize_email(email).encode("utf-8")).hexdigest()[:12]


def validate_dependency_order(order: tuple[str, ...], metadata: MetaData) -> None:
    """Every table must come before any table it references through a blocking foreign key.

    References declared ``ON DELETE SET NULL`` or ``CASCADE`` do not block the parent
    delete and may appear in either order.
    """
    position = {name: index for index, name in enumerate(order)}
    for name in order:
        table = metadata.tables.get(name)
        if table is None:
            raise ValueError(f"Unknown table in dependency order: {name}")
        for foreign_key in table.foreign_keys:
            if (foreign_key.ondelete or "").upper() in {"SET NULL", "CASCADE"}:
                continue
            parent = foreign_key.column.table.name
            if parent in position and position[parent] < position[name]:
                raise ValueError(f"{name} references {parent} but is ordered after it")

    for table in metadata.sorted_tables:
        if table.name in position:
            continue
        for foreign_key in table.foreign_keys:
            if (foreign_key.ondelete or "").upper() in {"SET NULL", "CASCADE"}:
                continue
            if foreign_key.column.table.name in position:
                raise ValueError(f"{table.name} references {foreign_key.column.table.name} but is missing from the order")


@dataclass(slots=True)
class SubjectRegistry:
    subject_data: SubjectDataRepository = field(default_factory=SubjectDataRepository)
    consents: ConsentRepository = field(default_factory=ConsentRepository)

    def profile(self, session: Session, subject_email: str) -> CRMUser | None:
        return self.subject_data.find_user(session, normalize_email(subject_email))

    def related_record_ids(self, session: Session, subject_email: str) -> dict[str, list[uuid.UUID]]:
        email = normalize_email(subject_email)
        user = self.subject_data.find_user(session, email)
        lead_ids = [lead.id for lead in self.subject_data.find_leads(session, email)]

        record_ids: dict[str, list[uuid.UUID]] = {name: [] for name in DEPENDENCY_ORDER}
        for name in (CRMActivity.__tablename__, CRMTask.__tablename__, CRMCommunication.__tablename__):
            record_ids[name] = self.subject_data.ids_by_lead_ids(session, TABLE_MODELS[name], lead_ids)
        record_ids[CRMLead.__tablename__] = lead_ids
        record_ids[CRMUser.__tablename__] = [user.id] if user is not None else []
        record_ids[ConsentRecord.__tablename__] = self.consents.ids_for_subject(session, email)
        return record_ids
