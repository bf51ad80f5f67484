from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from sqlalchemy import Column, ForeignKey, MetaData, Table, Uuid, create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.compliance.models import ConsentRecord
from app.compliance.registry import (
    DEPENDENCY_ORDER,
    SubjectRegistry,
    normalize_email,
    subject_ref,
    validate_dependency_order,
)
from app.core.database import Base
from app.crm.models import CRMActivity, CRMCommunication, CRMLead, CRMTask, CRMUser


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


def _lead(session: Session, email: str) -> CRMLead:
    lead = CRMLead(company_name="Acme", contact_name="Sam Subject", email=email)
    session.add(lead)
    session.flush()
    return lead


def test_related_record_ids_cover_every_dependent_table(db_session: Session) -> None:
    user = CRMUser(name="Sam Subject", email="sam@example.com")
    db_session.add(user)
    lead = _lead(db_session, "Sam@Example.com")
    other_lead = _lead(db_session, "someone@example.com")
    task = CRMTask(lead_id=lead.id, subject="Call back")
    activity = CRMActivity(lead_id=lead.id, activity_type="call", subject="Intro call")
    communication = CRMCommunication(lead_id=lead.id, channel="email", direction="outbound", content="Hello")
    unrelated_task = CRMTask(lead_id=other_lead.id, subject="Other")
    consent = ConsentRecord(email="sam@example.com", consent_type="marketing", given=True, method="explicit")
    linked_consent = ConsentRecord(
        email="old-address@example.com",
        consent_type="analytics",
        given=True,
        method="explicit",
        lead_id=lead.id,
    )
    db_session.add_all([task, activity, communication, unrelated_task, consent, linked_consent])
    db_session.commit()

    record_ids = SubjectRegistry().related_record_ids(db_session, " SAM@example.com")

    assert tuple(record_ids) == DEPENDENCY_ORDER
    assert record_ids["crm_lead"] == [lead.id]
    assert record_ids["crm_task"] == [task.id]
    assert record_ids["crm_activity"] == [activity.id]
    assert record_ids["crm_communication"] == [communication.id]
    assert record_ids["crm_user"] == [user.id]
    assert record_ids["consent_record"] == [consent.id]


def test_unknown_subject_resolves_to_empty_sets(db_session: Session) -> None:
    record_ids = SubjectRegistry().related_record_ids(db_session, "ghost@example.com")

    assert all(ids == [] for ids in record_ids.values())
    assert SubjectRegistry().profile(db_session, "ghost@example.com") is None


def test_declared_order_matches_foreign_keys() -> None:
    validate_dependency_order(DEPENDENCY_ORDER, Base.metadata)


def test_parent_before_child_is_rejected() -> None:
    broken = ("crm_lead", "crm_activity", "crm_task", "crm_communication", "crm_user", "consent_record")

    with pytest.raises(ValueError, match="crm_activity references crm_lead"):
        validate_dependency_order(broken, Base.metadata)


def test_dependent_table_missing_from_order_is_rejected() -> None:
    metadata = MetaData()
    Table("crm_lead", metadata, Column("id", Uuid, primary_key=True))
    Table(
        "crm_lead_note",
        metadata,
        Column("id", Uuid, primary_key=True),
        Column("lead_id", Uuid, ForeignKey("crm_lead.id")),
    )

    with pytest.raises(ValueError, match="crm_lead_note references crm_lead but is missing"):
        validate_dependency_order(("crm_lead",), metadata)


def test_subject_ref_is_stable_and_does_not_leak_the_address() -> None:
    assert normalize_email("  Jane@Example.COM ") == "jane@example.com"
    assert subject_ref("Jane@Example.com") == subject_ref("jane@example.com")
    assert "jane" not in subject_ref("jane@example.com")
    assert len(subject_ref(str(uuid.uuid4()))) == 12
