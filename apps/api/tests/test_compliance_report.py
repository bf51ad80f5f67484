from __future__ import annotations

from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.compliance.models import ConsentRecord, DataLifecycleRequest, utcnow
from app.compliance.report import compliance_report
from app.core.database import Base
from app.crm.models import CRMLead


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


def _request(kind: str, status: str, *, strategy: str | None = None, at: datetime | None = None) -> DataLifecycleRequest:
    return DataLifecycleRequest(
        subject_email=f"{kind}-{status}-{strategy}@example.com",
        kind=kind,
        status=status,
        strategy=strategy,
        requested_by="dpo",
        requested_at=at or utcnow(),
    )


def _seed(session: Session) -> None:
    now = utcnow()
    session.add_all(
        [
            ConsentRecord(email="a@example.com", consent_type="marketing", given=True, method="explicit"),
            ConsentRecord(
                email="b@example.com",
                consent_type="marketing",
                given=True,
                method="explicit",
                withdrawn_at=now,
                withdrawal_reason="stop",
            ),
            ConsentRecord(email="c@example.com", consent_type="marketing", given=False, method="explicit"),
            ConsentRecord(email="a@example.com", consent_type="analytics", given=True, method="implicit"),
            _request("export", "completed"),
            _request("export", "failed"),
            _request("deletion", "completed", strategy="full"),
            _request("deletion", "completed", strategy="anonymize"),
            _request("deletion", "pending", strategy="retain"),
            _request("export", "completed", at=now - timedelta(days=400)),
            CRMLead(company_name="Held", contact_name="H", email="h@example.com", gdpr_retention=True, retention_until=now + timedelta(days=30)),
            CRMLead(company_name="Expired", contact_name="E", email="e@example.com", gdpr_retention=True, retention_until=now - timedelta(days=1)),
            CRMLead(company_name="Free", contact_name="F", email="f@example.com"),
        ]
    )
    session.commit()


def test_report_over_all_history(db_session: Session) -> None:
    _seed(db_session)

    report = compliance_report(db_session)

    assert report["consents"] == {
        "marketing": {"total": 3, "given": 2, "withdrawn": 1},
        "analytics": {"total": 1, "given": 1, "withdrawn": 0},
    }
    assert report["exports"] == {"completed": 2, "failed": 1}
    assert report["deletions"] == {"completed": {"full": 1, "anonymize": 1}, "pending": {"retain": 1}}
    assert report["retention"] == {"leads_on_hold": 2, "holds_expired": 1}
    assert report["period"] == {"start": None, "end": None}


def test_report_respects_period(db_session: Session) -> None:
    _seed(db_session)
    start = utcnow() - timedelta(days=30)

    report = compliance_report(db_session, start=start)

    assert report["exports"] == {"completed": 1, "failed": 1}
    assert report["period"]["start"] == start.isoformat()


def test_empty_period_yields_empty_sections(db_session: Session) -> None:
    _seed(db_session)
    end = datetime(2000, 1, 1, tzinfo=timezone.utc)

    report = compliance_report(db_session, end=end)

    assert report["consents"] == {}
    assert report["exports"] == {}
    assert report["deletions"] == {}
