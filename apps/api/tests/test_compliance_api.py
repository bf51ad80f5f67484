from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import datetime, timedelta
from pathlib import Path
from urllib.parse import urlsplit

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.compliance.api import ActorUser, get_current_user
from app.compliance.artifacts import export_artifact_key
from app.compliance.models import DataLifecycleRequest, utcnow
from app.compliance.service import ComplianceService, build_compliance_service, get_compliance_service
from app.core.config import Settings, get_settings
from app.core.database import Base, get_db
from app.crm.models import CRMLead, CRMTask
from app.main import app

ALL_PERMISSIONS = {
    "compliance.requests.submit",
    "compliance.requests.read",
    "compliance.consents.write",
    "compliance.consents.read",
    "compliance.reports.read",
}


@pytest.fixture()
def session_factory() -> Generator[sessionmaker[Session], None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    try:
        yield SessionLocal
    finally:
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def db_session(session_factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("COMPLIANCE_QUEUE_BACKEND", "inline")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def service(session_factory: sessionmaker[Session], tmp_path: Path) -> ComplianceService:
    settings = Settings(
        compliance_queue_backend="inline",
        compliance_artifact_dir=str(tmp_path / "artifacts"),
        jwt_secret="artifact-secret",
    )
    return build_compliance_service(settings, session_factory=session_factory)


@pytest.fixture()
def permissions() -> set[str]:
    return set(ALL_PERMISSIONS)


@pytest.fixture()
def client(
    db_session: Session,
    service: ComplianceService,
    permissions: set[str],
) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="dpo-1",
            permissions=permissions,
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    app.dependency_overrides[get_compliance_service] = lambda: service
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _seed_subject(session: Session, email: str = "jane@example.com") -> None:
    leads = [CRMLead(company_name=f"Co {index}", contact_name="Jane Doe", email=email) for index in range(2)]
    session.add_all(leads)
    session.flush()
    session.add(CRMTask(lead_id=leads[0].id, subject="Call"))
    session.commit()


def test_export_is_accepted_and_downloadable(client: TestClient, db_session: Session) -> None:
    _seed_subject(db_session)

    accepted = client.post(
        "/api/compliance/exports",
        json={"email": "Jane@Example.com", "reason": "Art. 15 request"},
        headers={"X-Correlation-Id": "corr-export-1"},
    )
    assert accepted.status_code == 202
    assert accepted.headers["x-correlation-id"] == "corr-export-1"
    request_id = accepted.json()["request_id"]

    status_response = client.get(f"/api/compliance/requests/{request_id}")
    assert status_response.status_code == 200
    body = status_response.json()
    assert body["status"] == "completed"
    assert body["subject_email"] == "jane@example.com"
    assert body["requested_by"] == "dpo-1"
    assert body["artifact_key"] == export_artifact_key(request_id)

    url = urlsplit(body["download_url"])
    download = client.get(url.path, params={"token": url.query.removeprefix("token=")})
    assert download.status_code == 200
    assert download.headers["content-type"].startswith("application/json")
    document = download.json()
    assert document["subject"] == "jane@example.com"
    assert len(document["data"]["leads"]) == 2
    assert len(document["data"]["tasks"]) == 1

    stored = db_session.get(DataLifecycleRequest, uuid.UUID(request_id))
    assert stored is not None
    assert stored.correlation_id == "corr-export-1"


def test_in_flight_request_conflicts(client: TestClient, db_session: Session) -> None:
    existing = DataLifecycleRequest(
        subject_email="jane@example.com",
        kind="export",
        status="processing",
        requested_by="dpo-0",
        requested_at=utcnow(),
        started_at=utcnow(),
    )
    db_session.add(existing)
    db_session.commit()
    existing_id = str(existing.id)

    response = client.post("/api/compliance/exports", json={"email": "jane@example.com"})

    assert response.status_code == 409
    body = response.json()
    assert body["code"] == "compliance_request_conflict"
    assert body["details"] == {"existing_request_id": existing_id}
    assert body["correlation_id"]
    count = db_session.scalar(select(func.count(DataLifecycleRequest.id)))
    assert count == 1


def test_deletion_request_runs_strategy(client: TestClient, db_session: Session) -> None:
    _seed_subject(db_session, "del@example.com")

    response = client.post("/api/compliance/deletions", json={"email": "del@example.com", "strategy": "full"})

    assert response.status_code == 202
    assert response.json()["status"] == "completed"
    db_session.expire_all()
    assert db_session.scalar(select(func.count(CRMLead.id))) == 0

    history = client.get("/api/compliance/subjects/requests", params={"email": "DEL@example.com"})
    assert history.status_code == 200
    assert [item["strategy"] for item in history.json()] == ["full"]
    assert history.json()[0]["download_url"] is None


@pytest.mark.parametrize(
    "payload",
    [
        {"email": "not-an-email", "strategy": "full"},
        {"email": "del@example.com", "strategy": "shred"},
        {"email": "del@example.com"},
    ],
)
def test_malformed_deletion_payload_is_rejected(client: TestClient, payload: dict) -> None:
    response = client.post("/api/compliance/deletions", json=payload)

    assert response.status_code == 422


def test_retention_date_only_for_retain(client: TestClient) -> None:
    response = client.post(
        "/api/compliance/deletions",
        json={"email": "del@example.com", "strategy": "full", "retention_until": "2033-01-01T00:00:00Z"},
    )

    assert response.status_code == 422
    assert response.json()["code"] == "compliance_invalid_request"


def test_past_retention_date_is_rejected(client: TestClient) -> None:
    past = (utcnow() - timedelta(days=1)).isoformat()

    response = client.post(
        "/api/compliance/deletions",
        json={"email": "del@example.com", "strategy": "retain", "retention_until": past},
    )

    assert response.status_code == 422


def test_retention_date_without_offset_is_read_as_utc(client: TestClient, db_session: Session) -> None:
    _seed_subject(db_session, "del@example.com")

    response = client.post(
        "/api/compliance/deletions",
        json={"email": "del@example.com", "strategy": "retain", "retention_until": "2033-01-01T00:00:00"},
    )

    assert response.status_code == 202
    assert response.json()["status"] == "completed"
    db_session.expire_all()
    leads = list(db_session.scalars(select(CRMLead)))
    assert len(leads) == 2
    assert all(lead.gdpr_retention for lead in leads)
    held_until = {lead.retention_until.replace(tzinfo=None) for lead in leads if lead.retention_until}
    assert held_until == {datetime(2033, 1, 1)}


def test_unknown_request_returns_404(client: TestClient) -> None:
    response = client.get(f"/api/compliance/requests/{uuid.uuid4()}")

    assert response.status_code == 404
    assert response.json()["code"] == "compliance_request_not_found"


def test_missing_permission_returns_403(client: TestClient, permissions: set[str]) -> None:
    permissions.discard("compliance.requests.submit")

    response = client.post("/api/compliance/exports", json={"email": "jane@example.com"})

    assert response.status_code == 403
    assert response.json()["code"] == "compliance_export_submit_failed"
    assert response.json()["message"] == "Missing permission: compliance.requests.submit"


def test_expired_or_forged_download_links_are_refused(client: TestClient, service: ComplianceService) -> None:
    key = export_artifact_key(uuid.uuid4())
    service.artifacts.put(key, b"{}")

    expired = urlsplit(service.artifacts.url(key, timedelta(seconds=-60)))
    response = client.get(expired.path, params={"token": expired.query.removeprefix("token=")})
    assert response.status_code == 410
    assert response.json()["code"] == "compliance_artifact_expired"

    forged = client.get(f"/api/compliance/artifacts/{key}", params={"token": "not-a-token"})
    assert forged.status_code == 422

    other = urlsplit(service.artifacts.url(export_artifact_key("other"), timedelta(minutes=5)))
    missing = client.get(other.path, params={"token": other.query.removeprefix("token=")})
    assert missing.status_code == 404
    assert missing.json()["code"] == "compliance_artifact_not_found"


def test_consent_endpoints(client: TestClient) -> None:
    created = client.post(
        "/api/compliance/consents",
        json={"email": "sub@example.com", "consent_type": "marketing", "method": "explicit"},
        headers={"User-Agent": "consent-banner/1.0"},
    )
    assert created.status_code == 201
    assert created.json()["given"] is True

    duplicate = client.post("/api/compliance/consents", json={"email": "sub@example.com", "consent_type": "marketing"})
    assert duplicate.status_code == 409
    assert duplicate.json()["code"] == "compliance_duplicate_consent"

    check = client.get("/api/compliance/consents/check", params={"email": "sub@example.com", "consent_type": "marketing"})
    assert check.json() == {"email": "sub@example.com", "consent_type": "marketing", "has_consent": True}

    withdrawn = client.post(
        "/api/compliance/consents/withdraw",
        json={"email": "sub@example.com", "consent_type": "marketing", "reason": "unsubscribed"},
    )
    assert withdrawn.status_code == 200
    assert withdrawn.json()["withdrawal_reason"] == "unsubscribed"

    again = client.post("/api/compliance/consents/withdraw", json={"email": "sub@example.com", "consent_type": "marketing"})
    assert again.status_code == 404
    assert again.json()["code"] == "compliance_no_active_consent"

    history = client.get("/api/compliance/consents", params={"email": "sub@example.com"})
    assert len(history.json()) == 1
    assert history.json()[0]["withdrawn_at"] is not None


def test_report_endpoint(client: TestClient) -> None:
    client.post("/api/compliance/consents", json={"email": "a@example.com", "consent_type": "analytics"})
    client.post("/api/compliance/exports", json={"email": "a@example.com"})

    report = client.get("/api/compliance/report")
    assert report.status_code == 200
    body = report.json()
    assert body["consents"]["analytics"] == {"total": 1, "given": 1, "withdrawn": 0}
    assert body["exports"] == {"completed": 1}
    assert body["period"] == {"start": None, "end": None}

    inverted = client.get(
        "/api/compliance/report",
        params={"start": "2026-02-01T00:00:00Z", "end": "2026-01-01T00:00:00Z"},
    )
    assert inverted.status_code == 422

    mixed = client.get(
        "/api/compliance/report",
        params={"start": "2026-01-01T00:00:00", "end": "2026-02-01T00:00:00Z"},
    )
    assert mixed.status_code == 200
    assert mixed.json()["period"] == {"start": "2026-01-01T00:00:00+00:00", "end": "2026-02-01T00:00:00+00:00"}

    mixed_inverted = client.get(
        "/api/compliance/report",
        params={"start": "2026-02-01T00:00:00", "end": "2026-01-01T00:00:00+00:00"},
    )
    assert mixed_inverted.status_code == 422
