from __future__ import annotations

import logging
import uuid
from collections.abc import Generator
from pathlib import Path

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.compliance.api import ActorUser, get_current_user
from app.compliance.artifacts import LocalArtifactStore
from app.compliance.lifecycle import RequestLifecycleManager
from app.compliance.service import ComplianceService, build_compliance_service, get_compliance_service
from app.core.config import Settings, get_settings
from app.core.database import Base, get_db
from app.crm.models import CRMLead
from app.logging import JsonLogFormatter
from app.main import app
from app.middleware.correlation_id import resolve_correlation_id

SUBJECT = "log.subject@example.com"


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
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def service(session_factory: sessionmaker[Session], tmp_path: Path) -> ComplianceService:
    settings = Settings(compliance_queue_backend="inline", compliance_artifact_dir=str(tmp_path))
    return build_compliance_service(settings, session_factory=session_factory)


@pytest.fixture()
def client(db_session: Session, service: ComplianceService) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="user-1",
            permissions={"compliance.requests.submit", "compliance.consents.write"},
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    app.dependency_overrides[get_compliance_service] = lambda: service
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_http_logs_use_route_template_and_correlation_id(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    response = client.get(f"/api/compliance/requests/{uuid.uuid4()}", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 403

    records = [record for record in caplog.records if record.name == "app.request" and record.getMessage() == "http.request"]
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/api/compliance/requests/{id}"
        and getattr(record, "status_code", None) == 403
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_worker_logs_carry_submitting_correlation_id(
    client: TestClient,
    db_session: Session,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)
    db_session.add(CRMLead(company_name="Acme", contact_name="Log Subject", email=SUBJECT))
    db_session.commit()

    response = client.post("/api/compliance/exports", json={"email": SUBJECT}, headers={"X-Correlation-Id": "dsar-77"})
    assert response.status_code == 202
    request_id = response.json()["request_id"]

    request_records = [record for record in caplog.records if record.name == "app.compliance.requests"]
    messages = {record.getMessage() for record in request_records}
    assert {"compliance.request.submitted", "compliance.request.started", "compliance.request.finished"} <= messages
    assert all(getattr(record, "correlation_id", None) == "dsar-77" for record in request_records)
    finished = next(record for record in request_records if record.getMessage() == "compliance.request.finished")
    assert finished.request_id == request_id
    assert finished.request_kind == "export"
    assert finished.status == "completed"


def test_logs_never_contain_the_subject_address(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.DEBUG)

    client.post("/api/compliance/consents", json={"email": SUBJECT, "consent_type": "marketing"})
    client.post("/api/compliance/exports", json={"email": SUBJECT})
    client.post("/api/compliance/exports", json={"email": SUBJECT})

    formatter = JsonLogFormatter()
    rendered = [formatter.format(record) for record in caplog.records if record.name.startswith("app.")]
    assert rendered
    assert all(SUBJECT not in line for line in rendered)
    assert any('"subject_ref"' in line for line in rendered)


def test_dispatch_failure_is_logged_as_error(
    db_session: Session,
    tmp_path: Path,
    caplog: pytest.LogCaptureFixture,
) -> None:
    class DownQueue:
        def enqueue(self, request_id: uuid.UUID) -> None:
            raise ConnectionError("broker unreachable")

    manager = RequestLifecycleManager(
        artifacts=LocalArtifactStore(tmp_path, "secret"),
        queue=DownQueue(),
        export_ttl_days=7,
    )
    with caplog.at_level(logging.ERROR, logger="app.compliance.requests"):
        request_id = manager.submit(db_session, "export", SUBJECT, requested_by="user-1")

    record = next(item for item in caplog.records if item.getMessage() == "compliance.request.dispatch_failed")
    assert record.levelno == logging.ERROR
    assert record.request_id == str(request_id)
    assert "broker unreachable" in record.error


@pytest.mark.parametrize(
    ("raw", "kept"),
    [("corr-1", True), ("", False), (None, False), ("x" * 129, False), ("bad\nvalue", False)],
)
def test_correlation_header_is_validated(raw: str | None, kept: bool) -> None:
    resolved = resolve_correlation_id(raw)

    if kept:
        assert resolved == raw
    else:
        assert str(uuid.UUID(resolved)) == resolved
