from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from app.compliance.consent import ConsentContext
from app.compliance.errors import (
    ArtifactExpired,
    ComplianceError,
    DuplicateActiveConsent,
    InvalidRequest,
    InvalidTransition,
    NoActiveConsent,
    RequestConflict,
    RequestNotFound,
)
from app.compliance.models import DataLifecycleRequest
from app.compliance.schemas import (
    ComplianceReportRead,
    ConsentCheckRead,
    ConsentCreate,
    ConsentRead,
    ConsentType,
    ConsentWithdraw,
    DeletionRequestCreate,
    ExportRequestCreate,
    LifecycleRequestRead,
    RequestAccepted,
)
from app.compliance.service import ComplianceService, get_compliance_service
from app.context import get_correlation_id
from app.core.auth import AuthUser, get_current_user as get_auth_user
from app.core.database import get_db

router = APIRouter(prefix="/api/compliance", tags=["compliance"])

_STATUS_BY_ERROR: dict[type[ComplianceError], int] = {
    RequestConflict: status.HTTP_409_CONFLICT,
    DuplicateActiveConsent: status.HTTP_409_CONFLICT,
    InvalidTransition: status.HTTP_409_CONFLICT,
    RequestNotFound: status.HTTP_404_NOT_FOUND,
    NoActiveConsent: status.HTTP_404_NOT_FOUND,
    ArtifactExpired: status.HTTP_410_GONE,
    InvalidRequest: status.HTTP_422_UNPROCESSABLE_ENTITY,
}


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


@dataclass
class ActorUser:
    user_id: str
    permissions: set[str]
    correlation_id: str | None = None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def _compliance_error(request: Request, exc: ComplianceError) -> JSONResponse:
    details: dict[str, Any] | None = None
    if isinstance(exc, RequestConflict) and exc.existing_id is not None:
        details = {"existing_request_id": str(exc.existing_id)}
    return error_response(
        request,
        status_code=_STATUS_BY_ERROR.get(type(exc), status.HTTP_500_INTERNAL_SERVER_ERROR),
        code=exc.code,
        message=str(exc),
        details=details,
    )


def _http_error(request: Request, exc: HTTPException, code: str) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=code,
        message=str(exc.detail),
        details=exc.detail,
    )


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    return ActorUser(
        user_id=auth_user.sub,
        permissions=set(auth_user.roles),
        correlation_id=get_correlation_id() or getattr(request.state, "correlation_id", None),
    )


def require_permission(user: ActorUser, permission: str) -> None:
    if permission not in user.permissions:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {permission}")


def _client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


def _request_read(service: ComplianceService, row: DataLifecycleRequest) -> LifecycleRequestRead:
    read = LifecycleRequestRead.model_validate(row)
    read.download_url = service.download_url(row)
    return read


@router.post("/exports", response_model=RequestAccepted, status_code=status.HTTP_202_ACCEPTED)
def submit_export(
    request: Request,
    dto: ExportRequestCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    service: ComplianceService = Depends(get_compliance_service),
) -> RequestAccepted | JSONResponse:
    try:
        require_permission(user, "compliance.requests.submit")
        request_id = service.submit_export(
            db,
            dto.email,
            requested_by=user.user_id,
            reason=dto.reason,
            ip_address=_client_ip(request),
        )
        return RequestAccepted(request_id=request_id, status=service.status(db, request_id).status)
    except HTTPException as exc:
        return _http_error(request, exc, "compliance_export_submit_failed")
    except ComplianceError as exc:
        return _compliance_error(request, exc)


@router.post("/deletions", response_model=RequestAccepted, status_code=status.HTTP_202_ACCEPTED)
def submit_deletion(
    request: Request,
    dto: DeletionRequestCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    service: ComplianceService = Depends(get_compliance_service),
) -> RequestAccepted | JSONResponse:
    try:
        require_permission(user, "compliance.requests.submit")
        request_id = service.submit_deletion(
            db,
            dto.email,
            dto.strategy,
            requested_by=user.user_id,
            reason=dto.reason,
            ip_address=_client_ip(request),
            retention_until=dto.retention_until,
        )
        return RequestAccepted(request_id=request_id, status=service.status(db, request_id).status)
    except HTTPException as exc:
        return _http_error(request, exc, "compliance_deletion_submit_failed")
    except ComplianceError as exc:
        return _compliance_error(request, exc)


@router.get("/requests/{request_id}", response_model=LifecycleRequestRead)
def get_request(
    request: Request,
    request_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    service: ComplianceService = Depends(get_compliance_service),
) -> LifecycleRequestRead | JSONResponse:
    try:
        require_permission(user, "compliance.requests.read")
        return _request_read(service, service.status(db, request_id))
    except HTTPException as exc:
        return _http_error(request, exc, "compliance_request_read_failed")
    except ComplianceError as exc:
        return _compliance_error(request, exc)


@router.get("/subjects/requests", response_model=list[LifecycleRequestRead])
def list_subject_requests(
    request: Request,
    email: str = Query(min_length=3),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    service: ComplianceService = Depends(get_compliance_service),
) -> list[LifecycleRequestRead] | JSONResponse:
    try:
        require_permission(user, "compliance.requests.read")
        return [_request_read(service, row) for row in service.requests_for_subject(db, email)]
    except HTTPException as exc:
        return _http_error(request, exc, "compliance_request_list_failed")


@router.get("/artifacts/{key}")
def download_artifact(
    request: Request,
    key: str,
    token: str = Query(min_length=1),
    service: ComplianceService = Depends(get_compliance_service),
) -> Response:
    try:
        content = service.artifacts.resolve(key, token)
    except ComplianceError as exc:
        return _compliance_error(request, exc)
    except FileNotFoundError:
        return error_response(
            request,
            status_code=status.HTTP_404_NOT_FOUND,
            code="compliance_artifact_not_found",
            message="Artifact not found",
        )
    return Response(
        content=content,
        media_type="application/json",
        headers={"Content-Disposition": f'attachment; filename="{key}"'},
    )


@router.post("/consents", response_model=ConsentRead, status_code=status.HTTP_201_CREATED)
def record_consent(
    request: Request,
    dto: ConsentCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    service: ComplianceService = Depends(get_compliance_service),
) -> ConsentRead | JSONResponse:
    try:
        require_permission(user, "compliance.consents.write")
        record = service.record_consent(
            db,
            dto.email,
            dto.consent_type,
            dto.given,
            dto.method,
            ConsentContext(
                ip_address=_client_ip(request),
                user_agent=request.headers.get("user-agent"),
                user_id=dto.user_id,
                lead_id=dto.lead_id,
                actor_id=user.user_id,
            ),
        )
        return ConsentRead.model_validate(record)
    except HTTPException as exc:
        return _http_error(request, exc, "compliance_consent_record_failed")
    except ComplianceError as exc:
        return _compliance_error(request, exc)


@router.post("/consents/withdraw", response_model=ConsentRead)
def withdraw_consent(
    request: Request,
    dto: ConsentWithdraw,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    service: ComplianceService = Depends(get_compliance_service),
) -> ConsentRead | JSONResponse:
    try:
        require_permission(user, "compliance.consents.write")
        record = service.withdraw_consent(db, dto.email, dto.consent_type, dto.reason, actor_id=user.user_id)
        return ConsentRead.model_validate(record)
    except HTTPException as exc:
        return _http_error(request, exc, "compliance_consent_withdraw_failed")
    except ComplianceError as exc:
        return _compliance_error(request, exc)


@router.get("/consents", response_model=list[ConsentRead])
def list_consents(
    request: Request,
    email: str = Query(min_length=3),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    service: ComplianceService = Depends(get_compliance_service),
) -> list[ConsentRead] | JSONResponse:
    try:
        require_permission(user, "compliance.consents.read")
        return [ConsentRead.model_validate(record) for record in service.list_consents(db, email)]
    except HTTPException as exc:
        return _http_error(request, exc, "compliance_consent_list_failed")


@router.get("/consents/check", response_model=ConsentCheckRead)
def check_consent(
    request: Request,
    email: str = Query(min_length=3),
    consent_type: ConsentType = Query(),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    service: ComplianceService = Depends(get_compliance_service),
) -> ConsentCheckRead | JSONResponse:
    try:
        require_permission(user, "compliance.consents.read")
        return ConsentCheckRead(
            email=email.strip().lower(),
            consent_type=consent_type,
            has_consent=service.has_consent(db, email, consent_type),
        )
    except HTTPException as exc:
        return _http_error(request, exc, "compliance_consent_check_failed")


def _as_utc(value: datetime | None) -> datetime | None:
    # Bounds without an offset are read as UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@router.get("/report", response_model=ComplianceReportRead)
def get_report(
    request: Request,
    start: datetime | None = Query(default=None),
    end: datetime | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    service: ComplianceService = Depends(get_compliance_service),
) -> ComplianceReportRead | JSONResponse:
    try:
        require_permission(user, "compliance.reports.read")
        start, end = _as_utc(start), _as_utc(end)
        if start is not None and end is not None and start >= end:
            raise InvalidRequest("start must be before end")
        return ComplianceReportRead.model_validate(service.report(db, start, end))
    except HTTPException as exc:
        return _http_error(request, exc, "compliance_report_failed")
    except ComplianceError as exc:
        return _compliance_error(request, exc)
