from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator


ConsentType = Literal["marketing", "analytics", "functional", "data_processing"]
ConsentMethod = Literal["explicit", "implicit", "legitimate_interest"]
DeletionStrategy = Literal["full", "anonymize", "retain"]
RequestStatus = Literal["pending", "processing", "completed", "failed"]


def _normalize_email(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip().lower()
    return value


class SubjectScoped(BaseModel):
    email: EmailStr

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, value: Any) -> Any:
        return _normalize_email(value)


class ExportRequestCreate(SubjectScoped):
    reason: str | None = Field(default=None, max_length=2000)


class DeletionRequestCreate(SubjectScoped):
    strategy: DeletionStrategy
    reason: str | None = Field(default=None, max_length=2000)
    retention_until: datetime | None = None

    @field_validator("retention_until")
    @classmethod
    def retention_in_future(cls, value: datetime | None) -> datetime | None:
        if value is None:
            return value
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        if value <= datetime.now(timezone.utc):
            raise ValueError("retention_until must be in the future")
        return value


class RequestAccepted(BaseModel):
    request_id: UUID
    status: RequestStatus


class LifecycleRequestRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    subject_email: str
    kind: Literal["export", "deletion"]
    status: RequestStatus
    strategy: DeletionStrategy | None
    reason: str | None
    requested_by: str
    requested_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    error_message: str | None
    artifact_key: str | None
    artifact_expires_at: datetime | None
    retention_until: datetime | None
    download_url: str | None = None


class ConsentCreate(SubjectScoped):
    consent_type: ConsentType
    given: bool = True
    method: ConsentMethod = "explicit"
    user_id: UUID | None = None
    lead_id: UUID | None = None


class ConsentWithdraw(SubjectScoped):
    consent_type: ConsentType
    reason: str | None = Field(default=None, max_length=2000)


class ConsentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    email: str
    consent_type: ConsentType
    given: bool
    method: ConsentMethod
    user_id: UUID | None
    lead_id: UUID | None
    granted_at: datetime
    withdrawn_at: datetime | None
    withdrawal_reason: str | None


class ConsentCheckRead(BaseModel):
    email: str
    consent_type: ConsentType
    has_consent: bool


class ConsentStats(BaseModel):
    total: int
    given: int
    withdrawn: int


class RetentionStats(BaseModel):
    leads_on_hold: int
    holds_expired: int


class ComplianceReportRead(BaseModel):
    period: dict[str, str | None]
    generated_at: str
    consents: dict[str, ConsentStats]
    exports: dict[str, int]
    deletions: dict[str, dict[str, int]]
    retention: RetentionStats
