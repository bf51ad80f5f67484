from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, String, Text, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base
from app.crm import models as crm_models  # noqa: F401


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


CONSENT_TYPES = ("marketing", "analytics", "functional", "data_processing")
CONSENT_METHODS = ("explicit", "implicit", "legitimate_interest")

REQUEST_KINDS = ("export", "deletion")
REQUEST_STATUSES = ("pending", "processing", "completed", "failed")
IN_FLIGHT_STATUSES = ("pending", "processing")
TERMINAL_STATUSES = ("completed", "failed")
DELETION_STRATEGIES = ("full", "anonymize", "retain")

_IN_FLIGHT_PREDICATE = text("status IN ('pending', 'processing')")
_EFFECTIVE_CONSENT_PREDICATE = text("given AND withdrawn_at IS NULL")


class ConsentRecord(Base):
    __tablename__ = "consent_record"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    consent_type: Mapped[str] = mapped_column(String(32), nullable=False)
    given: Mapped[bool] = mapped_column(Boolean, nullable=False)
    method: Mapped[str] = mapped_column(String(32), nullable=False)
    user_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_user.id", ondelete="SET NULL"),
        nullable=True,
    )
    lead_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_lead.id", ondelete="SET NULL"),
        nullable=True,
    )
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    granted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    withdrawn_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    withdrawal_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_consent_record_email_type", "email", "consent_type"),
        Index(
            "uq_consent_record_effective_grant",
            "email",
            "consent_type",
            unique=True,
            postgresql_where=_EFFECTIVE_CONSENT_PREDICATE,
            sqlite_where=_EFFECTIVE_CONSENT_PREDICATE,
        ),
    )

    @property
    def is_effective(self) -> bool:
        return self.given and self.withdrawn_at is None


class DataLifecycleRequest(Base):
    __tablename__ = "compliance_request"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    subject_email: Mapped[str] = mapped_column(String(255), nullable=False)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending", server_default="pending")
    strategy: Mapped[str | None] = mapped_column(String(16), nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    requested_by: Mapped[str] = mapped_column(String(255), nullable=False)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    correlation_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    artifact_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    artifact_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    retention_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_compliance_request_subject_status", "subject_email", "status"),
        Index("ix_compliance_request_requested_at", "requested_at"),
        Index(
            "uq_compliance_request_in_flight",
            "subject_email",
            "kind",
            unique=True,
            postgresql_where=_IN_FLIGHT_PREDICATE,
            sqlite_where=_IN_FLIGHT_PREDICATE,
        ),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
