from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app import audit
from app.compliance.errors import DuplicateActiveConsent, InvalidRequest, NoActiveConsent
from app.compliance.locks import KeyedLock, subject_locks
from app.compliance.models import CONSENT_METHODS, CONSENT_TYPES, ConsentRecord, utcnow
from app.compliance.registry import normalize_email, subject_ref
from app.compliance.repository import ConsentRepository
from app.metrics import observe_consent_event

logger = logging.getLogger("app.compliance.consent")

REFUSAL_REASON = "consent refused"


@dataclass(slots=True)
class ConsentContext:
    ip_address: str | None = None
    user_agent: str | None = None
    user_id: uuid.UUID | None = None
    lead_id: uuid.UUID | None = None
    actor_id: str = "system"


@dataclass(slots=True)
class ConsentLedger:
    """Grant and withdrawal history per subject and consent type.

    At most one grant per (subject, type) is effective at a time. A second grant
    while one is effective is rejected; a refusal closes the effective grant.
    """

    consents: ConsentRepository = field(default_factory=ConsentRepository)
    locks: KeyedLock = field(default_factory=lambda: subject_locks)

    def record(
        self,
        session: Session,
        subject_email: str,
        consent_type: str,
        given: bool,
        method: str = "explicit",
        context: ConsentContext | None = None,
    ) -> ConsentRecord:
        if consent_type not in CONSENT_TYPES:
            raise InvalidRequest(f"Unknown consent type: {consent_type}")
        if method not in CONSENT_METHODS:
            raise InvalidRequest(f"Unknown consent method: {method}")

        email = normalize_email(subject_email)
        context = context or ConsentContext()
        with self.locks.hold(("consent", email, consent_type)):
            effective = self.consents.effective_grant(session, email, consent_type, lock=True)
            if given and effective is not None:
                session.rollback()
                observe_consent_event(consent_type, "duplicate")
                raise DuplicateActiveConsent(consent_type)

            now = utcnow()
            if effective is not None:
                effective.withdrawn_at = now
                effective.withdrawal_reason = REFUSAL_REASON

            record = ConsentRecord(
                email=email,
                consent_type=consent_type,
                given=given,
                method=method,
                user_id=context.user_id,
                lead_id=context.lead_id,
                ip_address=context.ip_address,
                user_agent=context.user_agent,
                granted_at=now,
            )
            try:
                self.consents.add(session, record)
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                observe_consent_event(consent_type, "duplicate")
                raise DuplicateActiveConsent(consent_type) from exc

        action = "granted" if given else "refused"
        observe_consent_event(consent_type, action)
        audit.record(
            context.actor_id,
            "compliance.consent",
            str(record.id),
            f"consent.{action}",
            {"consent_type": consent_type, "method": method},
        )
        logger.info(
            "compliance.consent.recorded",
            extra={"subject_ref": subject_ref(email), "consent_type": consent_type, "status": action},
        )
        return record

    def withdraw(
        self,
        session: Session,
        subject_email: str,
        consent_type: str,
        reason: str | None = None,
        *,
        actor_id: str = "system",
    ) -> ConsentRecord:
        email = normalize_email(subject_email)
        with self.locks.hold(("consent", email, consent_type)):
            effective = self.consents.effective_grant(session, email, consent_type, lock=True)
            if effective is None:
                session.rollback()
                raise NoActiveConsent(consent_type)
            effective.withdrawn_at = utcnow()
            effective.withdrawal_reason = reason
            session.commit()

        observe_consent_event(consent_type, "withdrawn")
        audit.record(
            actor_id,
            "compliance.consent",
            str(effective.id),
            "consent.withdrawn",
            {"consent_type": consent_type, "reason": reason},
        )
        logger.info(
            "compliance.consent.withdrawn",
            extra={"subject_ref": subject_ref(email), "consent_type": consent_type, "status": "withdrawn"},
        )
        return effective

    def has_consent(self, session: Session, subject_email: str, consent_type: str) -> bool:
        return self.consents.effective_grant(session, normalize_email(subject_email), consent_type) is not None

    def list_consents(self, session: Session, subject_email: str) -> list[ConsentRecord]:
        return self.consents.list_for_subject(session, normalize_email(subject_email))
