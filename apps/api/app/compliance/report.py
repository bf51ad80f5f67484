from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from app.compliance.models import ConsentRecord, DataLifecycleRequest, utcnow
from app.crm.models import CRMLead


def compliance_report(session: Session, start: datetime | None = None, end: datetime | None = None) -> dict[str, Any]:
    """Consent and request statistics for a period; open bounds cover all history."""
    consent_query = select(
        ConsentRecord.consent_type,
        func.count(ConsentRecord.id),
        func.sum(case((ConsentRecord.given.is_(True), 1), else_=0)),
        func.sum(case((ConsentRecord.withdrawn_at.is_not(None), 1), else_=0)),
    ).group_by(ConsentRecord.consent_type)
    request_query = select(
        DataLifecycleRequest.kind,
        DataLifecycleRequest.status,
        DataLifecycleRequest.strategy,
        func.count(DataLifecycleRequest.id),
    ).group_by(DataLifecycleRequest.kind, DataLifecycleRequest.status, DataLifecycleRequest.strategy)

    if start is not None:
        consent_query = consent_query.where(ConsentRecord.granted_at >= start)
        request_query = request_query.where(DataLifecycleRequest.requested_at >= start)
    if end is not None:
        consent_query = consent_query.where(ConsentRecord.granted_at < end)
        request_query = request_query.where(DataLifecycleRequest.requested_at < end)

    consents: dict[str, dict[str, int]] = {}
    for consent_type, total, given, withdrawn in session.execute(consent_query):
        consents[consent_type] = {"total": int(total), "given": int(given or 0), "withdrawn": int(withdrawn or 0)}

    exports: dict[str, int] = {}
    deletions: dict[str, dict[str, int]] = {}
    for kind, status, strategy, count in session.execute(request_query):
        if kind == "export":
            exports[status] = exports.get(status, 0) + int(count)
        else:
            by_strategy = deletions.setdefault(status, {})
            by_strategy[strategy or "unknown"] = by_strategy.get(strategy or "unknown", 0) + int(count)

    now = utcnow()
    on_hold = session.scalar(select(func.count(CRMLead.id)).where(CRMLead.gdpr_retention.is_(True))) or 0
    expired = (
        session.scalar(
            select(func.count(CRMLead.id)).where(
                CRMLead.gdpr_retention.is_(True),
                CRMLead.retention_until.is_not(None),
                CRMLead.retention_until < now,
            )
        )
        or 0
    )

    return {
        "period": {
            "start": start.isoformat() if start else None,
            "end": end.isoformat() if end else None,
        },
        "generated_at": now.isoformat(),
        "consents": consents,
        "exports": exports,
        "deletions": deletions,
        "retention": {"leads_on_hold": int(on_hold), "holds_expired": int(expired)},
    }
