from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from app.context import get_correlation_id

# Write-only sink. The durable audit pipeline drains these entries; nothing in
# this service reads them back.
audit_entries: list[dict[str, Any]] = []

SEVERITIES = {"low", "medium", "high", "critical"}


def record(
    actor_user_id: str,
    resource: str,
    resource_id: str | None,
    action: str,
    details: dict[str, Any] | None = None,
    *,
    severity: str = "low",
    success: bool = True,
    error_message: str | None = None,
    correlation_id: str | None = None,
) -> None:
    if severity not in SEVERITIES:
        raise ValueError(f"unknown audit severity: {severity}")
    audit_entries.append(
        {
            "id": str(uuid.uuid4()),
            "actor_user_id": actor_user_id,
            "resource": resource,
            "resource_id": resource_id,
            "action": action,
            "details": details or {},
            "severity": severity,
            "success": success,
            "error_message": error_message[:2000] if error_message else None,
            "correlation_id": correlation_id or get_correlation_id(),
            "occurred_at": datetime.now(timezone.utc).isoformat(),
        }
    )
