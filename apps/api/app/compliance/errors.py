from __future__ import annotations

import uuid


class ComplianceError(Exception):
    """Base error for consent and data-subject request handling."""

    code = "compliance_error"


class InvalidRequest(ComplianceError):
    code = "compliance_invalid_request"


class RequestConflict(ComplianceError):
    """Raised when a subject already has an in-flight request of the same kind."""

    code = "compliance_request_conflict"

    def __init__(self, kind: str, existing_id: uuid.UUID | None = None) -> None:
        self.kind = kind
        self.existing_id = existing_id
        super().__init__(f"An in-flight {kind} request already exists for this subject")


class RequestNotFound(ComplianceError):
    code = "compliance_request_not_found"

    def __init__(self, request_id: uuid.UUID) -> None:
        self.request_id = request_id
        super().__init__(f"Request {request_id} not found")


class InvalidTransition(ComplianceError):
    code = "compliance_invalid_transition"

    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Cannot move request from {current} to {target}")


class NoActiveConsent(ComplianceError):
    code = "compliance_no_active_consent"

    def __init__(self, consent_type: str) -> None:
        self.consent_type = consent_type
        super().__init__(f"No active {consent_type} consent to withdraw")


class DuplicateActiveConsent(ComplianceError):
    code = "compliance_duplicate_consent"

    def __init__(self, consent_type: str) -> None:
        self.consent_type = consent_type
        super().__init__(f"An active {consent_type} consent already exists")


class CollectionFailure(ComplianceError):
    code = "compliance_collection_failed"


class DeletionFailure(ComplianceError):
    code = "compliance_deletion_failed"


class ArtifactExpired(ComplianceError):
    code = "compliance_artifact_expired"
