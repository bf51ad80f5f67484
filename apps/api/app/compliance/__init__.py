from app.compliance.errors import (
    ArtifactExpired,
    CollectionFailure,
    ComplianceError,
    DeletionFailure,
    DuplicateActiveConsent,
    InvalidRequest,
    InvalidTransition,
    NoActiveConsent,
    RequestConflict,
    RequestNotFound,
)
from app.compliance.models import ConsentRecord, DataLifecycleRequest

__all__ = [
    "ArtifactExpired",
    "CollectionFailure",
    "ComplianceError",
    "ConsentRecord",
    "DataLifecycleRequest",
    "DeletionFailure",
    "DuplicateActiveConsent",
    "InvalidRequest",
    "InvalidTransition",
    "NoActiveConsent",
    "RequestConflict",
    "RequestNotFound",
]
