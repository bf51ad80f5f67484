from app.models.audit import AuditLog
from app.crm.models import (
	CRMActivity,
	CRMCommunication,
	CRMLead,
	CRMTask,
	CRMUser,
)
from app.compliance.models import ConsentRecord, DataLifecycleRequest

__all__ = [
	"AuditLog",
	"CRMActivity",
	"CRMCommunication",
	"CRMLead",
	"CRMTask",
	"CRMUser",
	"ConsentRecord",
	"DataLifecycleRequest",
]
