from __future__ import annotations

import uuid

from app.compliance.queue import EXECUTE_TASK_NAME
from app.compliance.service import get_compliance_service
from app.core.celery_app import celery_app
from app.core.database import SessionLocal


# No automatic retries: a failed request is terminal and needs a new submission.
@celery_app.task(name=EXECUTE_TASK_NAME, acks_late=True)
def execute_request_task(request_id: str) -> str:
    session = SessionLocal()
    try:
        request = get_compliance_service().lifecycle.execute(session, uuid.UUID(request_id))
        return request.status
    finally:
        session.close()
