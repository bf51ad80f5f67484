from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Protocol

from celery import Celery

logger = logging.getLogger("app.compliance.queue")

EXECUTE_TASK_NAME = "app.compliance.execute_request"

RequestHandler = Callable[[uuid.UUID], Any]
FailureCallback = Callable[[uuid.UUID, BaseException], None]


class RequestQueue(Protocol):
    """Hands a request id to whatever runs ``RequestLifecycleManager.execute``.

    ``enqueue`` raises when the request could not be handed off; a handler error
    after a successful hand-off goes to the supervisor callback instead.
    """

    def enqueue(self, request_id: uuid.UUID) -> None: ...


def log_worker_failure(request_id: uuid.UUID, exc: BaseException) -> None:
    logger.error(
        "compliance.worker.failed",
        exc_info=(type(exc), exc, exc.__traceback__),
        extra={"request_id": str(request_id), "error": str(exc)},
    )


class InlineRequestQueue:
    def __init__(self, handler: RequestHandler, on_failure: FailureCallback | None = None) -> None:
        self.handler = handler
        self.on_failure = on_failure or log_worker_failure

    def enqueue(self, request_id: uuid.UUID) -> None:
        try:
            self.handler(request_id)
        except Exception as exc:
            self.on_failure(request_id, exc)


class ThreadPoolRequestQueue:
    def __init__(
        self,
        handler: RequestHandler,
        max_workers: int = 4,
        on_failure: FailureCallback | None = None,
    ) -> None:
        self.handler = handler
        self.on_failure = on_failure or log_worker_failure
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="compliance-worker")

    def enqueue(self, request_id: uuid.UUID) -> Future[None]:
        return self._executor.submit(self._run, request_id)

    def _run(self, request_id: uuid.UUID) -> None:
        try:
            self.handler(request_id)
        except Exception as exc:
            self.on_failure(request_id, exc)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


class CeleryRequestQueue:
    def __init__(self, app: Celery | None = None) -> None:
        if app is None:
            from app.core.celery_app import celery_app

            app = celery_app
        self.app = app

    def enqueue(self, request_id: uuid.UUID) -> None:
        self.app.send_task(EXECUTE_TASK_NAME, args=[str(request_id)])
