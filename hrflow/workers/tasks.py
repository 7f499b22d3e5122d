"""
Celery Tasks for HRFlow

This module defines the asynchronous entry points of the engine.

Main Tasks:
- advance_run_task: make all progress currently possible on a run
- dispatch_event_task: turn a domain event into runs
- sweep_action_queue_task: fire due delays/retries and recover stalled runs
- escalate_overdue_task: surface overdue tasks

Task Design Principles:
- Idempotent: redelivery is harmless (run leases, idempotency keys, CAS)
- Transactional: every engine transition commits on its own
- Resilient: retryable errors (see core.exceptions) are retried with backoff,
  everything else is logged and returned as a failed result
"""

import logging
from typing import Any, Dict, Optional

from pydantic import ValidationError as PydanticValidationError

from .celery_app import celery_app
from ..database import get_db
from ..core.collaborators import load_collaborators
from ..core.config import Settings
from ..core.dispatcher import TriggerEvent
from ..core.engine import WorkflowEngine
from ..core.exceptions import HRFlowException, should_retry
from ..core.logging_config import set_request_id
from ..core.task_payloads import pydantic_defects

logger = logging.getLogger(__name__)


def _engine(db, worker_id: Optional[str] = None) -> WorkflowEngine:
    settings = Settings.from_env()
    return WorkflowEngine(
        db,
        collaborators=load_collaborators(settings),
        settings=settings,
        worker_id=worker_id,
    )


def _handle_error(task, task_id: str, error: Exception) -> Dict[str, Any]:
    if should_retry(error):
        logger.warning(f"Task {task_id}: {error}; retrying in {task.default_retry_delay}s...")
        raise task.retry(exc=error)

    message = error.message if isinstance(error, HRFlowException) else str(error)
    logger.error(f"Task {task_id}: {message}")
    return {"status": "failed", "error": message}


@celery_app.task(
    bind=True,
    name="advance_run_task",
    max_retries=5,
    default_retry_delay=10,
    retry_backoff=True,
    retry_backoff_max=300,
    retry_jitter=True,
)
def advance_run_task(self, run_id: str) -> Dict[str, Any]:
    """
    Advance one run.

    Returns:
        {"run_id": ..., "advanced": bool, "status": run status}
        advanced is False when another worker holds the lease; that worker
        picks up this request before releasing.
    """
    task_id = self.request.id
    set_request_id(task_id)
    logger.info(f"Task {task_id}: Advancing run {run_id}")

    try:
        with get_db() as db:
            engine = _engine(db)
            advanced = engine.advance_run(run_id)
            run = engine.get_run(run_id)
            return {"run_id": run_id, "advanced": advanced, "status": run.status}
    except Exception as e:
        return _handle_error(self, task_id, e)


@celery_app.task(
    bind=True,
    name="dispatch_event_task",
    max_retries=5,
    default_retry_delay=30,
    retry_backoff=True,
    retry_backoff_max=600,
    retry_jitter=True,
)
def dispatch_event_task(self, event: Dict[str, Any]) -> Dict[str, Any]:
    """
    Dispatch a domain event.

    Args:
        event: TriggerEvent fields (event_id, event_type, tenant_id,
               employee_id, payload, occurred_at)

    Returns:
        {"event_id": ..., "run_ids": [...]}
    """
    task_id = self.request.id
    set_request_id(task_id)

    try:
        trigger_event = TriggerEvent(**event)
    except PydanticValidationError as e:
        # Malformed events never become valid on redelivery
        message = "Invalid trigger event: " + "; ".join(pydantic_defects(e))
        logger.error(f"Task {task_id}: {message}")
        return {"status": "failed", "error": message}

    try:
        logger.info(f"Task {task_id}: Dispatching {trigger_event.event_type} ({trigger_event.event_id})")
        with get_db() as db:
            runs = _engine(db).dispatch(trigger_event)
            return {"event_id": trigger_event.event_id, "run_ids": [run.id for run in runs]}
    except Exception as e:
        return _handle_error(self, task_id, e)


@celery_app.task(bind=True, name="sweep_action_queue_task", max_retries=0)
def sweep_action_queue_task(self, limit: Optional[int] = None) -> Dict[str, Any]:
    """Fire due queue entries, then recover runs whose advancing worker died."""
    task_id = self.request.id
    set_request_id(task_id)

    with get_db() as db:
        engine = _engine(db)
        report = engine.sweep(limit=limit)
        recovered = engine.recover_stalled_runs()

    result = report.to_dict()
    result["recovered_runs"] = recovered
    logger.info(f"Task {task_id}: Sweep finished", extra=result)
    return result


@celery_app.task(bind=True, name="escalate_overdue_task", max_retries=0)
def escalate_overdue_task(self) -> Dict[str, Any]:
    task_id = self.request.id
    set_request_id(task_id)

    with get_db() as db:
        escalated = _engine(db).escalate_overdue()
        task_ids = [task.id for task in escalated]

    if task_ids:
        logger.info(f"Task {task_id}: Escalated {len(task_ids)} overdue task(s)")
    return {"escalated": task_ids}
