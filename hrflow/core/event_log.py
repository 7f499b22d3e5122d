"""
Event Log

Append-only audit trail. Every run, step and task transition writes exactly
one WorkflowEvent in the same transaction as the transition itself.
Positions are handed out from a counter on the run row with an atomic
`UPDATE ... SET event_seq = event_seq + 1`, so concurrent writers on the
same run serialize on that row and positions stay dense and monotonic.

There is deliberately no update or delete API.
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from ..models import WorkflowEvent, WorkflowRun
from .exceptions import NotFoundError
from .timeutils import Clock, utcnow

logger = logging.getLogger(__name__)


class EventType:
    RUN_CREATED = "run_created"
    RUN_STARTED = "run_started"
    RUN_COMPLETED = "run_completed"
    RUN_FAILED = "run_failed"
    RUN_CANCELED = "run_canceled"

    STEP_QUEUED = "step_queued"
    STEP_WAITING_INPUT = "step_waiting_input"
    STEP_COMPLETED = "step_completed"
    STEP_FAILED = "step_failed"
    STEP_CANCELED = "step_canceled"
    STEP_RETRY_SCHEDULED = "step_retry_scheduled"

    TASK_CREATED = "task_created"
    TASK_COMPLETED = "task_completed"
    TASK_FAILED = "task_failed"
    TASK_CANCELED = "task_canceled"
    TASK_OVERDUE = "task_overdue"


class EventLog:
    """
    Writes and reads WorkflowEvent rows.

    `append` only flushes; the caller owns the transaction so the event
    commits (or rolls back) together with the transition it records.
    """

    def __init__(self, db: Session, clock: Clock = utcnow):
        self.db = db
        self.clock = clock

    def append(
        self,
        run_id: str,
        event_type: str,
        payload: Optional[Dict[str, Any]] = None,
        step_id: Optional[str] = None,
        task_id: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> WorkflowEvent:
        self.db.flush()
        result = self.db.execute(
            update(WorkflowRun)
            .where(WorkflowRun.id == run_id)
            .values(event_seq=WorkflowRun.event_seq + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise NotFoundError(f"Run {run_id} not found", resource="run", resource_id=run_id)

        position = self.db.execute(
            select(WorkflowRun.event_seq).where(WorkflowRun.id == run_id)
        ).scalar_one()

        event = WorkflowEvent(
            run_id=run_id,
            position=position,
            event_type=event_type,
            step_id=step_id,
            task_id=task_id,
            payload=payload or {},
            created_by=created_by,
            created_at=self.clock(),
        )
        self.db.add(event)
        self.db.flush()

        logger.debug(
            f"Event {event_type} recorded",
            extra={"run_id": run_id, "position": position, "event_type": event_type},
        )
        return event

    def timeline(self, run_id: str) -> List[WorkflowEvent]:
        """All events of a run, ordered by position."""
        if self.db.get(WorkflowRun, run_id) is None:
            raise NotFoundError(f"Run {run_id} not found", resource="run", resource_id=run_id)
        return list(
            self.db.execute(
                select(WorkflowEvent)
                .where(WorkflowEvent.run_id == run_id)
                .order_by(WorkflowEvent.position)
            ).scalars()
        )

    def count(self, run_id: str, event_type: Optional[str] = None) -> int:
        query = self.db.query(WorkflowEvent).filter(WorkflowEvent.run_id == run_id)
        if event_type:
            query = query.filter(WorkflowEvent.event_type == event_type)
        return query.count()
