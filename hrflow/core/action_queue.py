"""
Action queue writes.

An entry exists exactly while its step is suspended on the clock (a delay
or a retry). Entries are added in the transaction that suspends the step
and removed in the transaction that resumes or fails it.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from ..models import WorkflowActionQueue, WorkflowRunStep

QUEUE_KINDS = ("delay", "retry")


def enqueue(
    db: Session,
    step: WorkflowRunStep,
    resume_at: datetime,
    kind: str = "delay",
    attempts: int = 0,
    last_error: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> WorkflowActionQueue:
    """Add a queue entry for `step` (caller commits)."""
    if kind not in QUEUE_KINDS:
        raise ValueError(f"Unknown queue entry kind: {kind!r}")
    entry = WorkflowActionQueue(
        run_id=step.run_id,
        step_id=step.id,
        node_key=step.node_key,
        kind=kind,
        resume_at=resume_at,
        attempts=attempts,
        last_error=last_error,
        entry_metadata=metadata,
    )
    if now is not None:
        entry.created_at = now
        entry.updated_at = now
    db.add(entry)
    return entry
