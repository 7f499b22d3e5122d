"""
Employee Journey View

A share token is a bearer capability for exactly one run. Holding it lets
the employee read the journey projection (hero copy, progress, their own
tasks) and complete tasks of that run assigned to them. Every call resolves
token -> run first and never touches anything outside that run; a task
that is not covered by the token is reported as not found.
"""

import logging
import secrets
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..models import EmployeeJourneyView, Task, TaskStatus, WorkflowRun
from .exceptions import NotFoundError
from .task_manager import TaskManager
from .timeutils import Clock, utcnow

logger = logging.getLogger(__name__)

HERO_COPY = {
    "onboarding": ("Welcome! Let's get you started.", "View Your Journey"),
    "offboarding": ("Thank you for everything. Here's what's left before you go.", "View Remaining Steps"),
}


def generate_share_token() -> str:
    return secrets.token_urlsafe(32)


def create_journey_view(db: Session, run: WorkflowRun, kind: str, clock: Clock = utcnow) -> EmployeeJourneyView:
    """Create the run's capability row (caller commits)."""
    hero_copy, cta_label = HERO_COPY.get(kind, HERO_COPY["onboarding"])
    view = EmployeeJourneyView(
        run_id=run.id,
        share_token=generate_share_token(),
        hero_copy=hero_copy,
        cta_label=cta_label,
        created_at=clock(),
    )
    db.add(view)
    return view


class JourneyTask(BaseModel):
    id: str
    title: str
    task_type: str
    status: str
    due_at: Optional[datetime] = None
    payload: Dict[str, Any]
    result: Optional[Dict[str, Any]] = None

    class Config:
        frozen = True


class JourneyProjection(BaseModel):
    """What the employee sees. Contains nothing beyond their own run."""

    run_id: str
    status: str
    hero_copy: Optional[str] = None
    cta_label: Optional[str] = None
    tasks_total: int
    tasks_completed: int
    pending_tasks: List[JourneyTask]
    completed_tasks: List[JourneyTask]
    last_viewed_at: Optional[datetime] = None

    class Config:
        frozen = True

    @property
    def progress(self) -> float:
        return self.tasks_completed / self.tasks_total if self.tasks_total else 0.0


def _journey_task(task: Task) -> JourneyTask:
    return JourneyTask(
        id=task.id,
        title=task.title,
        task_type=task.task_type,
        status=task.status,
        due_at=task.due_at,
        payload=task.payload,
        result=task.result,
    )


class JourneyService:
    def __init__(self, db: Session, task_manager: TaskManager, clock: Clock = utcnow):
        self.db = db
        self.task_manager = task_manager
        self.clock = clock

    def _resolve(self, share_token: str):
        view = None
        if share_token:
            view = (
                self.db.query(EmployeeJourneyView)
                .filter(EmployeeJourneyView.share_token == share_token)
                .first()
            )
        if view is None:
            raise NotFoundError("Journey not found", resource="journey")
        run = self.db.get(WorkflowRun, view.run_id)
        return view, run

    def _employee_tasks(self, run: WorkflowRun) -> List[Task]:
        return (
            self.db.query(Task)
            .filter(Task.run_id == run.id, Task.assigned_to == run.employee_id)
            .order_by(Task.created_at)
            .all()
        )

    def get_journey(self, share_token: str) -> JourneyProjection:
        view, run = self._resolve(share_token)
        tasks = self._employee_tasks(run)

        view.last_viewed_at = self.clock()
        self.db.commit()

        pending = [_journey_task(t) for t in tasks if t.status == TaskStatus.PENDING]
        completed = [_journey_task(t) for t in tasks if t.status == TaskStatus.COMPLETED]
        return JourneyProjection(
            run_id=run.id,
            status=run.status,
            hero_copy=view.hero_copy,
            cta_label=view.cta_label,
            tasks_total=len([t for t in tasks if t.status != TaskStatus.CANCELED]),
            tasks_completed=len(completed),
            pending_tasks=pending,
            completed_tasks=completed,
            last_viewed_at=view.last_viewed_at,
        )

    def complete_task(self, share_token: str, task_id: str, payload: Optional[Dict[str, Any]] = None) -> JourneyTask:
        """
        Complete one of this run's tasks assigned to the employee.

        Raises:
            NotFoundError: unknown token, or a task the token does not cover
        """
        _, run = self._resolve(share_token)
        task = self.db.get(Task, task_id)
        if task is None or task.run_id != run.id or task.assigned_to != run.employee_id:
            logger.warning("Journey token used for a task outside its run", extra={"run_id": run.id})
            raise NotFoundError(f"Task {task_id} not found", resource="task", resource_id=task_id)

        task = self.task_manager.complete_task(task_id, payload, completed_by=run.employee_id)
        return _journey_task(task)
