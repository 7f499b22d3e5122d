"""
Task Manager

Creates the human tasks spawned by action steps and accepts their
completion. Completion is idempotent: the status flip is a single
`UPDATE ... WHERE status = 'pending'`, so of two concurrent submissions
exactly one wins, records `task_completed`, and advances the run; the
other gets the winner's stored result back.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from ..models import RunStatus, Task, TaskStatus, WorkflowRun, WorkflowRunStep
from .circuit_breaker import get_breaker
from .collaborators import Assignee, Collaborators
from .event_log import EventLog, EventType
from .exceptions import NotFoundError, RunCanceledError, TerminalRunError, ValidationError
from .nodes import ActionNode
from .task_payloads import (
    DocumentTaskCompletion,
    FormTaskCompletion,
    GeneralTaskPayload,
    parse_completion,
    parse_task_payload,
)
from .timeutils import Clock, utcnow

logger = logging.getLogger(__name__)


class TaskManager:
    """Lifecycle of human tasks: create, complete, fail, cancel, escalate."""

    def __init__(
        self,
        db: Session,
        events: Optional[EventLog] = None,
        collaborators: Optional[Collaborators] = None,
        clock: Clock = utcnow,
        advance_run: Optional[Callable[[str], Any]] = None,
    ):
        self.db = db
        self.clock = clock
        self.events = events or EventLog(db, clock=clock)
        self.collaborators = collaborators or Collaborators()
        self.advance_run = advance_run

    def get_task(self, task_id: str) -> Task:
        task = self.db.get(Task, task_id)
        if task is None:
            raise NotFoundError(f"Task {task_id} not found", resource="task", resource_id=task_id)
        return task

    # ------------------------------------------------------------------
    # Creation (called by the executor inside its transition)
    # ------------------------------------------------------------------

    def create_tasks(
        self,
        run: WorkflowRun,
        step: WorkflowRunStep,
        node: ActionNode,
        assignee: Assignee,
        due_at: Optional[datetime],
    ) -> List[Task]:
        templates = list(node.config.tasks)
        if node.config.requires_confirmation:
            templates.append(GeneralTaskPayload(
                title=f"Confirm: {node.display_name}",
                description=f"Confirm that '{node.config.action}' was carried out.",
            ))

        now = self.clock()
        created = []
        for template in templates:
            task = Task(
                tenant_id=run.tenant_id,
                run_id=run.id,
                step_id=step.id,
                task_type=template.task_type,
                title=template.title,
                status=TaskStatus.PENDING,
                assigned_to=assignee.id,
                assignee_type=assignee.type,
                due_at=due_at,
                payload=template.model_dump(mode="json"),
                created_at=now,
                updated_at=now,
            )
            self.db.add(task)
            self.db.flush()
            self.events.append(run.id, EventType.TASK_CREATED, {
                "task_type": task.task_type,
                "title": task.title,
                "assigned_to": task.assigned_to,
                "due_at": due_at.isoformat() if due_at else None,
            }, step_id=step.id, task_id=task.id)
            created.append(task)

        logger.info(
            f"Created {len(created)} task(s) for step '{step.node_key}'",
            extra={"run_id": run.id, "assigned_to": assignee.id},
        )
        return created

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    def _validated_result(self, task: Task, run: WorkflowRun, payload: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        completion = parse_completion(task.task_type, payload)
        result = completion.model_dump(exclude_none=True)

        if isinstance(completion, DocumentTaskCompletion):
            document = get_breaker("document_storage").call(
                self.collaborators.documents.resolve_document,
                task.tenant_id, run.employee_id, completion.document_id,
            )
            if document is None:
                raise ValidationError(
                    "Invalid document task completion",
                    [f"document '{completion.document_id}' could not be resolved"],
                )
            result["document"] = document

        elif isinstance(completion, FormTaskCompletion):
            form = parse_task_payload(task.payload)
            missing = completion.missing_fields(form)
            if missing:
                raise ValidationError(
                    "Invalid form task completion",
                    [f"required field '{name}' is missing" for name in missing],
                )
        return result

    def _check_run_open(self, run: WorkflowRun) -> None:
        if run.status == RunStatus.CANCELED:
            raise RunCanceledError(f"Run {run.id} was canceled", run_id=run.id)
        if run.status != RunStatus.IN_PROGRESS:
            raise TerminalRunError(f"Run {run.id} is already {run.status}", run_id=run.id)

    def _settled(self, task: Task) -> Task:
        """A terminal task comes back unchanged unless its run was canceled."""
        if task.status == TaskStatus.CANCELED:
            run = self.db.get(WorkflowRun, task.run_id, populate_existing=True)
            if run.status == RunStatus.CANCELED:
                raise RunCanceledError(f"Run {run.id} was canceled", run_id=run.id)
        return task

    def _guard_run(self, run_id: str, task_id: str) -> Optional[Task]:
        """
        Lock the run row for this transaction and re-check it is still in
        progress. If it is not, returns the task when another submission
        already settled it, otherwise raises.
        """
        touched = self.db.execute(
            update(WorkflowRun)
            .where(WorkflowRun.id == run_id, WorkflowRun.status == RunStatus.IN_PROGRESS)
            .values(updated_at=self.clock())
            .execution_options(synchronize_session=False)
        ).rowcount
        if touched:
            return None
        self.db.rollback()
        task = self.db.get(Task, task_id, populate_existing=True)
        if task.is_terminal:
            return self._settled(task)
        self._check_run_open(self.db.get(WorkflowRun, run_id, populate_existing=True))
        return task

    def complete_task(
        self, task_id: str, payload: Optional[Dict[str, Any]] = None, completed_by: Optional[str] = None
    ) -> Task:
        """
        Complete a pending task and advance its run.

        Idempotent: completing an already-terminal task returns it unchanged.

        Raises:
            NotFoundError: unknown task
            RunCanceledError: the task's run was canceled
            ValidationError: payload does not match the task type
            ExternalDependencyError: document storage unavailable
        """
        task = self.get_task(task_id)
        if task.is_terminal:
            return self._settled(task)

        run =self.db.get(WorkflowRun, task.run_id)
        self._check_run_open(run)
        result = self._validated_result(task, run, payload)

        now = self.clock()
        try:
            settled = self._guard_run(run.id, task_id)
            if settled is not None:
                return settled
            claimed = self.db.execute(
                update(Task)
                .where(Task.id == task_id, Task.status == TaskStatus.PENDING)
                .values(
                    status=TaskStatus.COMPLETED,
                    result=result,
                    completed_at=now,
                    completed_by=completed_by,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            ).rowcount
            if not claimed:
                # Lost the race: hand back what the winner stored
                self.db.rollback()
                return self._settled(self.db.get(Task, task_id, populate_existing=True))

            self.events.append(run.id, EventType.TASK_COMPLETED, {
                "task_type": task.task_type,
                "result": result,
            }, step_id=task.step_id, task_id=task_id, created_by=completed_by)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info("Task completed", extra={"run_id": run.id, "task_id": task_id, "task_type": task.task_type})

        if self.advance_run is not None:
            self.advance_run(run.id)
        return self.db.get(Task, task_id, populate_existing=True)

    def fail_task(self, task_id: str, reason: str, failed_by: Optional[str] = None) -> Task:
        """
        Mark a pending task failed (e.g. a declined approval). The step it
        belongs to fails with it.
        """
        task = self.get_task(task_id)
        if task.is_terminal:
            return task

        run = self.db.get(WorkflowRun, task.run_id)
        self._check_run_open(run)

        now = self.clock()
        try:
            settled = self._guard_run(run.id, task_id)
            if settled is not None:
                return settled
            claimed = self.db.execute(
                update(Task)
                .where(Task.id == task_id, Task.status == TaskStatus.PENDING)
                .values(status=TaskStatus.FAILED, error=reason, completed_at=now,
                        completed_by=failed_by, updated_at=now)
                .execution_options(synchronize_session=False)
            ).rowcount
            if not claimed:
                self.db.rollback()
                return self.db.get(Task, task_id, populate_existing=True)

            self.events.append(run.id, EventType.TASK_FAILED, {"reason": reason},
                               step_id=task.step_id, task_id=task_id, created_by=failed_by)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        if self.advance_run is not None:
            self.advance_run(run.id)
        return self.db.get(Task, task_id, populate_existing=True)

    def cancel_open_tasks(self, run_id: str, reason: str, created_by: Optional[str] = None) -> List[Task]:
        """Cancel a run's pending tasks; the caller commits."""
        now = self.clock()
        open_tasks = (
            self.db.query(Task)
            .filter(Task.run_id == run_id, Task.status == TaskStatus.PENDING)
            .order_by(Task.created_at)
            .all()
        )
        for task in open_tasks:
            task.status = TaskStatus.CANCELED
            task.completed_at = now
            task.error = reason
            self.events.append(run_id, EventType.TASK_CANCELED, {"reason": reason},
                               step_id=task.step_id, task_id=task.id, created_by=created_by)
        return open_tasks

    # ------------------------------------------------------------------
    # Queries and escalation
    # ------------------------------------------------------------------

    def list_tasks(
        self,
        run_id: Optional[str] = None,
        status: Optional[str] = None,
        assigned_to: Optional[str] = None,
    ) -> List[Task]:
        query = self.db.query(Task)
        if run_id:
            query = query.filter(Task.run_id == run_id)
        if status:
            query = query.filter(Task.status == status)
        if assigned_to:
            query = query.filter(Task.assigned_to == assigned_to)
        return query.order_by(Task.created_at).all()

    def list_overdue(self, now: Optional[datetime] = None, include_escalated: bool = True) -> List[Task]:
        now = now or self.clock()
        query = (
            self.db.query(Task)
            .join(WorkflowRun, WorkflowRun.id == Task.run_id)
            .filter(
                Task.status == TaskStatus.PENDING,
                Task.due_at.isnot(None),
                Task.due_at < now,
                WorkflowRun.status == RunStatus.IN_PROGRESS,
            )
        )
        if not include_escalated:
            query = query.filter(Task.escalated_at.is_(None))
        return query.order_by(Task.due_at).all()

    def escalate_overdue(self, now: Optional[datetime] = None) -> List[Task]:
        """
        Surface overdue tasks for escalation: one `task_overdue` event per task,
        ever. Tasks are never failed or completed here.
        """
        now = now or self.clock()
        escalated = []
        for task in self.list_overdue(now, include_escalated=False):
            try:
                claimed = self.db.execute(
                    update(Task)
                    .where(Task.id == task.id, Task.escalated_at.is_(None), Task.status == TaskStatus.PENDING)
                    .values(escalated_at=now)
                    .execution_options(synchronize_session=False)
                ).rowcount
                if not claimed:
                    self.db.rollback()
                    continue
                self.events.append(task.run_id, EventType.TASK_OVERDUE, {
                    "due_at": task.due_at.isoformat(),
                    "assigned_to": task.assigned_to,
                    "overdue_seconds": int((now - task.due_at).total_seconds()),
                }, step_id=task.step_id, task_id=task.id)
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise
            escalated.append(task)

        if escalated:
            logger.warning(f"Escalated {len(escalated)} overdue task(s)", extra={"count": len(escalated)})
        return escalated
