"""
Run Executor for HRFlow

Drives workflow runs through their compiled graph.

Execution model:
1. All state is durable. The per-run WorkflowRunState row holds the frontier
   (node keys ready to dispatch), the outstanding-branch counter, and the
   accumulated step results, so any worker can resume any run.
2. `advance_run` is re-entrant and idempotent. Each call records an
   advancement request, then tries to take the run's single-writer lease.
   If another worker holds it, the call returns; the holder sees the new
   request before it releases the lease and loops once more.
3. One advancement pass repeats three phases until nothing changes:
   - reconcile: waiting steps whose tasks are all terminal finish
   - propagate: each terminal step hands its branch token to its
     successors (logic nodes to exactly one edge; failed steps to none)
   - dispatch: frontier nodes execute by type (trigger, action, delay, logic)
4. Every step transition commits in its own transaction that starts by
   touching the run row with `WHERE status = 'in_progress'`. A concurrent
   cancel either happens before (the transition is abandoned) or waits for
   it (and then cleans up whatever it created).
5. The run completes when the outstanding-branch counter reaches zero
   (all_branches) or when the first branch ends (any_branch). A failed
   required step fails the run; a failed optional step ends its branch.
   Converging branches merge into one step that runs as soon as the first
   of them arrives; later arrivals end their branch at that step.

Suspension points are delay nodes (action-queue entry) and human tasks
(step waits in `waiting_input`). The scheduler resumes the former through
`resume_entry`; TaskManager.complete_task resumes the latter through
`advance_run`.
"""

import logging
import os
import socket
import uuid
from contextlib import contextmanager
from datetime import timedelta
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..models import (
    RunStatus,
    StepStatus,
    Task,
    TaskStatus,
    WorkflowActionQueue,
    WorkflowNode,
    WorkflowRun,
    WorkflowRunState,
    WorkflowRunStep,
    WorkflowStatus,
    new_id,
)
from .action_queue import enqueue
from .circuit_breaker import get_breaker
from .collaborators import Assignee, Collaborators
from .config import Settings
from .context import RunContext
from .definition_store import DefinitionStore
from .event_log import EventLog, EventType
from .exceptions import (
    ConflictError,
    ExpressionError,
    ExternalDependencyError,
    HRFlowException,
    NotFoundError,
    RunLockedError,
    TerminalRunError,
    get_error_category,
)
from .expressions import evaluate_condition
from .graph import CompiledGraph
from .journey import create_journey_view
from .logging_config import run_log_context
from .nodes import ActionNode, DelayNode, LogicNode, TriggerNode
from .task_manager import TaskManager
from .timeutils import Clock, resolve_due_at, utcnow

logger = logging.getLogger(__name__)


class _RunInactive(Exception):
    """The run left `in_progress` under us; abandon the current pass."""


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class RunExecutor:
    """
    Creates, advances, resumes and cancels runs.

    Example:
        >>> executor = RunExecutor(db, collaborators=load_collaborators())
        >>> run = executor.create_run(workflow_id, employee_id="emp_42",
        ...                           trigger_context={"department": "engineering"})
        >>> run.status
        'in_progress'
    """

    def __init__(
        self,
        db: Session,
        store: Optional[DefinitionStore] = None,
        events: Optional[EventLog] = None,
        collaborators: Optional[Collaborators] = None,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow,
        worker_id: Optional[str] = None,
    ):
        self.db = db
        self.clock = clock
        self.settings = settings or Settings()
        self.store = store or DefinitionStore(db, clock=clock)
        self.events = events or EventLog(db, clock=clock)
        self.collaborators = collaborators or Collaborators()
        self.worker_id = worker_id or default_worker_id()
        self.tasks = TaskManager(
            db,
            events=self.events,
            collaborators=self.collaborators,
            clock=clock,
            advance_run=self.advance_run,
        )

    # ========================================================================
    # RUN CREATION
    # ========================================================================

    def create_run(
        self,
        workflow_id: str,
        employee_id: Optional[str] = None,
        trigger_context: Optional[Dict[str, Any]] = None,
        trigger_event_id: Optional[str] = None,
        trigger_source: str = "manual",
        entry_nodes: Optional[List[str]] = None,
        created_by: Optional[str] = None,
        advance: bool = True,
    ) -> WorkflowRun:
        """
        Instantiate the workflow's active version for one employee.

        Idempotent per (workflow_id, employee_id, trigger_event_id): a repeat
        call returns the existing run.

        Args:
            entry_nodes: trigger node keys to start from (default: all triggers)
            advance: process the triggers' successors immediately

        Raises:
            NotFoundError: unknown workflow or no published version
            ConflictError: workflow archived
        """
        workflow = self.store.get_workflow(workflow_id)
        if workflow.status == WorkflowStatus.ARCHIVED:
            raise ConflictError(f"Workflow {workflow_id} is archived")

        existing = self._find_existing_run(workflow_id, employee_id, trigger_event_id)
        if existing is not None:
            logger.info(
                "Duplicate run request, returning existing run",
                extra={"run_id": existing.id, "trigger_event_id": trigger_event_id},
            )
            return existing

        graph = self.store.get_active_definition(workflow_id)
        frontier = list(entry_nodes) if entry_nodes else graph.trigger_keys
        for key in frontier:
            if not isinstance(graph.nodes.get(key), TriggerNode):
                raise NotFoundError(f"'{key}' is not a trigger of workflow {workflow_id}", resource="node", resource_id=key)

        now = self.clock()
        run = WorkflowRun(
            id=new_id(),
            tenant_id=workflow.tenant_id,
            workflow_id=workflow_id,
            version_id=graph.version_id,
            employee_id=employee_id,
            trigger_source=trigger_source,
            trigger_event_id=trigger_event_id,
            status=RunStatus.PENDING,
            context=dict(trigger_context or {}),
            created_by=created_by,
            created_at=now,
            updated_at=now,
        )
        state = WorkflowRunState(
            run_id=run.id,
            frontier=frontier,
            outstanding_branches=len(frontier),
            context={},
            updated_at=now,
        )

        try:
            self.db.add(run)
            self.db.add(state)
            self.db.flush()
            self.events.append(run.id, EventType.RUN_CREATED, {
                "workflow_id": workflow_id,
                "version_id": graph.version_id,
                "version_number": graph.version_number,
                "employee_id": employee_id,
                "trigger_source": trigger_source,
                "trigger_event_id": trigger_event_id,
            }, created_by=created_by)

            if employee_id:
                create_journey_view(self.db, run, workflow.kind, clock=self.clock)

            run.status = RunStatus.IN_PROGRESS
            run.started_at = now
            self.events.append(run.id, EventType.RUN_STARTED, {"entry_nodes": frontier}, created_by=created_by)
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            existing = self._find_existing_run(workflow_id, employee_id, trigger_event_id)
            if existing is not None:
                return existing
            raise ConflictError(f"Could not create run for workflow {workflow_id}")

        logger.info(
            f"Run created for workflow '{workflow.name}'",
            extra={"run_id": run.id, "workflow_id": workflow_id, "employee_id": employee_id},
        )

        if advance:
            self.advance_run(run.id)
            self.db.refresh(run)
        return run

    def _find_existing_run(
        self, workflow_id: str, employee_id: Optional[str], trigger_event_id: Optional[str]
    ) -> Optional[WorkflowRun]:
        if not trigger_event_id:
            return None
        return (
            self.db.query(WorkflowRun)
            .filter(
                WorkflowRun.workflow_id == workflow_id,
                WorkflowRun.employee_id == employee_id,
                WorkflowRun.trigger_event_id == trigger_event_id,
            )
            .first()
        )

    def get_run(self, run_id: str) -> WorkflowRun:
        run = self.db.get(WorkflowRun, run_id, populate_existing=True)
        if run is None:
            raise NotFoundError(f"Run {run_id} not found", resource="run", resource_id=run_id)
        return run

    # ========================================================================
    # LEASE
    # ========================================================================

    def _request_advance(self, run_id: str) -> None:
        self.db.execute(
            update(WorkflowRunState)
            .where(WorkflowRunState.run_id == run_id)
            .values(requested_generation=WorkflowRunState.requested_generation + 1)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()

    def _acquire_lease(self, run_id: str) -> bool:
        now = self.clock()
        acquired = self.db.execute(
            update(WorkflowRunState)
            .where(
                WorkflowRunState.run_id == run_id,
                or_(
                    WorkflowRunState.lease_owner.is_(None),
                    WorkflowRunState.lease_owner == self.worker_id,
                    WorkflowRunState.lease_expires_at < now,
                ),
            )
            .values(
                lease_owner=self.worker_id,
                lease_expires_at=now + timedelta(seconds=self.settings.run_lease_seconds),
            )
            .execution_options(synchronize_session=False)
        ).rowcount
        self.db.commit()
        return acquired == 1

    def _release_if_settled(self, run_id: str, generation: int) -> bool:
        """Release the lease unless a new advancement was requested meanwhile."""
        released = self.db.execute(
            update(WorkflowRunState)
            .where(
                WorkflowRunState.run_id == run_id,
                WorkflowRunState.lease_owner == self.worker_id,
                WorkflowRunState.requested_generation == generation,
            )
            .values(lease_owner=None, lease_expires_at=None, processed_generation=generation)
            .execution_options(synchronize_session=False)
        ).rowcount
        self.db.commit()
        return released == 1

    def _release_lease(self, run_id: str) -> None:
        self.db.execute(
            update(WorkflowRunState)
            .where(WorkflowRunState.run_id == run_id, WorkflowRunState.lease_owner == self.worker_id)
            .values(lease_owner=None, lease_expires_at=None)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()

    def _load_state(self, run_id: str) -> WorkflowRunState:
        state = self.db.get(WorkflowRunState, run_id, populate_existing=True)
        if state is None:
            raise NotFoundError(f"Run state for {run_id} not found", resource="run", resource_id=run_id)
        return state

    @contextmanager
    def _leased(self, run_id: str) -> Iterator[None]:
        """Hold the run lease for the block, then drain pending advancement requests."""
        if not self._acquire_lease(run_id):
            raise RunLockedError(f"Run {run_id} is being advanced by another worker", run_id=run_id)
        try:
            with run_log_context(run_id):
                yield
                self._drain(run_id)
        except Exception:
            self.db.rollback()
            self._release_lease(run_id)
            raise

    def _drain(self, run_id: str) -> None:
        while True:
            generation = self._load_state(run_id).requested_generation
            self._drive(run_id)
            if self._release_if_settled(run_id, generation):
                return
            state = self._load_state(run_id)
            if state.lease_owner != self.worker_id:
                logger.warning("Run lease lost during advancement", extra={"run_id": run_id})
                return
            # New request arrived; renew and go again
            self._acquire_lease(run_id)

    # ========================================================================
    # ADVANCEMENT
    # ========================================================================

    def advance_run(self, run_id: str) -> bool:
        """
        Make all progress currently possible on a run.

        Returns:
            True if this call performed the advancement, False if the run is
            terminal or another worker holds the lease (that worker will
            pick up this request before releasing).
        """
        run = self.get_run(run_id)
        if run.is_terminal:
            return False

        self._request_advance(run_id)
        try:
            with self._leased(run_id):
                pass
        except RunLockedError:
            logger.debug("Advance deferred to lease holder", extra={"run_id": run_id})
            return False
        return True

    @contextmanager
    def _transition(self, run_id: str) -> Iterator[None]:
        """One guarded transaction: only commits while the run is in progress."""
        try:
            touched = self.db.execute(
                update(WorkflowRun)
                .where(WorkflowRun.id == run_id, WorkflowRun.status == RunStatus.IN_PROGRESS)
                .values(updated_at=self.clock())
                .execution_options(synchronize_session=False)
            ).rowcount
            if not touched:
                raise _RunInactive()
            yield
            self.db.commit()
        except BaseException:
            self.db.rollback()
            raise

    def _drive(self, run_id: str) -> None:
        graph: Optional[CompiledGraph] = None
        try:
            while True:
                run = self.get_run(run_id)
                if run.status != RunStatus.IN_PROGRESS:
                    return
                if graph is None:
                    graph = self.store.get_definition(run.version_id)

                if self._reconcile_waiting(run):
                    continue
                if self._propagate_one(run, graph):
                    continue
                if self._dispatch_next(run, graph):
                    continue
                self._finish_if_done(run)
                return
        except _RunInactive:
            logger.info("Run is no longer in progress, stopping advancement", extra={"run_id": run_id})

    # ------------------------------------------------------------------
    # Phase 1: reconcile external facts
    # ------------------------------------------------------------------

    def _reconcile_waiting(self, run: WorkflowRun) -> bool:
        waiting = (
            self.db.query(WorkflowRunStep)
            .filter(WorkflowRunStep.run_id == run.id, WorkflowRunStep.status == StepStatus.WAITING_INPUT)
            .order_by(WorkflowRunStep.created_at)
            .all()
        )
        for step in waiting:
            tasks = self.db.query(Task).filter(Task.step_id == step.id).order_by(Task.created_at).all()
            if not tasks or not all(t.is_terminal for t in tasks):
                continue

            with self._transition(run.id):
                state = self._load_state(run.id)
                task_results = {
                    t.id: {"task_type": t.task_type, "status": t.status, "result": t.result}
                    for t in tasks
                }
                failed = [t for t in tasks if t.status != TaskStatus.COMPLETED]
                if failed:
                    reason = failed[0].error or f"task '{failed[0].title}' {failed[0].status}"
                    self._mark_step_failed(step, reason, extra={"tasks": task_results})
                else:
                    result = dict(step.result or {})
                    result["tasks"] = task_results
                    self._mark_step_completed(run, state, step, result)
            return True
        return False

    # ------------------------------------------------------------------
    # Phase 2: propagate branch tokens
    # ------------------------------------------------------------------

    def _propagate_one(self, run: WorkflowRun, graph: CompiledGraph) -> bool:
        step = (
            self.db.query(WorkflowRunStep)
            .filter(
                WorkflowRunStep.run_id == run.id,
                WorkflowRunStep.status.in_(StepStatus.TERMINAL),
                WorkflowRunStep.propagated.is_(False),
            )
            .order_by(WorkflowRunStep.completed_at, WorkflowRunStep.created_at)
            .first()
        )
        if step is None:
            return False

        with self._transition(run.id):
            state = self._load_state(run.id)
            step.propagated = True

            if step.status == StepStatus.FAILED and step.required:
                self._fail_run(run, state, step)
                return True

            new_keys: List[str] = []
            if step.status == StepStatus.COMPLETED:
                visited = {
                    key for (key,) in self.db.query(WorkflowRunStep.node_key)
                    .filter(WorkflowRunStep.run_id == run.id)
                }
                visited.update(state.frontier or [])
                for target in self._successors(graph, step):
                    # Branches converging on a visited node merge into its single step
                    if target not in visited and target not in new_keys:
                        new_keys.append(target)

            state.frontier = list(state.frontier or []) + new_keys
            state.outstanding_branches = max(state.outstanding_branches - 1 + len(new_keys), 0)

            branch_ended = not new_keys
            if branch_ended and step.status == StepStatus.COMPLETED and graph.completion == "any_branch":
                self._complete_run(run, state, reason=f"branch ended at '{step.node_key}'")
        return True

    def _successors(self, graph: CompiledGraph, step: WorkflowRunStep) -> List[str]:
        node = graph.node(step.node_key)
        if isinstance(node, LogicNode):
            outcome = (step.result or {}).get("outcome")
            edge = graph.select_logic_edge(node.id, bool(outcome))
            return [edge.target] if edge else []
        return [edge.target for edge in graph.outgoing(node.id)]

    # ------------------------------------------------------------------
    # Phase 3: dispatch frontier nodes
    # ------------------------------------------------------------------

    def _dispatch_next(self, run: WorkflowRun, graph: CompiledGraph) -> bool:
        state = self._load_state(run.id)
        if not state.frontier:
            return False

        with self._transition(run.id):
            frontier = list(state.frontier)
            node_key = frontier.pop(0)
            state.frontier = frontier

            exists = (
                self.db.query(WorkflowRunStep.id)
                .filter(WorkflowRunStep.run_id == run.id, WorkflowRunStep.node_key == node_key)
                .first()
            )
            if exists:
                logger.warning(
                    f"Frontier node '{node_key}' already has a step, dropping duplicate token",
                    extra={"run_id": run.id, "node_key": node_key},
                )
                state.outstanding_branches = max(state.outstanding_branches - 1, 0)
                return True

            node = graph.node(node_key)
            now = self.clock()
            step = WorkflowRunStep(
                id=new_id(),
                run_id=run.id,
                node_key=node_key,
                node_id=self._node_row_id(run.version_id, node_key),
                node_type=node.type,
                required=node.required,
                status=StepStatus.PENDING,
                started_at=now,
                created_at=now,
                updated_at=now,
            )
            self.db.add(step)
            self.db.flush()

            if isinstance(node, TriggerNode):
                self._mark_step_completed(run, state, step, {
                    "event": node.config.event_type,
                    "trigger_source": run.trigger_source,
                })
            elif isinstance(node, LogicNode):
                self._run_logic(run, state, step, node, graph)
            elif isinstance(node, DelayNode):
                self._schedule_delay(run, step, node, now)
            elif isinstance(node, ActionNode):
                step.status = StepStatus.QUEUED
                self.events.append(run.id, EventType.STEP_QUEUED, {
                    "node_key": node_key, "node_type": "action", "action": node.config.action,
                }, step_id=step.id)
                self._execute_action(run, state, step, node, retry_on_failure=True)
        return True

    def _node_row_id(self, version_id: str, node_key: str) -> Optional[str]:
        row = (
            self.db.query(WorkflowNode.id)
            .filter(WorkflowNode.version_id == version_id, WorkflowNode.node_key == node_key)
            .first()
        )
        return row[0] if row else None

    def _run_logic(self, run, state, step, node: LogicNode, graph: CompiledGraph) -> None:
        scope = RunContext.for_run(run, state).as_scope()
        try:
            outcome = evaluate_condition(node.config.expression, scope)
        except ExpressionError as e:
            self._mark_step_failed(step, e.message)
            return

        edge = graph.select_logic_edge(node.id, outcome)
        self._mark_step_completed(run, state, step, {
            "outcome": outcome,
            "label": node.config.positive_label if outcome else node.config.negative_label,
            "selected_edge": edge.key if edge else None,
            "target": edge.target if edge else None,
        })

    def _schedule_delay(self, run, step, node: DelayNode, now) -> None:
        resume_at = now + timedelta(seconds=node.config.seconds)
        step.status = StepStatus.QUEUED
        step.due_at = resume_at
        enqueue(
            self.db, step, resume_at, kind="delay",
            metadata={"value": node.config.value, "unit": node.config.unit}, now=now,
        )
        self.events.append(run.id, EventType.STEP_QUEUED, {
            "node_key": step.node_key,
            "node_type": "delay",
            "resume_at": resume_at.isoformat(),
        }, step_id=step.id)

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    def _execute_action(
        self, run, state, step: WorkflowRunStep, node: ActionNode, retry_on_failure: bool
    ) -> None:
        """
        Perform an action node's side effects.

        On ExternalDependencyError: with `retry_on_failure` a retry entry is
        queued with backoff; otherwise the error propagates (the scheduler
        owns the retry bookkeeping of an existing entry).
        """
        config = node.config
        ctx = RunContext.for_run(run, state)
        step.attempts = (step.attempts or 0) + 1
        try:
            assignee: Optional[Assignee] = None
            if config.spawns_tasks:
                assignee = get_breaker("employee_directory").call(
                    self.collaborators.directory.resolve_assignee,
                    run.tenant_id, run.employee_id, config.assignee,
                )

            message_id = None
            if config.sends_notification:
                template = config.notification.template if config.notification else config.action
                recipients = config.notification.recipients if config.notification else ["employee"]
                recipients = [run.employee_id if r == "employee" else r for r in recipients if r]
                message_id = get_breaker("notifications").call(
                    self.collaborators.notifications.send,
                    run.tenant_id, template, [r for r in recipients if r], ctx.snapshot(),
                )
        except ExternalDependencyError as e:
            if not retry_on_failure:
                raise
            self._schedule_retry(run, step, node, e)
            return
        except HRFlowException as e:
            self._mark_step_failed(step, e.message, extra={"error_category": get_error_category(e)})
            return

        result: Dict[str, Any] = {"action": config.action}
        if message_id:
            result["notification_id"] = message_id

        if config.spawns_tasks:
            due_at = resolve_due_at(config.due.model_dump(exclude_none=True) if config.due else None, self.clock())
            created = self.tasks.create_tasks(run, step, node, assignee, due_at)
            step.status = StepStatus.WAITING_INPUT
            step.assigned_to = assignee.id
            step.due_at = due_at
            step.result = result
            step.error = None
            self.events.append(run.id, EventType.STEP_WAITING_INPUT, {
                "node_key": step.node_key,
                "task_ids": [t.id for t in created],
                "assigned_to": assignee.id,
            }, step_id=step.id)
        else:
            self._mark_step_completed(run, state, step, result)

    def _schedule_retry(self, run, step: WorkflowRunStep, node: ActionNode, error: ExternalDependencyError) -> None:
        max_attempts = min(node.config.max_attempts, self.settings.queue_max_attempts)
        if step.attempts >= max_attempts:
            self._mark_step_failed(step, f"{error.message} (after {step.attempts} attempts)")
            return

        resume_at = self.clock() + timedelta(seconds=self.settings.backoff_seconds(step.attempts))
        step.status = StepStatus.QUEUED
        step.error = error.message
        enqueue(
            self.db, step, resume_at, kind="retry",
            attempts=step.attempts,
            last_error=error.message,
            metadata={"max_attempts": max_attempts, "dependency": error.dependency},
        )
        self.events.append(run.id, EventType.STEP_RETRY_SCHEDULED, {
            "node_key": step.node_key,
            "attempts": step.attempts,
            "resume_at": resume_at.isoformat(),
            "error": error.message,
        }, step_id=step.id)
        logger.warning(
            f"Action '{step.node_key}' failed, retry scheduled",
            extra={"run_id": run.id, "attempts": step.attempts, "error": error.message},
        )

    # ------------------------------------------------------------------
    # Step / run terminal transitions (caller holds a transition)
    # ------------------------------------------------------------------

    def _mark_step_completed(self, run, state, step: WorkflowRunStep, result: Dict[str, Any]) -> None:
        now = self.clock()
        step.status = StepStatus.COMPLETED
        step.result = result
        step.error = None
        step.completed_at = now
        state.context = {**(state.context or {}), step.node_key: result}
        self.events.append(run.id, EventType.STEP_COMPLETED, {
            "node_key": step.node_key,
            "node_type": step.node_type,
            "result": result,
        }, step_id=step.id)

    def _mark_step_failed(self, step: WorkflowRunStep, reason: str, extra: Optional[Dict[str, Any]] = None) -> None:
        step.status = StepStatus.FAILED
        step.error = reason
        step.completed_at = self.clock()
        payload = {"node_key": step.node_key, "node_type": step.node_type, "error": reason, "required": step.required}
        payload.update(extra or {})
        self.events.append(step.run_id, EventType.STEP_FAILED, payload, step_id=step.id)
        logger.warning(f"Step '{step.node_key}' failed: {reason}", extra={"run_id": step.run_id})

    def _fail_run(self, run: WorkflowRun, state: WorkflowRunState, step: WorkflowRunStep) -> None:
        error = TerminalRunError(
            f"Required step '{step.node_key}' failed: {step.error}", run_id=run.id, node_key=step.node_key
        )
        now = self.clock()
        run.status = RunStatus.FAILED
        run.failed_at = now
        run.last_error = error.message
        self._cancel_outstanding(run.id, reason="run failed")
        state.frontier = []
        state.outstanding_branches = 0
        self.events.append(run.id, EventType.RUN_FAILED, {
            "node_key": step.node_key,
            "error": error.message,
            "error_category": get_error_category(error),
        }, step_id=step.id)
        logger.error(error.message, extra={"run_id": run.id})

    def _complete_run(self, run: WorkflowRun, state: WorkflowRunState, reason: str) -> None:
        self._cancel_outstanding(run.id, reason="run completed")
        run.status = RunStatus.COMPLETED
        run.completed_at = self.clock()
        state.frontier = []
        state.outstanding_branches = 0
        completed_steps = (
            self.db.query(WorkflowRunStep)
            .filter(WorkflowRunStep.run_id == run.id, WorkflowRunStep.status == StepStatus.COMPLETED)
            .count()
        )
        self.events.append(run.id, EventType.RUN_COMPLETED, {
            "reason": reason,
            "steps_completed": completed_steps,
        })
        logger.info("Run completed", extra={"run_id": run.id, "steps_completed": completed_steps})

    def _finish_if_done(self, run: WorkflowRun) -> None:
        state = self._load_state(run.id)
        if state.outstanding_branches > 0 or state.frontier:
            return
        active = (
            self.db.query(WorkflowRunStep.id)
            .filter(WorkflowRunStep.run_id == run.id, WorkflowRunStep.status.in_(StepStatus.ACTIVE))
            .first()
        )
        if active:
            return
        with self._transition(run.id):
            self._complete_run(run, state, reason="all branches ended")

    def _cancel_outstanding(self, run_id: str, reason: str, created_by: Optional[str] = None) -> None:
        """Cancel non-terminal steps and tasks and drop queue entries, one event each."""
        now = self.clock()
        self.tasks.cancel_open_tasks(run_id, reason=reason, created_by=created_by)

        active_steps = (
            self.db.query(WorkflowRunStep)
            .filter(WorkflowRunStep.run_id == run_id, WorkflowRunStep.status.in_(StepStatus.ACTIVE))
            .order_by(WorkflowRunStep.created_at)
            .all()
        )
        for step in active_steps:
            step.status = StepStatus.CANCELED
            step.completed_at = now
            step.propagated = True
            self.events.append(run_id, EventType.STEP_CANCELED, {
                "node_key": step.node_key, "reason": reason,
            }, step_id=step.id, created_by=created_by)

        self.db.query(WorkflowActionQueue).filter(
            WorkflowActionQueue.run_id == run_id
        ).delete(synchronize_session=False)

    # ========================================================================
    # QUEUE RESUMPTION (called by the scheduler)
    # ========================================================================

    def resume_entry(self, entry_id: str) -> None:
        """
        Resume the step behind a due action-queue entry, then advance.

        The entry is deleted in the same transaction that resumes the step.

        Raises:
            RunLockedError: another worker holds the run lease
            ExternalDependencyError: a retried action failed again (entry kept)
        """
        entry = self.db.get(WorkflowActionQueue, entry_id)
        if entry is None:
            return
        run_id, step_id, kind = entry.run_id, entry.step_id, entry.kind

        with self._leased(run_id):
            run = self.get_run(run_id)
            if run.status != RunStatus.IN_PROGRESS:
                self._drop_entry(entry_id)
                return

            graph = self.store.get_definition(run.version_id)
            try:
                with self._transition(run_id):
                    entry = self.db.get(WorkflowActionQueue, entry_id)
                    step = self.db.get(WorkflowRunStep, step_id)
                    if entry is None:
                        return
                    if step is None or step.is_terminal:
                        self.db.delete(entry)
                        return

                    state = self._load_state(run_id)
                    node = graph.node(step.node_key)
                    if kind == "delay":
                        self._mark_step_completed(run, state, step, {
                            "scheduled_for": entry.resume_at.isoformat(),
                            "resumed_at": self.clock().isoformat(),
                        })
                    else:
                        step.attempts = entry.attempts
                        self._execute_action(run, state, step, node, retry_on_failure=False)
                    self.db.delete(entry)
            except _RunInactive:
                self._drop_entry(entry_id)
                return

        logger.info(f"Resumed {kind} entry", extra={"run_id": run_id, "step_id": step_id})

    def fail_entry(self, entry_id: str, reason: str) -> None:
        """Retry budget exhausted: fail the step, drop the entry, advance."""
        entry = self.db.get(WorkflowActionQueue, entry_id)
        if entry is None:
            return
        run_id, step_id = entry.run_id, entry.step_id

        with self._leased(run_id):
            try:
                with self._transition(run_id):
                    entry = self.db.get(WorkflowActionQueue, entry_id)
                    step = self.db.get(WorkflowRunStep, step_id)
                    if entry is None:
                        return
                    if step is not None and not step.is_terminal:
                        step.attempts = entry.attempts
                        self._mark_step_failed(step, reason, extra={"attempts": entry.attempts})
                    self.db.delete(entry)
            except _RunInactive:
                self._drop_entry(entry_id)

    def _drop_entry(self, entry_id: str) -> None:
        self.db.query(WorkflowActionQueue).filter(
            WorkflowActionQueue.id == entry_id
        ).delete(synchronize_session=False)
        self.db.commit()

    # ========================================================================
    # CANCELLATION
    # ========================================================================

    def cancel_run(self, run_id: str, canceled_by: Optional[str] = None, reason: Optional[str] = None) -> WorkflowRun:
        """
        Cancel a run. Cooperative: an in-flight advancement finishes its
        current transition, then observes the canceled status.

        Idempotent for already-canceled runs.

        Raises:
            NotFoundError: unknown run
            ConflictError: the run already completed or failed
        """
        run = self.get_run(run_id)
        now = self.clock()
        flipped = self.db.execute(
            update(WorkflowRun)
            .where(WorkflowRun.id == run_id, WorkflowRun.status.in_([RunStatus.PENDING, RunStatus.IN_PROGRESS]))
            .values(status=RunStatus.CANCELED, canceled_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        ).rowcount

        if not flipped:
            self.db.rollback()
            run = self.get_run(run_id)
            if run.status == RunStatus.CANCELED:
                return run
            raise ConflictError(f"Run {run_id} is already {run.status}")

        try:
            self.events.append(run_id, EventType.RUN_CANCELED, {"reason": reason}, created_by=canceled_by)
            self._cancel_outstanding(run_id, reason=reason or "run canceled", created_by=canceled_by)
            state = self._load_state(run_id)
            state.frontier = []
            state.outstanding_branches = 0
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info("Run canceled", extra={"run_id": run_id, "canceled_by": canceled_by})
        return self.get_run(run_id)
