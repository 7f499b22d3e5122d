"""
Workflow Engine for HRFlow

Single entry point used by the surrounding application (API layer, Celery
workers, scripts). It wires the components around one database session:

    DefinitionStore   publish / get_active_definition
    TriggerDispatcher dispatch
    RunExecutor       create_run / advance_run / cancel_run
    TaskManager       complete_task / fail_task / escalate_overdue
    ActionScheduler   sweep / recover_stalled_runs
    EventLog          get_run_timeline
    JourneyService    get_journey / complete_journey_task

Example:
    with get_db() as db:
        engine = WorkflowEngine(db)
        engine.publish(workflow_id)
        run = engine.create_run(workflow_id, employee_id="emp_42")
        for event in engine.get_run_timeline(run.id):
            print(event.position, event.event_type)
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from ..models import Task, WorkflowEvent, WorkflowRun, WorkflowVersion
from .collaborators import Collaborators
from .config import Settings
from .definition_store import DefinitionStore
from .dispatcher import TriggerDispatcher, TriggerEvent
from .event_log import EventLog
from .executor import RunExecutor
from .graph import CompiledGraph
from .journey import JourneyProjection, JourneyService, JourneyTask
from .scheduler import ActionScheduler, SweepReport
from .timeutils import Clock, utcnow

logger = logging.getLogger(__name__)


class WorkflowEngine:
    """Facade over the engine components for one session."""

    def __init__(
        self,
        db: Session,
        collaborators: Optional[Collaborators] = None,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow,
        worker_id: Optional[str] = None,
    ):
        self.db = db
        self.settings = settings or Settings()
        self.clock = clock
        self.store = DefinitionStore(db, clock=clock)
        self.events = EventLog(db, clock=clock)
        self.executor = RunExecutor(
            db,
            store=self.store,
            events=self.events,
            collaborators=collaborators,
            settings=self.settings,
            clock=clock,
            worker_id=worker_id,
        )
        self.tasks = self.executor.tasks
        self.scheduler = ActionScheduler(db, self.executor, settings=self.settings, clock=clock)
        self.dispatcher = TriggerDispatcher(db, self.executor, store=self.store)
        self.journeys = JourneyService(db, self.tasks, clock=clock)

    # Definitions

    def publish(self, workflow_id: str, published_by: Optional[str] = None) -> WorkflowVersion:
        return self.store.publish(workflow_id, published_by=published_by)

    def get_active_definition(self, workflow_id: str) -> CompiledGraph:
        return self.store.get_active_definition(workflow_id)

    # Runs

    def dispatch(self, event: TriggerEvent) -> List[WorkflowRun]:
        return self.dispatcher.dispatch(event)

    def create_run(
        self,
        workflow_id: str,
        employee_id: Optional[str] = None,
        trigger_context: Optional[Dict[str, Any]] = None,
        **kwargs,
    ) -> WorkflowRun:
        return self.executor.create_run(workflow_id, employee_id, trigger_context, **kwargs)

    def advance_run(self, run_id: str) -> bool:
        return self.executor.advance_run(run_id)

    def cancel_run(self, run_id: str, canceled_by: Optional[str] = None, reason: Optional[str] = None) -> WorkflowRun:
        return self.executor.cancel_run(run_id, canceled_by=canceled_by, reason=reason)

    def get_run(self, run_id: str) -> WorkflowRun:
        return self.executor.get_run(run_id)

    def get_run_timeline(self, run_id: str) -> List[WorkflowEvent]:
        return self.events.timeline(run_id)

    # Tasks

    def complete_task(
        self, task_id: str, payload: Optional[Dict[str, Any]] = None, completed_by: Optional[str] = None
    ) -> Task:
        return self.tasks.complete_task(task_id, payload, completed_by=completed_by)

    def fail_task(self, task_id: str, reason: str, failed_by: Optional[str] = None) -> Task:
        return self.tasks.fail_task(task_id, reason, failed_by=failed_by)

    def escalate_overdue(self, now: Optional[datetime] = None) -> List[Task]:
        return self.tasks.escalate_overdue(now)

    # Scheduling

    def sweep(self, now: Optional[datetime] = None, limit: Optional[int] = None) -> SweepReport:
        return self.scheduler.sweep(now=now, limit=limit)

    def recover_stalled_runs(self, now: Optional[datetime] = None) -> List[str]:
        return self.scheduler.recover_stalled_runs(now=now)

    # Employee journey (share-token capability)

    def get_journey(self, share_token: str) -> JourneyProjection:
        return self.journeys.get_journey(share_token)

    def complete_journey_task(
        self, share_token: str, task_id: str, payload: Optional[Dict[str, Any]] = None
    ) -> JourneyTask:
        return self.journeys.complete_task(share_token, task_id, payload)
