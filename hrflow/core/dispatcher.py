"""
Trigger Dispatcher

Turns domain events (employee_hired, termination_scheduled, ...) into runs.
For every published workflow of the event's tenant whose active version
has a trigger on that event type with all conditions satisfied, exactly
one run is created. Redelivery of the same event is harmless: runs are
keyed by (workflow_id, employee_id, trigger_event_id).
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator
from sqlalchemy.orm import Session

from ..models import WorkflowRun
from .context import RunContext
from .definition_store import DefinitionStore
from .exceptions import ExpressionError
from .executor import RunExecutor
from .expressions import evaluate_condition
from .nodes import TriggerNode, normalize_event_type

logger = logging.getLogger(__name__)


class TriggerEvent(BaseModel):
    """
    Example:
        TriggerEvent(event_id="evt_981", event_type="employee_hired",
                     tenant_id="acme", employee_id="emp_42",
                     payload={"department": "engineering", "start_date": "2026-11-02"})
    """

    event_id: str = Field(..., min_length=1)
    event_type: str = Field(..., min_length=1)
    tenant_id: str = Field(..., min_length=1)
    employee_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: Optional[datetime] = None

    class Config:
        frozen = True
        extra = "forbid"

    @field_validator("event_type")
    @classmethod
    def normalize(cls, v: str) -> str:
        return normalize_event_type(v)

    def trigger_context(self) -> Dict[str, Any]:
        context = dict(self.payload)
        context.setdefault("event_type", self.event_type)
        context.setdefault("event_id", self.event_id)
        if self.occurred_at is not None:
            context.setdefault("occurred_at", self.occurred_at.isoformat())
        return context


class TriggerDispatcher:
    def __init__(self, db: Session, executor: RunExecutor, store: Optional[DefinitionStore] = None):
        self.db = db
        self.executor = executor
        self.store = store or executor.store

    def _conditions_hold(self, trigger: TriggerNode, event: TriggerEvent, scope: Dict[str, Any]) -> bool:
        for condition in trigger.config.conditions:
            try:
                if not evaluate_condition(condition, scope):
                    return False
            except ExpressionError as e:
                logger.warning(
                    f"Trigger condition on '{trigger.id}' could not be evaluated: {e.message}",
                    extra={"event_id": event.event_id},
                )
                return False
        return True

    def matching_triggers(self, workflow_version_id: str, event: TriggerEvent) -> List[TriggerNode]:
        graph = self.store.get_definition(workflow_version_id)
        scope = RunContext(
            trigger=event.trigger_context(),
            employee_id=event.employee_id,
            tenant_id=event.tenant_id,
        ).as_scope()
        return [t for t in graph.triggers_for(event.event_type) if self._conditions_hold(t, event, scope)]

    def dispatch(self, event: TriggerEvent) -> List[WorkflowRun]:
        """
        Create (or return the existing) run for every matching workflow.

        Raises:
            HRFlowException: creating a run failed; the event should be
                redelivered (runs already created are not duplicated)
        """
        runs = []
        for workflow in self.store.list_dispatchable(event.tenant_id):
            triggers = self.matching_triggers(workflow.active_version_id, event)
            if not triggers:
                continue

            run = self.executor.create_run(
                workflow.id,
                employee_id=event.employee_id,
                trigger_context=event.trigger_context(),
                trigger_event_id=event.event_id,
                trigger_source=f"event:{event.event_type}",
                entry_nodes=[t.id for t in triggers],
            )
            runs.append(run)

        logger.info(
            f"Dispatched {event.event_type} to {len(runs)} workflow(s)",
            extra={"event_id": event.event_id, "tenant_id": event.tenant_id, "runs": [r.id for r in runs]},
        )
        return runs
