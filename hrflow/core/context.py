"""
Run Context

Read-only view of what a run knows: the trigger payload it was created
with plus the result of every step that has finished so far. Logic nodes
and notification templates read from it; nothing writes to it except the
executor, which records step results on the persisted run state.
"""

import copy
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional


class RunContext:
    """
    Snapshot of a run's accumulated context.

    Example:
        >>> ctx = RunContext({"department": "engineering"}, {"welcome": {"sent": True}},
        ...                  employee_id="emp_1", tenant_id="acme")
        >>> ctx.get("department")
        'engineering'
        >>> ctx.step_result("welcome")
        {'sent': True}
        >>> scope = ctx.as_scope()
        >>> scope["trigger"]["department"], scope["steps"]["welcome"]["sent"]
        ('engineering', True)
    """

    def __init__(
        self,
        trigger: Optional[Dict[str, Any]] = None,
        steps: Optional[Dict[str, Any]] = None,
        employee_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
    ):
        self._trigger: Dict[str, Any] = copy.deepcopy(trigger) if trigger else {}
        self._steps: Dict[str, Any] = copy.deepcopy(steps) if steps else {}
        self.employee_id = employee_id
        self.tenant_id = tenant_id

    @classmethod
    def for_run(cls, run, state=None) -> "RunContext":
        """Build from a WorkflowRun and its WorkflowRunState."""
        return cls(
            trigger=run.context or {},
            steps=(state.context if state is not None else None) or {},
            employee_id=run.employee_id,
            tenant_id=run.tenant_id,
        )

    def get(self, key: str, default: Any = None) -> Any:
        """Look up a trigger key, falling back to a step result with that node key."""
        if key in self._trigger:
            return self._trigger[key]
        return self._steps.get(key, default)

    def step_result(self, node_key: str) -> Any:
        return self._steps.get(node_key)

    @property
    def trigger(self) -> Mapping[str, Any]:
        return MappingProxyType(self._trigger)

    @property
    def steps(self) -> Mapping[str, Any]:
        return MappingProxyType(self._steps)

    def as_scope(self) -> Dict[str, Any]:
        """
        Name bindings for expressions.

        Trigger keys are available bare (`department`) and under `trigger` /
        `payload`; step results under `steps`. The reserved names win over
        trigger keys of the same name.
        """
        scope: Dict[str, Any] = copy.deepcopy(self._trigger)
        scope.update({
            "trigger": copy.deepcopy(self._trigger),
            "payload": copy.deepcopy(self._trigger),
            "steps": copy.deepcopy(self._steps),
            "employee_id": self.employee_id,
            "tenant_id": self.tenant_id,
        })
        scope["context"] = {**scope["trigger"], "steps": scope["steps"]}
        return scope

    def snapshot(self) -> Dict[str, Any]:
        return {
            "trigger": copy.deepcopy(self._trigger),
            "steps": copy.deepcopy(self._steps),
            "employee_id": self.employee_id,
            "tenant_id": self.tenant_id,
        }

    def __repr__(self) -> str:
        return f"RunContext(trigger_keys={list(self._trigger)}, steps={list(self._steps)})"
