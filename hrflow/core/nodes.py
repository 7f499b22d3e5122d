"""
Node System for HRFlow Workflow Engine

This module defines the node types that compose a workflow version:
- TriggerNode: Entry point, matched against incoming domain events
- ActionNode: Sends notifications and/or spawns human tasks
- DelayNode: Suspends its branch for a fixed duration
- LogicNode: Evaluates a boolean expression and picks one outgoing edge

Plus the edge and metadata models of a definition.

All models are immutable (frozen) Pydantic models with validation.
"""

from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from .exceptions import ValidationError
from .task_payloads import TaskPayload, pydantic_defects
from .timeutils import duration_to_timedelta, normalize_unit, resolve_due_at, utcnow

# Builder UI names -> domain event names
EVENT_ALIASES = {
    "new_hire": "employee_hired",
    "hire": "employee_hired",
    "termination": "termination_scheduled",
    "offboarding": "termination_scheduled",
}


def normalize_event_type(event_type: str) -> str:
    event_type = (event_type or "").strip().lower()
    return EVENT_ALIASES.get(event_type, event_type)


class _FrozenModel(BaseModel):
    class Config:
        frozen = True
        extra = "forbid"


# ============================================================================
# NODE CONFIGS
# ============================================================================

class TriggerConfig(_FrozenModel):
    """
    Example:
        {"event": "new_hire", "conditions": ["payload.department == 'engineering'"]}
    """

    event: str = Field(..., min_length=1)
    # Every condition must hold against the trigger context
    conditions: List[str] = Field(default_factory=list)

    @property
    def event_type(self) -> str:
        return normalize_event_type(self.event)


class AssigneeSpec(_FrozenModel):
    """How to find who a task is for (resolved by the Employee Directory)."""

    type: Literal["employee", "role", "department"] = "employee"
    id: Optional[str] = None
    role: Optional[str] = None
    department_id: Optional[str] = Field(
        None, validation_alias=AliasChoices("department_id", "departmentId")
    )

    @model_validator(mode="after")
    def check_lookup_key(self):
        if self.type == "role" and not self.role:
            raise ValueError("role assignee requires 'role'")
        if self.type == "department" and not self.department_id:
            raise ValueError("department assignee requires 'department_id'")
        return self


class DueSpec(_FrozenModel):
    days: Optional[float] = None
    hours: Optional[float] = None
    relative: Optional[str] = None
    absolute: Optional[str] = None

    @model_validator(mode="after")
    def check_resolvable(self):
        # Raises ValueError for malformed relative/absolute values
        resolve_due_at(self.model_dump(exclude_none=True), utcnow())
        return self


class NotificationConfig(_FrozenModel):
    template: str = Field(..., min_length=1)
    recipients: List[str] = Field(default_factory=lambda: ["employee"])
    subject: Optional[str] = None


ActionKind = Literal[
    "send_email",
    "send_notification",
    "assign_task",
    "collect_documents",
    "request_approval",
    "revoke_access",
]

_TASK_ACTIONS = ("assign_task", "collect_documents", "request_approval")
_NOTIFY_ACTIONS = ("send_email", "send_notification")


def _lift_task(item):
    # Plain titles are general tasks
    if isinstance(item, str):
        return {"task_type": "general", "title": item}
    if isinstance(item, dict):
        return {"task_type": "general", **item}
    return item


class ActionConfig(_FrozenModel):
    """
    Examples:
        {"action": "send_email", "notification": {"template": "welcome"}}
        {"action": "collect_documents",
         "tasks": [{"task_type": "document", "title": "Upload I-9", "document_type": "i9"}],
         "assignee": {"type": "employee"}, "due": {"relative": "Day +3"}}
        {"action": "assign_task", "tasks": ["Set up laptop"], "due_date": {"relative": "Day 1"}}
        {"action": "collect_documents", "documents": ["i9", "w4"]}
    """

    action: ActionKind
    notification: Optional[NotificationConfig] = None
    tasks: List[TaskPayload] = Field(default_factory=list)
    assignee: Optional[AssigneeSpec] = Field(
        None, validation_alias=AliasChoices("assignee", "assigned_to", "assignedTo")
    )
    due: Optional[DueSpec] = Field(None, validation_alias=AliasChoices("due", "due_date", "dueDate"))

    # A human confirms the action before the branch continues
    requires_confirmation: bool = Field(
        False, validation_alias=AliasChoices("requires_confirmation", "requiresConfirmation")
    )

    # Retry budget for collaborator failures
    max_attempts: int = Field(3, ge=1, le=20)

    @model_validator(mode="before")
    @classmethod
    def lift_document_list(cls, data):
        """`documents: ["i9", ...]` is shorthand for one document task per type."""
        if not isinstance(data, dict) or "documents" not in data:
            return data
        data = dict(data)
        documents = data.pop("documents") or []
        if not isinstance(documents, list):
            raise ValueError("'documents' must be a list of document types")
        tasks = list(data.get("tasks") or [])
        for doc in documents:
            if isinstance(doc, str):
                doc = {"title": f"Upload {doc}", "document_type": doc}
            if isinstance(doc, dict):
                doc = {"task_type": "document", **doc}
            tasks.append(doc)
        data["tasks"] = tasks
        return data

    @field_validator("tasks", mode="before")
    @classmethod
    def default_task_type(cls, v):
        if isinstance(v, list):
            return [_lift_task(item) for item in v]
        return v

    @model_validator(mode="after")
    def check_action_shape(self):
        if self.action in _TASK_ACTIONS and not self.tasks:
            raise ValueError(f"'{self.action}' action must declare at least one task")
        if self.action == "collect_documents" and any(t.task_type != "document" for t in self.tasks):
            raise ValueError("'collect_documents' action only accepts document tasks")
        return self

    @property
    def sends_notification(self) -> bool:
        return self.notification is not None or self.action in _NOTIFY_ACTIONS

    @property
    def spawns_tasks(self) -> bool:
        return bool(self.tasks) or self.requires_confirmation


class DelayConfig(_FrozenModel):
    """
    Examples:
        {"duration": {"value": 1, "unit": "days"}}
        {"value": 2, "unit": "hours"}
    """

    value: float = Field(..., ge=0)
    unit: str = "days"

    @model_validator(mode="before")
    @classmethod
    def lift_duration(cls, data):
        if isinstance(data, dict) and isinstance(data.get("duration"), dict):
            return dict(data["duration"])
        return data

    @field_validator("unit")
    @classmethod
    def validate_unit(cls, v: str) -> str:
        return normalize_unit(v)

    @property
    def seconds(self) -> float:
        return duration_to_timedelta(self.value, self.unit).total_seconds()


class LogicConfig(_FrozenModel):
    """
    Example:
        {"expression": "trigger.department == 'engineering'",
         "positive_label": "Yes", "negative_label": "No"}
    """

    expression: str = Field(..., min_length=1)
    positive_label: str = Field("Yes", validation_alias=AliasChoices("positive_label", "positiveLabel"))
    negative_label: str = Field("No", validation_alias=AliasChoices("negative_label", "negativeLabel"))


# ============================================================================
# NODES
# ============================================================================

class BaseNode(_FrozenModel):
    """
    Base class for all workflow nodes.

    - id: node key, unique within a version
    - label: optional human-readable label
    - required: a failed required node fails the whole run; a failed
      optional node only ends its own branch
    """

    id: str = Field(..., min_length=1, description="Unique node key")
    type: Literal["trigger", "action", "delay", "logic"]
    label: Optional[str] = None
    required: bool = True

    # Canvas coordinates from the builder; ignored by the engine
    position: Optional[Dict[str, Any]] = None

    @field_validator("id")
    @classmethod
    def validate_id_not_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Node ID cannot be empty")
        return v

    @property
    def display_name(self) -> str:
        return self.label or self.id


class TriggerNode(BaseNode):
    type: Literal["trigger"] = "trigger"
    config: TriggerConfig


class ActionNode(BaseNode):
    """
    Runs once, when the first branch reaches it. Branches that arrive later
    end there and do not wait for each other (no AND-join).
    """

    type: Literal["action"] = "action"
    config: ActionConfig


class DelayNode(BaseNode):
    type: Literal["delay"] = "delay"
    config: DelayConfig


class LogicNode(BaseNode):
    """
    Evaluates once, when the first branch reaches it. Branches that arrive
    later end there.
    """

    type: Literal["logic"] = "logic"
    config: LogicConfig

    def outcome_for(self, condition: Optional[str]) -> Optional[bool]:
        """Map an outgoing edge condition to the outcome it selects."""
        if condition is None:
            return None
        text = condition.strip().lower()
        if text in ("true", "yes", self.config.positive_label.strip().lower()):
            return True
        if text in ("false", "no", self.config.negative_label.strip().lower()):
            return False
        return None


NodeType = Union[TriggerNode, ActionNode, DelayNode, LogicNode]

NODE_CLASSES = {
    "trigger": TriggerNode,
    "action": ActionNode,
    "delay": DelayNode,
    "logic": LogicNode,
}


def create_node_from_dict(node_data: Dict[str, Any]) -> NodeType:
    """
    Factory function: Creates the appropriate node type from a dictionary.

    Raises:
        ValidationError: unknown node type or invalid node fields/config

    Example:
        >>> node = create_node_from_dict(
        ...     {"id": "wait", "type": "delay", "config": {"duration": {"value": 1, "unit": "days"}}}
        ... )
        >>> isinstance(node, DelayNode)
        True
    """
    node_id = node_data.get("id", "?") if isinstance(node_data, dict) else "?"
    node_type = node_data.get("type") if isinstance(node_data, dict) else None

    node_class = NODE_CLASSES.get(node_type)
    if not node_class:
        raise ValidationError(
            f"Invalid node '{node_id}'",
            [f"node '{node_id}': unknown node type '{node_type}' "
             f"(valid types: {', '.join(NODE_CLASSES)})"],
        )

    data = dict(node_data)
    data.setdefault("config", {})
    try:
        return node_class.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(
            f"Invalid node '{node_id}'", pydantic_defects(e, prefix=f"node '{node_id}'")
        )


# ============================================================================
# EDGES AND METADATA
# ============================================================================

class EdgeDefinition(_FrozenModel):
    source: str = Field(..., min_length=1, validation_alias=AliasChoices("source", "from"))
    target: str = Field(..., min_length=1, validation_alias=AliasChoices("target", "to"))
    condition: Optional[str] = None
    position: Optional[int] = None
    label: Optional[str] = None


class DefinitionMetadata(BaseModel):
    """
    Workflow-level settings. Unknown keys (builder name, description) are kept.

    completion:
        all_branches - the run completes when every branch has terminated
        any_branch   - the run completes when the first branch terminates
    """

    completion: Literal["all_branches", "any_branch"] = "all_branches"

    class Config:
        frozen = True
        extra = "allow"
