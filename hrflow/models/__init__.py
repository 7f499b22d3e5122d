"""
Models module - SQLAlchemy database models
"""

import uuid

from sqlalchemy.orm import declarative_base

Base = declarative_base()


def new_id() -> str:
    """Primary keys are UUID4 strings (portable across SQLite and PostgreSQL)."""
    return str(uuid.uuid4())


# Import models after Base is defined to avoid circular imports
from .status import RunStatus, StepStatus, TaskStatus, WorkflowStatus  # noqa: E402
from .workflow import Workflow, WorkflowVersion, WorkflowNode, WorkflowEdge, WorkflowTemplate  # noqa: E402
from .run import WorkflowRun, WorkflowRunState, WorkflowRunStep  # noqa: E402
from .task import Task  # noqa: E402
from .action_queue import WorkflowActionQueue  # noqa: E402
from .event import WorkflowEvent  # noqa: E402
from .journey import EmployeeJourneyView  # noqa: E402

__all__ = [
    "Base",
    "new_id",
    "RunStatus",
    "StepStatus",
    "TaskStatus",
    "WorkflowStatus",
    "Workflow",
    "WorkflowVersion",
    "WorkflowNode",
    "WorkflowEdge",
    "WorkflowTemplate",
    "WorkflowRun",
    "WorkflowRunState",
    "WorkflowRunStep",
    "Task",
    "WorkflowActionQueue",
    "WorkflowEvent",
    "EmployeeJourneyView",
]
