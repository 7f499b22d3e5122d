"""
Task Model
Human-facing work items spawned by action steps
"""

from sqlalchemy import Column, DateTime, ForeignKey, JSON, String, Text
from sqlalchemy.orm import relationship

from ..core.timeutils import utcnow
from . import Base, new_id
from .status import TaskStatus


class Task(Base):
    """
    Task Model

    `payload` is a tagged variant keyed by `task_type`; it is validated
    through the typed models in hrflow.core.task_payloads before it is
    written, and `result` holds the validated completion input.
    """
    __tablename__ = "workflow_tasks"

    id = Column(String(36), primary_key=True, default=new_id)
    tenant_id = Column(String(64), nullable=False, index=True)
    run_id = Column(String(36), ForeignKey("workflow_runs.id"), nullable=False, index=True)
    step_id = Column(String(36), ForeignKey("workflow_run_steps.id"), nullable=False, index=True)

    # general | document | form
    task_type = Column(String(32), nullable=False)
    title = Column(String(255), nullable=False)

    # pending | completed | failed | canceled
    status = Column(String(32), nullable=False, default=TaskStatus.PENDING, index=True)

    assigned_to = Column(String(64), nullable=True, index=True)
    # employee | role | department (how the assignee was resolved)
    assignee_type = Column(String(32), nullable=True)
    due_at = Column(DateTime, nullable=True)

    payload = Column(JSON, nullable=False)

    # Example (document): {"document_id": "doc_123", "notes": "Signed copy"}
    result = Column(JSON, nullable=True)
    error = Column(Text, nullable=True)

    escalated_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    completed_by = Column(String(64), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    run = relationship("WorkflowRun")
    step = relationship("WorkflowRunStep")

    @property
    def is_terminal(self) -> bool:
        return self.status in TaskStatus.TERMINAL

    def __repr__(self):
        return f"<Task(id={self.id}, type='{self.task_type}', status='{self.status}')>"
