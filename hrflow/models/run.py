"""
Run Models
Workflow runs, their persisted advancement state, and per-node steps
"""

from sqlalchemy import (
    Boolean, Column, DateTime, ForeignKey, Integer, JSON, String, Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from ..core.timeutils import utcnow
from . import Base, new_id
from .status import RunStatus, StepStatus


class WorkflowRun(Base):
    """
    WorkflowRun Model

    One execution of a published version for one employee. The version is
    pinned at creation and never changes.
    """
    __tablename__ = "workflow_runs"
    __table_args__ = (
        # Idempotency key for at-least-once trigger delivery
        UniqueConstraint(
            "workflow_id", "employee_id", "trigger_event_id",
            name="uq_workflow_runs_trigger",
        ),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    tenant_id = Column(String(64), nullable=False, index=True)
    workflow_id = Column(String(36), ForeignKey("workflows.id"), nullable=False, index=True)
    version_id = Column(String(36), ForeignKey("workflow_versions.id"), nullable=False)
    employee_id = Column(String(64), nullable=True, index=True)

    # manual | event:<event_type>
    trigger_source = Column(String(128), nullable=False, default="manual")
    trigger_event_id = Column(String(128), nullable=True)

    # pending | in_progress | completed | canceled | failed
    status = Column(String(32), nullable=False, default=RunStatus.PENDING, index=True)

    # Trigger context supplied by the caller (read-only after creation)
    context = Column(JSON, nullable=False, default=dict)

    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    canceled_at = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)

    # Last event position handed out for this run
    event_seq = Column(Integer, nullable=False, default=0)

    created_by = Column(String(64), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    workflow = relationship("Workflow")
    version = relationship("WorkflowVersion")
    state = relationship(
        "WorkflowRunState", back_populates="run", uselist=False, cascade="all, delete-orphan"
    )
    steps = relationship(
        "WorkflowRunStep",
        back_populates="run",
        order_by="WorkflowRunStep.created_at",
        cascade="all, delete-orphan",
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in RunStatus.TERMINAL

    def __repr__(self):
        return f"<WorkflowRun(id={self.id}, workflow_id={self.workflow_id}, status='{self.status}')>"


class WorkflowRunState(Base):
    """
    WorkflowRunState Model

    The explicit run-context row. Everything the executor needs to resume a
    run lives here, so any worker can pick up any run after a restart:

    - frontier: node keys ready to dispatch, in dispatch order
    - outstanding_branches: live execution tokens; 0 means every branch ended
    - context: accumulated step results keyed by node key
    - requested_generation / processed_generation: advancement requests seen
      vs. handled; a worker releases the lease only once they match
    - lease_owner / lease_expires_at: single writer per run
    """
    __tablename__ = "workflow_run_state"

    run_id = Column(String(36), ForeignKey("workflow_runs.id"), primary_key=True)
    frontier = Column(JSON, nullable=False, default=list)
    outstanding_branches = Column(Integer, nullable=False, default=0)
    context = Column(JSON, nullable=False, default=dict)

    requested_generation = Column(Integer, nullable=False, default=0)
    processed_generation = Column(Integer, nullable=False, default=0)

    lease_owner = Column(String(64), nullable=True)
    lease_expires_at = Column(DateTime, nullable=True)

    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    run = relationship("WorkflowRun", back_populates="state")

    def __repr__(self):
        return (
            f"<WorkflowRunState(run_id={self.run_id}, frontier={self.frontier}, "
            f"outstanding={self.outstanding_branches})>"
        )


class WorkflowRunStep(Base):
    """
    WorkflowRunStep Model

    Execution record of one node within one run. At most one step exists
    per (run, node): branches that merge at a join node share its step.
    """
    __tablename__ = "workflow_run_steps"
    __table_args__ = (
        UniqueConstraint("run_id", "node_key", name="uq_workflow_run_steps_node"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    run_id = Column(String(36), ForeignKey("workflow_runs.id"), nullable=False, index=True)
    node_id = Column(String(36), ForeignKey("workflow_nodes.id"), nullable=True)
    node_key = Column(String(128), nullable=False)
    node_type = Column(String(32), nullable=False)
    required = Column(Boolean, nullable=False, default=True)

    # pending | queued | waiting_input | in_progress | completed | failed | canceled
    status = Column(String(32), nullable=False, default=StepStatus.PENDING, index=True)

    assigned_to = Column(String(64), nullable=True)
    due_at = Column(DateTime, nullable=True)

    # Example (logic): {"outcome": true, "label": "Yes", "selected_edge": "decide->it_setup"}
    result = Column(JSON, nullable=True)
    error = Column(Text, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)

    # Set once successors have been computed for this terminal step
    propagated = Column(Boolean, nullable=False, default=False)

    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    run = relationship("WorkflowRun", back_populates="steps")

    @property
    def is_terminal(self) -> bool:
        return self.status in StepStatus.TERMINAL

    def __repr__(self):
        return f"<WorkflowRunStep(run_id={self.run_id}, node_key='{self.node_key}', status='{self.status}')>"
