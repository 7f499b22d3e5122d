"""
Action Queue Model
Durable scheduling tickets for delayed and retrying steps
"""

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, JSON, String, Text

from ..core.timeutils import utcnow
from . import Base, new_id


class WorkflowActionQueue(Base):
    """
    WorkflowActionQueue Model

    One entry per step that is waiting on the clock. The entry is deleted in
    the same transaction that resumes the step.
    """
    __tablename__ = "workflow_action_queue"
    __table_args__ = (
        Index("ix_workflow_action_queue_due", "resume_at", "claimed_until"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    run_id = Column(String(36), ForeignKey("workflow_runs.id"), nullable=False, index=True)
    step_id = Column(String(36), ForeignKey("workflow_run_steps.id"), nullable=False, unique=True)
    node_key = Column(String(128), nullable=False)

    # delay | retry
    kind = Column(String(16), nullable=False, default="delay")

    resume_at = Column(DateTime, nullable=False)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)

    # "metadata" is reserved on declarative classes
    entry_metadata = Column("metadata", JSON, nullable=True)

    # Single-owner claim taken by a sweeper before processing
    claimed_by = Column(String(64), nullable=True)
    claimed_until = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self):
        return (
            f"<WorkflowActionQueue(run_id={self.run_id}, node_key='{self.node_key}', "
            f"kind='{self.kind}', resume_at={self.resume_at}, attempts={self.attempts})>"
        )
