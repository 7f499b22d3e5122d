"""
Workflow Event Model
Append-only audit trail of every run, step and task transition
"""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, JSON, String, UniqueConstraint

from ..core.timeutils import utcnow
from . import Base, new_id


class WorkflowEvent(Base):
    """
    WorkflowEvent Model

    Rows are only ever inserted. `position` is dense and monotonic per run
    and is the ordering key for timeline reconstruction.
    """
    __tablename__ = "workflow_events"
    __table_args__ = (
        UniqueConstraint("run_id", "position", name="uq_workflow_events_position"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    run_id = Column(String(36), ForeignKey("workflow_runs.id"), nullable=False, index=True)
    position = Column(Integer, nullable=False)

    # run_created, step_completed, task_completed, ...
    event_type = Column(String(64), nullable=False, index=True)

    step_id = Column(String(36), nullable=True)
    task_id = Column(String(36), nullable=True)
    payload = Column(JSON, nullable=True)

    created_by = Column(String(64), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    def to_dict(self):
        return {
            "id": self.id,
            "run_id": self.run_id,
            "position": self.position,
            "event_type": self.event_type,
            "step_id": self.step_id,
            "task_id": self.task_id,
            "payload": self.payload,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<WorkflowEvent(run_id={self.run_id}, position={self.position}, type='{self.event_type}')>"
