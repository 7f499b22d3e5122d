"""
Employee Journey View Model
Share-token capability granting an employee access to one run
"""

from sqlalchemy import Column, DateTime, ForeignKey, String

from ..core.timeutils import utcnow
from . import Base


class EmployeeJourneyView(Base):
    """
    EmployeeJourneyView Model

    `share_token` maps to exactly one run and never changes. It is a bearer
    capability, not an identity.
    """
    __tablename__ = "employee_journey_views"

    run_id = Column(String(36), ForeignKey("workflow_runs.id"), primary_key=True)
    share_token = Column(String(64), nullable=False, unique=True, index=True)
    hero_copy = Column(String(255), nullable=True)
    cta_label = Column(String(64), nullable=True)
    last_viewed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    def __repr__(self):
        return f"<EmployeeJourneyView(run_id={self.run_id})>"
