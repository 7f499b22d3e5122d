"""
Workflow Models
Workflow definitions and their immutable published versions
"""

from sqlalchemy import (
    Boolean, Column, DateTime, ForeignKey, Integer, JSON, String, Text,
    UniqueConstraint, event, inspect, select,
)
from sqlalchemy.orm import relationship

from ..core.exceptions import ConflictError
from ..core.timeutils import utcnow
from . import Base, new_id
from .status import WorkflowStatus


class Workflow(Base):
    """
    Workflow Model

    Tenant-scoped automation (onboarding or offboarding).
    The graph itself lives on WorkflowVersion; exactly one version is
    active once the workflow has been published.
    """
    __tablename__ = "workflows"
    __table_args__ = (
        UniqueConstraint("tenant_id", "slug", name="uq_workflows_tenant_slug"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    tenant_id = Column(String(64), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    slug = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)

    # onboarding | offboarding
    kind = Column(String(32), nullable=False, default="onboarding")

    # draft | published | archived
    status = Column(String(32), nullable=False, default=WorkflowStatus.DRAFT, index=True)

    active_version_id = Column(String(36), nullable=True)

    # Bumped on every publish; a publish that read a stale value loses
    publish_seq = Column(Integer, nullable=False, default=0)

    created_by = Column(String(64), nullable=True)
    updated_by = Column(String(64), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    versions = relationship(
        "WorkflowVersion",
        back_populates="workflow",
        order_by="WorkflowVersion.created_at",
        cascade="all, delete-orphan",
    )

    def __repr__(self):
        return f"<Workflow(id={self.id}, name='{self.name}', status='{self.status}')>"


class WorkflowVersion(Base):
    """
    WorkflowVersion Model

    A snapshot of the node/edge graph. While `published_at` is NULL the
    row is the editable draft; once published it is immutable except for
    the `is_active` flag.
    """
    __tablename__ = "workflow_versions"
    __table_args__ = (
        UniqueConstraint("workflow_id", "version_number", name="uq_workflow_versions_number"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    workflow_id = Column(String(36), ForeignKey("workflows.id"), nullable=False, index=True)

    # NULL while draft; max(previous) + 1 on publish
    version_number = Column(Integer, nullable=True)
    is_active = Column(Boolean, nullable=False, default=False)

    # JSON structure:
    # {
    #   "nodes": [
    #     {"id": "start", "type": "trigger", "config": {"event": "new_hire"}},
    #     {"id": "welcome", "type": "action", "config": {"action": "send_email", ...}},
    #     {"id": "wait", "type": "delay", "config": {"duration": {"value": 1, "unit": "days"}}},
    #     {"id": "docs", "type": "action", "config": {"action": "collect_documents", ...}}
    #   ],
    #   "edges": [
    #     {"source": "start", "target": "welcome"},
    #     {"source": "welcome", "target": "wait"},
    #     {"source": "wait", "target": "docs"}
    #   ],
    #   "metadata": {"completion": "all_branches"}
    # }
    definition = Column(JSON, nullable=False)

    created_by = Column(String(64), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    published_at = Column(DateTime, nullable=True)

    workflow = relationship("Workflow", back_populates="versions")
    nodes = relationship("WorkflowNode", back_populates="version", cascade="all, delete-orphan")
    edges = relationship("WorkflowEdge", back_populates="version", cascade="all, delete-orphan")

    @property
    def is_published(self) -> bool:
        return self.published_at is not None

    def __repr__(self):
        return (
            f"<WorkflowVersion(id={self.id}, workflow_id={self.workflow_id}, "
            f"version_number={self.version_number}, active={self.is_active})>"
        )


class WorkflowNode(Base):
    """Materialised node of a published version."""
    __tablename__ = "workflow_nodes"
    __table_args__ = (
        UniqueConstraint("version_id", "node_key", name="uq_workflow_nodes_key"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    version_id = Column(String(36), ForeignKey("workflow_versions.id"), nullable=False, index=True)
    node_key = Column(String(128), nullable=False)

    # trigger | action | delay | logic
    type = Column(String(32), nullable=False)
    label = Column(String(255), nullable=True)
    required = Column(Boolean, nullable=False, default=True)
    config = Column(JSON, nullable=False, default=dict)

    version = relationship("WorkflowVersion", back_populates="nodes")

    def __repr__(self):
        return f"<WorkflowNode(node_key='{self.node_key}', type='{self.type}')>"


class WorkflowEdge(Base):
    """Materialised edge of a published version."""
    __tablename__ = "workflow_edges"

    id = Column(String(36), primary_key=True, default=new_id)
    version_id = Column(String(36), ForeignKey("workflow_versions.id"), nullable=False, index=True)
    source_node_id = Column(String(36), ForeignKey("workflow_nodes.id"), nullable=False)
    target_node_id = Column(String(36), ForeignKey("workflow_nodes.id"), nullable=False)

    # Only meaningful when the source is a logic node: names an outcome
    condition = Column(String(255), nullable=True)

    # Tie-break among siblings (lower first)
    position = Column(Integer, nullable=False, default=0)

    version = relationship("WorkflowVersion", back_populates="edges")

    def __repr__(self):
        return f"<WorkflowEdge({self.source_node_id} -> {self.target_node_id})>"


_FROZEN_VERSION_COLUMNS = ("workflow_id", "definition", "version_number", "published_at", "created_at")


@event.listens_for(WorkflowVersion, "before_update")
def _reject_published_version_changes(mapper, connection, target):
    """Published versions never change except for the is_active flip."""
    state = inspect(target)
    if not any(state.attrs[name].history.has_changes() for name in _FROZEN_VERSION_COLUMNS):
        return

    table = WorkflowVersion.__table__
    published_at = connection.execute(
        select(table.c.published_at).where(table.c.id == target.id)
    ).scalar()
    if published_at is not None:
        raise ConflictError(f"Workflow version {target.id} is published and cannot be modified")


class WorkflowTemplate(Base):
    """
    Starting point for a new workflow's first draft.

    Global templates have no tenant; a tenant's own templates are visible
    only to that tenant. The definition is copied, never referenced.
    """
    __tablename__ = "workflow_templates"

    id = Column(String(36), primary_key=True, default=new_id)
    tenant_id = Column(String(64), nullable=True, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)

    # onboarding | offboarding
    kind = Column(String(32), nullable=False, index=True)
    definition = Column(JSON, nullable=False)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self):
        return f"<WorkflowTemplate(id={self.id}, name='{self.name}', kind='{self.kind}')>"
