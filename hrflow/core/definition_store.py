"""
Definition Store

Owns workflows and their versions:
- drafts are editable, published versions are immutable
- publish validates the draft and, in one transaction, numbers it, makes it
  the single active version, and materialises its nodes and edges
- compiled graphs are cached per version id (versions never change)
- templates (global or per tenant) seed the first draft of a new workflow
"""

import copy
import logging
import re
import threading
from typing import Any, Dict, List, Optional

from sqlalchemy import func, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..models import (
    Workflow,
    WorkflowEdge,
    WorkflowNode,
    WorkflowStatus,
    WorkflowTemplate,
    WorkflowVersion,
    new_id,
)
from .exceptions import ConflictError, NotFoundError, ValidationError
from .graph import CompiledGraph, compile_definition, validate_definition
from .timeutils import Clock, utcnow

logger = logging.getLogger(__name__)

WORKFLOW_KINDS = ("onboarding", "offboarding")

EMPTY_DEFINITION = {"nodes": [], "edges": [], "metadata": {}}

# version_id -> CompiledGraph; published versions never change, so entries never go stale
_definition_cache: Dict[str, CompiledGraph] = {}
_cache_lock = threading.Lock()


def clear_definition_cache() -> None:
    with _cache_lock:
        _definition_cache.clear()


def _slugify(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
    return slug or "workflow"


class DefinitionStore:
    """Persistence and lifecycle of workflow definitions."""

    def __init__(self, db: Session, clock: Clock = utcnow):
        self.db = db
        self.clock = clock

    # ------------------------------------------------------------------
    # Workflows and drafts
    # ------------------------------------------------------------------

    def create_workflow(
        self,
        tenant_id: str,
        name: str,
        kind: str = "onboarding",
        definition: Optional[Dict[str, Any]] = None,
        description: Optional[str] = None,
        created_by: Optional[str] = None,
        template_id: Optional[str] = None,
    ) -> Workflow:
        """
        Create a draft workflow with an initial draft version.

        The draft starts from `definition`, else from the template's
        definition, else empty.

        Raises:
            ValidationError: bad kind or name, or a template of another kind
            NotFoundError: unknown template (or one owned by another tenant)
        """
        if kind not in WORKFLOW_KINDS:
            raise ValidationError("Invalid workflow", [f"kind must be one of {', '.join(WORKFLOW_KINDS)}"])
        if not name or not name.strip():
            raise ValidationError("Invalid workflow", ["name is required"])
        if definition is not None and not isinstance(definition, dict):
            raise ValidationError("Invalid workflow", ["definition must be an object"])

        if definition is None and template_id is not None:
            template = self.get_template(template_id, tenant_id=tenant_id)
            if template.kind != kind:
                raise ValidationError(
                    "Invalid workflow",
                    [f"template '{template.name}' is for {template.kind} workflows, not {kind}"],
                )
            definition = copy.deepcopy(template.definition)

        workflow = Workflow(
            tenant_id=tenant_id,
            name=name.strip(),
            slug=self._unique_slug(tenant_id, name),
            kind=kind,
            description=description,
            status=WorkflowStatus.DRAFT,
            created_by=created_by,
            updated_by=created_by,
        )
        workflow.versions.append(WorkflowVersion(
            definition=dict(definition) if definition is not None else dict(EMPTY_DEFINITION),
            created_by=created_by,
            created_at=self.clock(),
        ))
        self.db.add(workflow)
        self.db.commit()

        logger.info(
            f"Created workflow '{workflow.name}'",
            extra={"workflow_id": workflow.id, "tenant_id": tenant_id, "template_id": template_id},
        )
        return workflow

    def list_workflows(self, tenant_id: str, kind: Optional[str] = None) -> List[Workflow]:
        """Every workflow of a tenant, newest first, archived ones included."""
        query = self.db.query(Workflow).filter(Workflow.tenant_id == tenant_id)
        if kind is not None:
            query = query.filter(Workflow.kind == kind)
        return query.order_by(Workflow.created_at.desc(), Workflow.name).all()

    # ------------------------------------------------------------------
    # Templates
    # ------------------------------------------------------------------

    def create_template(
        self,
        name: str,
        kind: str,
        definition: Dict[str, Any],
        tenant_id: Optional[str] = None,
        description: Optional[str] = None,
    ) -> WorkflowTemplate:
        """Store a template; without a tenant it is offered to every tenant."""
        defects = []
        if kind not in WORKFLOW_KINDS:
            defects.append(f"kind must be one of {', '.join(WORKFLOW_KINDS)}")
        if not name or not name.strip():
            defects.append("name is required")
        if not isinstance(definition, dict):
            defects.append("definition must be an object")
        if defects:
            raise ValidationError("Invalid template", defects)

        template = WorkflowTemplate(
            tenant_id=tenant_id,
            name=name.strip(),
            kind=kind,
            description=description,
            definition=copy.deepcopy(definition),
            created_at=self.clock(),
            updated_at=self.clock(),
        )
        self.db.add(template)
        self.db.commit()
        return template

    def get_template(self, template_id: str, tenant_id: Optional[str] = None) -> WorkflowTemplate:
        template = self.db.get(WorkflowTemplate, template_id)
        if template is None or (template.tenant_id is not None and template.tenant_id != tenant_id):
            raise NotFoundError(f"Template {template_id} not found", resource="template", resource_id=template_id)
        return template

    def list_templates(self, tenant_id: Optional[str] = None, kind: Optional[str] = None) -> List[WorkflowTemplate]:
        """Global templates plus the tenant's own."""
        query = self.db.query(WorkflowTemplate).filter(
            or_(WorkflowTemplate.tenant_id.is_(None), WorkflowTemplate.tenant_id == tenant_id)
        )
        if kind is not None:
            query = query.filter(WorkflowTemplate.kind == kind)
        return query.order_by(WorkflowTemplate.name).all()

    def _unique_slug(self, tenant_id: str, name: str) -> str:
        base = _slugify(name)
        taken = {
            slug for (slug,) in self.db.query(Workflow.slug)
            .filter(Workflow.tenant_id == tenant_id, Workflow.slug.like(f"{base}%"))
        }
        slug, suffix = base, 2
        while slug in taken:
            slug = f"{base}-{suffix}"
            suffix += 1
        return slug

    def get_workflow(self, workflow_id: str) -> Workflow:
        workflow = self.db.get(Workflow, workflow_id)
        if workflow is None:
            raise NotFoundError(f"Workflow {workflow_id} not found", resource="workflow", resource_id=workflow_id)
        return workflow

    def get_draft(self, workflow_id: str) -> Optional[WorkflowVersion]:
        return (
            self.db.query(WorkflowVersion)
            .filter(WorkflowVersion.workflow_id == workflow_id, WorkflowVersion.published_at.is_(None))
            .order_by(WorkflowVersion.created_at.desc())
            .first()
        )

    def save_draft(
        self, workflow_id: str, definition: Dict[str, Any], updated_by: Optional[str] = None
    ) -> WorkflowVersion:
        """
        Replace the draft's definition, opening a new draft if the last one
        was published. Drafts are not validated until publish.
        """
        if not isinstance(definition, dict):
            raise ValidationError("Invalid draft", ["definition must be an object"])

        workflow = self.get_workflow(workflow_id)
        if workflow.status == WorkflowStatus.ARCHIVED:
            raise ConflictError(f"Workflow {workflow_id} is archived")

        draft = self.get_draft(workflow_id)
        if draft is None:
            draft = WorkflowVersion(workflow_id=workflow_id, created_by=updated_by, created_at=self.clock())
            self.db.add(draft)
        draft.definition = dict(definition)
        workflow.updated_by = updated_by
        self.db.commit()
        return draft

    def validate_draft(self, workflow_id: str) -> List[str]:
        """Defects that would block publishing the current draft."""
        draft = self.get_draft(workflow_id)
        if draft is None:
            raise NotFoundError(f"Workflow {workflow_id} has no draft", resource="workflow", resource_id=workflow_id)
        return validate_definition(draft.definition)

    # ------------------------------------------------------------------
    # Publish / archive
    # ------------------------------------------------------------------

    def publish(self, workflow_id: str, published_by: Optional[str] = None) -> WorkflowVersion:
        """
        Validate and publish the draft version.

        Raises:
            NotFoundError: unknown workflow
            ValidationError: the draft has defects (nothing is written)
            ConflictError: archived workflow, nothing to publish, or a
                concurrent publish won the race
        """
        workflow = self.get_workflow(workflow_id)
        if workflow.status == WorkflowStatus.ARCHIVED:
            raise ConflictError(f"Workflow {workflow_id} is archived")

        draft = self.get_draft(workflow_id)
        if draft is None:
            raise ConflictError(f"Workflow {workflow_id} has no unpublished draft")

        # Raises ValidationError before any write
        compile_definition(draft.definition, workflow_id=workflow_id, version_id=draft.id)

        expected_seq = workflow.publish_seq
        now = self.clock()
        try:
            claimed = self.db.execute(
                update(Workflow)
                .where(Workflow.id == workflow_id, Workflow.publish_seq == expected_seq)
                .values(publish_seq=expected_seq + 1)
                .execution_options(synchronize_session=False)
            ).rowcount
            if claimed == 0:
                raise ConflictError(f"Workflow {workflow_id} was published concurrently")

            previous_max = (
                self.db.query(func.max(WorkflowVersion.version_number))
                .filter(WorkflowVersion.workflow_id == workflow_id)
                .scalar()
            )
            self.db.execute(
                update(WorkflowVersion)
                .where(WorkflowVersion.workflow_id == workflow_id, WorkflowVersion.is_active.is_(True))
                .values(is_active=False)
                .execution_options(synchronize_session=False)
            )

            draft.version_number = (previous_max or 0) + 1
            draft.published_at = now
            draft.is_active = True
            self._materialise(draft)

            workflow.status = WorkflowStatus.PUBLISHED
            workflow.active_version_id = draft.id
            workflow.updated_by = published_by
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            raise ConflictError(f"Workflow {workflow_id} was published concurrently: {e.orig}")
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            f"Published workflow {workflow_id} version {draft.version_number}",
            extra={"workflow_id": workflow_id, "version_id": draft.id, "version_number": draft.version_number},
        )
        return draft

    def _materialise(self, version: WorkflowVersion) -> None:
        """Write WorkflowNode / WorkflowEdge rows for a version being published."""
        node_ids: Dict[str, str] = {}
        for raw in version.definition.get("nodes", []):
            node_ids[raw["id"]] = new_id()
            self.db.add(WorkflowNode(
                id=node_ids[raw["id"]],
                version_id=version.id,
                node_key=raw["id"],
                type=raw["type"],
                label=raw.get("label"),
                required=raw.get("required", True),
                config=raw.get("config") or {},
            ))
        self.db.flush()

        for index, raw in enumerate(version.definition.get("edges", [])):
            source = raw.get("source", raw.get("from"))
            target = raw.get("target", raw.get("to"))
            position = raw.get("position")
            self.db.add(WorkflowEdge(
                version_id=version.id,
                source_node_id=node_ids[source],
                target_node_id=node_ids[target],
                condition=raw.get("condition"),
                position=position if position is not None else index,
            ))

    def archive(self, workflow_id: str, archived_by: Optional[str] = None) -> Workflow:
        """Stop new runs; runs already in flight continue on their pinned version."""
        workflow = self.get_workflow(workflow_id)
        workflow.status = WorkflowStatus.ARCHIVED
        workflow.updated_by = archived_by
        self.db.commit()
        logger.info(f"Archived workflow {workflow_id}", extra={"workflow_id": workflow_id})
        return workflow

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_version(self, version_id: str) -> WorkflowVersion:
        version = self.db.get(WorkflowVersion, version_id)
        if version is None:
            raise NotFoundError(f"Workflow version {version_id} not found", resource="version", resource_id=version_id)
        return version

    def list_versions(self, workflow_id: str) -> List[WorkflowVersion]:
        self.get_workflow(workflow_id)
        return (
            self.db.query(WorkflowVersion)
            .filter(WorkflowVersion.workflow_id == workflow_id)
            .order_by(WorkflowVersion.version_number.is_(None), WorkflowVersion.version_number)
            .all()
        )

    def list_dispatchable(self, tenant_id: str) -> List[Workflow]:
        """Published workflows of a tenant that accept new runs."""
        return (
            self.db.query(Workflow)
            .filter(
                Workflow.tenant_id == tenant_id,
                Workflow.status == WorkflowStatus.PUBLISHED,
                Workflow.active_version_id.isnot(None),
            )
            .order_by(Workflow.created_at)
            .all()
        )

    def get_active_definition(self, workflow_id: str) -> CompiledGraph:
        workflow = self.get_workflow(workflow_id)
        if not workflow.active_version_id:
            raise NotFoundError(
                f"Workflow {workflow_id} has no published version", resource="workflow", resource_id=workflow_id
            )
        return self.get_definition(workflow.active_version_id)

    def get_definition(self, version_id: str) -> CompiledGraph:
        """Compiled graph of a published version (cached by version id)."""
        with _cache_lock:
            cached = _definition_cache.get(version_id)
        if cached is not None:
            return cached

        version = self.get_version(version_id)
        if not version.is_published:
            raise NotFoundError(
                f"Workflow version {version_id} is not published", resource="version", resource_id=version_id
            )
        graph = compile_definition(
            version.definition,
            workflow_id=version.workflow_id,
            version_id=version.id,
            version_number=version.version_number,
        )
        with _cache_lock:
            _definition_cache.setdefault(version_id, graph)
        return graph
