"""
External collaborators consumed by the engine.

The engine never implements these; it talks to them through the abstract
contracts below. Deployments plug in real implementations by naming them
in the environment (HRFLOW_EMPLOYEE_DIRECTORY, HRFLOW_NOTIFICATION_SENDER,
HRFLOW_DOCUMENT_STORAGE) as "package.module:ClassName".

Implementations signal transient trouble by raising ExternalDependencyError
(any other unexpected exception is treated the same way by the breaker).
"""

import importlib
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .config import Settings
from .exceptions import ExternalDependencyError, ValidationError
from .nodes import AssigneeSpec

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Assignee:
    """A resolved task owner."""

    id: str
    # employee | role | department
    type: str = "employee"
    display_name: Optional[str] = None
    email: Optional[str] = None


class EmployeeDirectory(ABC):
    """Resolves assignee specs (explicit id, role lookup, department lookup)."""

    @abstractmethod
    def resolve_assignee(
        self, tenant_id: str, employee_id: Optional[str], spec: Optional[AssigneeSpec]
    ) -> Assignee:
        """
        Args:
            tenant_id: Tenant of the run
            employee_id: Subject employee of the run
            spec: Assignee spec from the action node (None means the subject)
        """


class NotificationSender(ABC):
    @abstractmethod
    def send(
        self, tenant_id: str, template: str, recipients: List[str], context: Dict[str, Any]
    ) -> Optional[str]:
        """Send a templated notification; returns a provider message id if any."""


class DocumentStorage(ABC):
    @abstractmethod
    def resolve_document(
        self, tenant_id: str, employee_id: Optional[str], document_id: str
    ) -> Optional[Dict[str, Any]]:
        """Metadata of an uploaded document, or None if the id is unknown."""


# ============================================================================
# DEFAULT IMPLEMENTATIONS
# ============================================================================

class SubjectOnlyDirectory(EmployeeDirectory):
    """
    Resolves only what needs no lookup: the run's own employee or an
    explicit employee id. Role and department lookups need a real directory.
    """

    def resolve_assignee(self, tenant_id, employee_id, spec):
        if spec is None or spec.type == "employee":
            assignee_id = (spec.id if spec is not None else None) or employee_id
            if not assignee_id:
                raise ValidationError("Cannot resolve assignee", ["run has no employee and no explicit assignee id"])
            return Assignee(id=assignee_id, type="employee")
        raise ExternalDependencyError(
            f"No employee directory configured for {spec.type} lookups", dependency="employee_directory"
        )


class LoggingNotificationSender(NotificationSender):
    """Writes notifications to the log instead of delivering them."""

    def send(self, tenant_id, template, recipients, context):
        logger.info(
            f"Notification '{template}' to {len(recipients)} recipient(s)",
            extra={"tenant_id": tenant_id, "template": template, "recipients": recipients},
        )
        return None


class UnconfiguredDocumentStorage(DocumentStorage):
    def resolve_document(self, tenant_id, employee_id, document_id):
        raise ExternalDependencyError("No document storage configured", dependency="document_storage")


@dataclass
class Collaborators:
    directory: EmployeeDirectory = field(default_factory=SubjectOnlyDirectory)
    notifications: NotificationSender = field(default_factory=LoggingNotificationSender)
    documents: DocumentStorage = field(default_factory=UnconfiguredDocumentStorage)


def _load_class(path: str, base: type):
    module_name, _, class_name = path.partition(":")
    if not module_name or not class_name:
        raise ValueError(f"Collaborator path must look like 'package.module:ClassName', got {path!r}")
    cls = getattr(importlib.import_module(module_name), class_name)
    if not issubclass(cls, base):
        raise ValueError(f"{path} is not a {base.__name__}")
    return cls


def load_collaborators(settings: Optional[Settings] = None) -> Collaborators:
    """
    Factory: build collaborators from settings, falling back to defaults.

    Raises:
        ValueError: a configured class path is malformed or of the wrong type
        ImportError: a configured module cannot be imported
    """
    settings = settings or Settings.from_env()
    collaborators = Collaborators()
    if settings.employee_directory_class:
        collaborators.directory = _load_class(settings.employee_directory_class, EmployeeDirectory)()
    if settings.notification_sender_class:
        collaborators.notifications = _load_class(settings.notification_sender_class, NotificationSender)()
    if settings.document_storage_class:
        collaborators.documents = _load_class(settings.document_storage_class, DocumentStorage)()

    logger.info(
        "Collaborators loaded",
        extra={
            "directory": type(collaborators.directory).__name__,
            "notifications": type(collaborators.notifications).__name__,
            "documents": type(collaborators.documents).__name__,
        },
    )
    return collaborators
