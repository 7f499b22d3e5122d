"""
Unit Tests for Settings and collaborator loading
"""

import pytest

from hrflow.core.collaborators import (
    Collaborators,
    LoggingNotificationSender,
    SubjectOnlyDirectory,
    UnconfiguredDocumentStorage,
    load_collaborators,
)
from hrflow.core.config import Settings
from hrflow.core.exceptions import ExternalDependencyError, ValidationError
from hrflow.core.nodes import AssigneeSpec


# ============================================================================
# SETTINGS
# ============================================================================

@pytest.mark.unit
def test_settings_defaults():
    settings = Settings()

    assert settings.queue_max_attempts == 3
    assert settings.run_lease_seconds == 30
    assert settings.redis_url == "redis://localhost:6379/0"


@pytest.mark.unit
def test_settings_from_env(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "postgres://hr:secret@db/hrflow")
    monkeypatch.setenv("REDIS_URL", "redis://cache:6379/1")
    monkeypatch.delenv("CELERY_RESULT_BACKEND", raising=False)
    monkeypatch.setenv("HRFLOW_QUEUE_MAX_ATTEMPTS", "5")
    monkeypatch.setenv("HRFLOW_RUN_LEASE_SECONDS", "")
    monkeypatch.setenv("HRFLOW_NOTIFICATION_SENDER", "acme.mail:Sender")

    settings = Settings.from_env()

    assert settings.database_url == "postgresql://hr:secret@db/hrflow"
    assert settings.redis_url == "redis://cache:6379/1"
    assert settings.result_backend == "redis://cache:6379/1"
    assert settings.queue_max_attempts == 5
    assert settings.run_lease_seconds == 30
    assert settings.notification_sender_class == "acme.mail:Sender"


@pytest.mark.unit
def test_settings_rejects_non_integer(monkeypatch):
    monkeypatch.setenv("HRFLOW_SWEEP_BATCH_SIZE", "lots")

    with pytest.raises(ValueError, match="HRFLOW_SWEEP_BATCH_SIZE must be an integer"):
        Settings.from_env()


@pytest.mark.unit
def test_backoff_is_exponential_and_capped():
    settings = Settings(queue_backoff_seconds=60, queue_backoff_max_seconds=3600)

    assert [settings.backoff_seconds(n) for n in range(1, 4)] == [120, 240, 480]
    assert settings.backoff_seconds(10) == 3600


@pytest.mark.unit
def test_settings_are_frozen():
    with pytest.raises(Exception):
        Settings().queue_max_attempts = 10


# ============================================================================
# COLLABORATORS
# ============================================================================

@pytest.mark.unit
def test_load_collaborators_defaults():
    collaborators = load_collaborators(Settings())

    assert isinstance(collaborators.directory, SubjectOnlyDirectory)
    assert isinstance(collaborators.notifications, LoggingNotificationSender)
    assert isinstance(collaborators.documents, UnconfiguredDocumentStorage)


@pytest.mark.unit
def test_load_collaborators_from_class_path():
    settings = Settings(notification_sender_class="hrflow.core.collaborators:LoggingNotificationSender")

    collaborators = load_collaborators(settings)

    assert isinstance(collaborators.notifications, LoggingNotificationSender)


@pytest.mark.unit
def test_load_collaborators_rejects_bad_paths():
    with pytest.raises(ValueError, match="package.module:ClassName"):
        load_collaborators(Settings(employee_directory_class="hrflow.core.collaborators"))

    with pytest.raises(ValueError, match="is not a EmployeeDirectory"):
        load_collaborators(Settings(employee_directory_class="hrflow.core.collaborators:LoggingNotificationSender"))


@pytest.mark.unit
def test_subject_only_directory():
    directory = SubjectOnlyDirectory()

    assert directory.resolve_assignee("acme", "emp_1", None).id == "emp_1"
    assert directory.resolve_assignee("acme", "emp_1", AssigneeSpec(type="employee", id="mgr_7")).id == "mgr_7"

    with pytest.raises(ValidationError):
        directory.resolve_assignee("acme", None, None)
    with pytest.raises(ExternalDependencyError):
        directory.resolve_assignee("acme", "emp_1", AssigneeSpec(type="role", role="it_admin"))


@pytest.mark.unit
def test_unconfigured_document_storage_is_unavailable():
    with pytest.raises(ExternalDependencyError):
        Collaborators().documents.resolve_document("acme", "emp_1", "doc-1")
