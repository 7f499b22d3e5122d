"""
Pytest fixtures for HRFlow tests

This module provides shared fixtures for all tests:
- Database session fixtures (in-memory SQLite)
- A controllable clock
- Mock collaborators (employee directory, notifications, document storage)
- Sample workflow definitions
- A factory that creates and publishes workflows
"""

from datetime import datetime, timedelta
from typing import Any, Dict
from unittest.mock import Mock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from hrflow.core.circuit_breaker import reset_all_breakers
from hrflow.core.collaborators import (
    Assignee,
    Collaborators,
    DocumentStorage,
    EmployeeDirectory,
    NotificationSender,
)
from hrflow.core.config import Settings
from hrflow.core.definition_store import clear_definition_cache
from hrflow.core.engine import WorkflowEngine
from hrflow.core.exceptions import ValidationError
from hrflow.models import Base


# ============================================================================
# GLOBAL STATE
# ============================================================================

@pytest.fixture(autouse=True)
def _isolate_process_state():
    """Breakers and the compiled-definition cache are process-wide."""
    clear_definition_cache()
    reset_all_breakers()
    yield
    clear_definition_cache()
    reset_all_breakers()


# ============================================================================
# DATABASE FIXTURES
# ============================================================================

@pytest.fixture(scope="function")
def db_session():
    """
    Create an in-memory SQLite database for testing.
    Each test gets a fresh database that's torn down after the test.
    """
    engine = create_engine("sqlite:///:memory:", echo=False)
    Base.metadata.create_all(engine)

    SessionLocal = sessionmaker(bind=engine)
    session = SessionLocal()

    try:
        yield session
    finally:
        session.close()
        engine.dispose()


# ============================================================================
# CLOCK
# ============================================================================

class FakeClock:
    """Naive-UTC clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 10, 19, 9, 0, 0))


@pytest.fixture
def settings():
    return Settings(
        queue_max_attempts=3,
        queue_backoff_seconds=60,
        queue_backoff_max_seconds=3600,
        run_lease_seconds=30,
    )


# ============================================================================
# COLLABORATOR FIXTURES
# ============================================================================

def _resolve_assignee(tenant_id, employee_id, spec):
    if spec is None or spec.type == "employee":
        assignee_id = (spec.id if spec is not None else None) or employee_id
        return Assignee(id=assignee_id, type="employee")
    if spec.type == "role":
        if spec.role == "ghost":
            raise ValidationError("Cannot resolve assignee", [f"no employee holds role '{spec.role}'"])
        return Assignee(id=f"role:{spec.role}", type="role")
    return Assignee(id=f"dept:{spec.department_id}", type="department")


def _resolve_document(tenant_id, employee_id, document_id):
    if document_id == "missing":
        return None
    return {"id": document_id, "employee_id": employee_id, "filename": f"{document_id}.pdf"}


@pytest.fixture
def directory():
    mock = Mock(spec=EmployeeDirectory)
    mock.resolve_assignee.side_effect = _resolve_assignee
    return mock


@pytest.fixture
def notifications():
    mock = Mock(spec=NotificationSender)
    mock.send.return_value = "msg-1"
    return mock


@pytest.fixture
def documents():
    mock = Mock(spec=DocumentStorage)
    mock.resolve_document.side_effect = _resolve_document
    return mock


@pytest.fixture
def collaborators(directory, notifications, documents):
    return Collaborators(directory=directory, notifications=notifications, documents=documents)


# ============================================================================
# ENGINE FIXTURES
# ============================================================================

@pytest.fixture
def engine(db_session, collaborators, settings, clock):
    return WorkflowEngine(
        db_session,
        collaborators=collaborators,
        settings=settings,
        clock=clock,
        worker_id="test-worker",
    )


@pytest.fixture
def make_workflow(engine):
    """
    Factory: create a workflow from a definition and publish it.

    Usage:
        workflow = make_workflow(onboarding_definition)
    """

    def _make(definition: Dict[str, Any], name: str = "Engineering Onboarding",
              tenant_id: str = "acme", kind: str = "onboarding", publish: bool = True):
        workflow = engine.store.create_workflow(tenant_id, name, kind=kind, definition=definition)
        if publish:
            engine.publish(workflow.id)
        return workflow

    return _make


# ============================================================================
# WORKFLOW DEFINITION FIXTURES
# ============================================================================

@pytest.fixture
def onboarding_definition():
    """
    trigger(new_hire) → send_email → delay(1 day) → collect_documents
    """
    return {
        "nodes": [
            {"id": "start", "type": "trigger", "config": {"event": "new_hire"}},
            {"id": "welcome", "type": "action", "label": "Welcome email",
             "config": {"action": "send_email", "notification": {"template": "welcome"}}},
            {"id": "wait", "type": "delay", "config": {"duration": {"value": 1, "unit": "days"}}},
            {"id": "docs", "type": "action", "label": "Collect I-9",
             "config": {
                 "action": "collect_documents",
                 "tasks": [{"task_type": "document", "title": "Upload I-9", "document_type": "i9"}],
                 "assignee": {"type": "employee"},
                 "due": {"relative": "Day +3"},
             }},
        ],
        "edges": [
            {"source": "start", "target": "welcome"},
            {"source": "welcome", "target": "wait"},
            {"source": "wait", "target": "docs"},
        ],
    }


@pytest.fixture
def parallel_definition():
    """
    trigger → it_setup (task)
            → badge (task)
    """
    return {
        "nodes": [
            {"id": "start", "type": "trigger", "config": {"event": "employee_hired"}},
            {"id": "it_setup", "type": "action",
             "config": {"action": "assign_task", "tasks": [{"title": "Set up laptop"}]}},
            {"id": "badge", "type": "action",
             "config": {"action": "assign_task", "tasks": [{"title": "Pick up badge"}]}},
        ],
        "edges": [
            {"source": "start", "target": "it_setup"},
            {"source": "start", "target": "badge"},
        ],
    }


@pytest.fixture
def logic_definition():
    """
    trigger → decide(department == 'engineering') → Yes: it_kit
                                                  → No: generic_kit
    """
    return {
        "nodes": [
            {"id": "start", "type": "trigger", "config": {"event": "employee_hired"}},
            {"id": "decide", "type": "logic",
             "config": {"expression": "department == 'engineering'"}},
            {"id": "it_kit", "type": "action",
             "config": {"action": "send_notification", "notification": {"template": "engineering_kit"}}},
            {"id": "generic_kit", "type": "action",
             "config": {"action": "send_notification", "notification": {"template": "standard_kit"}}},
        ],
        "edges": [
            {"source": "start", "target": "decide"},
            {"source": "decide", "target": "it_kit", "condition": "Yes"},
            {"source": "decide", "target": "generic_kit", "condition": "No"},
        ],
    }


@pytest.fixture
def task_definition():
    """trigger → assign_task (one general task) → delay(1 day) → send_email"""
    return {
        "nodes": [
            {"id": "start", "type": "trigger", "config": {"event": "employee_hired"}},
            {"id": "handbook", "type": "action",
             "config": {"action": "assign_task",
                        "tasks": [{"title": "Read the handbook"}],
                        "due": {"days": 2}}},
            {"id": "wait", "type": "delay", "config": {"value": 1, "unit": "day"}},
            {"id": "followup", "type": "action",
             "config": {"action": "send_email", "notification": {"template": "handbook_followup"}}},
        ],
        "edges": [
            {"source": "start", "target": "handbook"},
            {"source": "handbook", "target": "wait"},
            {"source": "wait", "target": "followup"},
        ],
    }
