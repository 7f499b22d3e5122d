"""
Tests for the Celery tasks

Tasks run in-process with `.apply()`; `get_db` is patched to hand them the
test session. The tasks build their own engine (wall clock, default
collaborators), so timing is arranged by moving rows into the past.
"""

import os
from contextlib import contextmanager
from datetime import timedelta
from unittest.mock import patch

import pytest

os.environ.setdefault("DATABASE_URL", "sqlite://")

from hrflow.core.timeutils import utcnow  # noqa: E402
from hrflow.models import RunStatus, Task, WorkflowActionQueue  # noqa: E402
from hrflow.workers.tasks import (  # noqa: E402
    advance_run_task,
    dispatch_event_task,
    escalate_overdue_task,
    sweep_action_queue_task,
)


@pytest.fixture
def worker_db(db_session):
    @contextmanager
    def _get_db():
        yield db_session

    with patch("hrflow.workers.tasks.get_db", _get_db):
        yield db_session


@pytest.fixture
def handbook_run(make_workflow, engine, task_definition):
    workflow = make_workflow(task_definition)
    return engine.create_run(workflow.id, employee_id="emp_1")


# ============================================================================
# ADVANCE
# ============================================================================

@pytest.mark.unit
def test_advance_run_task(worker_db, handbook_run):
    result = advance_run_task.apply(args=[handbook_run.id]).get()

    assert result == {"run_id": handbook_run.id, "advanced": True, "status": RunStatus.IN_PROGRESS}


@pytest.mark.unit
def test_advance_unknown_run_fails_without_retry(worker_db):
    result = advance_run_task.apply(args=["missing"]).get()

    assert result["status"] == "failed"
    assert "not found" in result["error"]


# ============================================================================
# DISPATCH
# ============================================================================

@pytest.mark.unit
def test_dispatch_event_task(worker_db, make_workflow, task_definition):
    make_workflow(task_definition)
    event = {
        "event_id": "evt_981",
        "event_type": "employee_hired",
        "tenant_id": "acme",
        "employee_id": "emp_42",
        "payload": {"department": "engineering"},
    }

    first = dispatch_event_task.apply(args=[event]).get()
    second = dispatch_event_task.apply(args=[event]).get()

    assert first["event_id"] == "evt_981"
    assert len(first["run_ids"]) == 1
    assert second["run_ids"] == first["run_ids"]


@pytest.mark.unit
def test_dispatch_malformed_event(worker_db):
    result = dispatch_event_task.apply(args=[{"event_type": "employee_hired"}]).get()

    assert result["status"] == "failed"
    assert result["error"].startswith("Invalid trigger event: ")
    assert "event_id" in result["error"]


# ============================================================================
# PERIODIC
# ============================================================================

@pytest.mark.unit
def test_sweep_action_queue_task(worker_db, onboarding_definition, make_workflow, engine):
    run = engine.create_run(make_workflow(onboarding_definition).id, employee_id="emp_1")
    entry = worker_db.query(WorkflowActionQueue).filter_by(run_id=run.id).one()
    entry.resume_at = utcnow() - timedelta(minutes=1)
    worker_db.commit()

    result = sweep_action_queue_task.apply().get()

    assert result["resumed"] == 1
    assert result["recovered_runs"] == []
    assert worker_db.query(Task).filter_by(run_id=run.id).one().title == "Upload I-9"


@pytest.mark.unit
def test_escalate_overdue_task(worker_db, handbook_run):
    task = worker_db.query(Task).filter_by(run_id=handbook_run.id).one()
    task.due_at = utcnow() - timedelta(hours=1)
    worker_db.commit()

    assert escalate_overdue_task.apply().get() == {"escalated": [task.id]}
    assert escalate_overdue_task.apply().get() == {"escalated": []}
