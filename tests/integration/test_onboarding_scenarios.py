"""
End-to-end onboarding scenarios

Each scenario drives the engine the way production does: runs created from
events, delays fired by the sweeper, tasks completed by people, and
observes the result only through the run timeline and stored rows.
"""

from datetime import datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from hrflow.core.dispatcher import TriggerEvent
from hrflow.core.engine import WorkflowEngine
from hrflow.core.event_log import EventType
from hrflow.models import (
    Base,
    EmployeeJourneyView,
    RunStatus,
    StepStatus,
    Task,
    TaskStatus,
    WorkflowActionQueue,
    WorkflowRunStep,
)


def _event_types(engine, run_id):
    return [e.event_type for e in engine.get_run_timeline(run_id)]


def _step(db, run_id, node_key):
    return db.query(WorkflowRunStep).filter_by(run_id=run_id, node_key=node_key).one()


# ============================================================================
# SCENARIO A: linear onboarding with a delay and a document task
# ============================================================================

@pytest.mark.integration
def test_new_hire_onboarding_end_to_end(make_workflow, engine, db_session, clock, onboarding_definition):
    make_workflow(onboarding_definition)
    hired = TriggerEvent(event_id="evt_1", event_type="employee_hired", tenant_id="acme",
                         employee_id="emp_42", payload={"department": "engineering"})

    run = engine.dispatch(hired)[0]
    started_at = run.started_at

    # Parked on the one-day delay
    assert run.status == RunStatus.IN_PROGRESS
    assert db_session.query(Task).filter_by(run_id=run.id).count() == 0
    assert engine.sweep().processed == 0

    clock.advance(days=1)
    assert engine.sweep().resumed == 1

    wait = _step(db_session, run.id, "wait")
    assert (datetime.fromisoformat(wait.result["scheduled_for"]) - started_at).total_seconds() == 86400

    i9 = db_session.query(Task).filter_by(run_id=run.id).one()
    assert i9.assigned_to == "emp_42"
    assert i9.due_at == datetime(2026, 10, 23, 9, 0, 0)   # Day +3 from when the task was created

    token = db_session.query(EmployeeJourneyView).filter_by(run_id=run.id).one().share_token
    assert [t.title for t in engine.get_journey(token).pending_tasks] == ["Upload I-9"]
    engine.complete_journey_task(token, i9.id, {"document_id": "doc-i9"})

    assert engine.get_run(run.id).status == RunStatus.COMPLETED
    assert _event_types(engine, run.id) == [
        EventType.RUN_CREATED,
        EventType.RUN_STARTED,
        EventType.STEP_COMPLETED,       # start
        EventType.STEP_QUEUED,          # welcome
        EventType.STEP_COMPLETED,       # welcome
        EventType.STEP_QUEUED,          # wait
        EventType.STEP_COMPLETED,       # wait
        EventType.STEP_QUEUED,          # docs
        EventType.TASK_CREATED,
        EventType.STEP_WAITING_INPUT,
        EventType.TASK_COMPLETED,
        EventType.STEP_COMPLETED,       # docs
        EventType.RUN_COMPLETED,
    ]
    journey = engine.get_journey(token)
    assert journey.status == RunStatus.COMPLETED
    assert journey.progress == 1.0


@pytest.mark.integration
def test_confirmation_holds_the_run_until_confirmed(make_workflow, engine, db_session, clock, onboarding_definition):
    onboarding_definition["nodes"][1]["config"]["requires_confirmation"] = True
    workflow = make_workflow(onboarding_definition)
    run = engine.create_run(workflow.id, employee_id="emp_42")

    welcome = _step(db_session, run.id, "welcome")
    assert welcome.status == StepStatus.WAITING_INPUT
    assert db_session.query(WorkflowActionQueue).count() == 0

    confirm = db_session.query(Task).filter_by(run_id=run.id).one()
    engine.complete_task(confirm.id, completed_by="hr_admin")

    assert _step(db_session, run.id, "welcome").status == StepStatus.COMPLETED
    assert _step(db_session, run.id, "wait").status == StepStatus.QUEUED


# ============================================================================
# SCENARIO B: duplicate task submission from two processes
# ============================================================================

@pytest.fixture
def file_db(tmp_path):
    """A file-backed database so two sessions see each other's commits."""
    db_engine = create_engine(f"sqlite:///{tmp_path / 'hrflow.db'}")
    Base.metadata.create_all(db_engine)
    yield db_engine
    db_engine.dispose()


@pytest.fixture
def two_engines(file_db, collaborators, settings, clock):
    session_a = sessionmaker(bind=file_db)()
    # B keeps what it loaded across commits, like a request that read the task earlier
    session_b = sessionmaker(bind=file_db, expire_on_commit=False)()
    engine_a = WorkflowEngine(session_a, collaborators=collaborators, settings=settings, clock=clock, worker_id="a")
    engine_b = WorkflowEngine(session_b, collaborators=collaborators, settings=settings, clock=clock, worker_id="b")
    yield engine_a, engine_b
    session_a.close()
    session_b.close()


def _publish(engine, definition):
    workflow = engine.store.create_workflow("acme", "Handbook", definition=definition)
    engine.publish(workflow.id)
    return workflow


def _stale_duplicate(engine_a, engine_b, definition):
    workflow = _publish(engine_a, definition)
    run = engine_a.create_run(workflow.id, employee_id="emp_42")
    task_id = engine_a.tasks.list_tasks(run_id=run.id)[0].id

    # B reads the pending task and its run before A submits
    engine_b.tasks.get_task(task_id)
    engine_b.get_run(run.id)
    engine_b.db.commit()

    engine_a.complete_task(task_id, {"notes": "from A"}, completed_by="emp_42")
    result = engine_b.complete_task(task_id, {"notes": "from B"}, completed_by="emp_42")
    return run, task_id, result


@pytest.mark.integration
def test_duplicate_submission_completes_once(two_engines, task_definition):
    engine_a, engine_b = two_engines

    run, task_id, result = _stale_duplicate(engine_a, engine_b, task_definition)

    assert result.status == TaskStatus.COMPLETED
    assert result.result == {"notes": "from A"}
    assert engine_a.events.count(run.id, EventType.TASK_COMPLETED) == 1
    handbook_completions = [
        e for e in engine_a.get_run_timeline(run.id)
        if e.event_type == EventType.STEP_COMPLETED and e.payload.get("node_key") == "handbook"
    ]
    assert len(handbook_completions) == 1
    assert engine_a.get_run(run.id).status == RunStatus.IN_PROGRESS


@pytest.mark.integration
def test_duplicate_submission_after_run_completed(two_engines, parallel_definition):
    engine_a, engine_b = two_engines
    del parallel_definition["nodes"][2]
    del parallel_definition["edges"][1]

    run, task_id, result = _stale_duplicate(engine_a, engine_b, parallel_definition)

    assert engine_a.get_run(run.id).status == RunStatus.COMPLETED
    assert result.result == {"notes": "from A"}
    assert engine_a.events.count(run.id, EventType.TASK_COMPLETED) == 1


# ============================================================================
# SCENARIO C: parallel branches joining
# ============================================================================

@pytest.fixture
def first_week_definition(parallel_definition):
    """
    trigger → it_setup ─┐
            → badge    ─┴→ first_day_email
    """
    parallel_definition["nodes"].append(
        {"id": "first_day_email", "type": "action",
         "config": {"action": "send_email", "notification": {"template": "first_day"}}}
    )
    parallel_definition["edges"] += [
        {"source": "it_setup", "target": "first_day_email"},
        {"source": "badge", "target": "first_day_email"},
    ]
    return parallel_definition


@pytest.mark.integration
def test_parallel_branches_join(make_workflow, engine, db_session, notifications, first_week_definition):
    workflow = make_workflow(first_week_definition)
    run = engine.create_run(workflow.id, employee_id="emp_42")
    laptop = db_session.query(Task).filter_by(run_id=run.id, title="Set up laptop").one()
    badge = db_session.query(Task).filter_by(run_id=run.id, title="Pick up badge").one()

    engine.complete_task(badge.id)
    assert engine.get_run(run.id).status == RunStatus.IN_PROGRESS

    engine.complete_task(laptop.id)

    assert engine.get_run(run.id).status == RunStatus.COMPLETED
    assert db_session.query(WorkflowRunStep).filter_by(run_id=run.id, node_key="first_day_email").count() == 1
    first_day_sends = [c for c in notifications.send.call_args_list if c[0][1] == "first_day"]
    assert len(first_day_sends) == 1


# ============================================================================
# CANCELLATION
# ============================================================================

@pytest.mark.integration
def test_canceled_run_never_resumes(make_workflow, engine, db_session, clock, onboarding_definition):
    workflow = make_workflow(onboarding_definition)
    run = engine.create_run(workflow.id, employee_id="emp_42")
    assert db_session.query(WorkflowActionQueue).count() == 1

    engine.cancel_run(run.id, canceled_by="hr_admin", reason="Offer withdrawn")

    assert db_session.query(WorkflowActionQueue).count() == 0
    assert _step(db_session, run.id, "wait").status == StepStatus.CANCELED

    clock.advance(days=2)
    assert engine.sweep().processed == 0
    assert engine.recover_stalled_runs() == []
    assert db_session.query(Task).filter_by(run_id=run.id).count() == 0

    timeline = engine.get_run_timeline(run.id)
    canceled = [e for e in timeline if e.event_type == EventType.RUN_CANCELED]
    assert canceled[0].payload["reason"] == "Offer withdrawn"
    assert canceled[0].created_by == "hr_admin"
    assert EventType.RUN_COMPLETED not in [e.event_type for e in timeline]
