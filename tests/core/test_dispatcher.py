"""
Tests for the Trigger Dispatcher
"""

from datetime import datetime

import pytest
from pydantic import ValidationError as PydanticValidationError

from hrflow.core.dispatcher import TriggerEvent
from hrflow.models import RunStatus, WorkflowRun


def _hired(**overrides):
    data = {
        "event_id": "evt_981",
        "event_type": "employee_hired",
        "tenant_id": "acme",
        "employee_id": "emp_42",
        "payload": {"department": "engineering", "start_date": "2026-11-02"},
    }
    data.update(overrides)
    return TriggerEvent(**data)


@pytest.fixture
def conditional_definition(parallel_definition):
    parallel_definition["nodes"][0]["config"]["conditions"] = ["payload.department == 'engineering'"]
    return parallel_definition


# ============================================================================
# EVENTS
# ============================================================================

@pytest.mark.unit
def test_event_type_is_normalized():
    assert _hired(event_type="New_Hire").event_type == "employee_hired"
    assert _hired(event_type="termination").event_type == "termination_scheduled"


@pytest.mark.unit
def test_trigger_context_includes_event_identity():
    occurred_at = datetime(2026, 10, 19, 8, 30)
    context = _hired(occurred_at=occurred_at).trigger_context()

    assert context["department"] == "engineering"
    assert context["event_id"] == "evt_981"
    assert context["event_type"] == "employee_hired"
    assert context["occurred_at"] == occurred_at.isoformat()


@pytest.mark.unit
def test_event_requires_identity():
    with pytest.raises(PydanticValidationError):
        TriggerEvent(event_id="", event_type="employee_hired", tenant_id="acme")
    with pytest.raises(PydanticValidationError):
        TriggerEvent(event_id="evt_1", event_type="employee_hired", tenant_id="acme", extra="nope")


# ============================================================================
# DISPATCH
# ============================================================================

@pytest.mark.unit
def test_matching_event_creates_one_run(make_workflow, engine, conditional_definition):
    workflow = make_workflow(conditional_definition)

    runs = engine.dispatch(_hired())

    assert len(runs) == 1
    run = runs[0]
    assert run.workflow_id == workflow.id
    assert run.employee_id == "emp_42"
    assert run.trigger_source == "event:employee_hired"
    assert run.trigger_event_id == "evt_981"
    assert run.context["start_date"] == "2026-11-02"
    assert run.status == RunStatus.IN_PROGRESS


@pytest.mark.unit
def test_redelivered_event_is_idempotent(make_workflow, engine, db_session, conditional_definition):
    make_workflow(conditional_definition)

    first = engine.dispatch(_hired())
    second = engine.dispatch(_hired())

    assert [r.id for r in first] == [r.id for r in second]
    assert db_session.query(WorkflowRun).count() == 1


@pytest.mark.unit
def test_new_event_for_same_employee_creates_new_run(make_workflow, engine, db_session, conditional_definition):
    make_workflow(conditional_definition)

    engine.dispatch(_hired())
    engine.dispatch(_hired(event_id="evt_982"))

    assert db_session.query(WorkflowRun).count() == 2


@pytest.mark.unit
def test_unmet_condition_creates_no_run(make_workflow, engine, db_session, conditional_definition):
    make_workflow(conditional_definition)

    runs = engine.dispatch(_hired(payload={"department": "sales"}))

    assert runs == []
    assert db_session.query(WorkflowRun).count() == 0


@pytest.mark.unit
def test_unevaluable_condition_does_not_match(make_workflow, engine, parallel_definition):
    parallel_definition["nodes"][0]["config"]["conditions"] = ["level > 2"]
    make_workflow(parallel_definition)

    assert engine.dispatch(_hired(payload={"level": "senior"})) == []


@pytest.mark.unit
def test_alias_trigger_matches_domain_event(make_workflow, engine, onboarding_definition):
    make_workflow(onboarding_definition)

    runs = engine.dispatch(_hired())

    assert len(runs) == 1
    assert runs[0].trigger_source == "event:employee_hired"


@pytest.mark.unit
def test_every_matching_workflow_gets_a_run(make_workflow, engine, onboarding_definition, parallel_definition):
    first = make_workflow(onboarding_definition, name="Engineering Onboarding")
    second = make_workflow(parallel_definition, name="Facilities")

    runs = engine.dispatch(_hired())

    assert sorted(r.workflow_id for r in runs) == sorted([first.id, second.id])


@pytest.mark.unit
def test_other_events_tenants_and_drafts_ignored(make_workflow, engine, parallel_definition):
    make_workflow(parallel_definition, name="Draft", publish=False)
    make_workflow(parallel_definition, name="Globex onboarding", tenant_id="globex")
    make_workflow(parallel_definition, name="Acme onboarding")

    assert engine.dispatch(_hired(event_type="termination_scheduled")) == []
    assert engine.dispatch(_hired(tenant_id="initech")) == []
    assert len(engine.dispatch(_hired())) == 1
