"""
Tests for engine metrics and the health check

These use the wall clock: `updated_at` is stamped by the database layer,
so the time windows only line up against real time.
"""

import pytest

from hrflow.core.circuit_breaker import get_breaker
from hrflow.core.engine import WorkflowEngine
from hrflow.core.metrics import MetricsCollector, check_engine_health
from hrflow.core.timeutils import utcnow
from hrflow.models import RunStatus


@pytest.fixture
def live_engine(db_session, collaborators, settings):
    return WorkflowEngine(db_session, collaborators=collaborators, settings=settings, clock=utcnow)


@pytest.fixture
def publish(live_engine):
    def _publish(definition, name="Onboarding"):
        workflow = live_engine.store.create_workflow("acme", name, definition=definition)
        live_engine.publish(workflow.id)
        return workflow
    return _publish


@pytest.fixture
def ghost_definition(parallel_definition):
    """A required task step whose assignee cannot be resolved."""
    parallel_definition["nodes"][1]["config"]["assignee"] = {"type": "role", "role": "ghost"}
    return parallel_definition


# ============================================================================
# COLLECTOR
# ============================================================================

@pytest.mark.unit
def test_empty_database(db_session):
    metrics = MetricsCollector(db_session).get_all_metrics()

    assert metrics["runs"]["total"] == 0
    assert metrics["failure_rate"]["failure_rate"] == 0.0
    assert metrics["queue"] == {"depth": 0, "due": 0, "claimed": 0, "retrying": 0}
    assert metrics["tasks"] == {"pending": 0, "overdue": 0}
    assert metrics["database"]["connected"] is True
    assert metrics["timestamp"].endswith("Z")


@pytest.mark.unit
def test_run_stats(live_engine, publish, db_session, logic_definition, task_definition):
    logic = publish(logic_definition, name="Equipment")
    tasks = publish(task_definition, name="Handbook")
    live_engine.create_run(logic.id, employee_id="emp_1", trigger_context={"department": "engineering"})
    live_engine.create_run(tasks.id, employee_id="emp_2")

    stats = MetricsCollector(db_session).get_run_stats()

    assert stats["total"] == 2
    assert stats[RunStatus.COMPLETED] == 1
    assert stats[RunStatus.IN_PROGRESS] == 1
    assert stats["completion_rate"] == 100.0


@pytest.mark.unit
def test_queue_and_task_stats(live_engine, publish, db_session, onboarding_definition, task_definition):
    live_engine.create_run(publish(onboarding_definition).id, employee_id="emp_1")
    live_engine.create_run(publish(task_definition, name="Handbook").id, employee_id="emp_2")

    collector = MetricsCollector(db_session)

    # Onboarding waits on its one-day delay; the handbook run on a task
    assert collector.get_queue_stats() == {"depth": 1, "due": 0, "claimed": 0, "retrying": 0}
    assert collector.get_task_stats() == {"pending": 1, "overdue": 0}


@pytest.mark.unit
def test_breaker_status_reported(db_session):
    breaker = get_breaker("notifications")
    for _ in range(breaker.failure_threshold):
        breaker.record_failure()

    status = MetricsCollector(db_session).get_circuit_breaker_status()

    assert status["notifications"]["is_healthy"] is False


# ============================================================================
# HEALTH CHECK
# ============================================================================

@pytest.mark.unit
def test_healthy_engine(live_engine, publish, db_session, logic_definition):
    live_engine.create_run(publish(logic_definition).id, employee_id="emp_1",
                           trigger_context={"department": "sales"})

    health = check_engine_health(db_session)

    assert health["healthy"] is True
    assert health["issues"] is None
    assert health["components"]["database"] is True
    assert health["metrics"]["failure_rate"]["finished_runs"] == 1


@pytest.mark.unit
def test_high_failure_rate_is_unhealthy(live_engine, publish, db_session, logic_definition, ghost_definition):
    live_engine.create_run(publish(logic_definition, name="Equipment").id, employee_id="emp_1",
                           trigger_context={"department": "sales"})
    failed = live_engine.create_run(publish(ghost_definition, name="Access").id, employee_id="emp_2")
    assert failed.status == RunStatus.FAILED

    health = check_engine_health(db_session)

    assert health["healthy"] is False
    assert health["components"]["failure_rate"] is False
    assert "High run failure rate: 50.0%" in health["issues"]
