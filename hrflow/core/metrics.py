"""
Metrics Collection for HRFlow

Provides engine health metrics including:
- Run statistics by status
- Failure rate
- Action queue depth (due, claimed, retrying)
- Overdue tasks
- Collaborator circuit breaker status
- Database connectivity
"""

import logging
import time
from datetime import timedelta
from typing import Any, Dict

from sqlalchemy import func, text
from sqlalchemy.orm import Session

from ..models import RunStatus, Task, TaskStatus, WorkflowActionQueue, WorkflowRun
from .circuit_breaker import CircuitBreakerState, all_breaker_statuses
from .timeutils import Clock, utcnow

logger = logging.getLogger(__name__)


class MetricsCollector:
    """
    Collects and aggregates metrics for the engine.

    Each getter degrades to zeros plus an `error` key instead of raising,
    so a health endpoint keeps answering while the database struggles.
    """

    def __init__(self, db_session: Session, clock: Clock = utcnow):
        self.db_session = db_session
        self.clock = clock

    def get_run_stats(self, hours: int = 24) -> Dict[str, Any]:
        """
        Runs created in the last `hours`, by status.

        Returns:
            Dict with total, one count per run status, and completion_rate (%)
        """
        result = {"total": 0, "completion_rate": 0.0}
        result.update({status: 0 for status in (
            RunStatus.PENDING, RunStatus.IN_PROGRESS, RunStatus.COMPLETED,
            RunStatus.CANCELED, RunStatus.FAILED,
        )})
        try:
            since = self.clock() - timedelta(hours=hours)
            rows = (
                self.db_session.query(WorkflowRun.status, func.count(WorkflowRun.id))
                .filter(WorkflowRun.created_at >= since)
                .group_by(WorkflowRun.status)
                .all()
            )
            for status, count in rows:
                result["total"] += count
                result[status] = count

            finished = result[RunStatus.COMPLETED] + result[RunStatus.FAILED]
            if finished:
                result["completion_rate"] = round(result[RunStatus.COMPLETED] / finished * 100, 2)
            return result
        except Exception as e:
            logger.error(f"Failed to get run stats: {e}")
            result["error"] = str(e)
            return result

    def get_failure_rate(self, hours: int = 1) -> Dict[str, Any]:
        try:
            since = self.clock() - timedelta(hours=hours)
            finished = (
                self.db_session.query(func.count(WorkflowRun.id))
                .filter(
                    WorkflowRun.status.in_([RunStatus.COMPLETED, RunStatus.FAILED]),
                    WorkflowRun.updated_at >= since,
                )
                .scalar() or 0
            )
            failed = (
                self.db_session.query(func.count(WorkflowRun.id))
                .filter(WorkflowRun.status == RunStatus.FAILED, WorkflowRun.failed_at >= since)
                .scalar() or 0
            )
            return {
                "period_hours": hours,
                "finished_runs": finished,
                "failed_runs": failed,
                "failure_rate": round(failed / finished * 100, 2) if finished else 0.0,
            }
        except Exception as e:
            logger.error(f"Failed to get failure rate: {e}")
            return {"period_hours": hours, "finished_runs": 0, "failed_runs": 0, "failure_rate": 0.0, "error": str(e)}

    def get_queue_stats(self) -> Dict[str, Any]:
        try:
            now = self.clock()
            query = self.db_session.query(func.count(WorkflowActionQueue.id))
            return {
                "depth": query.scalar() or 0,
                "due": query.filter(WorkflowActionQueue.resume_at <= now).scalar() or 0,
                "claimed": (
                    self.db_session.query(func.count(WorkflowActionQueue.id))
                    .filter(WorkflowActionQueue.claimed_until >= now)
                    .scalar() or 0
                ),
                "retrying": (
                    self.db_session.query(func.count(WorkflowActionQueue.id))
                    .filter(WorkflowActionQueue.kind == "retry")
                    .scalar() or 0
                ),
            }
        except Exception as e:
            logger.error(f"Failed to get queue stats: {e}")
            return {"depth": 0, "due": 0, "claimed": 0, "retrying": 0, "error": str(e)}

    def get_task_stats(self) -> Dict[str, Any]:
        try:
            now = self.clock()
            pending = (
                self.db_session.query(func.count(Task.id))
                .filter(Task.status == TaskStatus.PENDING)
                .scalar() or 0
            )
            overdue = (
                self.db_session.query(func.count(Task.id))
                .filter(Task.status == TaskStatus.PENDING, Task.due_at.isnot(None), Task.due_at < now)
                .scalar() or 0
            )
            return {"pending": pending, "overdue": overdue}
        except Exception as e:
            logger.error(f"Failed to get task stats: {e}")
            return {"pending": 0, "overdue": 0, "error": str(e)}

    def get_circuit_breaker_status(self) -> Dict[str, Any]:
        breakers = all_breaker_statuses()
        return {
            name: {**status, "is_healthy": status["state"] == CircuitBreakerState.CLOSED}
            for name, status in breakers.items()
        }

    def get_database_health(self) -> Dict[str, Any]:
        try:
            start = time.time()
            self.db_session.execute(text("SELECT 1")).fetchone()
            return {"connected": True, "response_time_ms": round((time.time() - start) * 1000, 2)}
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return {"connected": False, "response_time_ms": None, "error": str(e)}

    def get_all_metrics(self) -> Dict[str, Any]:
        return {
            "timestamp": self.clock().isoformat() + "Z",
            "runs": self.get_run_stats(hours=24),
            "failure_rate": self.get_failure_rate(hours=1),
            "queue": self.get_queue_stats(),
            "tasks": self.get_task_stats(),
            "circuit_breakers": self.get_circuit_breaker_status(),
            "database": self.get_database_health(),
        }


def check_engine_health(db_session: Session, clock: Clock = utcnow) -> Dict[str, Any]:
    """
    Overall engine health.

    Returns:
        Dict with healthy flag, per-component booleans, issues and raw metrics
    """
    metrics = MetricsCollector(db_session, clock=clock).get_all_metrics()

    issues = []
    components = {"database": metrics["database"]["connected"]}
    if not components["database"]:
        issues.append("Database connection failed")

    for name, status in metrics["circuit_breakers"].items():
        components[f"breaker:{name}"] = status["is_healthy"]
        if not status["is_healthy"]:
            issues.append(f"{name} circuit breaker is {status['state']}")

    failure_rate = metrics["failure_rate"]["failure_rate"]
    components["failure_rate"] = failure_rate < 50.0
    if failure_rate >= 50.0:
        issues.append(f"High run failure rate: {failure_rate}%")

    return {
        "healthy": all(components.values()),
        "components": components,
        "issues": issues or None,
        "metrics": metrics,
    }
