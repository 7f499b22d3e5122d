"""
Action Queue Scheduler

Fires due action-queue entries (delay expiries and action retries).

Sweep algorithm:
1. Select entries with resume_at <= now that are unclaimed (or whose claim
   expired), oldest first, up to the batch size
2. Claim each with a conditional UPDATE; only one sweeper can win an entry
3. Ask the executor to resume the step; on success the executor deletes
   the entry in the same transaction
4. On failure: attempts + 1, record last_error, reschedule with exponential
   backoff and release the claim; at the attempt limit the executor fails
   the step (which may fail the run if the node is required). Errors
   that are not retryable fail the step on the first attempt.

A run lease held by another worker is not a failure: the claim is released
and the entry is picked up by a later sweep.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import or_, update
from sqlalchemy.orm import Session

from ..models import RunStatus, WorkflowActionQueue, WorkflowRun, WorkflowRunState
from .config import Settings
from .event_log import EventType
from .exceptions import RunLockedError, should_retry
from .executor import RunExecutor
from .timeutils import Clock, utcnow

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    resumed: int = 0
    retried: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return self.resumed + self.retried + self.failed

    def to_dict(self) -> dict:
        return {
            "resumed": self.resumed,
            "retried": self.retried,
            "failed": self.failed,
            "skipped": self.skipped,
            "errors": self.errors,
        }


class ActionScheduler:
    """Durable, time-ordered queue of suspended steps."""

    def __init__(
        self,
        db: Session,
        executor: RunExecutor,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow,
    ):
        self.db = db
        self.executor = executor
        self.settings = settings or executor.settings
        self.clock = clock
        self.worker_id = executor.worker_id

    def due_entries(self, now: datetime, limit: int) -> List[str]:
        ids = [
            entry_id for (entry_id,) in self.db.query(WorkflowActionQueue.id)
            .filter(
                WorkflowActionQueue.resume_at <= now,
                or_(
                    WorkflowActionQueue.claimed_until.is_(None),
                    WorkflowActionQueue.claimed_until < now,
                ),
            )
            .order_by(WorkflowActionQueue.resume_at)
            .limit(limit)
        ]
        self.db.commit()
        return ids

    def _claim(self, entry_id: str, now: datetime) -> bool:
        claimed = self.db.execute(
            update(WorkflowActionQueue)
            .where(
                WorkflowActionQueue.id == entry_id,
                or_(
                    WorkflowActionQueue.claimed_until.is_(None),
                    WorkflowActionQueue.claimed_until < now,
                ),
            )
            .values(
                claimed_by=self.worker_id,
                claimed_until=now + timedelta(seconds=self.settings.queue_claim_seconds),
            )
            .execution_options(synchronize_session=False)
        ).rowcount
        self.db.commit()
        return claimed == 1

    def _release_claim(self, entry_id: str) -> None:
        self.db.execute(
            update(WorkflowActionQueue)
            .where(WorkflowActionQueue.id == entry_id, WorkflowActionQueue.claimed_by == self.worker_id)
            .values(claimed_by=None, claimed_until=None)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()

    def sweep(self, now: Optional[datetime] = None, limit: Optional[int] = None) -> SweepReport:
        """
        Process every entry due at `now` (defaults to the clock).

        Tests pass a future `now` to fire delays without waiting.
        """
        now = now or self.clock()
        limit = limit or self.settings.sweep_batch_size
        report = SweepReport()

        for entry_id in self.due_entries(now, limit):
            if not self._claim(entry_id, now):
                report.skipped += 1
                continue
            try:
                self.executor.resume_entry(entry_id)
                report.resumed += 1
            except RunLockedError:
                self._release_claim(entry_id)
                report.skipped += 1
            except Exception as e:
                self._record_failure(entry_id, e, now, report)

        if report.processed or report.skipped:
            logger.info("Action queue sweep finished", extra=report.to_dict())
        return report

    def _record_failure(self, entry_id: str, error: Exception, now: datetime, report: SweepReport) -> None:
        self.db.rollback()
        entry = self.db.get(WorkflowActionQueue, entry_id, populate_existing=True)
        if entry is None:
            return

        message = getattr(error, "message", None) or str(error)
        attempts = entry.attempts + 1
        max_attempts = (entry.entry_metadata or {}).get("max_attempts", self.settings.queue_max_attempts)
        report.errors.append(f"{entry.node_key}: {message}")

        entry.attempts = attempts
        entry.last_error = message
        retryable = should_retry(error)
        if not retryable or attempts >= max_attempts:
            self.db.commit()
            if retryable:
                reason = f"{message} (after {attempts} attempts)"
                logger.error(
                    f"Queue entry for '{entry.node_key}' exhausted {attempts} attempts",
                    extra={"run_id": entry.run_id, "error": message},
                )
            else:
                reason = message
                logger.error(
                    f"Queue entry for '{entry.node_key}' failed permanently",
                    extra={"run_id": entry.run_id, "error": message},
                )
            try:
                self.executor.fail_entry(entry_id, reason)
                report.failed += 1
            except RunLockedError:
                self._release_claim(entry_id)
                report.skipped += 1
            return

        entry.resume_at = now + timedelta(seconds=self.settings.backoff_seconds(attempts))
        entry.claimed_by = None
        entry.claimed_until = None
        self.executor.events.append(entry.run_id, EventType.STEP_RETRY_SCHEDULED, {
            "node_key": entry.node_key,
            "attempts": attempts,
            "resume_at": entry.resume_at.isoformat(),
            "error": message,
        }, step_id=entry.step_id)
        self.db.commit()
        report.retried += 1
        logger.warning(
            f"Queue entry for '{entry.node_key}' failed, retry scheduled",
            extra={"run_id": entry.run_id, "attempts": attempts, "error": message},
        )

    def recover_stalled_runs(self, now: Optional[datetime] = None, limit: Optional[int] = None) -> List[str]:
        """
        Re-advance in-progress runs with unprocessed advancement requests and
        no live lease (a worker died mid-advance).
        """
        now = now or self.clock()
        limit = limit or self.settings.sweep_batch_size
        run_ids = [
            run_id for (run_id,) in self.db.query(WorkflowRunState.run_id)
            .join(WorkflowRun, WorkflowRun.id == WorkflowRunState.run_id)
            .filter(
                WorkflowRun.status == RunStatus.IN_PROGRESS,
                WorkflowRunState.requested_generation > WorkflowRunState.processed_generation,
                or_(
                    WorkflowRunState.lease_owner.is_(None),
                    WorkflowRunState.lease_expires_at < now,
                ),
            )
            .limit(limit)
        ]
        self.db.commit()

        recovered = []
        for run_id in run_ids:
            if self.executor.advance_run(run_id):
                recovered.append(run_id)
        if recovered:
            logger.warning(f"Recovered {len(recovered)} stalled run(s)", extra={"run_ids": recovered})
        return recovered
