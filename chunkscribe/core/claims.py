"""
Claim manager: atomic per-task locks.

The conditional UPDATE in ``Database.try_claim`` is the only place a claim
is taken. Every later write by the holder is scoped to its worker id and
run id, so a worker whose lease ran out cannot touch a task someone else
has since claimed.
"""

import logging
import time
import uuid
from datetime import datetime, timedelta, timezone

from chunkscribe.core.constants import TaskStatus
from chunkscribe.core.db_sqlite import Database
from chunkscribe.core.error_codes import ClaimConflict
from chunkscribe.core.models_sqlite import ProcessingAttempt

logger = logging.getLogger(__name__)


def new_correlation_id() -> str:
    """Run id stored on the task for the lifetime of one processing attempt."""
    return f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"


class ClaimManager:
    """Acquires and releases exclusive processing rights over tasks."""

    def __init__(self, db: Database, lease_sec: float | None = None):
        self.db = db
        self.lease_sec = lease_sec

    def _lease_expiry(self, now: datetime) -> str | None:
        if not self.lease_sec:
            return None
        return (now + timedelta(seconds=self.lease_sec)).isoformat()

    def claim(self, task_id: str, worker_id: str) -> ProcessingAttempt | None:
        """
        Try to take the task. Returns the attempt only for the single
        winner; losing a race returns None and has no side effects.
        """
        now = datetime.now(timezone.utc)
        attempt = ProcessingAttempt(
            task_id=task_id,
            worker_id=worker_id,
            correlation_id=new_correlation_id(),
            claimed_at=now.isoformat(),
            lease_expires_at=self._lease_expiry(now),
        )
        claimed = self.db.try_claim(
            task_id, worker_id, attempt.correlation_id,
            now=attempt.claimed_at,
            lease_expires_at=attempt.lease_expires_at,
        )
        if not claimed:
            logger.debug("Claim lost for task %s (%s)", task_id, worker_id)
            return None
        logger.info("Claimed task %s as %s", task_id, worker_id)
        return attempt

    def holds(self, attempt: ProcessingAttempt) -> bool:
        """Whether ``attempt`` still owns an unexpired claim."""
        return self.db.is_run_active(attempt.task_id, attempt.correlation_id)

    def update_held(self, attempt: ProcessingAttempt, **fields) -> bool:
        """
        Write task fields on behalf of the holder, extending the lease.
        Returns False without writing if the claim has moved on.
        """
        expiry = self._lease_expiry(datetime.now(timezone.utc))
        if expiry:
            fields['lease_expires_at'] = expiry
        return self.db.update_claimed_task(
            attempt.task_id, attempt.worker_id, attempt.correlation_id, **fields)

    def release(self, attempt: ProcessingAttempt, to_status: str = TaskStatus.PENDING, **extra):
        """
        Clear the claim so a future poll cycle may retry the task.
        Raises ClaimConflict if another run has taken the task since.
        """
        released = self.db.release_claim(
            attempt.task_id, attempt.worker_id, attempt.correlation_id, to_status, **extra)
        if not released:
            raise ClaimConflict(
                f"task {attempt.task_id} is no longer held by {attempt.worker_id} "
                f"(run {attempt.correlation_id})")
        logger.info("Released task %s → %s", attempt.task_id, to_status)

    def renew(self, attempt: ProcessingAttempt) -> bool:
        """Push the lease forward; no-op when leases are disabled."""
        if not self.lease_sec:
            return True
        expiry = self._lease_expiry(datetime.now(timezone.utc))
        renewed = self.db.renew_lease(attempt.task_id, attempt.worker_id,
                                      attempt.correlation_id, expiry)
        if not renewed:
            logger.warning("Lease renewal failed for task %s: no longer held by %s",
                           attempt.task_id, attempt.worker_id)
        return renewed

    def current_attempt(self, task_id: str) -> ProcessingAttempt | None:
        return self.db.get_attempt(task_id)
