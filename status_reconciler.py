# status_reconciler.py - Worker status changes with the "one active job" rule
#
# The backend keeps two copies of progress: jobs.status (global, last writer
# wins) and job_assignments.status (per worker). Both are written here after
# an optimistic patch of the user's board.

from dataclasses import asdict, dataclass, field
from typing import Optional

from job_status import ACTIVE_STATUSES, CONFLICT_RESOLUTIONS, PENDING, is_active, is_valid_status, normalize_status
from logger_config import get_logger
from repositories.job_repo import BackendRequestError, NotFoundError

logger = get_logger("status")

APPLIED = "applied"
CONFLICT = "conflict"
NEEDS_CONFIRMATION = "needs_confirmation"
ASSIGNMENT_FAILED = "assignment_failed"
REFETCHED = "refetched"


@dataclass
class StatusConflict:
    new_job_id: str
    new_status: str
    old_job_id: str
    old_job: dict = field(default_factory=dict)
    choices: tuple = tuple(sorted(CONFLICT_RESOLUTIONS))

    def to_dict(self):
        payload = asdict(self)
        payload["choices"] = list(self.choices)
        return payload


@dataclass
class StatusUpdateResult:
    outcome: str
    job_id: str
    status: str
    message: str = ""
    conflict: Optional[StatusConflict] = None
    auto_resolved_job_id: Optional[str] = None

    @property
    def ok(self):
        return self.outcome == APPLIED

    def to_dict(self):
        return {
            "outcome": self.outcome,
            "job_id": self.job_id,
            "status": self.status,
            "message": self.message,
            "conflict": self.conflict.to_dict() if self.conflict else None,
            "auto_resolved_job_id": self.auto_resolved_job_id,
        }


class StatusReconciler:
    def set_status(self, board, job_id, new_status, confirm_unassigned=False):
        new_status = str(new_status or "").strip().lower()
        if not is_valid_status(new_status):
            raise ValueError(f"Invalid status value: {new_status!r}")

        job = board.find_job(job_id)
        if job is None:
            raise NotFoundError(f"Job {job_id} is not in the current view")

        if not board.is_assigned(job) and not confirm_unassigned:
            return StatusUpdateResult(
                NEEDS_CONFIRMATION, job_id, new_status,
                message="This job is not assigned to you. Confirm to assign it to yourself and proceed.",
            )

        auto_resolved = None
        if new_status in ACTIVE_STATUSES:
            other = board.find_active_job_for(board.user_id, exclude_job_id=job_id)
            if other is not None:
                covered = any(
                    u.get("user_id") != board.user_id and is_active(u.get("status"))
                    for u in other.get("assigned_users") or []
                )
                if covered:
                    logger.info(
                        f"[STATUS] user={board.user_id} auto-resolving job={other['id']} to pending; "
                        "another worker is active there"
                    )
                    self._execute(board, other, PENDING)
                    auto_resolved = other["id"]
                else:
                    conflict = StatusConflict(
                        new_job_id=job_id,
                        new_status=new_status,
                        old_job_id=other["id"],
                        old_job=other,
                    )
                    with board.lock:
                        board.conflict = conflict
                    logger.info(f"[STATUS] user={board.user_id} conflict between job={other['id']} and job={job_id}")
                    return StatusUpdateResult(
                        CONFLICT, job_id, new_status,
                        message="You are already active on another job. Reset it to pending or mark it picked up.",
                        conflict=conflict,
                    )

        result = self._execute(board, job, new_status)
        result.auto_resolved_job_id = auto_resolved
        return result

    def resolve_conflict(self, board, action):
        action = str(action or "").strip().lower()
        if action not in CONFLICT_RESOLUTIONS:
            raise ValueError(f"Conflict resolution must be one of {sorted(CONFLICT_RESOLUTIONS)}")
        with board.lock:
            conflict = board.conflict
            board.conflict = None
        if conflict is None:
            raise NotFoundError("No status conflict is waiting for a decision")

        old_job = board.find_job(conflict.old_job_id) or conflict.old_job
        old_result = self._execute(board, old_job, action)
        if old_result.outcome == ASSIGNMENT_FAILED:
            return old_result

        new_job = board.find_job(conflict.new_job_id)
        if new_job is None:
            return StatusUpdateResult(
                REFETCHED, conflict.new_job_id, conflict.new_status,
                message="The job is no longer in the current view.",
            )
        result = self._execute(board, new_job, conflict.new_status)
        result.auto_resolved_job_id = conflict.old_job_id
        return result

    def cancel_conflict(self, board):
        with board.lock:
            had_conflict = board.conflict is not None
            board.conflict = None
        return had_conflict

    def _refetch(self, board):
        try:
            board.refresh()
        except BackendRequestError as exc:
            logger.error(f"[STATUS] Refetch failed for user={board.user_id}: {exc}")

    def _execute(self, board, job, status):
        user_id = board.user_id
        job_id = job["id"]

        if not board.is_assigned(job):
            try:
                board.repo.insert_assignments([{"job_id": job_id, "user_id": user_id}])
            except BackendRequestError as exc:
                logger.error(f"[STATUS] Assignment error for job={job_id} user={user_id}: {exc}")
                return StatusUpdateResult(
                    ASSIGNMENT_FAILED, job_id, status,
                    message="Failed to assign job. Please try again.",
                )
            self._refetch(board)

        board.apply_optimistic_status(job_id, user_id, status)

        global_error = None
        try:
            board.repo.update_job(job_id, {"status": status, "last_updated_by": user_id})
        except BackendRequestError as exc:
            global_error = exc

        try:
            board.repo.update_assignment_status(job_id, user_id, status)
        except BackendRequestError as exc:
            logger.warning(f"[STATUS] Assignment status write failed for job={job_id} user={user_id}: {exc}")

        if global_error is not None:
            logger.error(f"[STATUS] Failed to update status for job={job_id}: {global_error}")
            self._refetch(board)
            return StatusUpdateResult(REFETCHED, job_id, status, message="Failed to update status")

        logger.info(f"[STATUS] user={user_id} job={job_id} -> {normalize_status(status)}")
        return StatusUpdateResult(APPLIED, job_id, status)
