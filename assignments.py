from job_board import fetch_joined_jobs
from logger_config import get_logger
from push_sender import PushConfigurationError
from repositories.job_repo import BackendRequestError, NotFoundError

logger = get_logger("assign")

ASSIGNED_PUSH_TITLE = "New Job Assigned"
ASSIGNED_PUSH_URL = "/active-jobs"
SAVED_JOBS_LIMIT = 100


def assignment_push_body(job):
    company = job.get("company_name") or "a new job"
    short_address = (job.get("address") or "").split(",")[0].strip()
    body = f"You have been assigned to {company}"
    if short_address:
        body += f" at {short_address}"
    return body


def list_saved_jobs(repo, job_date=None):
    """Most recently created jobs first, with assignee names attached."""
    return fetch_joined_jobs(repo, job_date=job_date or None, order="created_at.desc", limit=SAVED_JOBS_LIMIT)


def sync_assignments(repo, job_id, selected_user_ids, push_sender=None):
    """
    Make the job's assignment set equal `selected_user_ids`.

    Only the difference is written: removed users are deleted in one call and
    new users inserted in one call. Each newly assigned user gets a targeted
    push; push failures are logged and never undo the assignment.
    """
    jobs = repo.list_jobs(job_ids=[job_id])
    if not jobs:
        raise NotFoundError(f"Job {job_id} not found")
    job = jobs[0]

    selected = []
    for uid in selected_user_ids or []:
        uid = str(uid).strip()
        if uid and uid not in selected:
            selected.append(uid)

    current = [a.get("user_id") for a in repo.list_assignments(job_ids=[job_id])]
    to_add = [uid for uid in selected if uid not in current]
    to_remove = [uid for uid in current if uid not in selected]
    logger.info(f"[ASSIGN] job={job_id} add={to_add} remove={to_remove}")

    if to_remove:
        repo.delete_assignments([job_id], user_ids=to_remove)
    if to_add:
        repo.insert_assignments([{"job_id": job_id, "user_id": uid} for uid in to_add])

    notified = []
    if to_add and push_sender is not None:
        body = assignment_push_body(job)
        for uid in to_add:
            try:
                result = push_sender.send(ASSIGNED_PUSH_TITLE, body, ASSIGNED_PUSH_URL, target_user_id=uid)
                notified.append({"user_id": uid, "sent": result.get("sent", 0)})
            except (PushConfigurationError, BackendRequestError) as exc:
                logger.warning(f"[ASSIGN] Push to {uid} failed: {exc}")
                notified.append({"user_id": uid, "sent": 0, "error": str(exc)})

    return {"job_id": job_id, "added": to_add, "removed": to_remove, "notified": notified}


def unassign_all_for_date(repo, job_date):
    if not job_date:
        raise ValueError("date is required")
    job_ids = [j["id"] for j in repo.list_jobs(job_date=job_date)]
    if job_ids:
        repo.delete_assignments(job_ids)
    logger.info(f"[ASSIGN] Cleared assignments for {len(job_ids)} job(s) on {job_date}")
    return len(job_ids)
