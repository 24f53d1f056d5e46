import threading
from copy import deepcopy
from datetime import date

from distance_annotator import DistanceCache
from job_status import ACTIVE_STATUSES, normalize_status
from logger_config import get_logger

logger = get_logger("board")

FILTER_MINE = "mine"
FILTER_ALL = "all"
FILTER_MODES = (FILTER_MINE, FILTER_ALL)


def today_iso():
    return date.today().isoformat()


def join_jobs_with_assignees(jobs, assignments, profiles, unknown_name="Unknown"):
    """Attach `assigned_users` to each job row (jobs -> job_assignments -> profiles)."""
    names = {p.get("id"): p.get("full_name") for p in profiles or []}
    by_job = {}
    for row in assignments or []:
        by_job.setdefault(row.get("job_id"), []).append(row)

    formatted = []
    for job in jobs or []:
        assigned = [
            {
                "full_name": names.get(a.get("user_id")) or unknown_name,
                "user_id": a.get("user_id"),
                "status": normalize_status(a.get("status")),
            }
            for a in by_job.get(job.get("id"), [])
        ]
        formatted.append({**job, "assigned_users": assigned, "status": normalize_status(job.get("status"))})
    return formatted


def fetch_joined_jobs(repo, job_date=None, job_ids=None, order="job_date.asc", limit=None):
    jobs = repo.list_jobs(job_date=job_date, job_ids=job_ids, order=order, limit=limit)
    if not jobs:
        return []
    ids = [j["id"] for j in jobs]
    assignments = repo.list_assignments(job_ids=ids)
    user_ids = sorted({a.get("user_id") for a in assignments if a.get("user_id")})
    profiles = repo.list_profiles(ids=user_ids) if user_ids else []
    return join_jobs_with_assignees(jobs, assignments, profiles)


class JobBoard:
    """
    One user's active-jobs view: filters, the joined job list, the distance
    cache for the current date and any conflict waiting on a decision.
    """

    def __init__(self, repo, user_id, filter_mode=FILTER_MINE, date_filter=None):
        self.repo = repo
        self.user_id = user_id
        self.filter_mode = filter_mode if filter_mode in FILTER_MODES else FILTER_MINE
        self.date_filter = today_iso() if date_filter is None else date_filter
        self.jobs = []
        self.distance_cache = DistanceCache()
        self.location = None
        self.conflict = None
        self._lock = threading.RLock()

    @property
    def lock(self):
        return self._lock

    def set_filters(self, filter_mode=None, date_filter=None):
        """Apply new filters. Returns True when the date changed and the distance cache was cleared."""
        with self._lock:
            if filter_mode in FILTER_MODES:
                self.filter_mode = filter_mode
            date_changed = date_filter is not None and date_filter != self.date_filter
            if date_changed:
                self.date_filter = date_filter
                # A pass still running for the old date keeps writing to the old cache.
                self.distance_cache = DistanceCache()
                logger.info(f"[BOARD] user={self.user_id} date filter -> {date_filter or 'all dates'}; distance cache cleared")
            return date_changed

    def refresh(self):
        with self._lock:
            mode = self.filter_mode
            job_date = self.date_filter or None

        target_ids = None
        if mode == FILTER_MINE:
            mine = self.repo.list_assignments(user_id=self.user_id)
            if not mine:
                with self._lock:
                    self.jobs = []
                return []
            target_ids = sorted({a["job_id"] for a in mine})

        formatted = fetch_joined_jobs(self.repo, job_date=job_date, job_ids=target_ids)
        with self._lock:
            for job in formatted:
                job["distance"] = self.distance_cache.get(job["id"])
            self.jobs = formatted
            return deepcopy(self.jobs)

    def snapshot(self):
        with self._lock:
            return deepcopy(self.jobs)

    def find_job(self, job_id):
        with self._lock:
            for job in self.jobs:
                if job.get("id") == job_id:
                    return deepcopy(job)
            return None

    def is_assigned(self, job, user_id=None):
        uid = user_id or self.user_id
        return any(u.get("user_id") == uid for u in job.get("assigned_users") or [])

    def find_active_job_for(self, user_id, exclude_job_id=None):
        """Another job on the board where `user_id` is on_way or on_site."""
        with self._lock:
            for job in self.jobs:
                if job.get("id") == exclude_job_id:
                    continue
                if any(u.get("user_id") == user_id and normalize_status(u.get("status")) in ACTIVE_STATUSES
                       for u in job.get("assigned_users") or []):
                    return deepcopy(job)
            return None

    def apply_optimistic_status(self, job_id, user_id, status):
        with self._lock:
            for job in self.jobs:
                if job.get("id") != job_id:
                    continue
                job["assigned_users"] = [
                    {**u, "status": status} if u.get("user_id") == user_id else u
                    for u in job.get("assigned_users") or []
                ]
                job["status"] = status
                job["last_updated_by"] = user_id

    def patch_job(self, row):
        job_id = (row or {}).get("id")
        with self._lock:
            for idx, job in enumerate(self.jobs):
                if job.get("id") == job_id:
                    self.jobs[idx] = {**job, **row}
                    return True
            return False

    def remove_job(self, job_id):
        with self._lock:
            before = len(self.jobs)
            self.jobs = [j for j in self.jobs if j.get("id") != job_id]
            return len(self.jobs) != before

    def apply_distances(self, distances):
        with self._lock:
            for job in self.jobs:
                if job.get("id") in distances:
                    job["distance"] = distances[job["id"]]


class BoardRegistry:
    """Boards keyed by user id, shared by request handlers and the realtime adapter."""

    def __init__(self):
        self._boards = {}
        self._lock = threading.Lock()

    def get(self, user_id):
        with self._lock:
            return self._boards.get(user_id)

    def get_or_create(self, user_id, repo):
        with self._lock:
            board = self._boards.get(user_id)
            if board is None:
                board = JobBoard(repo, user_id)
                self._boards[user_id] = board
            else:
                board.repo = repo
            return board

    def all(self):
        with self._lock:
            return list(self._boards.values())

    def drop(self, user_id):
        with self._lock:
            self._boards.pop(user_id, None)
