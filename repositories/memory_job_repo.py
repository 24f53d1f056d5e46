import secrets
import threading
import uuid
from copy import deepcopy
from datetime import datetime, timedelta

from repositories.job_repo import BackendRequestError, JobRepo


class InMemoryJobRepo(JobRepo):
    """
    Process-local stand-in for the hosted tables.
    Used for local runs without Supabase credentials and by the test suite.
    `fail_on` names operations that should raise BackendRequestError.
    """

    def __init__(self, jobs=None, assignments=None, profiles=None, tokens=None):
        self._lock = threading.RLock()
        self.jobs = [dict(j) for j in (jobs or [])]
        self.assignments = [dict(a) for a in (assignments or [])]
        self.profiles = [dict(p) for p in (profiles or [])]
        self.tokens = dict(tokens or {})
        self.push_subscriptions = []
        self.import_batches = []
        self.import_rows = []
        self.shares = {}
        self.fail_on = set()
        self.calls = []

    def _record(self, op, **kwargs):
        self.calls.append((op, kwargs))
        if op in self.fail_on:
            raise BackendRequestError(f"Simulated failure for {op}", status_code=500)

    def writes(self):
        read_ops = {"list_jobs", "list_assignments", "list_profiles", "get_profile",
                    "list_push_subscriptions", "get_user_for_token", "get_shared_dashboard_data"}
        return [c for c in self.calls if c[0] not in read_ops]

    def get_user_for_token(self, access_token):
        self._record("get_user_for_token")
        user_id = self.tokens.get(access_token)
        return {"id": user_id} if user_id else None

    def list_jobs(self, job_date=None, job_ids=None, order="job_date.asc", limit=None):
        with self._lock:
            self._record("list_jobs", job_date=job_date, job_ids=job_ids)
            rows = [j for j in self.jobs
                    if (not job_date or j.get("job_date") == job_date)
                    and (job_ids is None or j.get("id") in job_ids)]
            field, _, direction = order.partition(".")
            rows.sort(key=lambda r: str(r.get(field) or ""), reverse=direction == "desc")
            if limit:
                rows = rows[:int(limit)]
            return deepcopy(rows)

    def insert_job(self, row):
        with self._lock:
            self._record("insert_job", row=row)
            stored = dict(row)
            stored.setdefault("id", str(uuid.uuid4()))
            stored.setdefault("status", "pending")
            stored.setdefault("created_at", datetime.utcnow().isoformat() + "Z")
            self.jobs.append(stored)
            return dict(stored)

    def update_job(self, job_id, patch):
        with self._lock:
            self._record("update_job", job_id=job_id, patch=patch)
            for job in self.jobs:
                if job.get("id") == job_id:
                    job.update(patch)

    def delete_all_jobs(self):
        with self._lock:
            self._record("delete_all_jobs")
            self.jobs = []
            self.assignments = []

    def list_assignments(self, job_ids=None, user_id=None):
        with self._lock:
            self._record("list_assignments", job_ids=job_ids, user_id=user_id)
            return deepcopy([a for a in self.assignments
                             if (job_ids is None or a.get("job_id") in job_ids)
                             and (not user_id or a.get("user_id") == user_id)])

    def insert_assignments(self, rows):
        with self._lock:
            self._record("insert_assignments", rows=rows)
            for row in rows:
                stored = dict(row)
                stored.setdefault("status", "pending")
                self.assignments.append(stored)

    def update_assignment_status(self, job_id, user_id, status):
        with self._lock:
            self._record("update_assignment_status", job_id=job_id, user_id=user_id, status=status)
            for row in self.assignments:
                if row.get("job_id") == job_id and row.get("user_id") == user_id:
                    row["status"] = status

    def delete_assignments(self, job_ids, user_ids=None):
        with self._lock:
            self._record("delete_assignments", job_ids=job_ids, user_ids=user_ids)
            self.assignments = [
                a for a in self.assignments
                if not (a.get("job_id") in job_ids and (user_ids is None or a.get("user_id") in user_ids))
            ]

    def list_profiles(self, ids=None, status=None, role=None):
        with self._lock:
            self._record("list_profiles", ids=ids)
            rows = [p for p in self.profiles
                    if (ids is None or p.get("id") in ids)
                    and (not status or p.get("status") == status)
                    and (not role or p.get("role") == role)]
            return deepcopy(sorted(rows, key=lambda p: str(p.get("full_name") or "")))

    def get_profile(self, user_id):
        with self._lock:
            self._record("get_profile", user_id=user_id)
            for profile in self.profiles:
                if profile.get("id") == user_id:
                    return dict(profile)
            return None

    def update_profile(self, user_id, patch):
        with self._lock:
            self._record("update_profile", user_id=user_id, patch=patch)
            for profile in self.profiles:
                if profile.get("id") == user_id:
                    profile.update(patch)

    def list_push_subscriptions(self):
        with self._lock:
            self._record("list_push_subscriptions")
            return deepcopy(self.push_subscriptions)

    def delete_push_subscription(self, subscription_id):
        with self._lock:
            self._record("delete_push_subscription", subscription_id=subscription_id)
            self.push_subscriptions = [s for s in self.push_subscriptions if s.get("id") != subscription_id]

    def replace_push_subscription(self, user_id, endpoint, keys, user_agent=""):
        with self._lock:
            self._record("replace_push_subscription", user_id=user_id, endpoint=endpoint)
            self.push_subscriptions = [
                s for s in self.push_subscriptions
                if s.get("endpoint") != endpoint
            ]
            row = {
                "id": str(uuid.uuid4()),
                "user_id": user_id,
                "endpoint": endpoint,
                "keys": dict(keys or {}),
                "user_agent": user_agent or "",
            }
            self.push_subscriptions.append(row)
            return dict(row)

    def create_import_batch(self, source_type, raw_text, created_by):
        with self._lock:
            self._record("create_import_batch", source_type=source_type)
            batch = {
                "id": str(uuid.uuid4()),
                "source_type": source_type,
                "raw_text": raw_text,
                "created_by": created_by,
            }
            self.import_batches.append(batch)
            return dict(batch)

    def insert_import_rows(self, rows):
        with self._lock:
            self._record("insert_import_rows", count=len(rows))
            self.import_rows.extend(dict(r) for r in rows)

    def delete_all_import_batches(self):
        with self._lock:
            self._record("delete_all_import_batches")
            self.import_batches = []
            self.import_rows = []

    def create_dashboard_share(self, share_name, expiration_hours):
        with self._lock:
            self._record("create_dashboard_share", share_name=share_name)
            token = secrets.token_urlsafe(24)
            self.shares[token] = {
                "name": share_name,
                "expires_at": datetime.utcnow() + timedelta(hours=int(expiration_hours)),
            }
            return token

    def get_shared_dashboard_data(self, share_token, target_date):
        with self._lock:
            self._record("get_shared_dashboard_data", target_date=target_date)
            share = self.shares.get(share_token)
            if not share or share["expires_at"] < datetime.utcnow():
                raise BackendRequestError("Invalid or expired share token", status_code=400)
            names = {p.get("id"): p.get("full_name") for p in self.profiles}
            data = []
            for job in self.jobs:
                if target_date and job.get("job_date") != target_date:
                    continue
                row = dict(job)
                row["assigned_users"] = [
                    {
                        "user_id": a.get("user_id"),
                        "full_name": names.get(a.get("user_id")) or "Unknown",
                        "status": a.get("status") or "pending",
                    }
                    for a in self.assignments if a.get("job_id") == job.get("id")
                ]
                data.append(row)
            return data
