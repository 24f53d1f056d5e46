
import requests

from logger_config import get_logger
from repositories.job_repo import BackendRequestError, JobRepo

logger = get_logger("supabase")

NIL_UUID = "00000000-0000-0000-0000-000000000000"


def _in_filter(values):
    quoted = ",".join(f'"{str(v)}"' for v in values)
    return f"in.({quoted})"


class SupabaseJobRepo(JobRepo):
    """Supabase REST-backed job repository (PostgREST tables + RPCs)."""

    def __init__(self, supabase_url, api_key, access_token=None, timeout_seconds=20):
        self.supabase_url = supabase_url.rstrip('/')
        self.api_key = api_key
        self.access_token = access_token
        self.timeout_seconds = timeout_seconds
        self.headers = {
            "apikey": api_key,
            "Authorization": f"Bearer {access_token or api_key}",
            "Content-Type": "application/json",
        }

    def for_user(self, access_token):
        return SupabaseJobRepo(
            self.supabase_url,
            self.api_key,
            access_token=access_token,
            timeout_seconds=self.timeout_seconds,
        )

    def _request(self, method, path, params=None, json_body=None, headers=None):
        req_headers = dict(self.headers)
        if headers:
            req_headers.update(headers)
        url = f"{self.supabase_url}{path}"
        try:
            resp = requests.request(
                method=method,
                url=url,
                headers=req_headers,
                params=params,
                json=json_body,
                timeout=self.timeout_seconds,
            )
        except requests.exceptions.RequestException as exc:
            raise BackendRequestError(f"Supabase request error on {method} {path}: {exc}") from exc
        if resp.status_code >= 400:
            raise BackendRequestError(
                f"Supabase request failed {resp.status_code}: {resp.text[:500]}",
                status_code=resp.status_code,
            )
        if resp.text:
            try:
                return resp.json()
            except ValueError:
                return []
        return []

    def _rest(self, method, table, params=None, json_body=None, prefer=None):
        headers = {"Prefer": prefer} if prefer else None
        return self._request(method, f"/rest/v1/{table}", params=params, json_body=json_body, headers=headers)

    def _rpc(self, name, args):
        return self._request("POST", f"/rest/v1/rpc/{name}", json_body=args)

    def get_user_for_token(self, access_token):
        if not access_token:
            return None
        try:
            user = self._request(
                "GET",
                "/auth/v1/user",
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except BackendRequestError as exc:
            if exc.status_code in (401, 403):
                return None
            raise
        if not isinstance(user, dict) or not user.get("id"):
            return None
        return user

    # --- jobs ---

    def list_jobs(self, job_date=None, job_ids=None, order="job_date.asc", limit=None):
        if job_ids is not None and not job_ids:
            return []
        params = {"select": "*", "order": order}
        if job_date:
            params["job_date"] = f"eq.{job_date}"
        if job_ids is not None:
            params["id"] = _in_filter(job_ids)
        if limit:
            params["limit"] = str(int(limit))
        return self._rest("GET", "jobs", params=params)

    def insert_job(self, row):
        rows = self._rest("POST", "jobs", json_body=[row], prefer="return=representation")
        return rows[0] if rows else dict(row)

    def update_job(self, job_id, patch):
        self._rest("PATCH", "jobs", params={"id": f"eq.{job_id}"}, json_body=dict(patch), prefer="return=minimal")

    def delete_all_jobs(self):
        self._rest("DELETE", "jobs", params={"id": f"neq.{NIL_UUID}"}, prefer="return=minimal")

    # --- assignments ---

    def list_assignments(self, job_ids=None, user_id=None):
        if job_ids is not None and not job_ids:
            return []
        params = {"select": "job_id,user_id,status"}
        if job_ids is not None:
            params["job_id"] = _in_filter(job_ids)
        if user_id:
            params["user_id"] = f"eq.{user_id}"
        return self._rest("GET", "job_assignments", params=params)

    def insert_assignments(self, rows):
        if not rows:
            return
        self._rest("POST", "job_assignments", json_body=list(rows), prefer="return=minimal")

    def update_assignment_status(self, job_id, user_id, status):
        self._rest(
            "PATCH",
            "job_assignments",
            params={"job_id": f"eq.{job_id}", "user_id": f"eq.{user_id}"},
            json_body={"status": status},
            prefer="return=minimal",
        )

    def delete_assignments(self, job_ids, user_ids=None):
        if not job_ids:
            return
        params = {"job_id": _in_filter(job_ids)}
        if user_ids is not None:
            if not user_ids:
                return
            params["user_id"] = _in_filter(user_ids)
        self._rest("DELETE", "job_assignments", params=params, prefer="return=minimal")

    # --- profiles ---

    def list_profiles(self, ids=None, status=None, role=None):
        if ids is not None and not ids:
            return []
        params = {"select": "*", "order": "full_name.asc"}
        if ids is not None:
            params["id"] = _in_filter(ids)
        if status:
            params["status"] = f"eq.{status}"
        if role:
            params["role"] = f"eq.{role}"
        return self._rest("GET", "profiles", params=params)

    def get_profile(self, user_id):
        rows = self._rest("GET", "profiles", params={"select": "*", "id": f"eq.{user_id}", "limit": "1"})
        return rows[0] if rows else None

    def update_profile(self, user_id, patch):
        self._rest("PATCH", "profiles", params={"id": f"eq.{user_id}"}, json_body=dict(patch), prefer="return=minimal")

    # --- push subscriptions ---

    def list_push_subscriptions(self):
        return self._rest("GET", "push_subscriptions", params={"select": "*"})

    def delete_push_subscription(self, subscription_id):
        self._rest(
            "DELETE",
            "push_subscriptions",
            params={"id": f"eq.{subscription_id}"},
            prefer="return=minimal",
        )

    def replace_push_subscription(self, user_id, endpoint, keys, user_agent=""):
        self._rest(
            "DELETE",
            "push_subscriptions",
            params={"endpoint": f"eq.{endpoint}"},
            prefer="return=minimal",
        )
        rows = self._rest(
            "POST",
            "push_subscriptions",
            json_body=[{
                "user_id": user_id,
                "endpoint": endpoint,
                "keys": keys or {},
                "user_agent": user_agent or "",
            }],
            prefer="return=representation",
        )
        return rows[0] if rows else None

    # --- import batches ---

    def create_import_batch(self, source_type, raw_text, created_by):
        rows = self._rest(
            "POST",
            "job_import_batches",
            json_body=[{"source_type": source_type, "raw_text": raw_text, "created_by": created_by}],
            prefer="return=representation",
        )
        if not rows:
            raise BackendRequestError("Supabase did not return the created import batch")
        return rows[0]

    def insert_import_rows(self, rows):
        if not rows:
            return
        self._rest("POST", "job_import_rows", json_body=list(rows), prefer="return=minimal")

    def delete_all_import_batches(self):
        self._rest("DELETE", "job_import_batches", params={"id": f"neq.{NIL_UUID}"}, prefer="return=minimal")

    # --- share tokens ---

    def create_dashboard_share(self, share_name, expiration_hours):
        token = self._rpc("create_dashboard_share", {
            "share_name": share_name,
            "expiration_hours": int(expiration_hours),
        })
        logger.info(f"[SHARE] Created dashboard share '{share_name}' valid for {expiration_hours}h")
        return token

    def get_shared_dashboard_data(self, share_token, target_date):
        data = self._rpc("get_shared_dashboard_data", {
            "share_token": share_token,
            "target_date": target_date,
        })
        return data if isinstance(data, list) else []
